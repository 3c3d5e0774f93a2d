from __future__ import annotations

import re
import unicodedata

MAX_FILENAME_LENGTH = 180
FALLBACK_FILENAME = "file"

_DIR_PREFIX_RE = re.compile(r".*[\\/]", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")
_DISALLOWED_RE = re.compile(r"[^A-Za-z0-9.\-_]")


def sanitize_filename(name: str | None) -> str:
    """Reduce an untrusted client filename to a safe storage-path segment.

    Keeps only the last path segment, turns whitespace runs into a single
    hyphen and drops everything outside ``[A-Za-z0-9.-_]``. Never raises;
    an empty result becomes ``"file"``.
    """
    s = unicodedata.normalize("NFKC", str(name or "")).strip()
    s = _DIR_PREFIX_RE.sub("", s)
    s = _WHITESPACE_RE.sub("-", s)
    s = _DISALLOWED_RE.sub("", s)
    s = s[:MAX_FILENAME_LENGTH]
    return s or FALLBACK_FILENAME
