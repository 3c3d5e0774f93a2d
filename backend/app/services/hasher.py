from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

import httpx

from app.core.errors import CollaboratorError

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class ObjectDigest:
    sha256: str
    size: int


class ObjectMissing(Exception):
    """The hasher could not find (or read) the object at `path`."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"object not found: {path}")


class ContentHasher(Protocol):
    def hash(self, path: str) -> ObjectDigest: ...


class StorageContentHasher:
    """Hashes objects in-process by streaming them from the storage adapter."""

    def __init__(self, storage) -> None:
        self._storage = storage

    def hash(self, path: str) -> ObjectDigest:
        return self._storage.hash_object(path)


class HttpContentHasher:
    """Client for a networked hasher: POST {path} -> {sha256, size}; 404 means missing."""

    def __init__(
        self,
        base_url: str,
        *,
        secret: str | None = None,
        timeout: httpx.Timeout | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = str(base_url).strip()
        self._secret = (secret or "").strip() or None
        self._timeout = timeout or httpx.Timeout(connect=3.0, read=120.0, write=10.0, pool=3.0)
        self._transport = transport

    def hash(self, path: str) -> ObjectDigest:
        headers = {"content-type": "application/json"}
        if self._secret:
            headers["x-hasher-secret"] = self._secret
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                r = client.post(self._url, json={"path": path}, headers=headers)
        except httpx.HTTPError as e:
            raise CollaboratorError("content hasher unreachable", storage_path=path) from e

        if r.status_code == 404:
            raise ObjectMissing(path)
        if r.status_code >= 400:
            raise CollaboratorError(f"content hasher failed: http_{r.status_code}", storage_path=path)

        try:
            data = r.json()
            sha256 = str(data["sha256"]).strip().lower()
            size = int(data["size"])
        except (ValueError, KeyError, TypeError) as e:
            raise CollaboratorError("content hasher returned a malformed response", storage_path=path) from e
        if not _SHA256_RE.match(sha256) or size < 0:
            raise CollaboratorError("content hasher returned a malformed response", storage_path=path)
        return ObjectDigest(sha256=sha256, size=size)
