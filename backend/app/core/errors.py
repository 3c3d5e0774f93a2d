from __future__ import annotations

from typing import Any


class AppError(Exception):
    """Base for every error surfaced to API callers.

    Each subclass maps to exactly one stable `error_code` and HTTP status.
    `context` carries structured fields (asset id, expected version, ...) that
    are rendered next to the message.
    """

    error_code = "internal_error"
    status_code = 500
    default_message = "internal server error"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {
            "ok": False,
            "error_code": self.error_code,
            "error_message": self.message,
            "context": {k: str(v) if not isinstance(v, (int, bool)) else v for k, v in self.context.items()},
        }


class Unauthenticated(AppError):
    error_code = "unauthenticated"
    status_code = 401
    default_message = "not authenticated"


class Forbidden(AppError):
    error_code = "forbidden"
    status_code = 403
    default_message = "forbidden"


class NotFound(AppError):
    error_code = "not_found"
    status_code = 404
    default_message = "not found"


class BadRequest(AppError):
    error_code = "bad_request"
    status_code = 400
    default_message = "bad request"


class ContentIntegrityError(AppError):
    error_code = "integrity_error"
    status_code = 422
    default_message = "uploaded content failed verification"


class VersionConflict(AppError):
    error_code = "version_conflict"
    status_code = 409
    default_message = "asset was modified concurrently; reload and retry"


class CollaboratorError(AppError):
    """Identity provider, storage, hasher or database failure."""

    error_code = "internal_error"
    status_code = 502
    default_message = "upstream service failure"
