"""Error taxonomy for the sync layer.

Every failure that crosses a component boundary is one of these types.
Repositories translate transport / PostgREST failures with
``classify_http_error`` so that the cache and mutation layers only ever see
the typed variants below.
"""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger("praysync.errors")


class PraySyncError(Exception):
    """Base class for all sync-layer errors.

    Attributes:
        code:    Machine-readable code (HTTP status, PostgREST / Postgres code).
        details: Optional extra payload returned by the backend.
    """

    retryable: bool = False

    def __init__(self, message: str, *, code: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class TransientNetworkError(PraySyncError):
    """Network or server hiccup — safe to retry."""

    retryable = True


class AuthorizationError(PraySyncError):
    """Session is missing/expired or the row is not visible to the user."""


class ValidationError(PraySyncError):
    """Payload failed validation, either locally or on the server.  Never retried."""


class SerializationError(PraySyncError):
    """Persisted cache snapshot could not be written or read.

    Confined to the persistence boundary: callers catch it and fall back to an
    empty cache.
    """


class MutationStateError(RuntimeError):
    """Illegal transition on a terminal optimistic mutation."""


class UnknownMutationError(KeyError):
    """Raised when ``mutate()`` is called with an unregistered mutation type."""


# Postgres / PostgREST codes the backend surfaces in error bodies
_AUTH_CODES = {"42501", "PGRST301", "PGRST302"}
_VALIDATION_CODES = {"23505", "23503", "23502", "22P02", "PGRST116", "PGRST204"}

_FRIENDLY_MESSAGES = {
    "23505": "This item already exists",
    "23503": "Cannot delete item - it is referenced by other data",
    "PGRST116": "Item not found",
    "42501": "Permission denied - please check your access rights",
    "23502": "Required field is missing",
}


def classify_http_error(status: int, body: Any = None) -> PraySyncError:
    """Map an HTTP response status (and optional JSON body) onto the taxonomy.

    Args:
        status: HTTP status code of the failed response.
        body:   Decoded JSON body, if any.  PostgREST bodies carry
                ``code`` / ``message`` / ``details`` / ``hint``.

    Returns:
        A typed PraySyncError instance (not raised).
    """
    code: str | None = None
    message = f"HTTP {status}"
    details = None
    if isinstance(body, dict):
        code = str(body["code"]) if body.get("code") is not None else None
        message = str(body.get("message") or body.get("msg") or body.get("error_description") or message)
        details = body.get("details") or body.get("hint")

    if status in (401, 403) or code in _AUTH_CODES:
        return AuthorizationError(message, code=code or str(status), details=details)
    if status in (408, 425, 429) or status >= 500:
        return TransientNetworkError(message, code=code or str(status), details=details)
    if code in _VALIDATION_CODES or 400 <= status < 500:
        return ValidationError(message, code=code or str(status), details=details)
    return TransientNetworkError(message, code=code or str(status), details=details)


def user_friendly_message(error: BaseException | None) -> str:
    """Return a message suitable for showing next to rolled-back state."""
    if error is None:
        return "An unknown error occurred"
    if isinstance(error, PraySyncError):
        if error.code in _FRIENDLY_MESSAGES:
            return _FRIENDLY_MESSAGES[error.code]
        if isinstance(error, TransientNetworkError):
            return "Network request failed - please check your connection"
        return error.message
    return str(error) or "An error occurred"
