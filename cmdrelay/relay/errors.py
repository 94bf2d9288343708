from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """Base class for relay failures; carries the API error code and HTTP status."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class AuthError(RelayError):
    """Missing, invalid or replaced token / service credential."""

    code = "unauthorized"
    status_code = 401


class OwnershipError(RelayError):
    """The resource exists but belongs to another owner."""

    code = "forbidden"
    status_code = 403


class NotFoundError(RelayError):
    code = "not_found"
    status_code = 404


class ValidationError(RelayError):
    code = "invalid_argument"
    status_code = 400


class ConflictError(ValidationError):
    """A command id was reused with a different payload."""

    code = "conflict"
    status_code = 409
