from __future__ import annotations

from typing import Any


class CheckoutError(Exception):
    """Base for every error the checkout services report to a caller."""

    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"detail": self.message, "error": type(self).__name__}
        if self.details:
            payload.update(self.details)
        return payload


class ValidationError(CheckoutError):
    """Malformed input: missing field, out-of-range quantity, past due date."""

    status_code = 400


class NotFoundError(CheckoutError):
    status_code = 404


class ConflictError(CheckoutError):
    """The request would break an accounting invariant."""

    status_code = 409


class PartialFailure(CheckoutError):
    """A multi-step operation did not complete all of its steps."""

    status_code = 409


class PlatformError(CheckoutError):
    """The database or object storage failed for reasons opaque to the caller."""

    status_code = 503


class AccessDenied(CheckoutError):
    status_code = 403


class NotAuthenticated(CheckoutError):
    status_code = 401
