"""
Base exception classes shared by every domain package.

Domain packages subclass these to build a closed error vocabulary. The
payments taxonomy mixes them in so that, for example, a payments
ValidationFailure is also a core ValidationError and generic callers can
branch on either.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Caller input failed validation
    ├── NotFoundError - A referenced resource does not exist
    ├── ConflictError - Operation conflicts with current state
    └── ExternalServiceError - A third-party service call failed

Usage:
    from core.exceptions import BaseApplicationError, ValidationError

    raise ValidationError("Amount must be positive", details={"amount": -1})

    try:
        ...
    except BaseApplicationError as e:
        logger.warning(e.message, extra={"error_code": e.error_code, **e.details})
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Root of all application errors.

    Attributes:
        message: Human-readable description
        error_code: Stable machine-readable code; subclasses set a default
        details: Structured context (ids, offending field, processor)
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = dict(details or {})
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serializable form: error, error_code and details when present."""
        payload: dict[str, Any] = {"error": self.message, "error_code": self.error_code}
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(message={self.message!r}, "
            f"error_code={self.error_code!r}, details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    Operation conflicts with the current state of a resource.

    Example:
        raise ConflictError(
            "Subscription is not scheduled for cancellation",
            details={"subscription_id": subscription_id},
        )
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """A call to a third-party service failed. Keep raw service payloads out of message."""

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
