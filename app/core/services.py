"""
Result type for operations with expected failure modes.

Webhook handlers return a ServiceResult instead of raising: a payload that
lacks the id a handler needs, or carries a value that cannot be coerced,
is a normal outcome the caller branches on. Exceptions stay reserved for
the payments error taxonomy and genuine bugs.

Usage:
    from core.services import ServiceResult

    async def handle(engine, event) -> ServiceResult[Subscription]:
        subscription_id = engine.parser.subscription_id(event)
        if not subscription_id:
            return ServiceResult.failure(
                "Webhook payload has no subscription id",
                error_code="missing_subscription_id",
            )
        ...
        return ServiceResult.success(merged)

    result = await handle(engine, event)
    if not result:
        logger.warning(result.error, extra={"error_code": result.error_code})
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from typing import Any

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Outcome of one operation.

    Attributes:
        success: True when the operation did what it was asked
        data: Payload of a successful result
        error: Message of a failed result
        error_code: Stable code callers can branch on
        details: Extra context for a failed result (offending field, value)
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            details=dict(details or {}),
        )

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        """
        Failed result describing exc.

        An application error keeps its own code and details unless
        error_code is given; any other exception is coded by class name.
        """
        return cls.failure(
            getattr(exc, "message", None) or str(exc),
            error_code=error_code
            or getattr(exc, "error_code", None)
            or exc.__class__.__name__.upper(),
            details={**getattr(exc, "details", {}), **(details or {})},
        )

    def __bool__(self) -> bool:
        return self.success
