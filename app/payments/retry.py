"""
Retry controller for processor calls.

Every adapter call made by the orchestration facade goes through
RetryController.call(). Outcomes are classified against the payments error
taxonomy:

- NetworkFailure (timeouts, connection errors, 429, 5xx): retried with
  exponential backoff until the attempt budget is spent, then surfaced as
  RetriesExhausted.
- Everything else: propagated on the first attempt.

Each attempt is bounded by a per-call timeout. Mutating calls receive one
idempotency key per logical request, reused on every attempt so the
back-end can collapse duplicates.

Configuration (via settings):
- PAYMENTS_MAX_RETRIES: Attempt budget (default: 3)
- PAYMENTS_RETRY_BASE_DELAY_SECONDS: First backoff delay (default: 2)
- PAYMENTS_RETRY_MULTIPLIER: Backoff multiplier (default: 2)
- PAYMENTS_REQUEST_TIMEOUT_SECONDS: Per-attempt timeout (default: 30)

Usage:
    from payments.retry import RetryController, RetryPolicy

    retry = RetryController(RetryPolicy(max_attempts=3, base_delay=2.0))

    customer = await retry.call("get_customer", lambda: adapter.get_customer(cid))

    charge = await retry.call(
        "create_charge",
        lambda idempotency_key: adapter.create_charge(
            customer_id=cid,
            amount=1000,
            currency="usd",
            idempotency_key=idempotency_key,
        ),
        idempotent_key_seed=cid,
    )
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from django.conf import settings

from payments.exceptions import NetworkFailure, PaymentError, RetriesExhausted

if TYPE_CHECKING:
    from typing import Any, Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt: int,
    base: float = 2.0,
    max_delay: float = 60.0,
    multiplier: float = 2.0,
    jitter: float = 0.0,
) -> float:
    """
    Exponential backoff delay after failed attempt number ``attempt`` (1-indexed).

    Usable without a RetryController, e.g. by callers polling a back-end.
    ``jitter`` adds a random fraction (0-jitter) of the capped delay.
    """
    delay = min(base * multiplier ** (attempt - 1), max_delay)
    if jitter:
        delay += delay * random.uniform(0, jitter)
    return delay


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for mutating processor calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    The hash component provides uniqueness across logical requests for the
    same entity (via nonce) while the structured format aids debugging and
    correlation.

    Example:
        key = IdempotencyKeyGenerator.generate(
            operation="create_charge",
            entity_id="cus_123",
            nonce=request_id,
        )
        # Result: "create_charge:cus_123:1:a1b2c3d4"
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
        nonce: str | None = None,
    ) -> str:
        """
        Generate an idempotency key.

        Args:
            operation: The processor operation (create_charge, create_subscription, ...)
            entity_id: The entity the operation acts on (customer id, etc.)
            attempt: Logical attempt number (default: 1)
            nonce: Distinguishes separate logical requests on the same entity

        Returns:
            Formatted idempotency key string
        """
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{nonce or ''}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry policy for transient failures.

    Attributes:
        max_attempts: Total attempts including the first (default: 3)
        base_delay: Delay after the first failed attempt, in seconds
        multiplier: Growth factor between consecutive delays
        max_delay: Upper bound for any single delay
        jitter: Extra random fraction (0-jitter) added to each delay
        timeout: Per-attempt timeout in seconds, None to disable
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0
    timeout: float | None = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-indexed)."""
        return backoff_delay(
            attempt,
            base=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            jitter=self.jitter,
        )

    @classmethod
    def from_settings(cls, timeout: float | None = None) -> RetryPolicy:
        return cls(
            max_attempts=settings.PAYMENTS_MAX_RETRIES,
            base_delay=settings.PAYMENTS_RETRY_BASE_DELAY_SECONDS,
            multiplier=settings.PAYMENTS_RETRY_MULTIPLIER,
            max_delay=settings.PAYMENTS_RETRY_MAX_DELAY_SECONDS,
            timeout=(
                timeout
                if timeout is not None
                else settings.PAYMENTS_REQUEST_TIMEOUT_SECONDS
            ),
        )


# =============================================================================
# Retry Controller
# =============================================================================


class RetryController:
    """
    Wraps adapter calls with the retry policy.

    The sleep coroutine is injectable so tests can observe the backoff
    schedule without waiting. Every delay actually slept is appended to
    ``delays``.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or asyncio.sleep
        self.delays: list[float] = []

    async def call(
        self,
        operation: str,
        fn: Callable[..., Awaitable[T]],
        *,
        idempotent_key_seed: str | None = None,
    ) -> T:
        """
        Run ``fn`` under the retry policy.

        Args:
            operation: Operation name, used for logging and idempotency keys
            fn: Zero-argument coroutine factory, or one accepting
                ``idempotency_key`` when idempotent_key_seed is given
            idempotent_key_seed: Entity id to derive the idempotency key from

        Returns:
            Whatever ``fn`` returns

        Raises:
            RetriesExhausted: NetworkFailure on every attempt
            PaymentError: Any non-transient failure, on the first attempt
        """
        idempotency_key: str | None = None
        if idempotent_key_seed is not None:
            idempotency_key = IdempotencyKeyGenerator.generate(
                operation, idempotent_key_seed, nonce=uuid.uuid4().hex
            )

        log_context = {
            "operation": operation,
            "idempotency_key": idempotency_key,
            "max_attempts": self.policy.max_attempts,
        }
        last_error: NetworkFailure | None = None

        for attempt in range(1, self.policy.max_attempts + 1):
            start_time = time.monotonic()
            try:
                return await self._attempt(fn, idempotency_key)
            except NetworkFailure as e:
                last_error = e
                duration_ms = (time.monotonic() - start_time) * 1000
                if attempt >= self.policy.max_attempts:
                    break
                delay = self.policy.delay_for(attempt)
                logger.warning(
                    "Transient processor failure, retrying",
                    extra={
                        **log_context,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "duration_ms": duration_ms,
                        "error_code": e.error_code,
                    },
                )
                self.delays.append(delay)
                await self._sleep(delay)
            except PaymentError as e:
                logger.debug(
                    "Non-retryable processor failure",
                    extra={**log_context, "attempt": attempt, "error_code": e.error_code},
                )
                raise

        logger.error(
            "Processor retries exhausted",
            extra={**log_context, "attempts": self.policy.max_attempts},
        )
        raise RetriesExhausted(
            f"{operation} failed after {self.policy.max_attempts} attempts",
            attempts=self.policy.max_attempts,
            last_error=last_error,
            details={"operation": operation},
        ) from last_error

    async def _attempt(
        self, fn: Callable[..., Awaitable[T]], idempotency_key: str | None
    ) -> T:
        awaitable = fn(idempotency_key) if idempotency_key is not None else fn()
        if self.policy.timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=self.policy.timeout)
        except asyncio.TimeoutError as e:
            raise NetworkFailure(
                f"Processor call timed out after {self.policy.timeout}s",
                error_code="timeout",
            ) from e
