"""
Subscription entity and its derived predicates.

Subscriptions are owned by the cache layer. The webhook engine changes
them only through merge_event_fields(), so structural fields a payload
does not mention are always carried over from the cached copy.

Derived predicates never read the wall clock. Callers pass ``now`` from
an injected Clock.

Usage:
    from payments.models import Subscription

    if subscription.is_on_trial(clock.now()):
        show_trial_banner(subscription.trial_end)

    updated = subscription.merge_event_fields({"status": "past_due"})
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from typing import TYPE_CHECKING

from payments.models.enums import ProcessorType, SubscriptionStatus
from payments.models.serialization import format_datetime, parse_datetime

if TYPE_CHECKING:
    from typing import Any

DEFAULT_GRACE_DAYS = 7

_DATETIME_FIELDS = frozenset(
    {
        "current_period_start",
        "current_period_end",
        "trial_start",
        "trial_end",
        "canceled_at",
        "source_timestamp",
    }
)

# Identity fields an event payload may never rewrite.
_IMMUTABLE_FIELDS = frozenset({"id", "customer_id", "processor"})


@dataclass(frozen=True)
class Subscription:
    """
    Processor-agnostic recurring subscription.

    Attributes:
        id: Canonical identifier
        customer_id: Owning customer
        status: Current SubscriptionStatus
        price_id: Price being billed
        product_id: Product the price belongs to
        current_period_start: Start of the current billing period
        current_period_end: End of the current billing period
        processor: Back-end that owns this subscription
        processor_subscription_id: Back-end's own identifier
        trial_start: Trial start, when a trial was granted
        trial_end: Trial end, when a trial was granted
        canceled_at: When cancellation was requested
        cancel_at_period_end: Whether the subscription ends with the period
        quantity: Number of seats/units
        metadata: Free-form string metadata
        source_timestamp: When the source observed this state; older
            writes are rejected by the cache
    """

    id: str
    customer_id: str
    status: SubscriptionStatus
    price_id: str
    product_id: str
    current_period_start: datetime
    current_period_end: datetime
    processor: ProcessorType
    processor_subscription_id: str
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    canceled_at: datetime | None = None
    cancel_at_period_end: bool = False
    quantity: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)
    source_timestamp: datetime | None = None

    # -------------------------------------------------------------------------
    # Derived predicates
    # -------------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED

    def is_on_trial(self, now: datetime) -> bool:
        """True iff trialing with a trial end strictly in the future."""
        if self.status != SubscriptionStatus.TRIALING:
            return False
        if self.trial_end is None:
            return False
        return now < self.trial_end

    def is_on_grace_period(self, now: datetime) -> bool:
        """True when cancellation is scheduled but the paid period has not ended."""
        if not self.cancel_at_period_end:
            return False
        if self.canceled_at is None:
            return False
        return now < self.current_period_end

    def days_until_due(
        self, now: datetime, grace_days: int = DEFAULT_GRACE_DAYS
    ) -> int | None:
        """
        Days left in the past-due grace window.

        Returns grace_days minus whole days elapsed since the period ended.
        Negative once the window has passed. None unless past_due.
        """
        if self.status != SubscriptionStatus.PAST_DUE:
            return None
        elapsed = now - self.current_period_end
        days_elapsed = int(elapsed.total_seconds() / 86400)
        return grace_days - days_elapsed

    # -------------------------------------------------------------------------
    # Updates
    # -------------------------------------------------------------------------

    def merge_event_fields(self, changes: dict[str, Any]) -> Subscription:
        """
        Return a copy with only the provided fields replaced.

        Unknown keys and identity fields are ignored. Values are coerced
        from their wire form (ISO strings, enum values).
        """
        known = {f.name for f in fields(self)}
        updates: dict[str, Any] = {}
        for name, value in changes.items():
            if name not in known or name in _IMMUTABLE_FIELDS:
                continue
            if name in _DATETIME_FIELDS:
                value = parse_datetime(value)
            elif name == "status" and value is not None:
                value = SubscriptionStatus(value)
            elif name == "metadata":
                value = {**self.metadata, **(value or {})}
            updates[name] = value
        return replace(self, **updates)

    # -------------------------------------------------------------------------
    # Codec
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "status": self.status.value,
            "price_id": self.price_id,
            "product_id": self.product_id,
            "current_period_start": format_datetime(self.current_period_start),
            "current_period_end": format_datetime(self.current_period_end),
            "trial_start": format_datetime(self.trial_start),
            "trial_end": format_datetime(self.trial_end),
            "canceled_at": format_datetime(self.canceled_at),
            "cancel_at_period_end": self.cancel_at_period_end,
            "quantity": self.quantity,
            "processor": self.processor.value,
            "processor_subscription_id": self.processor_subscription_id,
            "metadata": dict(self.metadata),
            "source_timestamp": format_datetime(self.source_timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subscription:
        return cls(
            id=data["id"],
            customer_id=data["customer_id"],
            status=SubscriptionStatus(data["status"]),
            price_id=data["price_id"],
            product_id=data["product_id"],
            current_period_start=parse_datetime(data["current_period_start"]),
            current_period_end=parse_datetime(data["current_period_end"]),
            trial_start=parse_datetime(data.get("trial_start")),
            trial_end=parse_datetime(data.get("trial_end")),
            canceled_at=parse_datetime(data.get("canceled_at")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
            quantity=int(data.get("quantity", 1)),
            processor=ProcessorType(data["processor"]),
            processor_subscription_id=data["processor_subscription_id"],
            metadata=dict(data.get("metadata") or {}),
            source_timestamp=parse_datetime(data.get("source_timestamp")),
        )
