"""
Enums for the canonical payment model.

These are Django TextChoices so the values are plain strings on the wire
and compare equal to the processor tags stored in settings.

Subscription status flow:
    incomplete → active (first payment confirmed)
    trialing → active (trial converts)
    active → past_due (renewal payment failed)
    past_due → active (retry payment succeeded)
    active/trialing/past_due → canceled
    active → paused → active (processors that support pausing)
"""

from django.db import models


class ProcessorType(models.TextChoices):
    """Payment back-ends the engine can talk to. A closed set."""

    STRIPE = "stripe", "Stripe"
    PADDLE = "paddle", "Paddle"
    BRAINTREE = "braintree", "Braintree"
    LEMON_SQUEEZY = "lemon_squeezy", "Lemon Squeezy"
    TOTALPAY_GLOBAL = "totalpay_global", "Totalpay Global"
    FAKE = "fake", "Fake"


class SubscriptionStatus(models.TextChoices):
    ACTIVE = "active", "Active"
    TRIALING = "trialing", "Trialing"
    PAST_DUE = "past_due", "Past Due"
    CANCELED = "canceled", "Canceled"
    INCOMPLETE = "incomplete", "Incomplete"
    PAUSED = "paused", "Paused"


class ChargeStatus(models.TextChoices):
    SUCCEEDED = "succeeded", "Succeeded"
    FAILED = "failed", "Failed"
    PENDING = "pending", "Pending"
    REFUNDED = "refunded", "Refunded"


class PaymentMethodType(models.TextChoices):
    CARD = "card", "Card"
    BANK_ACCOUNT = "bank_account", "Bank Account"
    PAYPAL = "paypal", "PayPal"
    APPLE_PAY = "apple_pay", "Apple Pay"
    GOOGLE_PAY = "google_pay", "Google Pay"


class BillingInterval(models.TextChoices):
    DAY = "day", "Day"
    WEEK = "week", "Week"
    MONTH = "month", "Month"
    YEAR = "year", "Year"
    ONE_TIME = "one_time", "One Time"


class WebhookEventType(models.TextChoices):
    """
    Canonical webhook event types.

    Every processor's native event type string is classified into exactly
    one of these. UNRECOGNIZED events are logged and dropped.
    """

    SUBSCRIPTION_CREATED = "subscription.created", "Subscription Created"
    SUBSCRIPTION_UPDATED = "subscription.updated", "Subscription Updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled", "Subscription Canceled"
    SUBSCRIPTION_RENEWED = "subscription.renewed", "Subscription Renewed"
    PAYMENT_SUCCEEDED = "payment.succeeded", "Payment Succeeded"
    PAYMENT_FAILED = "payment.failed", "Payment Failed"
    PAYMENT_METHOD_UPDATED = "payment_method.updated", "Payment Method Updated"
    UNRECOGNIZED = "unrecognized", "Unrecognized"
