"""
Processor configuration.

ProcessorConfiguration is the discriminated value the adapter registry
selects an adapter from: a processor kind tag plus the credential bundle
for that kind. It is validated locally (shape checks) before an adapter is
built, and remotely by the adapter's validate_configuration() before the
facade is usable.

Usage:
    from payments.config import ProcessorConfiguration, StripeCredentials

    config = ProcessorConfiguration(
        processor_kind=ProcessorType.STRIPE,
        credentials=StripeCredentials(
            publishable_key="pk_test_...",
            secret_key="sk_test_...",
        ),
    )
    config.validate()

    # Or from Django settings (PAYMENTS_PROCESSOR, STRIPE_SECRET_KEY, ...)
    config = ProcessorConfiguration.from_settings()
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Union

from django.conf import settings

from payments.exceptions import InvalidConfiguration
from payments.models import ProcessorType

if TYPE_CHECKING:
    from typing import Any

SANDBOX = "sandbox"
PRODUCTION = "production"
ENVIRONMENTS = (SANDBOX, PRODUCTION)

DEFAULT_TIMEOUT_SECONDS = 30.0


def _require(credentials: Any, *names: str) -> None:
    for name in names:
        if not getattr(credentials, name):
            raise InvalidConfiguration(
                f"{name} is required for {credentials.processor_kind.label}",
                details={"field": name},
            )


def _require_environment(credentials: Any) -> None:
    if credentials.environment not in ENVIRONMENTS:
        raise InvalidConfiguration(
            f"{credentials.processor_kind.label} environment is required",
            details={"field": "environment", "allowed": list(ENVIRONMENTS)},
        )


# =============================================================================
# Credential bundles
# =============================================================================


@dataclass(frozen=True)
class StripeCredentials:
    """
    Stripe API keys.

    Attributes:
        publishable_key: Client key, must start with pk_
        secret_key: Server key, must start with sk_
        webhook_secret: Endpoint signing secret (whsec_...)
    """

    publishable_key: str = ""
    secret_key: str = field(default="", repr=False)
    webhook_secret: str = field(default="", repr=False)

    processor_kind = ProcessorType.STRIPE

    def validate(self) -> None:
        _require(self, "publishable_key", "secret_key")
        if not self.publishable_key.startswith("pk_"):
            raise InvalidConfiguration(
                "Stripe publishable key must start with pk_",
                details={"field": "publishable_key"},
            )
        if not self.secret_key.startswith("sk_"):
            raise InvalidConfiguration(
                "Stripe secret key must start with sk_",
                details={"field": "secret_key"},
            )


@dataclass(frozen=True)
class PaddleCredentials:
    """
    Paddle Billing credentials.

    Attributes:
        vendor_id: Seller id
        api_key: Bearer API key
        webhook_secret: Notification destination secret for h1 signatures
        environment: sandbox or production
    """

    vendor_id: str = ""
    api_key: str = field(default="", repr=False)
    webhook_secret: str = field(default="", repr=False)
    environment: str = SANDBOX

    processor_kind = ProcessorType.PADDLE

    def validate(self) -> None:
        _require(self, "vendor_id", "api_key", "webhook_secret")
        _require_environment(self)


@dataclass(frozen=True)
class BraintreeCredentials:
    merchant_id: str = ""
    public_key: str = ""
    private_key: str = field(default="", repr=False)
    environment: str = SANDBOX

    processor_kind = ProcessorType.BRAINTREE

    def validate(self) -> None:
        _require(self, "merchant_id", "public_key", "private_key")
        _require_environment(self)


@dataclass(frozen=True)
class LemonSqueezyCredentials:
    api_key: str = field(default="", repr=False)
    store_id: str = ""
    webhook_secret: str = field(default="", repr=False)

    processor_kind = ProcessorType.LEMON_SQUEEZY

    def validate(self) -> None:
        _require(self, "api_key", "store_id")


@dataclass(frozen=True)
class TotalpayCredentials:
    merchant_id: str = ""
    api_key: str = field(default="", repr=False)
    secret_key: str = field(default="", repr=False)
    environment: str = SANDBOX

    processor_kind = ProcessorType.TOTALPAY_GLOBAL

    def validate(self) -> None:
        _require(self, "merchant_id", "api_key", "secret_key")
        _require_environment(self)


@dataclass(frozen=True)
class FakeCredentials:
    """
    Settings for the in-memory fake back-end.

    Attributes:
        simulate_delays: Sleep delay_seconds before each operation
        delay_seconds: Simulated latency
        failure_rate: Probability in [0, 1] of a simulated NetworkFailure
        webhook_secret: Key used to sign fake_sig_ webhook signatures
        api_key: Checked by validate_configuration; anything not starting
            with fake_ is rejected
    """

    simulate_delays: bool = False
    delay_seconds: float = 0.5
    failure_rate: float = 0.0
    webhook_secret: str = field(default="fake_webhook_secret", repr=False)
    api_key: str = field(default="fake_api_key", repr=False)

    processor_kind = ProcessorType.FAKE

    def validate(self) -> None:
        if not 0.0 <= self.failure_rate <= 1.0:
            raise InvalidConfiguration(
                "Fake processor failure rate must be between 0 and 1",
                details={"field": "failure_rate", "value": self.failure_rate},
            )


Credentials = Union[
    StripeCredentials,
    PaddleCredentials,
    BraintreeCredentials,
    LemonSqueezyCredentials,
    TotalpayCredentials,
    FakeCredentials,
]

CREDENTIAL_TYPES: dict[ProcessorType, type] = {
    ProcessorType.STRIPE: StripeCredentials,
    ProcessorType.PADDLE: PaddleCredentials,
    ProcessorType.BRAINTREE: BraintreeCredentials,
    ProcessorType.LEMON_SQUEEZY: LemonSqueezyCredentials,
    ProcessorType.TOTALPAY_GLOBAL: TotalpayCredentials,
    ProcessorType.FAKE: FakeCredentials,
}


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class ProcessorConfiguration:
    """
    Discriminated processor configuration.

    Hashable, so the adapter registry can cache one adapter per value.

    Attributes:
        processor_kind: Which back-end to talk to
        credentials: Credential bundle matching processor_kind
        timeout: Per-call timeout in seconds
        logging_enabled: Emit debug logs for adapter calls
    """

    processor_kind: ProcessorType
    credentials: Credentials
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    logging_enabled: bool = False

    def validate(self) -> None:
        """
        Local shape checks. No network access.

        Raises:
            InvalidConfiguration: When the credentials cannot be used
        """
        expected = CREDENTIAL_TYPES.get(self.processor_kind)
        if expected is None or not isinstance(self.credentials, expected):
            raise InvalidConfiguration(
                f"Credentials do not match processor {self.processor_kind}",
                details={
                    "processor": str(self.processor_kind),
                    "credentials": type(self.credentials).__name__,
                },
            )
        if self.timeout <= 0:
            raise InvalidConfiguration(
                "Timeout must be positive",
                details={"field": "timeout", "value": self.timeout},
            )
        self.credentials.validate()

    @classmethod
    def from_settings(cls, processor: str | None = None) -> ProcessorConfiguration:
        """
        Build a configuration from Django settings.

        Args:
            processor: Processor kind tag, defaults to PAYMENTS_PROCESSOR
        """
        kind = ProcessorType(processor or settings.PAYMENTS_PROCESSOR)
        raw: dict[str, Any] = settings.PAYMENTS_PROCESSOR_CREDENTIALS.get(kind.value, {})
        credential_type = CREDENTIAL_TYPES[kind]
        allowed = {f.name for f in fields(credential_type)}
        credentials = credential_type(
            **{key: value for key, value in raw.items() if key in allowed}
        )
        return cls(
            processor_kind=kind,
            credentials=credentials,
            timeout=float(settings.PAYMENTS_REQUEST_TIMEOUT_SECONDS),
            logging_enabled=bool(settings.PAYMENTS_LOGGING_ENABLED),
        )
