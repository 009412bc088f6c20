"""
Django settings for the payments engine.

This is the single settings file for all environments. Configuration is driven
by environment variables using django-environ, following the 12-factor app
methodology.

Environment files:
    - .env.development: Local overrides (sandbox keys, debug logging)
    - .env.production: Production credentials

The engine itself has no HTTP surface or database tables. Django provides
settings, app loading, the cache framework (for DjangoCacheStorage) and
logging configuration.

For more information on this file, see:
https://docs.djangoproject.com/en/5.2/topics/settings/
"""

import os
from pathlib import Path

import environ

# =============================================================================
# Path Configuration
# =============================================================================
BASE_DIR = Path(__file__).resolve().parent.parent

# =============================================================================
# Environment Configuration
# =============================================================================
env = environ.Env(
    DEBUG=(bool, False),
    LOG_LEVEL=(str, "INFO"),
    PAYMENTS_PROCESSOR=(str, "fake"),
    PAYMENTS_LOGGING_ENABLED=(bool, False),
)

env_file = os.environ.get("ENV_FILE", BASE_DIR.parent / ".env.development")
if Path(env_file).exists():
    environ.Env.read_env(env_file)

# =============================================================================
# Core Settings
# =============================================================================
# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = env("SECRET_KEY", default="insecure-development-key")

DEBUG = env("DEBUG")

ALLOWED_HOSTS: list[str] = []

# =============================================================================
# Application Definition
# =============================================================================
INSTALLED_APPS = [
    "django.contrib.contenttypes",
    # Local apps
    "core",
    "payments",
]

USE_TZ = True
TIME_ZONE = "UTC"

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# =============================================================================
# Cache Configuration
# =============================================================================
# https://docs.djangoproject.com/en/5.2/topics/cache/
# DjangoCacheStorage persists cache entries and webhook idempotency records
# through this alias. Point CACHE_URL at redis or memcached in production.
CACHES = {
    "default": env.cache("CACHE_URL", default="locmemcache://"),
}

PAYMENTS_CACHE_ALIAS = env("PAYMENTS_CACHE_ALIAS", default="default")

# =============================================================================
# Payments Engine Configuration
# =============================================================================
# Processor kind tag: stripe, paddle, braintree, lemon_squeezy,
# totalpay_global or fake
PAYMENTS_PROCESSOR = env("PAYMENTS_PROCESSOR")

# Per-call timeout; a timed-out call counts as a transient network failure
PAYMENTS_REQUEST_TIMEOUT_SECONDS = env.float(
    "PAYMENTS_REQUEST_TIMEOUT_SECONDS", default=30.0
)

PAYMENTS_LOGGING_ENABLED = env("PAYMENTS_LOGGING_ENABLED")

# Freshness window for cached reads (default: 5 minutes)
PAYMENTS_CACHE_TTL_SECONDS = env.int("PAYMENTS_CACHE_TTL_SECONDS", default=300)

# Retry policy for transient failures
PAYMENTS_MAX_RETRIES = env.int("PAYMENTS_MAX_RETRIES", default=3)
PAYMENTS_RETRY_BASE_DELAY_SECONDS = env.float(
    "PAYMENTS_RETRY_BASE_DELAY_SECONDS", default=2.0
)
PAYMENTS_RETRY_MULTIPLIER = env.float("PAYMENTS_RETRY_MULTIPLIER", default=2.0)
PAYMENTS_RETRY_MAX_DELAY_SECONDS = env.float(
    "PAYMENTS_RETRY_MAX_DELAY_SECONDS", default=60.0
)

# Consecutive payment.failed webhooks before a subscription is flagged
PAYMENTS_PAYMENT_FAILURE_THRESHOLD = env.int(
    "PAYMENTS_PAYMENT_FAILURE_THRESHOLD", default=3
)

# Days a past-due subscription stays recoverable. A local policy default,
# not read from any processor's dunning settings.
PAYMENTS_PAST_DUE_GRACE_DAYS = env.int("PAYMENTS_PAST_DUE_GRACE_DAYS", default=7)

# =============================================================================
# Processor Credentials
# =============================================================================
# Stripe keys from https://dashboard.stripe.com/apikeys
# Use test keys (sk_test_...) for development, live keys (sk_live_...) for production
STRIPE_SECRET_KEY = env("STRIPE_SECRET_KEY", default="")
STRIPE_PUBLISHABLE_KEY = env("STRIPE_PUBLISHABLE_KEY", default="")
STRIPE_WEBHOOK_SECRET = env("STRIPE_WEBHOOK_SECRET", default="")

PADDLE_VENDOR_ID = env("PADDLE_VENDOR_ID", default="")
PADDLE_API_KEY = env("PADDLE_API_KEY", default="")
PADDLE_WEBHOOK_SECRET = env("PADDLE_WEBHOOK_SECRET", default="")
PADDLE_ENVIRONMENT = env("PADDLE_ENVIRONMENT", default="sandbox")

BRAINTREE_MERCHANT_ID = env("BRAINTREE_MERCHANT_ID", default="")
BRAINTREE_PUBLIC_KEY = env("BRAINTREE_PUBLIC_KEY", default="")
BRAINTREE_PRIVATE_KEY = env("BRAINTREE_PRIVATE_KEY", default="")
BRAINTREE_ENVIRONMENT = env("BRAINTREE_ENVIRONMENT", default="sandbox")

LEMON_SQUEEZY_API_KEY = env("LEMON_SQUEEZY_API_KEY", default="")
LEMON_SQUEEZY_STORE_ID = env("LEMON_SQUEEZY_STORE_ID", default="")
LEMON_SQUEEZY_WEBHOOK_SECRET = env("LEMON_SQUEEZY_WEBHOOK_SECRET", default="")

TOTALPAY_MERCHANT_ID = env("TOTALPAY_MERCHANT_ID", default="")
TOTALPAY_API_KEY = env("TOTALPAY_API_KEY", default="")
TOTALPAY_SECRET_KEY = env("TOTALPAY_SECRET_KEY", default="")
TOTALPAY_ENVIRONMENT = env("TOTALPAY_ENVIRONMENT", default="sandbox")

FAKE_PROCESSOR_SIMULATE_DELAYS = env.bool(
    "FAKE_PROCESSOR_SIMULATE_DELAYS", default=False
)
FAKE_PROCESSOR_FAILURE_RATE = env.float("FAKE_PROCESSOR_FAILURE_RATE", default=0.0)
FAKE_PROCESSOR_WEBHOOK_SECRET = env(
    "FAKE_PROCESSOR_WEBHOOK_SECRET", default="fake_webhook_secret"
)

# Read by ProcessorConfiguration.from_settings(), keyed by processor tag
PAYMENTS_PROCESSOR_CREDENTIALS = {
    "stripe": {
        "publishable_key": STRIPE_PUBLISHABLE_KEY,
        "secret_key": STRIPE_SECRET_KEY,
        "webhook_secret": STRIPE_WEBHOOK_SECRET,
    },
    "paddle": {
        "vendor_id": PADDLE_VENDOR_ID,
        "api_key": PADDLE_API_KEY,
        "webhook_secret": PADDLE_WEBHOOK_SECRET,
        "environment": PADDLE_ENVIRONMENT,
    },
    "braintree": {
        "merchant_id": BRAINTREE_MERCHANT_ID,
        "public_key": BRAINTREE_PUBLIC_KEY,
        "private_key": BRAINTREE_PRIVATE_KEY,
        "environment": BRAINTREE_ENVIRONMENT,
    },
    "lemon_squeezy": {
        "api_key": LEMON_SQUEEZY_API_KEY,
        "store_id": LEMON_SQUEEZY_STORE_ID,
        "webhook_secret": LEMON_SQUEEZY_WEBHOOK_SECRET,
    },
    "totalpay_global": {
        "merchant_id": TOTALPAY_MERCHANT_ID,
        "api_key": TOTALPAY_API_KEY,
        "secret_key": TOTALPAY_SECRET_KEY,
        "environment": TOTALPAY_ENVIRONMENT,
    },
    "fake": {
        "simulate_delays": FAKE_PROCESSOR_SIMULATE_DELAYS,
        "failure_rate": FAKE_PROCESSOR_FAILURE_RATE,
        "webhook_secret": FAKE_PROCESSOR_WEBHOOK_SECRET,
    },
}

# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL = env("LOG_LEVEL")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
            "style": "{",
        },
        "simple": {
            "format": "{levelname} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": LOG_LEVEL,
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "payments": {
            "handlers": ["console"],
            "level": "DEBUG" if PAYMENTS_LOGGING_ENABLED else "WARNING",
            "propagate": False,
        },
        "stripe": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
        "httpx": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}
