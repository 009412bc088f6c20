"""
Root pytest configuration for the payments engine.

This module configures pytest-django and provides project-wide fixtures
shared by every package's tests: a frozen clock, in-memory storage, the
fake processor and a retry controller that never sleeps. Package-specific
fixtures are defined in each package's tests/conftest.py.
"""

import os
from datetime import datetime, timezone

import django
import pytest

# Ensure Django settings are configured before any tests run
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")


def pytest_configure():
    """Configure Django settings before tests run."""
    django.setup()


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_payment_service.py, test_engine.py, test_http_adapters.py → integration
    - Everything else → unit

    Explicit markers on test functions/classes take precedence.
    """
    integration_patterns = [
        "test_payment_service.py",
        "test_engine.py",
        "test_handlers.py",
        "test_http_adapters.py",
        "test_registry.py",
    ]

    for item in items:
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration"}:
            continue

        filename = str(item.fspath).split("/")[-1]
        if any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Time and Storage Fixtures
# =============================================================================


@pytest.fixture
def start_time():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(start_time):
    """A clock that only moves when a test advances it."""
    from payments.clock import FrozenClock

    return FrozenClock(start_time)


@pytest.fixture
def storage():
    from payments.storage import InMemoryStorage

    return InMemoryStorage()


@pytest.fixture
def cache(storage, clock):
    from payments.cache import CacheLayer

    return CacheLayer(storage, clock, ttl_seconds=300)


# =============================================================================
# Processor Fixtures
# =============================================================================


@pytest.fixture
def fake_config():
    from payments.config import FakeCredentials, ProcessorConfiguration
    from payments.models import ProcessorType

    return ProcessorConfiguration(
        processor_kind=ProcessorType.FAKE,
        credentials=FakeCredentials(),
    )


@pytest.fixture
def fake_adapter(fake_config, clock):
    from payments.adapters import FakeAdapter

    return FakeAdapter(fake_config, clock=clock)


@pytest.fixture
def sleeps():
    """Delays requested by the retry controller, in order."""
    return []


@pytest.fixture
def retry(sleeps):
    """RetryController with the default schedule that records instead of sleeping."""
    from payments.retry import RetryController, RetryPolicy

    async def record_sleep(delay):
        sleeps.append(delay)

    return RetryController(
        RetryPolicy(max_attempts=3, base_delay=2.0, multiplier=2.0, timeout=5.0),
        sleep=record_sleep,
    )
