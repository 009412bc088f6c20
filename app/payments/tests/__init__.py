"""
Tests for the payments core.

This package contains test modules for:
- test_models.py: Canonical model predicates and JSON codec
- test_cache.py: Freshness, single-flight and invalidation
- test_retry.py: Backoff schedule, timeouts and idempotency keys
- test_storage.py: Storage contract for both implementations
- test_config.py / test_exceptions.py: Configuration and error taxonomy

Usage:
    pytest app/payments/tests/
    pytest app/payments/tests/test_cache.py
"""
