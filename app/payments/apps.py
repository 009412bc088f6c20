"""
Django app entry for the payments engine.

The engine has no database models; the app exists so settings-driven
configuration and handler registration happen once at startup.
"""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    name = "payments"
    verbose_name = "Payment Processors"

    def ready(self):
        # Populates WEBHOOK_HANDLERS before the first delivery arrives
        from payments.webhooks import handlers  # noqa: F401
