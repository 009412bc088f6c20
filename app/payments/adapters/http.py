"""
Shared HTTP plumbing for REST processor adapters.

HttpProcessorAdapter owns an httpx.AsyncClient configured with the
back-end's base URL, authentication and timeout, and funnels every call
through _request() so logging, timing and error translation are uniform.

Error translation:
    httpx.TimeoutException        → NetworkFailure (timeout)
    httpx.TransportError          → NetworkFailure (connection_error)
    401 / 403                     → AuthenticationFailure
    429                           → NetworkFailure (rate_limited)
    5xx                           → NetworkFailure (server_error)
    404                           → CustomerNotFound / SubscriptionNotFound /
                                    PaymentMethodFailure / ProcessorDeclined
                                    depending on the resource requested
    400 / 422                     → ValidationFailure
    402                           → ProcessorDeclined
    anything else                 → ProcessorDeclined with the back-end code

Usage:
    class AcmeAdapter(HttpProcessorAdapter):
        def base_url(self) -> str:
            return "https://api.acme.test"

        def auth_headers(self) -> dict[str, str]:
            return {"Authorization": f"Bearer {self.credentials.api_key}"}

        async def get_customer(self, customer_id):
            data = await self._request(
                "GET", f"/customers/{customer_id}", resource="customer"
            )
            return self._map_customer(data)
"""

from __future__ import annotations

import json
import time
from abc import abstractmethod
from typing import TYPE_CHECKING

import httpx

from payments.adapters.base import ProcessorAdapter
from payments.exceptions import (
    AuthenticationFailure,
    CustomerNotFound,
    InvalidConfiguration,
    NetworkFailure,
    PaymentError,
    PaymentMethodFailure,
    ProcessorDeclined,
    SubscriptionNotFound,
    ValidationFailure,
)

if TYPE_CHECKING:
    from typing import Any, NoReturn

    from payments.config import ProcessorConfiguration


class HttpProcessorAdapter(ProcessorAdapter):
    """
    Base class for adapters that speak REST over httpx.

    Args:
        config: Processor configuration
        transport: Optional httpx transport (httpx.MockTransport in tests)
    """

    content_type = "application/json"

    def __init__(
        self,
        config: ProcessorConfiguration,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(config)
        self._client = httpx.AsyncClient(
            base_url=self.base_url(),
            headers={
                "Accept": self.content_type,
                "Content-Type": self.content_type,
                **self.auth_headers(),
            },
            auth=self.auth(),
            timeout=config.timeout,
            transport=transport,
        )

    # =========================================================================
    # Hooks
    # =========================================================================

    @abstractmethod
    def base_url(self) -> str: ...

    def auth_headers(self) -> dict[str, str]:
        return {}

    def auth(self) -> httpx.Auth | None:
        return None

    def sign_request(self, body: bytes) -> dict[str, str]:
        """Extra headers computed from the encoded request body."""
        return {}

    def error_details(self, payload: Any) -> tuple[str | None, str | None]:
        """Extract (message, processor_code) from an error body."""
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                return error.get("message") or error.get("detail"), error.get("code")
            if isinstance(error, str):
                return payload.get("message") or error, payload.get("code")
            return payload.get("message"), payload.get("code")
        return None, None

    # =========================================================================
    # Requests
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        resource: str | None = None,
        operation: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Send a request and return the decoded JSON body.

        Args:
            method: HTTP method
            path: Path relative to base_url()
            json_body: Request body, encoded as JSON
            params: Query parameters
            resource: Resource kind for 404 mapping (customer, subscription,
                payment_method, charge)
            operation: Operation name for logging
            idempotency_key: Sent as the Idempotency-Key header

        Raises:
            PaymentError: Translated back-end or transport failure
        """
        logger = self.get_logger()
        log_context = {
            "operation": operation or f"{method} {path}",
            "processor": str(self.processor_type),
            "method": method,
            "path": path,
            "idempotency_key": idempotency_key,
        }

        headers: dict[str, str] = {}
        content: bytes | None = None
        if json_body is not None:
            content = json.dumps(json_body, separators=(",", ":")).encode()
            headers.update(self.sign_request(content))
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        start_time = time.time()
        if self.config.logging_enabled:
            logger.debug("Starting processor request", extra=log_context)

        try:
            response = await self._client.request(
                method, path, content=content, params=params, headers=headers
            )
        except httpx.TimeoutException as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.warning(
                "Processor request timed out",
                extra={**log_context, "duration_ms": duration_ms},
            )
            raise NetworkFailure(
                f"{self.display_name} request timed out",
                error_code="timeout",
                url=str(e.request.url) if e.request else None,
            ) from e
        except httpx.TransportError as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.error(
                "Connection error to processor",
                extra={**log_context, "duration_ms": duration_ms},
                exc_info=True,
            )
            raise NetworkFailure(
                f"Could not connect to {self.display_name}",
                error_code="connection_error",
            ) from e

        duration_ms = (time.time() - start_time) * 1000
        if response.is_success:
            if self.config.logging_enabled:
                logger.debug(
                    "Processor request completed",
                    extra={
                        **log_context,
                        "status_code": response.status_code,
                        "duration_ms": duration_ms,
                    },
                )
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                logger.error(
                    "Processor returned a non-JSON response",
                    extra={
                        **log_context,
                        "status_code": response.status_code,
                        "content_type": response.headers.get("content-type"),
                    },
                )
                raise NetworkFailure(
                    f"{self.display_name} returned an unreadable response",
                    error_code="invalid_response",
                    status_code=response.status_code,
                    url=str(response.request.url),
                ) from e

        self._raise_for_status(response, resource, {**log_context, "duration_ms": duration_ms})

    def _raise_for_status(
        self,
        response: httpx.Response,
        resource: str | None,
        log_context: dict[str, Any],
    ) -> NoReturn:
        status = response.status_code
        try:
            payload = response.json()
        except ValueError:
            payload = None
        message, code = self.error_details(payload)
        message = message or response.reason_phrase or f"HTTP {status}"
        details = {"status_code": status, "processor_code": code}
        logger = self.get_logger()
        logger.warning(
            "Processor request failed",
            extra={**log_context, "status_code": status, "processor_code": code},
        )

        if status in (401, 403):
            raise AuthenticationFailure(message, details=details)
        if status == 429:
            raise NetworkFailure(
                message,
                error_code="rate_limited",
                status_code=status,
                url=str(response.request.url),
            )
        if status >= 500:
            raise NetworkFailure(
                message,
                error_code="server_error",
                status_code=status,
                url=str(response.request.url),
            )
        if status == 404:
            raise self._not_found(resource, message, details)
        if status in (400, 422):
            raise ValidationFailure(message, details=details)
        if status == 402:
            raise ProcessorDeclined(
                message, processor_code=code or "payment_required", details=details
            )
        raise ProcessorDeclined(message, processor_code=code, details=details)

    def _not_found(
        self, resource: str | None, message: str, details: dict[str, Any]
    ) -> PaymentError:
        text = message.lower()
        if resource == "customer" or (resource is None and "customer" in text):
            return CustomerNotFound(message, details=details)
        if resource == "subscription" or (resource is None and "subscription" in text):
            return SubscriptionNotFound(message, details=details)
        if resource == "payment_method":
            return PaymentMethodFailure(message, details=details)
        if resource == "charge":
            return ProcessorDeclined(
                message, processor_code="charge_not_found", details=details
            )
        return ProcessorDeclined(message, processor_code="not_found", details=details)

    async def _ping(self, path: str) -> None:
        """
        validate_configuration() helper.

        Transient failures propagate as NetworkFailure; any other rejection
        becomes InvalidConfiguration.
        """
        try:
            await self._request("GET", path, operation="validate_configuration")
        except NetworkFailure:
            raise
        except PaymentError as e:
            raise InvalidConfiguration(
                f"{self.display_name} rejected the configuration: {e.message}",
                details={"cause": e.error_code},
            ) from e

    async def aclose(self) -> None:
        await self._client.aclose()
