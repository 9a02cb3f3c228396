"""PaymentGateway - opaque payment provider client."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Protocol

import httpx

from enrollcore.exceptions import ExternalServiceError
from enrollcore.logging import sanitize_for_log

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """What the ledger needs from a payment provider.

    Implementations raise ExternalServiceError on any failure.
    """

    name: str

    def create_order(self, amount: Decimal, currency: str, reference: str) -> str:
        """Open an order for a charge and return the provider's order ID."""
        ...

    def refund(self, payment_reference: str, amount: Decimal, reason: str | None) -> str:
        """Refund part or all of a captured payment and return the refund ID."""
        ...


class HttpPaymentGateway:
    """Payment gateway reached over a JSON HTTP API.

    Endpoints:
        POST {base_url}/orders                     -> {"id": "..."}
        POST {base_url}/payments/{reference}/refund -> {"id": "..."}
    """

    name = "http"

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the gateway client.

        Args:
            base_url: API root, without trailing slash.
            token: Secret key sent as a bearer token.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests pass a MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None

    @property
    def client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def create_order(self, amount: Decimal, currency: str, reference: str) -> str:
        data = self._post(
            "/orders", {"amount": str(amount), "currency": currency, "receipt": reference}
        )
        return self._id(data, "order")

    def refund(self, payment_reference: str, amount: Decimal, reason: str | None) -> str:
        payload: dict[str, Any] = {"amount": str(amount)}
        if reason:
            payload["notes"] = {"reason": reason}
        data = self._post(f"/payments/{payment_reference}/refund", payload)
        return self._id(data, "refund")

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """POST JSON and return the decoded body.

        Raises:
            ExternalServiceError: On transport errors, non-2xx responses or bad JSON.
        """
        url = f"{self.base_url}{path}"
        try:
            response = self.client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.warning("Gateway request to %s failed: %s", path, sanitize_for_log(str(e)))
            raise ExternalServiceError("Payment gateway unavailable") from e

        if response.status_code >= 400:
            logger.warning(
                "Gateway %s returned %d: %s",
                path,
                response.status_code,
                sanitize_for_log(response.text[:500]),
            )
            raise ExternalServiceError(f"Payment gateway rejected request ({response.status_code})")

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError("Payment gateway returned invalid JSON") from e
        if not isinstance(data, dict):
            raise ExternalServiceError("Payment gateway returned an unexpected body")
        return data

    @staticmethod
    def _id(data: dict[str, Any], what: str) -> str:
        value = data.get("id")
        if not value:
            raise ExternalServiceError(f"Payment gateway response missing {what} id")
        return str(value)
