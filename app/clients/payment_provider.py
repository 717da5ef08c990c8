# app/clients/payment_provider.py
"""
Stripe payment-intent client (manual capture pre-authorizations).

Talks to the Stripe REST API directly over httpx: form-encoded bodies,
bearer secret key. Consultation amounts are authorized at booking time,
captured after the consultation and released on cancellation.
"""

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from common import (
    MissingCredentialError,
    PaymentConfig,
    ProviderUnavailable,
    get_app_logger,
)
from common.logger.logger_middleware import track_call

logger = get_app_logger(__name__)

PROVIDER_NAME = "payment provider"


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    status: str
    amount: int  # cents
    currency: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PaymentIntent":
        return cls(
            id=payload["id"],
            status=payload.get("status", "unknown"),
            amount=int(payload.get("amount") or 0),
            currency=payload.get("currency", ""),
        )


class StripePaymentClient:
    def __init__(
        self,
        config: PaymentConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config
        self._client = httpx.AsyncClient(
            base_url=config.api_url,
            timeout=config.timeout_seconds,
            transport=transport,
        )

    def _auth_headers(self) -> dict[str, str]:
        secret_key = self._config.secret_key_value
        if not secret_key:
            raise MissingCredentialError("STRIPE_SECRET_KEY", PROVIDER_NAME)
        return {"Authorization": f"Bearer {secret_key}"}

    async def _post(self, path: str, data: Optional[dict[str, Any]] = None) -> PaymentIntent:
        headers = self._auth_headers()
        try:
            with track_call("payment"):
                response = await self._client.post(path, data=data or {}, headers=headers)
        except httpx.TimeoutException as exc:
            raise ProviderUnavailable(PROVIDER_NAME, "request timed out") from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(PROVIDER_NAME, str(exc) or "transport error") from exc
        return self._parse(response)

    @staticmethod
    def _parse(response: httpx.Response) -> PaymentIntent:
        if response.is_error:
            try:
                message = response.json().get("error", {}).get("message")
            except (ValueError, AttributeError):
                message = None
            raise ProviderUnavailable(PROVIDER_NAME, message or f"HTTP {response.status_code}")
        return PaymentIntent.from_payload(response.json())

    async def create_authorization(
        self,
        amount_cents: int,
        customer_id: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> PaymentIntent:
        """Reserve ``amount_cents`` on the customer's card without capturing it."""
        data: dict[str, Any] = {
            "amount": amount_cents,
            "currency": self._config.currency,
            "customer": customer_id,
            "capture_method": "manual",
            "metadata[type]": "consultation_payment",
        }
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = value

        intent = await self._post("/payment_intents", data)
        logger.info("Payment authorized", payment_intent_id=intent.id, amount=intent.amount)
        return intent

    async def capture(self, intent_id: str) -> PaymentIntent:
        intent = await self._post(f"/payment_intents/{intent_id}/capture")
        logger.info("Payment captured", payment_intent_id=intent_id, status=intent.status)
        return intent

    async def cancel(
        self, intent_id: str, reason: str = "requested_by_customer"
    ) -> PaymentIntent:
        intent = await self._post(
            f"/payment_intents/{intent_id}/cancel",
            {"cancellation_reason": reason},
        )
        logger.info("Payment authorization released", payment_intent_id=intent_id)
        return intent

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["StripePaymentClient", "PaymentIntent", "PROVIDER_NAME"]
