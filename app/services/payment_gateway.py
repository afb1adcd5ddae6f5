"""Payment confirmation gateway adapters.

The subscription core only needs one capability from a payment provider:
confirming that a charge went through. Adapters translate that into a
provider call and always answer with a ``ConfirmationResult``; they never touch
subscription state.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from app.core.config import settings
from app.models.subscription_enums import BillingPeriod

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentRequest:
    subscription_id: str
    provider: str
    provider_reference: Optional[str]
    amount: Decimal
    currency: str
    billing_period: BillingPeriod


@dataclass(frozen=True)
class ConfirmationResult:
    success: bool
    provider_transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class PaymentConfirmation:
    """A successful provider confirmation, ready to be applied to a subscription."""

    provider: str
    provider_transaction_id: str
    billing_period: Optional[BillingPeriod] = None
    provider_reference: Optional[str] = None


class PaymentGateway(ABC):
    """Narrow interface the subscription core calls to confirm a charge."""

    name: str = "gateway"

    @abstractmethod
    async def confirm(self, request: PaymentRequest) -> ConfirmationResult:
        raise NotImplementedError


class SimulatedPaymentGateway(PaymentGateway):
    """Stand-in provider used by the portal's simulated checkout.

    A confirmation succeeds whenever the client supplies a provider
    reference, and the reference doubles as transaction id so a double submit
    of the same checkout is deduplicated downstream.
    """

    name = "simulated"

    async def confirm(self, request: PaymentRequest) -> ConfirmationResult:
        if not request.provider_reference:
            return ConfirmationResult(success=False, failure_reason="Missing provider payment reference")
        logger.info(
            "Simulated payment confirmed for subscription %s (%s %s)",
            request.subscription_id,
            request.amount,
            request.currency,
        )
        return ConfirmationResult(success=True, provider_transaction_id=request.provider_reference)


class HttpPaymentGateway(PaymentGateway):
    """Confirms charges against a provider's HTTP verification endpoint."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def confirm(self, request: PaymentRequest) -> ConfirmationResult:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        payload = {
            "subscriptionId": request.subscription_id,
            "provider": request.provider,
            "reference": request.provider_reference,
            "amount": str(request.amount),
            "currency": request.currency,
            "billingPeriod": request.billing_period.value,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(f"{self._base_url}/confirmations", json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning("Payment gateway timed out for subscription %s", request.subscription_id)
            return ConfirmationResult(success=False, failure_reason="Payment gateway timed out")
        except httpx.RequestError as exc:
            logger.exception("Error calling payment gateway for subscription %s", request.subscription_id)
            return ConfirmationResult(success=False, failure_reason=f"Payment gateway unreachable: {exc}")

        if response.status_code != 200:
            logger.error(
                "Payment gateway returned %s: %s",
                response.status_code,
                response.text[:200],
            )
            return ConfirmationResult(
                success=False,
                failure_reason=f"Payment gateway error {response.status_code}",
            )

        try:
            body = response.json()
        except ValueError:
            return ConfirmationResult(success=False, failure_reason="Payment gateway returned invalid JSON")

        if body.get("success") and body.get("transactionId"):
            return ConfirmationResult(success=True, provider_transaction_id=str(body["transactionId"]))
        return ConfirmationResult(
            success=False,
            failure_reason=body.get("failureReason") or "Payment was declined",
        )


def get_payment_gateway() -> PaymentGateway:
    """FastAPI dependency returning the configured gateway."""
    if settings.PAYMENT_GATEWAY == "http":
        if not settings.PAYMENT_GATEWAY_URL:
            raise RuntimeError("PAYMENT_GATEWAY_URL is not configured for the http payment gateway.")
        return HttpPaymentGateway(
            base_url=settings.PAYMENT_GATEWAY_URL,
            api_key=settings.PAYMENT_GATEWAY_API_KEY,
            timeout=settings.PAYMENT_TIMEOUT_SECONDS,
        )
    return SimulatedPaymentGateway()
