"""Stripe adapter built on the official SDK.

The SDK is synchronous, so each call runs in a worker thread under the same
timeout bound as the httpx-based gateways.
"""

import asyncio
from typing import Any, Callable

import stripe
from pydantic import BaseModel

from creohub.common.config import CommonSettings, settings
from creohub.common.errors import (
    AuthenticationError,
    ConfigurationError,
    GatewayTimeoutError,
    ProviderError,
    SignatureVerificationError,
)
from creohub.common.logging import logger
from creohub.common.metrics import gateway_request_seconds
from creohub.common.state_machine import OrderPaymentStatus
from creohub.currency.registry import CurrencyRegistry, registry as default_registry
from creohub.services.gateways.base import (
    GatewayClient,
    PaymentRequest,
    PaymentResult,
    Provider,
    VerificationResult,
)


INTENT_STATUS_MAP = {
    "succeeded": OrderPaymentStatus.COMPLETED,
    "canceled": OrderPaymentStatus.FAILED,
}


class StripeConfig(BaseModel):
    secret_key: str
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300

    @classmethod
    def from_settings(cls, s: CommonSettings = settings) -> "StripeConfig":
        return cls(
            secret_key=s.stripe_secret_key,
            webhook_secret=s.stripe_webhook_secret,
            webhook_tolerance_seconds=s.stripe_webhook_tolerance_seconds,
        )


def map_intent_status(status: str | None) -> OrderPaymentStatus:
    return INTENT_STATUS_MAP.get(status or "", OrderPaymentStatus.PENDING)


def to_plain(obj: Any) -> Any:
    """Convert SDK objects, nested ones included, into plain dicts and lists.

    `StripeObject` is not a `dict` in current SDK releases.
    """

    if isinstance(obj, dict):
        return {key: to_plain(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_plain(item) for item in obj]
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_plain(to_dict())
    return obj


class StripeClient(GatewayClient):
    """Payment intents, customers and subscriptions through the Stripe SDK."""

    provider = Provider.STRIPE

    def __init__(
        self,
        config: StripeConfig,
        *,
        timeout: float | None = None,
        currencies: CurrencyRegistry = default_registry,
    ) -> None:
        # No httpx client is used; the SDK manages its own connections.
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self._owns_http = False
        self.http = None
        self.config = config
        self.currencies = currencies

    async def aclose(self) -> None:
        return None

    async def authenticate(self) -> str:
        if not self.config.secret_key:
            raise ConfigurationError(
                "Stripe not configured. Please set STRIPE_SECRET_KEY environment variable.",
                provider=self.provider.value,
            )
        return self.config.secret_key

    async def _call(self, operation: str, method: Callable[..., Any], **params: Any) -> Any:
        api_key = await self.authenticate()
        try:
            with gateway_request_seconds.labels(provider=self.provider.value, operation=operation).time():
                result = await asyncio.wait_for(
                    asyncio.to_thread(method, api_key=api_key, **params),
                    timeout=self.timeout,
                )
        except asyncio.TimeoutError as exc:
            raise GatewayTimeoutError(
                f"stripe {operation} timed out after {self.timeout}s",
                provider=self.provider.value,
            ) from exc
        except stripe.AuthenticationError as exc:
            raise AuthenticationError(f"stripe rejected the API key: {exc}", provider=self.provider.value) from exc
        except stripe.StripeError as exc:
            logger.warning(
                "gateway_error_response provider=stripe operation=%s status=%s body=%s",
                operation,
                exc.http_status,
                exc.json_body,
            )
            raise ProviderError(
                exc.user_message or str(exc),
                provider=self.provider.value,
                raw=exc.json_body,
                status_code=exc.http_status,
            ) from exc
        return to_plain(result)

    async def submit(self, request: PaymentRequest, credential: str | None, **options: Any) -> PaymentResult:
        metadata = {"order_reference": request.order_reference, **request.metadata}
        intent = await self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            amount=self.currencies.to_minor_units(request.amount, request.currency),
            currency=request.currency.lower(),
            automatic_payment_methods={"enabled": True},
            receipt_email=request.payer_email,
            description=request.description,
            metadata=metadata,
        )
        client_secret = intent.get("client_secret")
        if not client_secret:
            return self.rejected(intent)
        return PaymentResult(
            success=True,
            provider=self.provider,
            provider_reference=intent["id"],
            client_secret=client_secret,
            raw_provider_response=intent,
        )

    async def verify(self, reference: str) -> VerificationResult:
        intent = await self._call("retrieve_payment_intent", stripe.PaymentIntent.retrieve, id=reference)
        metadata = intent.get("metadata") or {}
        return VerificationResult(
            provider=self.provider,
            provider_reference=reference,
            status=map_intent_status(intent.get("status")),
            provider_status=intent.get("status") or "",
            provider_transaction_id=intent.get("latest_charge") or reference,
            order_reference=metadata.get("order_reference"),
            currency=(intent.get("currency") or "").upper() or None,
            raw_provider_response=intent,
        )

    async def create_customer(self, email: str, name: str | None = None) -> Any:
        return await self._call("create_customer", stripe.Customer.create, email=email, name=name)

    async def create_subscription(self, customer_id: str, price_id: str) -> Any:
        return await self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": price_id}],
            payment_behavior="default_incomplete",
            expand=["latest_invoice.payment_intent"],
        )

    def construct_event(self, payload: bytes, signature: str | None) -> Any:
        """Verify the `Stripe-Signature` header and parse the event."""

        if not self.config.webhook_secret:
            raise ConfigurationError("Stripe webhook secret not configured", provider=self.provider.value)
        if not signature:
            raise SignatureVerificationError("missing Stripe-Signature header", provider=self.provider.value)
        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self.config.webhook_secret,
                tolerance=self.config.webhook_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationError(str(exc), provider=self.provider.value) from exc
        except ValueError as exc:
            raise SignatureVerificationError(f"invalid payload: {exc}", provider=self.provider.value) from exc
        return to_plain(event)


def subscription_client_secret(subscription: Any) -> str | None:
    invoice = to_plain(subscription).get("latest_invoice") or {}
    if isinstance(invoice, str):
        return None
    intent = invoice.get("payment_intent") or {}
    if isinstance(intent, str):
        return None
    return intent.get("client_secret")
