"""Payment orchestration facade.

Validates a logical payment request, routes it to the gateway client for the
chosen method, and normalizes the outcome. It adds no retries of its own and
writes nothing to the order store; the HTTP layer records `processing` once a
gateway accepts.
"""

from typing import Any, Mapping

from creohub.common.errors import ConfigurationError, ProviderError, ValidationError
from creohub.common.logging import logger, order_reference_ctx, provider_ctx
from creohub.common.metrics import payment_initiations_total
from creohub.currency.registry import CurrencyRegistry, registry as default_registry
from creohub.services.gateways.base import (
    GatewayClient,
    PaymentMethod,
    PaymentRequest,
    PaymentResult,
    Provider,
    VerificationResult,
)
from creohub.services.gateways.flutterwave import ALL_PAYMENT_OPTIONS
from creohub.services.gateways.mpesa import normalize_msisdn
from creohub.services.orchestrator.attempts import AttemptLedger


METHOD_ROUTES: dict[PaymentMethod, tuple[Provider, dict[str, str]]] = {
    PaymentMethod.MPESA: (Provider.MPESA, {}),
    PaymentMethod.PESAPAL: (Provider.PESAPAL, {}),
    PaymentMethod.FLUTTERWAVE: (Provider.FLUTTERWAVE, {"payment_options": ALL_PAYMENT_OPTIONS}),
    PaymentMethod.FLUTTERWAVE_CARD: (Provider.FLUTTERWAVE, {"payment_options": "card"}),
    PaymentMethod.FLUTTERWAVE_BANK: (Provider.FLUTTERWAVE, {"payment_options": "banktransfer"}),
    PaymentMethod.FLUTTERWAVE_MOBILE: (Provider.FLUTTERWAVE, {"payment_options": "mobilemoney"}),
    PaymentMethod.STRIPE: (Provider.STRIPE, {}),
    PaymentMethod.PAYPAL: (Provider.PAYPAL, {}),
}

# Mobile-money methods push a prompt to the payer's handset.
PHONE_REQUIRED = frozenset({PaymentMethod.MPESA, PaymentMethod.PESAPAL, PaymentMethod.FLUTTERWAVE_MOBILE})
EMAIL_REQUIRED = frozenset(
    {
        PaymentMethod.PESAPAL,
        PaymentMethod.FLUTTERWAVE,
        PaymentMethod.FLUTTERWAVE_CARD,
        PaymentMethod.FLUTTERWAVE_BANK,
        PaymentMethod.FLUTTERWAVE_MOBILE,
        PaymentMethod.STRIPE,
        PaymentMethod.PAYPAL,
    }
)
GENERIC_FAILURE = "Payment failed, please try again"


class PaymentOrchestrator:
    """Stateless router from `PaymentMethod` to the owning `GatewayClient`."""

    def __init__(
        self,
        clients: Mapping[Provider, GatewayClient],
        currencies: CurrencyRegistry = default_registry,
        attempts: AttemptLedger | None = None,
    ) -> None:
        self.clients = dict(clients)
        self.currencies = currencies
        self.attempts = attempts

    def client(self, provider: Provider) -> GatewayClient:
        client = self.clients.get(provider)
        if client is None:
            raise ConfigurationError(f"{provider.value} gateway is not enabled", provider=provider.value)
        return client

    def validate(self, method: PaymentMethod, request: PaymentRequest) -> None:
        """Reject bad input before any network call is made."""

        if request.amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if not self.currencies.is_supported(request.currency):
            raise ValidationError(f"Unsupported currency: {request.currency}")
        if not request.order_reference or not request.order_reference.strip():
            raise ValidationError("Order reference is required")
        if method in PHONE_REQUIRED and not request.payer_phone:
            raise ValidationError("Phone number is required for mobile money payments")
        if method == PaymentMethod.MPESA:
            try:
                normalize_msisdn(request.payer_phone)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
        if method in EMAIL_REQUIRED and (not request.payer_email or "@" not in request.payer_email):
            raise ValidationError("A valid email address is required for this payment method")
        if method == PaymentMethod.PESAPAL and not (request.given_name and request.family_name):
            raise ValidationError("First and last name are required for Pesapal payments")
        if method in METHOD_ROUTES and METHOD_ROUTES[method][0] == Provider.FLUTTERWAVE and not request.display_name:
            raise ValidationError("Payer name is required for Flutterwave payments")

    async def initiate(self, method: PaymentMethod | str, request: PaymentRequest, **options: Any) -> PaymentResult:
        """Validate, route and submit one payment; provider failures come back as `success=False`."""

        try:
            method = PaymentMethod(method)
        except ValueError as exc:
            raise ValidationError(f"Unsupported payment method: {method}") from exc
        self.validate(method, request)
        provider, route_options = METHOD_ROUTES[method]
        client = self.client(provider)

        order_token = order_reference_ctx.set(request.order_reference)
        provider_token = provider_ctx.set(provider.value)
        try:
            if self.attempts is not None:
                replay = self.attempts.claim(request.order_reference, method.value, provider.value)
                if replay is not None:
                    payment_initiations_total.labels(provider=provider.value, outcome="replayed").inc()
                    return replay

            try:
                result = await client.initiate(request, **{**route_options, **options})
            except ProviderError as exc:
                logger.warning(
                    "payment_provider_error method=%s status=%s error=%s raw=%s",
                    method.value,
                    exc.status_code,
                    exc,
                    exc.raw,
                )
                result = PaymentResult(
                    success=False,
                    provider=provider,
                    error_message=GENERIC_FAILURE,
                    raw_provider_response=exc.raw,
                )
            except Exception:
                if self.attempts is not None:
                    self.attempts.release(request.order_reference)
                payment_initiations_total.labels(provider=provider.value, outcome="error").inc()
                raise

            if not result.success and not result.error_message:
                result = result.model_copy(update={"error_message": GENERIC_FAILURE})
            if self.attempts is not None:
                self.attempts.record(request.order_reference, result)
            payment_initiations_total.labels(
                provider=provider.value,
                outcome="accepted" if result.success else "rejected",
            ).inc()
            logger.info(
                "payment_initiated method=%s success=%s provider_reference=%s",
                method.value,
                result.success,
                result.provider_reference,
            )
            return result
        finally:
            provider_ctx.reset(provider_token)
            order_reference_ctx.reset(order_token)

    async def verify(self, provider: Provider | str, reference: str) -> VerificationResult:
        """Ask the provider for the current status of an earlier payment."""

        return await self.client(Provider(provider)).verify(reference)
