"""PayPal Orders v2 adapter: cached OAuth token, create order, synchronous capture."""

from decimal import Decimal
from typing import Any

import httpx
from pydantic import BaseModel

from creohub.common.config import CommonSettings, settings
from creohub.common.errors import AuthenticationError, ConfigurationError
from creohub.common.state_machine import OrderPaymentStatus
from creohub.currency.registry import CurrencyRegistry, registry as default_registry
from creohub.services.gateways.base import (
    GatewayClient,
    PaymentRequest,
    PaymentResult,
    Provider,
    TokenCache,
    VerificationResult,
)


BASE_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "production": "https://api-m.paypal.com",
}
DEFAULT_TOKEN_TTL_SECONDS = 32400
APPROVAL_RELS = ("approve", "payer-action")

ORDER_STATUS_MAP = {
    "COMPLETED": OrderPaymentStatus.COMPLETED,
    "VOIDED": OrderPaymentStatus.FAILED,
    "DECLINED": OrderPaymentStatus.FAILED,
}


class PaypalConfig(BaseModel):
    client_id: str
    client_secret: str
    environment: str = "sandbox"
    public_base_url: str = "http://localhost:5000"

    @classmethod
    def from_settings(cls, s: CommonSettings = settings) -> "PaypalConfig":
        return cls(
            client_id=s.paypal_client_id,
            client_secret=s.paypal_client_secret,
            environment=s.paypal_environment,
            public_base_url=s.public_base_url,
        )

    @property
    def base_url(self) -> str:
        return BASE_URLS["production"] if self.environment in ("production", "live") else BASE_URLS["sandbox"]


def map_order_status(status: str | None) -> OrderPaymentStatus:
    return ORDER_STATUS_MAP.get((status or "").upper(), OrderPaymentStatus.PENDING)


class PaypalClient(GatewayClient):
    provider = Provider.PAYPAL

    def __init__(
        self,
        config: PaypalConfig,
        http: httpx.AsyncClient | None = None,
        *,
        timeout: float | None = None,
        currencies: CurrencyRegistry = default_registry,
        token_cache: TokenCache | None = None,
    ) -> None:
        super().__init__(http, timeout)
        self.config = config
        self.currencies = currencies
        self.tokens = token_cache or TokenCache(settings.token_safety_margin_seconds)

    async def authenticate(self) -> str:
        cached = self.tokens.get()
        if cached:
            return cached
        if not self.config.client_id or not self.config.client_secret:
            raise ConfigurationError("PayPal credentials not configured", provider=self.provider.value)
        body = await self._exchange_token(
            "POST",
            f"{self.config.base_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=httpx.BasicAuth(self.config.client_id, self.config.client_secret),
        )
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise AuthenticationError("PayPal returned no access token", provider=self.provider.value, raw=body)
        self.tokens.store(token, float(body.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS))
        self._record_token_refresh()
        return token

    def _amount_value(self, request: PaymentRequest) -> str:
        places = self.currencies.minor_units(request.currency)
        return str(request.amount.quantize(Decimal(1).scaleb(-places)))

    async def submit(self, request: PaymentRequest, credential: str | None, **options: Any) -> PaymentResult:
        base_url = self.config.public_base_url.rstrip("/")
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": request.order_reference,
                    "custom_id": request.order_reference,
                    "description": request.description[:127],
                    "amount": {"currency_code": request.currency.upper(), "value": self._amount_value(request)},
                }
            ],
            "application_context": {
                "return_url": f"{base_url}/payment/success?order_id={request.order_reference}",
                "cancel_url": f"{base_url}/payment/failed?order_id={request.order_reference}",
            },
        }
        body = await self._request_json(
            "POST",
            f"{self.config.base_url}/v2/checkout/orders",
            "create_order",
            json=payload,
            headers={"Authorization": f"Bearer {credential}"},
        )
        approve_url = next(
            (link.get("href") for link in body.get("links") or [] if link.get("rel") in APPROVAL_RELS),
            None,
        )
        if not body.get("id") or not approve_url:
            return self.rejected(body)
        return PaymentResult(
            success=True,
            provider=self.provider,
            provider_reference=body["id"],
            redirect_url=approve_url,
            raw_provider_response=body,
        )

    def _verification(self, order_id: str, body: dict[str, Any]) -> VerificationResult:
        units = body.get("purchase_units") or [{}]
        captures = ((units[0].get("payments") or {}).get("captures")) or []
        capture_id = captures[0].get("id") if captures else None
        return VerificationResult(
            provider=self.provider,
            provider_reference=order_id,
            status=map_order_status(body.get("status")),
            provider_status=body.get("status") or "",
            provider_transaction_id=capture_id or order_id,
            order_reference=units[0].get("reference_id"),
            raw_provider_response=body,
        )

    async def capture(self, order_id: str) -> VerificationResult:
        """Capture an approved order; PayPal confirms the outcome inline."""

        token = await self.authenticate()
        body = await self._request_json(
            "POST",
            f"{self.config.base_url}/v2/checkout/orders/{order_id}/capture",
            "capture_order",
            json={},
            headers={"Authorization": f"Bearer {token}"},
        )
        return self._verification(order_id, body)

    async def verify(self, reference: str) -> VerificationResult:
        token = await self.authenticate()
        body = await self._request_json(
            "GET",
            f"{self.config.base_url}/v2/checkout/orders/{reference}",
            "get_order",
            headers={"Authorization": f"Bearer {token}"},
        )
        return self._verification(reference, body)
