"""Pesapal v3 adapter: cached bearer token, one-time IPN registration, order submit."""

from decimal import Decimal
from typing import Any

import httpx
from pydantic import BaseModel

from creohub.common.config import CommonSettings, settings
from creohub.common.errors import AuthenticationError, ConfigurationError, PaymentError, ProviderError
from creohub.common.logging import logger
from creohub.common.state_machine import OrderPaymentStatus
from creohub.services.gateways.base import (
    GatewayClient,
    PaymentRequest,
    PaymentResult,
    Provider,
    TokenCache,
    VerificationResult,
)


BASE_URLS = {
    "sandbox": "https://cybqa.pesapal.com/pesapalv3",
    "live": "https://pay.pesapal.com/v3",
}
# Tokens live five minutes; with the one-minute margin they are reused for four.
TOKEN_TTL_SECONDS = 300
DEFAULT_NOTIFICATION_ID = "default"
BILLING_COUNTRIES = {"KES": "KE", "UGX": "UG", "TZS": "TZ"}

STATUS_MAP = {
    "completed": OrderPaymentStatus.COMPLETED,
    "failed": OrderPaymentStatus.FAILED,
    "invalid": OrderPaymentStatus.FAILED,
    "reversed": OrderPaymentStatus.FAILED,
}


class PesapalConfig(BaseModel):
    consumer_key: str
    consumer_secret: str
    ipn_url: str
    callback_url: str
    environment: str = "sandbox"

    @classmethod
    def from_settings(cls, s: CommonSettings = settings) -> "PesapalConfig":
        return cls(
            consumer_key=s.pesapal_consumer_key,
            consumer_secret=s.pesapal_consumer_secret,
            ipn_url=s.pesapal_ipn_url,
            callback_url=s.pesapal_callback_url,
            environment=s.pesapal_environment,
        )

    @property
    def base_url(self) -> str:
        return BASE_URLS["live"] if self.environment in ("live", "production") else BASE_URLS["sandbox"]


def map_payment_status(description: str | None) -> OrderPaymentStatus:
    """Completed -> completed; Failed/Invalid/Reversed -> failed; anything else stays pending."""

    return STATUS_MAP.get((description or "").strip().lower(), OrderPaymentStatus.PENDING)


class PesapalClient(GatewayClient):
    provider = Provider.PESAPAL

    def __init__(
        self,
        config: PesapalConfig,
        http: httpx.AsyncClient | None = None,
        *,
        timeout: float | None = None,
        token_cache: TokenCache | None = None,
    ) -> None:
        super().__init__(http, timeout)
        self.config = config
        self.tokens = token_cache or TokenCache(settings.token_safety_margin_seconds)
        self._notification_id: str | None = None

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Accept": "application/json"}

    async def authenticate(self) -> str:
        cached = self.tokens.get()
        if cached:
            return cached
        if not self.config.consumer_key or not self.config.consumer_secret:
            raise ConfigurationError("Pesapal credentials not configured", provider=self.provider.value)

        body = await self._exchange_token(
            "POST",
            f"{self.config.base_url}/api/Auth/RequestToken",
            json={
                "consumer_key": self.config.consumer_key,
                "consumer_secret": self.config.consumer_secret,
            },
            headers={"Accept": "application/json"},
        )
        token = body.get("token") if isinstance(body, dict) else None
        if not token:
            error = body.get("error") if isinstance(body, dict) else None
            raise AuthenticationError(
                f"Pesapal returned no token: {error or 'unknown error'}",
                provider=self.provider.value,
                raw=body,
            )
        self.tokens.store(token, TOKEN_TTL_SECONDS)
        self._record_token_refresh()
        return token

    async def register_ipn(self, token: str) -> str:
        """Register the IPN URL and return its id."""

        body = await self._request_json(
            "POST",
            f"{self.config.base_url}/api/URLSetup/RegisterIPN",
            "register_ipn",
            json={"url": self.config.ipn_url, "ipn_notification_type": "GET"},
            headers=self._headers(token),
        )
        ipn_id = body.get("ipn_id") if isinstance(body, dict) else None
        if not ipn_id:
            raise ProviderError("Pesapal IPN registration returned no ipn_id", provider=self.provider.value, raw=body)
        return ipn_id

    async def notification_id(self, token: str) -> str:
        """IPN id registered once per client; a failed registration never blocks payment."""

        if self._notification_id:
            return self._notification_id
        try:
            self._notification_id = await self.register_ipn(token)
        except PaymentError as exc:
            logger.warning("pesapal_ipn_registration_failed using=%s error=%s", DEFAULT_NOTIFICATION_ID, exc)
            return DEFAULT_NOTIFICATION_ID
        return self._notification_id

    async def submit(self, request: PaymentRequest, credential: str | None, **options: Any) -> PaymentResult:
        notification_id = await self.notification_id(credential)
        currency = request.currency.upper()
        payload = {
            "id": request.order_reference,
            "currency": currency,
            "amount": float(request.amount),
            "description": request.description[:100],
            "callback_url": options.get("callback_url") or self.config.callback_url,
            "notification_id": notification_id,
            "billing_address": {
                "email_address": request.payer_email,
                "phone_number": request.payer_phone,
                "country_code": BILLING_COUNTRIES.get(currency, "KE"),
                "first_name": request.given_name,
                "last_name": request.family_name,
            },
        }
        body = await self._request_json(
            "POST",
            f"{self.config.base_url}/api/Transactions/SubmitOrderRequest",
            "submit_order",
            json=payload,
            headers=self._headers(credential),
        )
        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProviderError(message or "Pesapal rejected the order", provider=self.provider.value, raw=body)
        tracking_id = body.get("order_tracking_id")
        redirect_url = body.get("redirect_url")
        if not tracking_id or not redirect_url:
            return self.rejected(body)
        return PaymentResult(
            success=True,
            provider=self.provider,
            provider_reference=tracking_id,
            redirect_url=redirect_url,
            raw_provider_response=body,
        )

    async def verify(self, reference: str) -> VerificationResult:
        """GetTransactionStatus for an `orderTrackingId`."""

        token = await self.authenticate()
        body = await self._request_json(
            "GET",
            f"{self.config.base_url}/api/Transactions/GetTransactionStatus",
            "transaction_status",
            params={"orderTrackingId": reference},
            headers=self._headers(token),
        )
        description = body.get("payment_status_description")
        amount = body.get("amount")
        return VerificationResult(
            provider=self.provider,
            provider_reference=reference,
            status=map_payment_status(description),
            provider_status=description or "",
            provider_transaction_id=body.get("confirmation_code") or None,
            order_reference=body.get("merchant_reference"),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=body.get("currency"),
            raw_provider_response=body,
        )
