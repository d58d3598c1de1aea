"""Safaricom Daraja (M-Pesa) STK push adapter."""

import base64
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable

import httpx
from pydantic import BaseModel

from creohub.common.config import CommonSettings, settings
from creohub.common.errors import AuthenticationError, ConfigurationError, ProviderError
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
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}
# Daraja tokens live for an hour; used when the response omits `expires_in`.
DEFAULT_TOKEN_TTL_SECONDS = 3599
SETTLEMENT_CURRENCY = "KES"


class MpesaConfig(BaseModel):
    consumer_key: str
    consumer_secret: str
    business_short_code: str
    passkey: str
    callback_url: str
    environment: str = "sandbox"

    @classmethod
    def from_settings(cls, s: CommonSettings = settings) -> "MpesaConfig":
        return cls(
            consumer_key=s.mpesa_consumer_key,
            consumer_secret=s.mpesa_consumer_secret,
            business_short_code=s.mpesa_business_short_code,
            passkey=s.mpesa_passkey,
            callback_url=s.mpesa_callback_url,
            environment=s.mpesa_environment,
        )

    @property
    def base_url(self) -> str:
        return BASE_URLS["production"] if self.environment == "production" else BASE_URLS["sandbox"]


def normalize_msisdn(phone: str) -> str:
    """Return the `2547XXXXXXXX` form Daraja expects for PartyA/PhoneNumber."""

    digits = "".join(ch for ch in phone if ch.isdigit())
    if digits.startswith("0") and len(digits) == 10:
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "254" + digits
    if not (digits.startswith("254") and len(digits) == 12):
        raise ValueError(f"Unsupported M-Pesa phone number: {phone}")
    return digits


def map_result_code(result_code: Any) -> OrderPaymentStatus:
    """`ResultCode == 0` is a completed payment; every other code is terminal failure."""

    try:
        return OrderPaymentStatus.COMPLETED if int(result_code) == 0 else OrderPaymentStatus.FAILED
    except (TypeError, ValueError):
        return OrderPaymentStatus.PENDING


class MpesaClient(GatewayClient):
    """OAuth client-credentials + STK push against Daraja."""

    provider = Provider.MPESA

    def __init__(
        self,
        config: MpesaConfig,
        http: httpx.AsyncClient | None = None,
        *,
        timeout: float | None = None,
        currencies: CurrencyRegistry = default_registry,
        clock: Callable[[], datetime] | None = None,
        token_cache: TokenCache | None = None,
    ) -> None:
        super().__init__(http, timeout)
        self.config = config
        self.currencies = currencies
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.tokens = token_cache or TokenCache(settings.token_safety_margin_seconds)

    def timestamp(self) -> str:
        return self.clock().strftime("%Y%m%d%H%M%S")

    def password(self, timestamp: str) -> str:
        raw = f"{self.config.business_short_code}{self.config.passkey}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    async def authenticate(self) -> str:
        cached = self.tokens.get()
        if cached:
            return cached
        if not self.config.consumer_key or not self.config.consumer_secret:
            raise ConfigurationError("M-Pesa credentials not configured", provider=self.provider.value)

        body = await self._exchange_token(
            "GET",
            f"{self.config.base_url}/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=httpx.BasicAuth(self.config.consumer_key, self.config.consumer_secret),
        )
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise AuthenticationError("M-Pesa returned no access token", provider=self.provider.value, raw=body)
        self.tokens.store(token, float(body.get("expires_in") or DEFAULT_TOKEN_TTL_SECONDS))
        self._record_token_refresh()
        return token

    def settlement_amount(self, request: PaymentRequest) -> int:
        """Whole shillings; non-KES prices are converted through the registry."""

        amount = self.currencies.convert(request.amount, request.currency, SETTLEMENT_CURRENCY)
        return max(int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP)), 1)

    async def submit(self, request: PaymentRequest, credential: str | None, **options: Any) -> PaymentResult:
        phone = normalize_msisdn(request.payer_phone or "")
        timestamp = self.timestamp()
        payload = {
            "BusinessShortCode": self.config.business_short_code,
            "Password": self.password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": self.settlement_amount(request),
            "PartyA": phone,
            "PartyB": self.config.business_short_code,
            "PhoneNumber": phone,
            "CallBackURL": self.config.callback_url,
            # Daraja caps AccountReference at 12 and TransactionDesc at 13 characters.
            "AccountReference": request.order_reference[:12],
            "TransactionDesc": (request.description or "Payment")[:13],
        }
        body = await self._request_json(
            "POST",
            f"{self.config.base_url}/mpesa/stkpush/v1/processrequest",
            "stk_push",
            json=payload,
            headers={"Authorization": f"Bearer {credential}"},
        )
        if body.get("errorCode"):
            raise ProviderError(
                str(body.get("errorMessage") or body["errorCode"]),
                provider=self.provider.value,
                raw=body,
            )
        if str(body.get("ResponseCode", "")) not in ("", "0"):
            raise ProviderError(
                str(body.get("ResponseDescription") or "STK push rejected"),
                provider=self.provider.value,
                raw=body,
            )
        checkout_request_id = body.get("CheckoutRequestID")
        if not checkout_request_id:
            return self.rejected(body)
        return PaymentResult(
            success=True,
            provider=self.provider,
            provider_reference=checkout_request_id,
            raw_provider_response=body,
        )

    async def verify(self, reference: str) -> VerificationResult:
        """STK push query for a `CheckoutRequestID`."""

        token = await self.authenticate()
        timestamp = self.timestamp()
        body = await self._request_json(
            "POST",
            f"{self.config.base_url}/mpesa/stkpushquery/v1/query",
            "stk_query",
            json={
                "BusinessShortCode": self.config.business_short_code,
                "Password": self.password(timestamp),
                "Timestamp": timestamp,
                "CheckoutRequestID": reference,
            },
            headers={"Authorization": f"Bearer {token}"},
        )
        result_code = body.get("ResultCode")
        return VerificationResult(
            provider=self.provider,
            provider_reference=reference,
            status=map_result_code(result_code),
            provider_status=str(body.get("ResultDesc") or result_code or ""),
            raw_provider_response=body,
        )
