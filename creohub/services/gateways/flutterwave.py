"""Flutterwave v3 Standard checkout adapter."""

import hmac
import time
from decimal import Decimal
from typing import Any, Callable

import httpx
from pydantic import BaseModel

from creohub.common.config import CommonSettings, settings
from creohub.common.errors import ConfigurationError, ProviderError
from creohub.common.state_machine import OrderPaymentStatus
from creohub.services.gateways.base import (
    GatewayClient,
    PaymentRequest,
    PaymentResult,
    Provider,
    VerificationResult,
)


BASE_URL = "https://api.flutterwave.com/v3"
ALL_PAYMENT_OPTIONS = "card,mobilemoney,banktransfer"

STATUS_MAP = {
    "successful": OrderPaymentStatus.COMPLETED,
    "failed": OrderPaymentStatus.FAILED,
    "cancelled": OrderPaymentStatus.FAILED,
}


class FlutterwaveConfig(BaseModel):
    public_key: str
    secret_key: str
    encryption_key: str = ""
    webhook_hash: str = ""
    environment: str = "sandbox"
    public_base_url: str = "http://localhost:5000"

    @classmethod
    def from_settings(cls, s: CommonSettings = settings) -> "FlutterwaveConfig":
        return cls(
            public_key=s.flutterwave_public_key,
            secret_key=s.flutterwave_secret_key,
            encryption_key=s.flutterwave_encryption_key,
            webhook_hash=s.flutterwave_webhook_hash,
            environment=s.flutterwave_environment,
            public_base_url=s.public_base_url,
        )


def map_transaction_status(status: str | None) -> OrderPaymentStatus:
    return STATUS_MAP.get((status or "").strip().lower(), OrderPaymentStatus.PENDING)


class FlutterwaveClient(GatewayClient):
    """Static secret-key bearer auth; no token exchange."""

    provider = Provider.FLUTTERWAVE

    def __init__(
        self,
        config: FlutterwaveConfig,
        http: httpx.AsyncClient | None = None,
        *,
        timeout: float | None = None,
        millis: Callable[[], int] | None = None,
    ) -> None:
        super().__init__(http, timeout)
        self.config = config
        self.millis = millis or (lambda: int(time.time() * 1000))

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.secret_key}"}

    async def authenticate(self) -> str:
        if not self.config.secret_key:
            raise ConfigurationError("Flutterwave credentials not configured", provider=self.provider.value)
        return self.config.secret_key

    def tx_ref(self, order_reference: str) -> str:
        return f"creohub_{order_reference}_{self.millis()}"

    async def submit(self, request: PaymentRequest, credential: str | None, **options: Any) -> PaymentResult:
        base_url = self.config.public_base_url.rstrip("/")
        tx_ref = self.tx_ref(request.order_reference)
        payload = {
            "amount": float(request.amount),
            "currency": request.currency.upper(),
            "email": request.payer_email,
            "phone_number": request.payer_phone,
            "name": request.display_name,
            "tx_ref": tx_ref,
            "callback_url": f"{base_url}/api/payments/customer/flutterwave/webhook",
            "return_url": f"{base_url}/payment-success",
            "customization": {
                "title": "Creohub Purchase",
                "description": f"Payment for order #{request.order_reference}",
                "logo": f"{base_url}/logo.png",
            },
            "payment_options": options.get("payment_options") or ALL_PAYMENT_OPTIONS,
            "meta": {
                "orderId": request.order_reference,
                "creatorId": request.metadata.get("creatorId", ""),
            },
        }
        body = await self._request_json(
            "POST",
            f"{BASE_URL}/payments",
            "create_payment",
            json=payload,
            headers=self._headers(),
        )
        if body.get("status") not in (None, "success"):
            raise ProviderError(self._error_message(body), provider=self.provider.value, raw=body)
        link = (body.get("data") or {}).get("link")
        if not link:
            return self.rejected(body)
        return PaymentResult(
            success=True,
            provider=self.provider,
            provider_reference=tx_ref,
            redirect_url=link,
            raw_provider_response=body,
        )

    async def verify(self, reference: str) -> VerificationResult:
        """Verify by numeric transaction id, or by our `tx_ref` when that is all we hold."""

        await self.authenticate()
        if reference.isdigit():
            body = await self._request_json(
                "GET",
                f"{BASE_URL}/transactions/{reference}/verify",
                "verify_transaction",
                headers=self._headers(),
            )
        else:
            body = await self._request_json(
                "GET",
                f"{BASE_URL}/transactions/verify_by_reference",
                "verify_by_reference",
                params={"tx_ref": reference},
                headers=self._headers(),
            )
        data = body.get("data") or {}
        meta = data.get("meta") or {}
        amount = data.get("amount")
        return VerificationResult(
            provider=self.provider,
            provider_reference=data.get("tx_ref") or reference,
            status=map_transaction_status(data.get("status")),
            provider_status=data.get("status") or "",
            provider_transaction_id=str(data["id"]) if data.get("id") is not None else reference,
            order_reference=meta.get("orderId"),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=data.get("currency"),
            raw_provider_response=body,
        )

    def verify_webhook_hash(self, received: str | None) -> bool:
        """Compare the `verif-hash` header with the configured secret hash."""

        if not self.config.webhook_hash or not received:
            return False
        return hmac.compare_digest(received.encode("utf-8"), self.config.webhook_hash.encode("utf-8"))

    async def list_banks(self, country: str = "KE") -> list[dict[str, Any]]:
        await self.authenticate()
        body = await self._request_json(
            "GET",
            f"{BASE_URL}/banks/{country.upper()}",
            "list_banks",
            headers=self._headers(),
        )
        return body.get("data") or []
