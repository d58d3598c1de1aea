"""Shared gateway client machinery.

Each provider adapter walks one payment attempt through the same lifecycle
(`created -> auth_obtained -> submitted -> accepted | rejected`), owns its own
access-token cache, and sends every outbound call through `_request_json`, which
imposes the bounded timeout and normalizes transport/parse/status failures into
the shared error taxonomy.
"""

import time
from abc import ABC, abstractmethod
from decimal import Decimal
from enum import Enum
from typing import Any, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from creohub.common.config import settings
from creohub.common.errors import (
    AuthenticationError,
    GatewayTimeoutError,
    MalformedResponseError,
    PaymentError,
    ProviderError,
)
from creohub.common.logging import logger
from creohub.common.metrics import gateway_request_seconds, gateway_token_refresh_total
from creohub.common.state_machine import OrderPaymentStatus


class Provider(str, Enum):
    MPESA = "mpesa"
    PESAPAL = "pesapal"
    FLUTTERWAVE = "flutterwave"
    STRIPE = "stripe"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"


class PaymentMethod(str, Enum):
    """Logical payment methods offered at checkout."""

    MPESA = "mpesa"
    PESAPAL = "pesapal"
    FLUTTERWAVE = "flutterwave"
    FLUTTERWAVE_CARD = "flutterwave_card"
    FLUTTERWAVE_BANK = "flutterwave_bank"
    FLUTTERWAVE_MOBILE = "flutterwave_mobile"
    STRIPE = "stripe"
    PAYPAL = "paypal"


class PaymentRequest(BaseModel):
    """Normalized payment request handed to a gateway; never mutated."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: str
    order_reference: str
    payer_email: str | None = None
    payer_phone: str | None = None
    payer_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    description: str = "Creohub purchase"
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def given_name(self) -> str:
        if self.first_name:
            return self.first_name
        return (self.payer_name or "").split(" ", 1)[0]

    @property
    def family_name(self) -> str:
        if self.last_name:
            return self.last_name
        parts = (self.payer_name or "").split(" ", 1)
        return parts[1] if len(parts) > 1 else ""

    @property
    def display_name(self) -> str:
        if self.payer_name:
            return self.payer_name
        return " ".join(part for part in [self.first_name, self.last_name] if part)


class PaymentResult(BaseModel):
    """Synchronous outcome of a payment initiation."""

    model_config = ConfigDict(frozen=True)

    success: bool
    provider: Provider
    provider_reference: str = ""
    redirect_url: str | None = None
    client_secret: str | None = None
    error_message: str | None = None
    raw_provider_response: Any = None


class VerificationResult(BaseModel):
    """Provider-side status of an earlier payment, mapped to order status."""

    model_config = ConfigDict(frozen=True)

    provider: Provider
    provider_reference: str
    status: OrderPaymentStatus
    provider_status: str = ""
    provider_transaction_id: str | None = None
    order_reference: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    raw_provider_response: Any = None


class AttemptState(str, Enum):
    CREATED = "created"
    AUTH_OBTAINED = "auth_obtained"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


ATTEMPT_TRANSITIONS: dict[AttemptState, set[AttemptState]] = {
    AttemptState.CREATED: {AttemptState.AUTH_OBTAINED, AttemptState.REJECTED},
    AttemptState.AUTH_OBTAINED: {AttemptState.SUBMITTED, AttemptState.REJECTED},
    AttemptState.SUBMITTED: {AttemptState.ACCEPTED, AttemptState.REJECTED},
    AttemptState.ACCEPTED: set(),
    AttemptState.REJECTED: set(),
}


class GatewayAttempt:
    """In-memory lifecycle of one submission; logs every step."""

    def __init__(self, provider: Provider, order_reference: str) -> None:
        self.provider = provider
        self.order_reference = order_reference
        self.state = AttemptState.CREATED

    def advance(self, new_state: AttemptState) -> None:
        if new_state not in ATTEMPT_TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid attempt transition: {self.state.value} -> {new_state.value}")
        logger.info(
            "gateway_attempt provider=%s order_reference=%s %s->%s",
            self.provider.value,
            self.order_reference,
            self.state.value,
            new_state.value,
        )
        self.state = new_state


class AccessToken(BaseModel):
    value: str
    expires_at: float


class TokenCache:
    """Single cached bearer token with an expiry guard.

    No lock: two coroutines that both see an expired token both refresh, and the
    last write wins. Tokens for one account are interchangeable.
    """

    def __init__(self, safety_margin_seconds: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.safety_margin_seconds = safety_margin_seconds
        self.clock = clock
        self._token: AccessToken | None = None

    def get(self) -> str | None:
        if self._token is not None and self.clock() < self._token.expires_at:
            return self._token.value
        return None

    def store(self, value: str, ttl_seconds: float) -> AccessToken:
        lifetime = max(float(ttl_seconds) - self.safety_margin_seconds, 0.0)
        self._token = AccessToken(value=value, expires_at=self.clock() + lifetime)
        return self._token

    def invalidate(self) -> None:
        self._token = None


class GatewayClient(ABC):
    """Capability interface implemented by every provider adapter."""

    provider: Provider

    def __init__(self, http: httpx.AsyncClient | None = None, timeout: float | None = None) -> None:
        self.timeout = timeout if timeout is not None else settings.http_timeout_seconds
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=self.timeout)

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    @abstractmethod
    async def authenticate(self) -> str | None:
        """Return a usable credential for the next call, refreshing if needed."""

    @abstractmethod
    async def submit(self, request: PaymentRequest, credential: str | None, **options: Any) -> PaymentResult:
        """Send the provider-specific payload and normalize the response."""

    @abstractmethod
    async def verify(self, reference: str) -> VerificationResult:
        """Fetch the provider's view of an earlier payment."""

    async def initiate(self, request: PaymentRequest, **options: Any) -> PaymentResult:
        """Run one attempt through auth then submit, strictly in that order."""

        attempt = GatewayAttempt(self.provider, request.order_reference)
        try:
            credential = await self.authenticate()
            attempt.advance(AttemptState.AUTH_OBTAINED)
            attempt.advance(AttemptState.SUBMITTED)
            result = await self.submit(request, credential, **options)
        except PaymentError:
            attempt.advance(AttemptState.REJECTED)
            raise
        if result.success:
            attempt.advance(AttemptState.ACCEPTED)
        else:
            logger.warning(
                "gateway_rejected provider=%s order_reference=%s raw=%s",
                self.provider.value,
                request.order_reference,
                result.raw_provider_response,
            )
            attempt.advance(AttemptState.REJECTED)
        return result

    def rejected(self, raw: Any, message: str = "Payment could not be started") -> PaymentResult:
        return PaymentResult(
            success=False,
            provider=self.provider,
            error_message=message,
            raw_provider_response=raw,
        )

    def _record_token_refresh(self) -> None:
        gateway_token_refresh_total.labels(provider=self.provider.value).inc()
        logger.info("gateway_token_refreshed provider=%s", self.provider.value)

    def _error_message(self, body: Any) -> str:
        if isinstance(body, dict):
            for key in ("message", "errorMessage", "error_description", "ResponseDescription"):
                if body.get(key):
                    return str(body[key])
            error = body.get("error")
            if isinstance(error, dict):
                return str(error.get("message") or error.get("code") or error)
            if error:
                return str(error)
        return "provider request failed"

    async def _request_json(
        self,
        method: str,
        url: str,
        operation: str,
        **kwargs: Any,
    ) -> Any:
        """Issue one provider call under the timeout bound and parse its JSON body."""

        try:
            with gateway_request_seconds.labels(provider=self.provider.value, operation=operation).time():
                response = await self.http.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise GatewayTimeoutError(
                f"{self.provider.value} {operation} timed out after {self.timeout}s",
                provider=self.provider.value,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"{self.provider.value} {operation} transport error: {exc}",
                provider=self.provider.value,
            ) from exc

        try:
            body = response.json()
        except ValueError as exc:
            logger.error(
                "gateway_malformed_response provider=%s operation=%s status=%s body=%s",
                self.provider.value,
                operation,
                response.status_code,
                response.text[:500],
            )
            raise MalformedResponseError(
                f"{self.provider.value} {operation} returned non-JSON body",
                provider=self.provider.value,
                raw=response.text,
            ) from exc

        if response.is_error:
            logger.warning(
                "gateway_error_response provider=%s operation=%s status=%s body=%s",
                self.provider.value,
                operation,
                response.status_code,
                body,
            )
            raise ProviderError(
                self._error_message(body),
                provider=self.provider.value,
                raw=body,
                status_code=response.status_code,
            )
        return body

    async def _exchange_token(self, method: str, url: str, **kwargs: Any) -> Any:
        """Credential exchange call; any non-timeout failure is an auth failure."""

        try:
            return await self._request_json(method, url, "auth", **kwargs)
        except (ProviderError, MalformedResponseError) as exc:
            raise AuthenticationError(
                f"{self.provider.value} token exchange failed: {exc}",
                provider=self.provider.value,
                raw=exc.raw,
            ) from exc
