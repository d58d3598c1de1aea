"""Error taxonomy shared by gateways, the orchestrator and the reconciler.

Every error carries a `public_message` that is safe to return to end users;
the raw provider body (when there is one) is kept for server-side logging only.
"""

from typing import Any


class PaymentError(Exception):
    """Base class for all payment-core failures."""

    public_message = "Payment could not be processed"

    def __init__(self, message: str, *, provider: str | None = None, raw: Any = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.raw = raw


class ValidationError(PaymentError):
    """Caller input rejected before any network call was made."""

    def __init__(self, message: str, *, provider: str | None = None, raw: Any = None) -> None:
        super().__init__(message, provider=provider, raw=raw)
        # Validation messages describe the caller's own input, so they are safe to echo.
        self.public_message = message


class UnknownCurrencyError(ValidationError):
    """Currency code is not present in the registry."""

    def __init__(self, code: str) -> None:
        super().__init__(f"Unsupported currency: {code}")
        self.code = code


class DuplicateSubmissionError(PaymentError):
    """A submission for the same order reference is already in flight."""

    public_message = "A payment for this order is already in progress"


class ConfigurationError(PaymentError):
    """Provider credentials or endpoints are missing."""

    public_message = "Payment provider is not configured"


class AuthenticationError(PaymentError):
    """Credential exchange with the provider failed or returned no token."""

    public_message = "Could not authenticate with the payment provider"


class ProviderError(PaymentError):
    """Provider returned a structured failure (status field or non-2xx)."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        raw: Any = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, provider=provider, raw=raw)
        self.status_code = status_code


class MalformedResponseError(PaymentError):
    """Provider response body could not be parsed."""

    public_message = "Payment provider returned an unexpected response"


class GatewayTimeoutError(PaymentError):
    """Provider did not answer within the configured bound."""

    public_message = "Payment provider did not respond in time"


class SignatureVerificationError(PaymentError):
    """Webhook authenticity check failed."""

    public_message = "Invalid signature"


class ReconciliationError(PaymentError):
    """Notification payload cannot be mapped to a known order."""
