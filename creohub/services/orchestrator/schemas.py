"""API request/response schemas for the payment endpoints.

Field names follow the storefront's camelCase JSON; snake_case is accepted too.
Amount checks happen in the orchestrator so every route reports them the same way.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from creohub.services.gateways.base import PaymentMethod, PaymentResult


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentInitiateRequest(CamelModel):
    """Method-tagged initiation accepted by `POST /api/payments/initiate`."""

    method: PaymentMethod
    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)
    email: str | None = None
    phone: str | None = None
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    order_reference: str | None = None
    description: str | None = None
    creator_id: str | None = None


class MpesaPaymentRequest(CamelModel):
    phone_number: str
    amount: Decimal
    account_reference: str
    currency: str = "KES"
    transaction_desc: str | None = None
    email: str | None = None


class PesapalPaymentRequest(CamelModel):
    amount: Decimal
    currency: str
    email: str
    phone: str
    first_name: str
    last_name: str
    product_id: str | None = None
    product_name: str | None = None
    order_reference: str | None = None


class FlutterwavePaymentRequest(CamelModel):
    amount: Decimal
    currency: str
    email: str
    name: str
    order_id: str
    phone: str | None = None
    creator_id: str | None = None
    payment_methods: str | None = None


class StripePaymentIntentRequest(CamelModel):
    amount: Decimal
    currency: str = "usd"
    email: str | None = None
    order_reference: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class PaypalOrderRequest(CamelModel):
    amount: Decimal
    currency: str
    email: str | None = None
    order_reference: str | None = None
    description: str | None = None


class BankTransferRequest(CamelModel):
    amount: Decimal
    currency: str = Field(min_length=3, max_length=3)
    reference: str = Field(min_length=1)
    customer_email: str = Field(min_length=3)
    description: str | None = None


class BankTransferVerifyRequest(CamelModel):
    bank_reference: str = Field(min_length=1)


class StripeCustomerRequest(CamelModel):
    email: str = Field(min_length=3)
    name: str | None = None


class StripeSubscriptionRequest(CamelModel):
    customer_id: str = Field(min_length=1)
    price_id: str = Field(min_length=1)


class PaymentResponse(CamelModel):
    """Normalized initiation outcome returned to the storefront."""

    success: bool
    provider: str
    order_reference: str
    provider_reference: str = ""
    redirect_url: str | None = None
    client_secret: str | None = None
    error: str | None = None

    @classmethod
    def from_result(cls, order_reference: str, result: PaymentResult) -> "PaymentResponse":
        return cls(
            success=result.success,
            provider=result.provider.value,
            order_reference=order_reference,
            provider_reference=result.provider_reference,
            redirect_url=result.redirect_url,
            client_secret=result.client_secret,
            error=result.error_message,
        )


class VerificationResponse(CamelModel):
    provider: str
    provider_reference: str
    status: str
    provider_status: str
    provider_transaction_id: str | None = None
    order_reference: str | None = None


class OrderPaymentResponse(CamelModel):
    order_reference: str
    amount: Decimal
    currency: str
    payment_method: str | None = None
    payment_status: str
    provider: str | None = None
    provider_reference: str | None = None
    provider_transaction_id: str | None = None


class ReconcileRequest(CamelModel):
    older_than_minutes: int = Field(default=30, ge=1)
    limit: int = Field(default=100, ge=1, le=1000)
