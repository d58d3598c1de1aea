"""HTTP surface for checkout pages and provider callbacks.

`create_app` takes fully built collaborators so tests can wire fakes; the
process entrypoint in `main.py` builds the real ones from settings.
"""

import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from creohub.common.errors import (
    AuthenticationError,
    ConfigurationError,
    DuplicateSubmissionError,
    GatewayTimeoutError,
    MalformedResponseError,
    PaymentError,
    ProviderError,
    ReconciliationError,
    SignatureVerificationError,
    ValidationError,
)
from creohub.common.logging import logger, trace_id_ctx
from creohub.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from creohub.common.state_machine import OrderPaymentStatus
from creohub.currency.registry import CurrencyRegistry, registry as default_registry
from creohub.services.gateways.bank_transfer import BankTransferClient
from creohub.services.gateways.base import PaymentMethod, PaymentRequest, Provider, VerificationResult
from creohub.services.gateways.flutterwave import FlutterwaveClient
from creohub.services.gateways.stripe_gateway import StripeClient, subscription_client_secret
from creohub.services.orchestrator.schemas import (
    BankTransferRequest,
    BankTransferVerifyRequest,
    FlutterwavePaymentRequest,
    MpesaPaymentRequest,
    OrderPaymentResponse,
    PaymentInitiateRequest,
    PaymentResponse,
    PaypalOrderRequest,
    PesapalPaymentRequest,
    ReconcileRequest,
    StripeCustomerRequest,
    StripePaymentIntentRequest,
    StripeSubscriptionRequest,
    VerificationResponse,
)
from creohub.services.orchestrator.service import PaymentOrchestrator
from creohub.services.orders.store import SqlOrderStore
from creohub.services.reconciler.service import NotificationOutcome, NotificationReconciler


# Most specific first: UnknownCurrencyError is a ValidationError.
ERROR_STATUS_CODES: list[tuple[type[PaymentError], int]] = [
    (ValidationError, 400),
    (SignatureVerificationError, 401),
    (ReconciliationError, 404),
    (DuplicateSubmissionError, 409),
    (AuthenticationError, 502),
    (MalformedResponseError, 502),
    (ProviderError, 502),
    (ConfigurationError, 503),
    (GatewayTimeoutError, 504),
]


def generate_order_reference() -> str:
    return f"ORDER_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def _verification_response(verification: VerificationResult) -> VerificationResponse:
    return VerificationResponse(
        provider=verification.provider.value,
        provider_reference=verification.provider_reference,
        status=verification.status.value,
        provider_status=verification.provider_status,
        provider_transaction_id=verification.provider_transaction_id,
        order_reference=verification.order_reference,
    )


def _outcome_response(outcome: NotificationOutcome) -> JSONResponse:
    return JSONResponse(status_code=outcome.http_status, content=outcome.body)


def create_app(
    orchestrator: PaymentOrchestrator,
    reconciler: NotificationReconciler,
    store: SqlOrderStore,
    currencies: CurrencyRegistry = default_registry,
    lifespan=None,
    bank_transfer: BankTransferClient | None = None,
) -> FastAPI:
    app = FastAPI(title="Creohub Payments", lifespan=lifespan)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency; bind a trace id for log correlation."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(route=route, method=method).observe(elapsed)
            http_requests_total.labels(route=route, method=method, status_code=str(status_code)).inc()

    @app.exception_handler(PaymentError)
    async def payment_error_handler(_: Request, exc: PaymentError):
        """Safe message to the caller; details stay in the server log."""

        status_code = next((code for cls, code in ERROR_STATUS_CODES if isinstance(exc, cls)), 500)
        logger.warning(
            "payment_error status=%s type=%s provider=%s error=%s",
            status_code,
            type(exc).__name__,
            exc.provider,
            exc,
        )
        return JSONResponse(status_code=status_code, content={"error": exc.public_message})

    async def start_payment(method: PaymentMethod, request: PaymentRequest) -> JSONResponse:
        """Validate, create the order row, initiate, and mark `processing` on acceptance."""

        orchestrator.validate(method, request)
        store.ensure_order(
            request.order_reference,
            request.amount,
            request.currency,
            payment_method=method.value,
            customer_email=request.payer_email,
        )
        result = await orchestrator.initiate(method, request)
        if result.success:
            store.mark_processing(request.order_reference, result.provider.value, result.provider_reference)
        response = PaymentResponse.from_result(request.order_reference, result)
        return JSONResponse(
            status_code=200 if result.success else 402,
            content=response.model_dump(mode="json", by_alias=True),
        )

    @app.post("/api/payments/initiate")
    async def initiate_payment(req: PaymentInitiateRequest):
        """Generic method-tagged initiation used by the payment-method selector."""

        request = PaymentRequest(
            amount=req.amount,
            currency=req.currency.upper(),
            order_reference=req.order_reference or generate_order_reference(),
            payer_email=req.email,
            payer_phone=req.phone,
            payer_name=req.name,
            first_name=req.first_name,
            last_name=req.last_name,
            description=req.description or "Creohub purchase",
            metadata={"creatorId": req.creator_id} if req.creator_id else {},
        )
        return await start_payment(req.method, request)

    @app.post("/api/payments/customer/mpesa")
    async def mpesa_payment(req: MpesaPaymentRequest):
        request = PaymentRequest(
            amount=req.amount,
            currency=req.currency.upper(),
            order_reference=req.account_reference,
            payer_phone=req.phone_number,
            payer_email=req.email,
            description=req.transaction_desc or "Payment",
        )
        return await start_payment(PaymentMethod.MPESA, request)

    @app.get("/api/payments/customer/mpesa/status/{checkout_request_id}", response_model=VerificationResponse)
    async def mpesa_status(checkout_request_id: str):
        verification = await orchestrator.verify(Provider.MPESA, checkout_request_id)
        reconciler.record_verification(verification)
        return _verification_response(verification)

    @app.post("/api/payments/customer/mpesa/callback")
    async def mpesa_callback(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        return _outcome_response(await reconciler.handle_mpesa_callback(payload))

    @app.post("/api/payments/customer/pesapal")
    async def pesapal_payment(req: PesapalPaymentRequest):
        request = PaymentRequest(
            amount=req.amount,
            currency=req.currency.upper(),
            order_reference=req.order_reference or generate_order_reference(),
            payer_email=req.email,
            payer_phone=req.phone,
            first_name=req.first_name,
            last_name=req.last_name,
            payer_name=f"{req.first_name} {req.last_name}",
            description=req.product_name or f"Payment for Product {req.product_id or ''}".strip(),
        )
        return await start_payment(PaymentMethod.PESAPAL, request)

    @app.get("/api/payments/customer/pesapal/status/{order_tracking_id}", response_model=VerificationResponse)
    async def pesapal_status(order_tracking_id: str):
        verification = await orchestrator.verify(Provider.PESAPAL, order_tracking_id)
        reconciler.record_verification(verification)
        return _verification_response(verification)

    @app.get("/api/payments/customer/pesapal/ipn")
    async def pesapal_ipn(
        order_tracking_id: str | None = Query(default=None, alias="OrderTrackingId"),
        merchant_reference: str | None = Query(default=None, alias="OrderMerchantReference"),
        notification_type: str | None = Query(default=None, alias="OrderNotificationType"),
    ):
        outcome = await reconciler.handle_pesapal_ipn(order_tracking_id, merchant_reference, notification_type)
        return _outcome_response(outcome)

    @app.get("/api/payments/customer/pesapal/callback")
    async def pesapal_callback(
        order_tracking_id: str | None = Query(default=None, alias="OrderTrackingId"),
        merchant_reference: str | None = Query(default=None, alias="OrderMerchantReference"),
    ):
        outcome = await reconciler.handle_pesapal_callback(order_tracking_id, merchant_reference)
        return RedirectResponse(outcome.redirect_url, status_code=302)

    @app.post("/api/payments/customer/flutterwave")
    async def flutterwave_payment(req: FlutterwavePaymentRequest):
        request = PaymentRequest(
            amount=req.amount,
            currency=req.currency.upper(),
            order_reference=req.order_id,
            payer_email=req.email,
            payer_phone=req.phone,
            payer_name=req.name,
            description=f"Payment for order #{req.order_id}",
            metadata={"creatorId": req.creator_id} if req.creator_id else {},
        )
        method = {
            "card": PaymentMethod.FLUTTERWAVE_CARD,
            "banktransfer": PaymentMethod.FLUTTERWAVE_BANK,
            "mobilemoney": PaymentMethod.FLUTTERWAVE_MOBILE,
        }.get((req.payment_methods or "").strip(), PaymentMethod.FLUTTERWAVE)
        return await start_payment(method, request)

    @app.get("/api/payments/customer/flutterwave/verify/{transaction_id}", response_model=VerificationResponse)
    async def flutterwave_verify(transaction_id: str):
        verification = await orchestrator.verify(Provider.FLUTTERWAVE, transaction_id)
        reconciler.record_verification(verification)
        return _verification_response(verification)

    @app.get("/api/payments/customer/flutterwave/webhook")
    async def flutterwave_redirect(
        status: str | None = None,
        tx_ref: str | None = None,
        transaction_id: str | None = None,
    ):
        outcome = await reconciler.handle_flutterwave_redirect(status, tx_ref, transaction_id)
        return RedirectResponse(outcome.redirect_url, status_code=302)

    @app.post("/api/payments/customer/flutterwave/webhook")
    async def flutterwave_webhook(request: Request, verif_hash: str | None = Header(default=None)):
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        return _outcome_response(await reconciler.handle_flutterwave_webhook(verif_hash, payload))

    @app.get("/api/payments/banks")
    @app.get("/api/payments/banks/{country}")
    async def flutterwave_banks(country: str = "KE"):
        client: FlutterwaveClient = orchestrator.client(Provider.FLUTTERWAVE)
        return {"success": True, "banks": await client.list_banks(country)}

    @app.post("/api/payments/customer/stripe/payment-intent")
    async def stripe_payment_intent(req: StripePaymentIntentRequest):
        request = PaymentRequest(
            amount=req.amount,
            currency=req.currency.upper(),
            order_reference=req.order_reference or generate_order_reference(),
            payer_email=req.email,
            metadata=req.metadata,
        )
        return await start_payment(PaymentMethod.STRIPE, request)

    @app.post("/api/payments/customer/stripe/webhook")
    async def stripe_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
        payload = await request.body()
        return _outcome_response(await reconciler.handle_stripe_webhook(payload, stripe_signature))

    @app.post("/api/payments/creator/stripe/customer")
    async def stripe_customer(req: StripeCustomerRequest):
        client: StripeClient = orchestrator.client(Provider.STRIPE)
        customer = await client.create_customer(req.email, req.name)
        return {"customerId": customer["id"], "email": customer.get("email")}

    @app.post("/api/payments/creator/subscription")
    async def stripe_subscription(req: StripeSubscriptionRequest):
        client: StripeClient = orchestrator.client(Provider.STRIPE)
        subscription = await client.create_subscription(req.customer_id, req.price_id)
        return {"subscriptionId": subscription["id"], "clientSecret": subscription_client_secret(subscription)}

    def bank_transfer_client() -> BankTransferClient:
        if bank_transfer is None:
            raise ConfigurationError("bank transfer rail not configured", provider=Provider.BANK_TRANSFER.value)
        return bank_transfer

    @app.get("/api/payments/bank-accounts")
    def bank_accounts():
        return {
            "accounts": [
                account.model_dump(by_alias=True, exclude_none=True) for account in bank_transfer_client().accounts()
            ]
        }

    @app.post("/api/payments/bank-transfer")
    def bank_transfer_initiate(req: BankTransferRequest):
        """Issue transfer instructions; the order waits in `pending` for confirmation."""

        client = bank_transfer_client()
        existing = store.get(req.reference)
        if existing is not None and existing.payment_status != OrderPaymentStatus.PENDING.value:
            raise DuplicateSubmissionError(
                f"order {req.reference} is already {existing.payment_status}",
                provider=Provider.BANK_TRANSFER.value,
            )
        transfer_id = None
        if existing is not None and existing.provider == Provider.BANK_TRANSFER.value:
            transfer_id = existing.provider_reference
        instructions = client.instructions(req.amount, req.currency, req.reference, transfer_id)
        store.ensure_order(
            req.reference,
            instructions.amount,
            instructions.currency,
            payment_method=Provider.BANK_TRANSFER.value,
            customer_email=req.customer_email,
        )
        store.attach_provider_reference(req.reference, Provider.BANK_TRANSFER.value, instructions.transfer_id)
        logger.info(
            "bank_transfer_issued order_reference=%s transfer_id=%s", req.reference, instructions.transfer_id
        )
        return instructions.model_dump(mode="json", by_alias=True, exclude_none=True)

    @app.post("/api/payments/bank-transfer/webhook")
    async def bank_transfer_webhook(request: Request, x_webhook_secret: str | None = Header(default=None)):
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        return _outcome_response(await reconciler.handle_bank_transfer_webhook(x_webhook_secret, payload))

    @app.post("/api/payments/bank-transfer/{transfer_id}/verify")
    def bank_transfer_verify(
        transfer_id: str,
        req: BankTransferVerifyRequest,
        x_api_key: str | None = Header(default=None),
    ):
        """Operator confirmation that the money arrived."""

        bank_transfer_client().check_operator_key(x_api_key)
        order_reference, _ = reconciler.confirm_bank_transfer(transfer_id, req.bank_reference)
        order = store.get(order_reference)
        return {
            "transferId": transfer_id,
            "bankReference": req.bank_reference,
            "orderReference": order_reference,
            "status": order.payment_status,
            "verifiedAt": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/api/paypal/order")
    async def paypal_order(req: PaypalOrderRequest):
        request = PaymentRequest(
            amount=req.amount,
            currency=req.currency.upper(),
            order_reference=req.order_reference or generate_order_reference(),
            payer_email=req.email,
            description=req.description or "Creohub purchase",
        )
        return await start_payment(PaymentMethod.PAYPAL, request)

    @app.post("/api/paypal/order/{order_id}/capture", response_model=VerificationResponse)
    async def paypal_capture(order_id: str):
        verification, _ = await reconciler.confirm_paypal_capture(order_id)
        return _verification_response(verification)

    @app.get("/api/orders/{order_reference}/payment", response_model=OrderPaymentResponse)
    def order_payment(order_reference: str):
        order = store.get(order_reference)
        if order is None:
            raise HTTPException(status_code=404, detail="order not found")
        return OrderPaymentResponse(
            order_reference=order.order_reference,
            amount=order.amount,
            currency=order.currency,
            payment_method=order.payment_method,
            payment_status=order.payment_status,
            provider=order.provider,
            provider_reference=order.provider_reference,
            provider_transaction_id=order.provider_transaction_id,
        )

    @app.post("/internal/orders/reconcile")
    async def reconcile_stale(req: ReconcileRequest):
        return await reconciler.sweep_stale(timedelta(minutes=req.older_than_minutes), limit=req.limit)

    @app.get("/api/currencies")
    def list_currencies():
        return [
            {
                "code": info.code,
                "symbol": info.symbol,
                "name": info.name,
                "countries": sorted(info.countries),
                "exchangeRate": str(info.exchange_rate),
            }
            for info in currencies.all()
        ]

    @app.get("/api/currencies/convert")
    def convert_currency(
        amount: Decimal,
        from_code: str = Query(alias="from"),
        to_code: str = Query(alias="to"),
    ):
        converted = currencies.convert(amount, from_code, to_code)
        return {
            "amount": str(amount),
            "from": from_code.upper(),
            "to": to_code.upper(),
            "converted": str(converted),
            "formatted": currencies.format(converted, to_code),
        }

    @app.get("/api/currencies/detect")
    def detect_currency(
        country: str | None = None,
        locale: str | None = None,
        timezone: str | None = None,
        accept_language: str | None = Header(default=None),
    ):
        if country:
            code = currencies.detect_from_country(country)
        elif locale or accept_language:
            code = currencies.detect_from_locale(locale or accept_language.split(",", 1)[0])
        else:
            code = currencies.detect_from_timezone(timezone)
        return {"currency": code, "symbol": currencies.symbol(code)}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
