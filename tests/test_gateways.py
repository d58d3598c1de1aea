"""Provider adapters against scripted HTTP replies; no network access."""

import base64
from decimal import Decimal

import httpx
import pytest
import stripe

from creohub.common.errors import (
    AuthenticationError,
    ConfigurationError,
    GatewayTimeoutError,
    MalformedResponseError,
    ProviderError,
    SignatureVerificationError,
    ValidationError,
)
from creohub.common.state_machine import OrderPaymentStatus
from creohub.services.gateways.bank_transfer import map_transfer_status, parse_bank_accounts
from creohub.services.gateways.base import PaymentRequest, TokenCache
from creohub.services.gateways.mpesa import map_result_code, normalize_msisdn
from creohub.services.gateways.pesapal import map_payment_status
from creohub.services.gateways.stripe_gateway import subscription_client_secret


def pesapal_request(**overrides) -> PaymentRequest:
    fields = {
        "amount": Decimal("1500"),
        "currency": "KES",
        "order_reference": "ORD-1",
        "payer_email": "buyer@example.com",
        "payer_phone": "0712345678",
        "first_name": "Amina",
        "last_name": "Otieno",
    }
    fields.update(overrides)
    return PaymentRequest(**fields)


def script_pesapal(stub, token="tok-1"):
    stub.on("POST", "/api/Auth/RequestToken", {"token": token, "expiryDate": "2030-01-01T00:00:00Z"})
    stub.on("POST", "/api/URLSetup/RegisterIPN", {"ipn_id": "ipn-1", "url": "https://creohub.test/ipn"})
    stub.on(
        "POST",
        "/api/Transactions/SubmitOrderRequest",
        {"order_tracking_id": "T1", "merchant_reference": "ORD-1", "redirect_url": "https://pay/x"},
    )


async def test_pesapal_submit_happy_path(stub, pesapal_client):
    script_pesapal(stub)

    result = await pesapal_client.initiate(pesapal_request())

    assert result.success
    assert result.provider_reference == "T1"
    assert result.redirect_url == "https://pay/x"
    sent = stub.last_json("/api/Transactions/SubmitOrderRequest")
    assert sent["id"] == "ORD-1"
    assert sent["notification_id"] == "ipn-1"
    assert sent["billing_address"]["country_code"] == "KE"
    assert sent["billing_address"]["first_name"] == "Amina"
    submit_call = [c for c in stub.calls if c.url.path.endswith("SubmitOrderRequest")][0]
    assert submit_call.headers["Authorization"] == "Bearer tok-1"


async def test_pesapal_token_reused_then_refreshed(stub, pesapal_client, clock):
    """Two calls inside the token lifetime share one token exchange."""

    script_pesapal(stub)
    stub.on("GET", "/api/Transactions/GetTransactionStatus", {"payment_status_description": "Pending"})

    await pesapal_client.verify("T1")
    await pesapal_client.verify("T1")
    assert stub.count("/api/Auth/RequestToken") == 1

    clock.advance(241)
    await pesapal_client.verify("T1")
    assert stub.count("/api/Auth/RequestToken") == 2


async def test_pesapal_ipn_registration_failure_falls_back(stub, pesapal_client):
    script_pesapal(stub)
    stub.on("POST", "/api/URLSetup/RegisterIPN", {"error": {"message": "boom"}}, status_code=500)

    await pesapal_client.initiate(pesapal_request())

    assert stub.last_json("/api/Transactions/SubmitOrderRequest")["notification_id"] == "default"


async def test_pesapal_error_body_is_provider_error(stub, pesapal_client):
    script_pesapal(stub)
    stub.on("POST", "/api/Transactions/SubmitOrderRequest", {"error": {"message": "invalid amount"}})

    with pytest.raises(ProviderError, match="invalid amount"):
        await pesapal_client.initiate(pesapal_request())


async def test_pesapal_missing_redirect_is_rejection(stub, pesapal_client):
    script_pesapal(stub)
    stub.on("POST", "/api/Transactions/SubmitOrderRequest", {"order_tracking_id": "T1"})

    result = await pesapal_client.initiate(pesapal_request())

    assert not result.success
    assert result.raw_provider_response == {"order_tracking_id": "T1"}


async def test_pesapal_missing_credentials(stub, pesapal_client):
    pesapal_client.config = pesapal_client.config.model_copy(update={"consumer_key": ""})

    with pytest.raises(ConfigurationError):
        await pesapal_client.initiate(pesapal_request())
    assert stub.calls == []


async def test_token_exchange_failure_is_authentication_error(stub, pesapal_client):
    stub.on("POST", "/api/Auth/RequestToken", {"message": "bad credentials"}, status_code=401)

    with pytest.raises(AuthenticationError):
        await pesapal_client.authenticate()


async def test_timeout_is_mapped(stub, pesapal_client):
    def hang(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    stub.on("POST", "/api/Auth/RequestToken", hang)

    with pytest.raises(GatewayTimeoutError):
        await pesapal_client.authenticate()


async def test_non_json_body_is_malformed(stub, pesapal_client):
    script_pesapal(stub)
    stub.on("GET", "/api/Transactions/GetTransactionStatus", "<html>maintenance</html>", status_code=200)

    with pytest.raises(MalformedResponseError):
        await pesapal_client.verify("T1")


async def test_pesapal_verify_maps_status(stub, pesapal_client):
    script_pesapal(stub)
    stub.on(
        "GET",
        "/api/Transactions/GetTransactionStatus",
        {
            "payment_status_description": "Completed",
            "confirmation_code": "CONF-9",
            "merchant_reference": "ORD-1",
            "amount": 1500,
            "currency": "KES",
        },
    )

    verification = await pesapal_client.verify("T1")

    assert verification.status == OrderPaymentStatus.COMPLETED
    assert verification.provider_transaction_id == "CONF-9"
    assert verification.order_reference == "ORD-1"
    assert verification.amount == Decimal("1500")
    status_call = [c for c in stub.calls if c.url.path.endswith("GetTransactionStatus")][0]
    assert status_call.url.params["orderTrackingId"] == "T1"


@pytest.mark.parametrize(
    ("description", "expected"),
    [
        ("Completed", OrderPaymentStatus.COMPLETED),
        ("FAILED", OrderPaymentStatus.FAILED),
        ("Invalid", OrderPaymentStatus.FAILED),
        ("Reversed", OrderPaymentStatus.FAILED),
        ("Pending", OrderPaymentStatus.PENDING),
        (None, OrderPaymentStatus.PENDING),
    ],
)
def test_pesapal_status_mapping(description, expected):
    assert map_payment_status(description) == expected


def test_mpesa_result_code_mapping():
    assert map_result_code(0) == OrderPaymentStatus.COMPLETED
    assert map_result_code("1032") == OrderPaymentStatus.FAILED
    assert map_result_code(None) == OrderPaymentStatus.PENDING


@pytest.mark.parametrize(
    ("phone", "expected"),
    [("0712345678", "254712345678"), ("+254 712 345 678", "254712345678"), ("712345678", "254712345678")],
)
def test_normalize_msisdn(phone, expected):
    assert normalize_msisdn(phone) == expected


def test_normalize_msisdn_rejects_foreign_numbers():
    with pytest.raises(ValueError):
        normalize_msisdn("+1 415 555 0100")


def script_mpesa(stub):
    stub.on("GET", "/oauth/v1/generate", {"access_token": "mp-tok", "expires_in": "3599"})
    stub.on(
        "POST",
        "/mpesa/stkpush/v1/processrequest",
        {
            "MerchantRequestID": "M-1",
            "CheckoutRequestID": "ws_CO_1",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
        },
    )


async def test_mpesa_token_reused_then_refreshed(stub, mpesa_client, clock):
    """Back-to-back STK pushes share one OAuth exchange until the token ages out."""

    mpesa_client.tokens = TokenCache(60, clock=clock)
    script_mpesa(stub)
    request = PaymentRequest(amount=Decimal("100"), currency="KES", order_reference="ORD-M", payer_phone="0712345678")

    await mpesa_client.initiate(request)
    await mpesa_client.initiate(request)
    assert stub.count("/oauth/v1/generate") == 1
    assert stub.count("/mpesa/stkpush/v1/processrequest") == 2

    clock.advance(3539)
    await mpesa_client.initiate(request)
    await mpesa_client.initiate(request)
    assert stub.count("/oauth/v1/generate") == 2


async def test_mpesa_stk_push_payload(stub, mpesa_client):
    script_mpesa(stub)
    request = PaymentRequest(
        amount=Decimal("10"),
        currency="USD",
        order_reference="ORDER_1700000000000_abcdef123",
        payer_phone="0712345678",
        description="Creohub digital download",
    )

    result = await mpesa_client.initiate(request)

    assert result.success
    assert result.provider_reference == "ws_CO_1"
    sent = stub.last_json("/mpesa/stkpush/v1/processrequest")
    assert sent["Timestamp"] == "20240301093015"
    assert base64.b64decode(sent["Password"]).decode() == "174379passkey20240301093015"
    # 10 USD at 150 KES/USD
    assert sent["Amount"] == 1500
    assert sent["PartyA"] == sent["PhoneNumber"] == "254712345678"
    assert sent["AccountReference"] == "ORDER_170000"
    assert len(sent["TransactionDesc"]) <= 13
    auth_call = [c for c in stub.calls if c.url.path.endswith("/oauth/v1/generate")][0]
    assert auth_call.url.params["grant_type"] == "client_credentials"
    assert auth_call.headers["Authorization"].startswith("Basic ")


async def test_mpesa_error_code_raises(stub, mpesa_client):
    script_mpesa(stub)
    stub.on(
        "POST",
        "/mpesa/stkpush/v1/processrequest",
        {"requestId": "r-1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"},
        status_code=400,
    )
    request = PaymentRequest(amount=Decimal("100"), currency="KES", order_reference="ORD-2", payer_phone="0712345678")

    with pytest.raises(ProviderError, match="Invalid PhoneNumber"):
        await mpesa_client.initiate(request)


def script_flutterwave(stub):
    stub.on(
        "POST",
        "/v3/payments",
        {"status": "success", "message": "Hosted Link", "data": {"link": "https://checkout.flutterwave.com/pay/abc"}},
    )


async def test_flutterwave_payment_options_and_tx_ref(stub, flutterwave_client):
    script_flutterwave(stub)
    request = PaymentRequest(
        amount=Decimal("25"),
        currency="NGN",
        order_reference="ORD-3",
        payer_email="buyer@example.com",
        payer_name="Tunde Bello",
        metadata={"creatorId": "creator-7"},
    )

    result = await flutterwave_client.initiate(request, payment_options="card")

    assert result.success
    assert result.provider_reference == "creohub_ORD-3_1700000000000"
    assert result.redirect_url == "https://checkout.flutterwave.com/pay/abc"
    sent = stub.last_json("/v3/payments")
    assert sent["payment_options"] == "card"
    assert sent["meta"] == {"orderId": "ORD-3", "creatorId": "creator-7"}
    assert sent["callback_url"] == "https://creohub.test/api/payments/customer/flutterwave/webhook"


async def test_flutterwave_verify_by_id_and_by_reference(stub, flutterwave_client):
    body = {
        "status": "success",
        "data": {
            "id": 4242,
            "tx_ref": "creohub_ORD-3_1700000000000",
            "status": "successful",
            "amount": 25,
            "currency": "NGN",
            "meta": {"orderId": "ORD-3"},
        },
    }
    stub.on("GET", "/transactions/4242/verify", body)
    stub.on("GET", "/transactions/verify_by_reference", body)

    by_id = await flutterwave_client.verify("4242")
    by_ref = await flutterwave_client.verify("creohub_ORD-3_1700000000000")

    assert by_id.status == by_ref.status == OrderPaymentStatus.COMPLETED
    assert by_id.provider_transaction_id == "4242"
    assert by_id.order_reference == "ORD-3"
    assert stub.count("/transactions/verify_by_reference") == 1


def test_flutterwave_webhook_hash(flutterwave_client):
    assert flutterwave_client.verify_webhook_hash("s3cret-hash")
    assert not flutterwave_client.verify_webhook_hash("wrong")
    assert not flutterwave_client.verify_webhook_hash(None)


def test_flutterwave_webhook_hash_unset_rejects_everything(flutterwave_client):
    flutterwave_client.config = flutterwave_client.config.model_copy(update={"webhook_hash": ""})
    assert not flutterwave_client.verify_webhook_hash("")


async def test_stripe_payment_intent_in_minor_units(monkeypatch, stripe_client):
    captured = {}

    def fake_create(**params):
        captured.update(params)
        return stripe.PaymentIntent.construct_from(
            {"id": "pi_1", "object": "payment_intent", "client_secret": "pi_1_secret_abc", "status": "requires_payment_method"},
            "sk_test_123",
        )

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    request = PaymentRequest(
        amount=Decimal("10.50"),
        currency="USD",
        order_reference="ORD-4",
        payer_email="buyer@example.com",
    )

    result = await stripe_client.initiate(request)

    assert result.success
    assert result.provider_reference == "pi_1"
    assert result.client_secret == "pi_1_secret_abc"
    assert captured["amount"] == 1050
    assert captured["currency"] == "usd"
    assert captured["api_key"] == "sk_test_123"
    assert captured["metadata"]["order_reference"] == "ORD-4"


async def test_stripe_zero_decimal_currency(monkeypatch, stripe_client):
    captured = {}

    def fake_create(**params):
        captured.update(params)
        return stripe.PaymentIntent.construct_from({"id": "pi_2", "client_secret": "pi_2_secret"}, "sk_test_123")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    request = PaymentRequest(amount=Decimal("5000"), currency="XOF", order_reference="ORD-5")

    await stripe_client.initiate(request)

    assert captured["amount"] == 5000


async def test_stripe_verify_reads_intent_fields(monkeypatch, stripe_client):
    def fake_retrieve(**params):
        assert params["id"] == "pi_9"
        return stripe.PaymentIntent.construct_from(
            {
                "id": "pi_9",
                "object": "payment_intent",
                "status": "succeeded",
                "currency": "usd",
                "latest_charge": "ch_9",
                "metadata": {"order_reference": "ORD-9"},
            },
            "sk_test_123",
        )

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)

    verification = await stripe_client.verify("pi_9")

    assert verification.status == OrderPaymentStatus.COMPLETED
    assert verification.provider_transaction_id == "ch_9"
    assert verification.order_reference == "ORD-9"
    assert verification.currency == "USD"
    assert verification.raw_provider_response["metadata"] == {"order_reference": "ORD-9"}


async def test_stripe_customer_is_plain_mapping(monkeypatch, stripe_client):
    def fake_create(**params):
        return stripe.Customer.construct_from(
            {"id": "cus_1", "object": "customer", "email": params["email"], "name": params["name"]},
            "sk_test_123",
        )

    monkeypatch.setattr(stripe.Customer, "create", fake_create)

    customer = await stripe_client.create_customer("creator@example.com", "Wanjiru")

    assert customer["id"] == "cus_1"
    assert customer.get("email") == "creator@example.com"


async def test_stripe_subscription_exposes_invoice_client_secret(monkeypatch, stripe_client):
    captured = {}

    def fake_create(**params):
        captured.update(params)
        return stripe.Subscription.construct_from(
            {
                "id": "sub_1",
                "object": "subscription",
                "status": "incomplete",
                "latest_invoice": {
                    "id": "in_1",
                    "object": "invoice",
                    "payment_intent": {"id": "pi_s1", "object": "payment_intent", "client_secret": "pi_s1_secret"},
                },
            },
            "sk_test_123",
        )

    monkeypatch.setattr(stripe.Subscription, "create", fake_create)

    subscription = await stripe_client.create_subscription("cus_1", "price_1")

    assert subscription["id"] == "sub_1"
    assert subscription_client_secret(subscription) == "pi_s1_secret"
    assert captured["items"] == [{"price": "price_1"}]
    assert captured["payment_behavior"] == "default_incomplete"


def test_subscription_client_secret_unexpanded_invoice():
    assert subscription_client_secret({"id": "sub_2", "latest_invoice": "in_2"}) is None
    assert subscription_client_secret({"id": "sub_3", "latest_invoice": {"payment_intent": "pi_3"}}) is None


async def test_stripe_sdk_error_is_provider_error(monkeypatch, stripe_client):
    def fake_create(**params):
        raise stripe.InvalidRequestError("Amount must be at least 50 cents", param="amount")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    request = PaymentRequest(amount=Decimal("0.10"), currency="USD", order_reference="ORD-6")

    with pytest.raises(ProviderError):
        await stripe_client.initiate(request)


async def test_stripe_not_configured(stripe_client):
    stripe_client.config = stripe_client.config.model_copy(update={"secret_key": ""})
    request = PaymentRequest(amount=Decimal("1"), currency="USD", order_reference="ORD-7")

    with pytest.raises(ConfigurationError, match="STRIPE_SECRET_KEY"):
        await stripe_client.initiate(request)


async def test_paypal_order_returns_approve_link(stub, paypal_client):
    stub.on("POST", "/v1/oauth2/token", {"access_token": "pp-tok", "expires_in": 32400})
    stub.on(
        "POST",
        "/v2/checkout/orders",
        {
            "id": "5O190127TN364715T",
            "status": "CREATED",
            "links": [
                {"href": "https://api-m.sandbox.paypal.com/v2/checkout/orders/5O1", "rel": "self"},
                {"href": "https://www.sandbox.paypal.com/checkoutnow?token=5O1", "rel": "approve"},
            ],
        },
    )
    request = PaymentRequest(amount=Decimal("12.5"), currency="USD", order_reference="ORD-8")

    result = await paypal_client.initiate(request)

    assert result.provider_reference == "5O190127TN364715T"
    assert result.redirect_url == "https://www.sandbox.paypal.com/checkoutnow?token=5O1"
    unit = stub.last_json("/v2/checkout/orders")["purchase_units"][0]
    assert unit["amount"] == {"currency_code": "USD", "value": "12.50"}


def test_bank_transfer_instructions_pick_currency_account(bank_transfer_client):
    kes = bank_transfer_client.instructions(Decimal("1500"), "kes", "ORD-B1")
    usd = bank_transfer_client.instructions(Decimal("20"), "USD", "ORD-B2")

    assert kes.transfer_id.startswith("BT_1700000000000_")
    assert len(kes.transfer_id.rsplit("_", 1)[1]) == 9
    assert kes.status == "pending_confirmation"
    assert kes.currency == "KES"
    assert kes.bank_details.bank_name == "Equity Bank Kenya"
    assert kes.instructions == (
        "Please transfer 1500 KES to the account details provided. Use reference: ORD-B1"
    )
    assert usd.bank_details.swift_code == "SCBLKENX"


def test_bank_transfer_rejects_bad_input(bank_transfer_client):
    with pytest.raises(ValidationError):
        bank_transfer_client.instructions(Decimal("0"), "KES", "ORD-B3")
    with pytest.raises(ValidationError, match="Unsupported currency"):
        bank_transfer_client.instructions(Decimal("10"), "XYZ", "ORD-B3")


def test_bank_transfer_without_accounts_is_unconfigured(bank_transfer_client):
    bank_transfer_client.config = bank_transfer_client.config.model_copy(update={"accounts": []})

    with pytest.raises(ConfigurationError, match="Bank accounts not configured"):
        bank_transfer_client.instructions(Decimal("10"), "KES", "ORD-B4")


def test_bank_accounts_parsed_from_json():
    raw = '[{"bankName": "KCB Bank Kenya", "accountNumber": "1234567890", "accountName": "Creohub Limited"}]'

    accounts = parse_bank_accounts(raw)

    assert accounts[0].bank_name == "KCB Bank Kenya"
    assert parse_bank_accounts("") == []
    assert parse_bank_accounts("not json") == []


def test_bank_transfer_operator_key(bank_transfer_client):
    bank_transfer_client.check_operator_key("ops-key")
    with pytest.raises(SignatureVerificationError):
        bank_transfer_client.check_operator_key("guess")
    with pytest.raises(SignatureVerificationError):
        bank_transfer_client.check_operator_key(None)

    bank_transfer_client.config = bank_transfer_client.config.model_copy(update={"api_key": ""})
    with pytest.raises(ConfigurationError):
        bank_transfer_client.check_operator_key("ops-key")


def test_bank_transfer_status_vocabulary():
    assert map_transfer_status("Verified") == OrderPaymentStatus.COMPLETED
    assert map_transfer_status("reversed") == OrderPaymentStatus.FAILED
    assert map_transfer_status("received") == OrderPaymentStatus.PENDING
