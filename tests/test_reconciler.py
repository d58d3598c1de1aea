"""Provider notifications applied to orders: authenticity, mapping and dedupe."""

import hashlib
import hmac
import json
import time
from datetime import timedelta
from decimal import Decimal

import pytest

from creohub.common.errors import ReconciliationError
from creohub.common.state_machine import OrderPaymentStatus
from creohub.services.gateways.base import Provider
from creohub.services.orders.store import SqlOrderStore
from creohub.services.reconciler.service import MPESA_ACK, NotificationReconciler


@pytest.fixture
def store(session_factory):
    return SqlOrderStore(session_factory)


@pytest.fixture
def reconciler(store, gateway_clients, session_factory, bank_transfer_client):
    return NotificationReconciler(store, gateway_clients, session_factory, bank_transfer=bank_transfer_client)


def open_order(store, reference, provider, provider_reference, amount="1500", currency="KES"):
    store.ensure_order(reference, Decimal(amount), currency, payment_method=provider)
    store.mark_processing(reference, provider, provider_reference)


def flutterwave_event(status="successful", transaction_id=9001, order_id="ORD-F"):
    return {
        "event": "charge.completed",
        "data": {
            "id": transaction_id,
            "tx_ref": "creohub_ORD-F_1700000000000",
            "status": status,
            "amount": 25,
            "currency": "NGN",
            "meta": {"orderId": order_id},
        },
    }


def stripe_signature(payload: bytes, secret: str = "whsec_test", timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type="payment_intent.succeeded", order_reference="ORD-S") -> bytes:
    return json.dumps(
        {
            "id": "evt_1",
            "object": "event",
            "type": event_type,
            "data": {
                "object": {
                    "id": "pi_1",
                    "object": "payment_intent",
                    "status": "succeeded",
                    "latest_charge": "ch_1",
                    "metadata": {"order_reference": order_reference},
                }
            },
        }
    ).encode("utf-8")


async def test_flutterwave_webhook_with_valid_hash_completes_order(store, reconciler):
    open_order(store, "ORD-F", "flutterwave", "creohub_ORD-F_1700000000000", amount="25", currency="NGN")

    outcome = await reconciler.handle_flutterwave_webhook("s3cret-hash", flutterwave_event())

    assert outcome.http_status == 200
    assert outcome.body == {"status": "success"}
    order = store.get("ORD-F")
    assert order.payment_status == "completed"
    assert order.provider_transaction_id == "9001"


async def test_flutterwave_webhook_with_bad_hash_writes_nothing(store, reconciler):
    open_order(store, "ORD-F", "flutterwave", "creohub_ORD-F_1700000000000", amount="25", currency="NGN")

    outcome = await reconciler.handle_flutterwave_webhook("guessed", flutterwave_event())

    assert outcome.http_status == 401
    assert outcome.body == {"error": "Invalid signature"}
    assert store.get("ORD-F").payment_status == "processing"


async def test_flutterwave_webhook_rejects_underpayment(store, reconciler):
    open_order(store, "ORD-F", "flutterwave", "creohub_ORD-F_1700000000000", amount="100", currency="NGN")
    short = flutterwave_event()
    wrong_currency = flutterwave_event(transaction_id=9002)
    wrong_currency["data"].update(amount=100, currency="USD")

    outcome = await reconciler.handle_flutterwave_webhook("s3cret-hash", short)

    assert outcome.body == {"status": "success"}
    assert store.get("ORD-F").payment_status == "failed"

    open_order(store, "ORD-F2", "flutterwave", "creohub_ORD-F2_1700000000000", amount="100", currency="NGN")
    wrong_currency["data"]["meta"] = {"orderId": "ORD-F2"}
    await reconciler.handle_flutterwave_webhook("s3cret-hash", wrong_currency)

    assert store.get("ORD-F2").payment_status == "failed"


async def test_duplicate_delivery_is_skipped_and_late_failure_ignored(store, reconciler):
    open_order(store, "ORD-F", "flutterwave", "creohub_ORD-F_1700000000000", amount="25", currency="NGN")

    first = await reconciler.handle_flutterwave_webhook("s3cret-hash", flutterwave_event())
    again = await reconciler.handle_flutterwave_webhook("s3cret-hash", flutterwave_event())
    late = await reconciler.handle_flutterwave_webhook(
        "s3cret-hash", flutterwave_event(status="failed", transaction_id=9002)
    )

    assert first.change.applied
    assert again.duplicate
    assert not late.change.applied
    assert store.get("ORD-F").payment_status == "completed"


async def test_notification_for_unknown_order_is_still_acknowledged(reconciler):
    outcome = await reconciler.handle_flutterwave_webhook("s3cret-hash", flutterwave_event(order_id="ghost"))

    assert outcome.http_status == 200
    assert outcome.change is None


async def test_mpesa_callback_success_and_failure(store, reconciler):
    open_order(store, "ORD-M1", "mpesa", "ws_CO_1")
    open_order(store, "ORD-M2", "mpesa", "ws_CO_2")
    paid = {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "M-1",
                "CheckoutRequestID": "ws_CO_1",
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": 1500},
                        {"Name": "MpesaReceiptNumber", "Value": "QKL8XYZ"},
                        {"Name": "PhoneNumber", "Value": 254712345678},
                    ]
                },
            }
        }
    }
    cancelled = {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "M-2",
                "CheckoutRequestID": "ws_CO_2",
                "ResultCode": 1032,
                "ResultDesc": "Request cancelled by user",
            }
        }
    }

    ok = await reconciler.handle_mpesa_callback(paid)
    ko = await reconciler.handle_mpesa_callback(cancelled)

    assert ok.body == ko.body == MPESA_ACK
    assert store.get("ORD-M1").payment_status == "completed"
    assert store.get("ORD-M1").provider_transaction_id == "QKL8XYZ"
    assert store.get("ORD-M2").payment_status == "failed"


async def test_malformed_mpesa_callback_is_acknowledged(reconciler):
    outcome = await reconciler.handle_mpesa_callback({"Body": {}})

    assert outcome.body == MPESA_ACK
    assert outcome.change is None


async def test_pesapal_ipn_fetches_authoritative_status(stub, store, reconciler):
    open_order(store, "ORD-P", "pesapal", "T1")
    stub.on("POST", "/api/Auth/RequestToken", {"token": "tok-1"})
    stub.on(
        "GET",
        "/api/Transactions/GetTransactionStatus",
        {
            "payment_status_description": "Completed",
            "confirmation_code": "CONF-1",
            "merchant_reference": "ORD-P",
            "amount": 1500,
            "currency": "KES",
        },
    )

    outcome = await reconciler.handle_pesapal_ipn("T1", "ORD-P", "IPNCHANGE")

    assert outcome.body["status"] == 200
    assert outcome.body["orderTrackingId"] == "T1"
    assert outcome.body["paymentStatus"] == "Completed"
    assert store.get("ORD-P").payment_status == "completed"


async def test_pesapal_pending_leaves_order_processing(stub, store, reconciler):
    open_order(store, "ORD-P", "pesapal", "T1")
    stub.on("POST", "/api/Auth/RequestToken", {"token": "tok-1"})
    stub.on("GET", "/api/Transactions/GetTransactionStatus", {"payment_status_description": "Pending"})

    outcome = await reconciler.handle_pesapal_ipn("T1", "ORD-P")

    assert outcome.body["status"] == 200
    assert store.get("ORD-P").payment_status == "processing"


async def test_pesapal_callback_redirects(stub, store, reconciler):
    open_order(store, "ORD-P", "pesapal", "T1")
    stub.on("POST", "/api/Auth/RequestToken", {"token": "tok-1"})
    stub.on(
        "GET",
        "/api/Transactions/GetTransactionStatus",
        {"payment_status_description": "Failed", "merchant_reference": "ORD-P"},
    )

    outcome = await reconciler.handle_pesapal_callback("T1", "ORD-P")

    assert outcome.redirect_url == "/payment/failed?order_id=ORD-P&status=failed"
    assert store.get("ORD-P").payment_status == "failed"


async def test_flutterwave_redirect_rejects_underpayment(stub, store, reconciler):
    """A `successful` transaction for less than the order total fails the order."""

    open_order(store, "ORD-F", "flutterwave", "creohub_ORD-F_1700000000000", amount="25", currency="NGN")
    stub.on(
        "GET",
        "/transactions/9001/verify",
        {
            "status": "success",
            "data": {
                "id": 9001,
                "tx_ref": "creohub_ORD-F_1700000000000",
                "status": "successful",
                "amount": 5,
                "currency": "NGN",
                "meta": {"orderId": "ORD-F"},
            },
        },
    )

    outcome = await reconciler.handle_flutterwave_redirect("successful", "creohub_ORD-F_1700000000000", "9001")

    assert outcome.redirect_url.startswith("/payment/failed")
    assert store.get("ORD-F").payment_status == "failed"


async def test_stripe_signed_webhook_completes_order(store, reconciler):
    open_order(store, "ORD-S", "stripe", "pi_1", amount="10", currency="USD")
    payload = stripe_event()

    outcome = await reconciler.handle_stripe_webhook(payload, stripe_signature(payload))

    assert outcome.http_status == 200
    assert outcome.body == {"received": True}
    assert store.get("ORD-S").payment_status == "completed"
    assert store.get("ORD-S").provider_transaction_id == "ch_1"


async def test_stripe_bad_signature_is_rejected(store, reconciler):
    open_order(store, "ORD-S", "stripe", "pi_1", amount="10", currency="USD")
    payload = stripe_event()

    outcome = await reconciler.handle_stripe_webhook(payload, stripe_signature(payload, secret="whsec_other"))
    missing = await reconciler.handle_stripe_webhook(payload, None)

    assert outcome.http_status == missing.http_status == 401
    assert store.get("ORD-S").payment_status == "processing"


async def test_stripe_malformed_intent_is_still_acknowledged(store, reconciler):
    open_order(store, "ORD-S", "stripe", "pi_1", amount="10", currency="USD")
    payload = json.dumps(
        {
            "id": "evt_2",
            "object": "event",
            "type": "payment_intent.succeeded",
            "data": {"object": {"object": "payment_intent", "metadata": {"order_reference": "ORD-S"}}},
        }
    ).encode("utf-8")

    outcome = await reconciler.handle_stripe_webhook(payload, stripe_signature(payload))

    assert outcome.http_status == 200
    assert outcome.body == {"received": True}
    assert store.get("ORD-S").payment_status == "processing"


async def test_stripe_unrelated_event_is_acknowledged(reconciler):
    payload = stripe_event(event_type="customer.subscription.created")

    outcome = await reconciler.handle_stripe_webhook(payload, stripe_signature(payload))

    assert outcome.body == {"received": True}
    assert outcome.change is None


async def test_paypal_capture_completes_order(stub, store, reconciler):
    open_order(store, "ORD-PP", "paypal", "5O1", amount="12.50", currency="USD")
    stub.on("POST", "/v1/oauth2/token", {"access_token": "pp-tok", "expires_in": 32400})
    stub.on(
        "POST",
        "/v2/checkout/orders/5O1/capture",
        {
            "id": "5O1",
            "status": "COMPLETED",
            "purchase_units": [{"reference_id": "ORD-PP", "payments": {"captures": [{"id": "CAP-1"}]}}],
        },
    )

    verification, outcome = await reconciler.confirm_paypal_capture("5O1")

    assert verification.provider == Provider.PAYPAL
    assert outcome.change.applied
    assert store.get("ORD-PP").payment_status == "completed"
    assert store.get("ORD-PP").provider_transaction_id == "CAP-1"


async def test_sweep_rechecks_stale_processing_orders(stub, store, reconciler):
    open_order(store, "ORD-P", "pesapal", "T1")
    stub.on("POST", "/api/Auth/RequestToken", {"token": "tok-1"})
    stub.on(
        "GET",
        "/api/Transactions/GetTransactionStatus",
        {"payment_status_description": "Completed", "confirmation_code": "CONF-2"},
    )

    summary = await reconciler.sweep_stale(timedelta(minutes=-1))

    assert summary["checked"] == 1
    assert summary["completed"] == 1
    assert store.get("ORD-P").payment_status == "completed"


def open_bank_transfer(store, reference="ORD-BT", transfer_id="BT_1700000000000_abc123xyz", amount="1500"):
    store.ensure_order(reference, Decimal(amount), "KES", payment_method="bank_transfer")
    store.attach_provider_reference(reference, "bank_transfer", transfer_id)


def test_operator_confirms_bank_transfer_once(store, reconciler):
    open_bank_transfer(store)

    reference, change = reconciler.confirm_bank_transfer("BT_1700000000000_abc123xyz", "EQ-778812")
    again_reference, again = reconciler.confirm_bank_transfer("BT_1700000000000_abc123xyz", "EQ-778812")

    assert reference == again_reference == "ORD-BT"
    assert change.previous == OrderPaymentStatus.PENDING
    assert change.current == OrderPaymentStatus.COMPLETED
    assert again is None
    order = store.get("ORD-BT")
    assert order.payment_status == "completed"
    assert order.provider_transaction_id == "EQ-778812"


def test_unknown_bank_transfer_is_reconciliation_error(store, reconciler):
    open_order(store, "ORD-M1", "mpesa", "ws_CO_1")

    with pytest.raises(ReconciliationError):
        reconciler.confirm_bank_transfer("BT_missing", "EQ-1")
    with pytest.raises(ReconciliationError):
        reconciler.confirm_bank_transfer("ws_CO_1", "EQ-1")


async def test_bank_transfer_webhook_checks_secret_and_amount(store, reconciler):
    open_bank_transfer(store)
    open_bank_transfer(store, reference="ORD-BT2", transfer_id="BT_2")
    paid = {
        "transferId": "BT_1700000000000_abc123xyz",
        "bankReference": "EQ-1",
        "amount": 1500,
        "currency": "KES",
        "status": "completed",
    }
    short = {"transferId": "BT_2", "bankReference": "EQ-2", "amount": 100, "currency": "KES", "status": "completed"}

    rejected = await reconciler.handle_bank_transfer_webhook("wrong", paid)
    assert rejected.http_status == 401
    assert store.get("ORD-BT").payment_status == "pending"

    outcome = await reconciler.handle_bank_transfer_webhook("bt-secret", paid)
    await reconciler.handle_bank_transfer_webhook("bt-secret", short)

    assert outcome.body == {"status": "processed", "transferId": "BT_1700000000000_abc123xyz", "amount": 1500}
    assert store.get("ORD-BT").payment_status == "completed"
    assert store.get("ORD-BT2").payment_status == "failed"


async def test_bank_transfer_webhook_acknowledges_noise(store, reconciler):
    open_bank_transfer(store)

    malformed = await reconciler.handle_bank_transfer_webhook("bt-secret", ["nope"])
    received = await reconciler.handle_bank_transfer_webhook(
        "bt-secret", {"transferId": "BT_1700000000000_abc123xyz", "status": "received"}
    )
    unknown = await reconciler.handle_bank_transfer_webhook(
        "bt-secret", {"transferId": "BT_ghost", "bankReference": "X", "status": "completed"}
    )

    assert malformed.http_status == received.http_status == unknown.http_status == 200
    assert store.get("ORD-BT").payment_status == "pending"
