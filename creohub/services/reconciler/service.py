"""Asynchronous payment notifications mapped back onto orders.

Each handler verifies the provider's authenticity signal where one exists,
parses the provider payload, maps the provider status vocabulary onto
`OrderPaymentStatus`, applies it through the order store, and returns the
acknowledgement shape that provider expects. Processing failures are logged and
still acknowledged so providers do not retry into a notification storm; only a
failed authenticity check produces a 401.
"""

from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from creohub.common.errors import (
    ConfigurationError,
    PaymentError,
    ReconciliationError,
    SignatureVerificationError,
)
from creohub.common.logging import logger, order_reference_ctx, provider_ctx
from creohub.common.metrics import duplicate_notifications_skipped_total, webhook_notifications_total
from creohub.common.state_machine import TERMINAL_STATES, OrderPaymentStatus
from creohub.services.gateways.bank_transfer import BankTransferClient, map_transfer_status
from creohub.services.gateways.base import GatewayClient, Provider, VerificationResult
from creohub.services.gateways.flutterwave import FlutterwaveClient, map_transaction_status
from creohub.services.gateways.mpesa import map_result_code
from creohub.services.gateways.paypal import PaypalClient
from creohub.services.gateways.stripe_gateway import StripeClient
from creohub.services.orders.store import SqlOrderStore, StatusChange
from creohub.services.reconciler.models import ProcessedNotification


MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}
STRIPE_INTENT_EVENTS = {
    "payment_intent.succeeded": OrderPaymentStatus.COMPLETED,
    "payment_intent.payment_failed": OrderPaymentStatus.FAILED,
    "payment_intent.canceled": OrderPaymentStatus.FAILED,
}
SUCCESS_PAGE = "/payment/success"
FAILED_PAGE = "/payment/failed"


class NotificationOutcome(BaseModel):
    """What the HTTP layer sends back to the provider (or the payer's browser)."""

    http_status: int = 200
    body: dict[str, Any] = {}
    redirect_url: str | None = None
    change: StatusChange | None = None
    duplicate: bool = False


class NotificationReconciler:
    """Applies provider notifications to the order store, idempotently."""

    def __init__(
        self,
        store: SqlOrderStore,
        clients: Mapping[Provider, GatewayClient],
        session_factory,
        bank_transfer: BankTransferClient | None = None,
    ) -> None:
        self.store = store
        self.clients = dict(clients)
        self.session_factory = session_factory
        self.bank_transfer = bank_transfer

    def _processed(self, provider: Provider, key: str) -> bool:
        with self.session_factory() as db:
            return (
                db.execute(
                    select(ProcessedNotification).where(
                        ProcessedNotification.provider == provider.value,
                        ProcessedNotification.provider_transaction_id == key,
                    )
                ).scalar_one_or_none()
                is not None
            )

    def _mark_processed(self, provider: Provider, key: str, order_reference: str, status: OrderPaymentStatus) -> None:
        with self.session_factory() as db:
            db.add(
                ProcessedNotification(
                    provider=provider.value,
                    provider_transaction_id=key,
                    order_reference=order_reference,
                    status=status.value,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # A concurrent delivery recorded it first.
                db.rollback()

    def apply(
        self,
        provider: Provider,
        status: OrderPaymentStatus,
        *,
        order_reference: str | None = None,
        provider_reference: str | None = None,
        provider_transaction_id: str | None = None,
        dedupe_key: str | None = None,
        reason: str = "",
    ) -> StatusChange | None:
        """Resolve the order and write the mapped status.

        Returns `None` when the notification was already processed. Raises
        `ReconciliationError` when no order matches.
        """

        key = dedupe_key or provider_transaction_id
        if key and self._processed(provider, key):
            duplicate_notifications_skipped_total.labels(provider=provider.value).inc()
            logger.info("duplicate notification skipped provider=%s key=%s", provider.value, key)
            return None

        order = self.store.get(order_reference) if order_reference else None
        if order is None and provider_reference:
            order = self.store.find_by_provider_reference(provider_reference)
        if order is None:
            raise ReconciliationError(
                f"no order for order_reference={order_reference} provider_reference={provider_reference}",
                provider=provider.value,
            )

        order_reference_ctx.set(order.order_reference)
        change = self.store.apply_status(
            order.order_reference,
            status,
            provider_transaction_id=provider_transaction_id,
            reason=reason or f"{provider.value}_notification",
        )
        if change is None:
            raise ReconciliationError(f"order {order.order_reference} disappeared", provider=provider.value)
        if key and status in TERMINAL_STATES:
            self._mark_processed(provider, key, order.order_reference, status)
        return change

    def _apply_safely(self, provider: Provider, status: OrderPaymentStatus, **kwargs: Any) -> NotificationOutcome:
        """`apply` that never raises; the outcome is recorded in metrics and logs."""

        provider_ctx.set(provider.value)
        try:
            change = self.apply(provider, status, **kwargs)
        except ReconciliationError as exc:
            webhook_notifications_total.labels(provider=provider.value, outcome="unmatched").inc()
            logger.error("reconciliation_failed provider=%s error=%s", provider.value, exc)
            return NotificationOutcome()
        except Exception:
            webhook_notifications_total.labels(provider=provider.value, outcome="error").inc()
            logger.exception("notification_processing_failed provider=%s", provider.value)
            return NotificationOutcome()
        if change is None:
            webhook_notifications_total.labels(provider=provider.value, outcome="duplicate").inc()
            return NotificationOutcome(duplicate=True)
        webhook_notifications_total.labels(
            provider=provider.value,
            outcome="applied" if change.applied else "unchanged",
        ).inc()
        return NotificationOutcome(change=change)

    def _malformed(self, provider: Provider, payload: Any) -> None:
        webhook_notifications_total.labels(provider=provider.value, outcome="malformed").inc()
        logger.warning("notification_malformed provider=%s payload=%s", provider.value, payload)

    async def handle_mpesa_callback(self, payload: Any) -> NotificationOutcome:
        """STK push result callback. Unsigned: accepted as delivered."""

        try:
            callback = payload["Body"]["stkCallback"]
            checkout_request_id = callback["CheckoutRequestID"]
            result_code = callback["ResultCode"]
        except (KeyError, TypeError):
            self._malformed(Provider.MPESA, payload)
            return NotificationOutcome(body=MPESA_ACK)

        items = (callback.get("CallbackMetadata") or {}).get("Item") or []
        metadata = {item.get("Name"): item.get("Value") for item in items if isinstance(item, dict)}
        receipt = metadata.get("MpesaReceiptNumber")
        outcome = self._apply_safely(
            Provider.MPESA,
            map_result_code(result_code),
            provider_reference=checkout_request_id,
            provider_transaction_id=str(receipt) if receipt else None,
            dedupe_key=str(receipt) if receipt else checkout_request_id,
            reason=f"mpesa_result_{result_code}",
        )
        return outcome.model_copy(update={"body": MPESA_ACK})

    async def _pesapal_status(
        self, order_tracking_id: str, merchant_reference: str | None
    ) -> tuple[VerificationResult | None, NotificationOutcome]:
        """Fetch the authoritative status from Pesapal and apply it."""

        try:
            verification = await self.clients[Provider.PESAPAL].verify(order_tracking_id)
        except PaymentError as exc:
            webhook_notifications_total.labels(provider=Provider.PESAPAL.value, outcome="error").inc()
            logger.error("pesapal_status_fetch_failed tracking_id=%s error=%s", order_tracking_id, exc)
            return None, NotificationOutcome()
        outcome = self._apply_safely(
            Provider.PESAPAL,
            verification.status,
            order_reference=merchant_reference or verification.order_reference,
            provider_reference=order_tracking_id,
            provider_transaction_id=verification.provider_transaction_id,
            dedupe_key=verification.provider_transaction_id or order_tracking_id,
            reason=f"pesapal_{verification.provider_status or 'unknown'}",
        )
        return verification, outcome

    async def handle_pesapal_ipn(
        self,
        order_tracking_id: str | None,
        merchant_reference: str | None,
        notification_type: str | None = None,
    ) -> NotificationOutcome:
        """IPN carries only ids; the status itself is fetched from the API."""

        body: dict[str, Any] = {
            "orderNotificationType": notification_type or "IPNCHANGE",
            "orderTrackingId": order_tracking_id,
            "orderMerchantReference": merchant_reference,
        }
        if not order_tracking_id:
            self._malformed(Provider.PESAPAL, body)
            return NotificationOutcome(body={**body, "status": 500, "message": "Invalid IPN data"})

        verification, outcome = await self._pesapal_status(order_tracking_id, merchant_reference)
        if verification is None:
            return outcome.model_copy(update={"body": {**body, "status": 500, "message": "IPN processing failed"}})
        return outcome.model_copy(
            update={
                "body": {
                    **body,
                    "status": 200,
                    "message": "IPN processed successfully",
                    "paymentStatus": verification.provider_status,
                }
            }
        )

    async def handle_pesapal_callback(
        self, order_tracking_id: str | None, merchant_reference: str | None
    ) -> NotificationOutcome:
        """Payer's browser returning from Pesapal; answer with a redirect."""

        if not order_tracking_id:
            return NotificationOutcome(redirect_url=f"{FAILED_PAGE}?error=invalid_callback")
        verification, outcome = await self._pesapal_status(order_tracking_id, merchant_reference)
        if verification is None:
            return outcome.model_copy(update={"redirect_url": f"{FAILED_PAGE}?error=processing_failed"})
        reference = merchant_reference or verification.order_reference or ""
        if verification.status == OrderPaymentStatus.COMPLETED:
            redirect = f"{SUCCESS_PAGE}?order_id={reference}&status=success"
        else:
            redirect = f"{FAILED_PAGE}?order_id={reference}&status=failed"
        return outcome.model_copy(update={"redirect_url": redirect})

    async def handle_flutterwave_webhook(self, verif_hash: str | None, payload: Any) -> NotificationOutcome:
        """Signed webhook; accepts the v3 `data` envelope and the legacy flat shape."""

        client: FlutterwaveClient = self.clients[Provider.FLUTTERWAVE]
        if not client.verify_webhook_hash(verif_hash):
            webhook_notifications_total.labels(provider=Provider.FLUTTERWAVE.value, outcome="rejected").inc()
            logger.warning("flutterwave_webhook_rejected reason=verif_hash_mismatch")
            return NotificationOutcome(http_status=401, body={"error": "Invalid signature"})

        data = payload.get("data") if isinstance(payload, dict) and isinstance(payload.get("data"), dict) else payload
        if not isinstance(data, dict):
            self._malformed(Provider.FLUTTERWAVE, payload)
            return NotificationOutcome(body={"status": "success"})

        meta = data.get("meta") or data.get("meta_data") or {}
        tx_ref = data.get("tx_ref") or data.get("txRef")
        transaction_id = data.get("id")
        order_reference = meta.get("orderId") if isinstance(meta, dict) else None
        mapped = map_transaction_status(data.get("status"))
        if mapped == OrderPaymentStatus.COMPLETED:
            order = self.store.get(order_reference) if order_reference else None
            if order is None and tx_ref:
                order = self.store.find_by_provider_reference(tx_ref)
            amount = _parse_amount(data.get("amount"))
            currency = data.get("currency")
            if order is not None and not _amount_covers(order, amount, currency):
                logger.warning(
                    "flutterwave_amount_mismatch order_reference=%s expected=%s %s got=%s %s",
                    order.order_reference,
                    order.amount,
                    order.currency,
                    amount,
                    currency,
                )
                mapped = OrderPaymentStatus.FAILED
        outcome = self._apply_safely(
            Provider.FLUTTERWAVE,
            mapped,
            order_reference=order_reference,
            provider_reference=tx_ref,
            provider_transaction_id=str(transaction_id) if transaction_id is not None else None,
            dedupe_key=str(transaction_id) if transaction_id is not None else tx_ref,
            reason=f"flutterwave_{data.get('status') or 'unknown'}",
        )
        return outcome.model_copy(update={"body": {"status": "success"}})

    async def handle_flutterwave_redirect(
        self, status: str | None, tx_ref: str | None, transaction_id: str | None
    ) -> NotificationOutcome:
        """Browser redirect after checkout; query params are re-verified against the API."""

        failed = NotificationOutcome(redirect_url=f"{FAILED_PAGE}?status={status or 'failed'}")
        if not transaction_id:
            return failed
        try:
            verification = await self.clients[Provider.FLUTTERWAVE].verify(transaction_id)
        except PaymentError as exc:
            logger.error("flutterwave_verify_failed transaction_id=%s error=%s", transaction_id, exc)
            return failed
        if tx_ref and verification.provider_reference != tx_ref:
            logger.warning(
                "flutterwave_redirect_mismatch tx_ref=%s verified_tx_ref=%s",
                tx_ref,
                verification.provider_reference,
            )
            return failed

        mapped = verification.status
        order = self.store.get(verification.order_reference) if verification.order_reference else None
        if order is None:
            order = self.store.find_by_provider_reference(verification.provider_reference)
        if mapped == OrderPaymentStatus.COMPLETED and order is not None and not _amount_covers(order, verification.amount, verification.currency):
            logger.warning(
                "flutterwave_amount_mismatch order_reference=%s expected=%s %s got=%s %s",
                order.order_reference,
                order.amount,
                order.currency,
                verification.amount,
                verification.currency,
            )
            mapped = OrderPaymentStatus.FAILED

        outcome = self._apply_safely(
            Provider.FLUTTERWAVE,
            mapped,
            order_reference=order.order_reference if order else verification.order_reference,
            provider_reference=verification.provider_reference,
            provider_transaction_id=verification.provider_transaction_id,
            reason=f"flutterwave_verified_{verification.provider_status or 'unknown'}",
        )
        reference = order.order_reference if order else (verification.order_reference or "")
        if mapped == OrderPaymentStatus.COMPLETED:
            redirect = f"{SUCCESS_PAGE}?order_id={reference}&status=success"
        else:
            redirect = f"{FAILED_PAGE}?order_id={reference}&status={verification.provider_status or 'failed'}"
        return outcome.model_copy(update={"redirect_url": redirect})

    async def handle_stripe_webhook(self, payload: bytes, signature: str | None) -> NotificationOutcome:
        client: StripeClient = self.clients[Provider.STRIPE]
        try:
            event = client.construct_event(payload, signature)
        except (SignatureVerificationError, ConfigurationError) as exc:
            webhook_notifications_total.labels(provider=Provider.STRIPE.value, outcome="rejected").inc()
            logger.warning("stripe_webhook_rejected error=%s", exc)
            return NotificationOutcome(http_status=401, body={"error": "Invalid signature"})

        ack = NotificationOutcome(body={"received": True})
        try:
            event_type = event["type"]
            status = STRIPE_INTENT_EVENTS.get(event_type)
        except (KeyError, TypeError):
            self._malformed(Provider.STRIPE, event)
            return ack

        if status is None:
            # Subscription lifecycle and other events are acknowledged without an order write.
            webhook_notifications_total.labels(provider=Provider.STRIPE.value, outcome="ignored").inc()
            logger.info("stripe_event_acknowledged type=%s id=%s", event_type, event.get("id"))
            return ack

        try:
            intent = event["data"]["object"]
            intent_id = intent["id"]
            order_reference = (intent.get("metadata") or {}).get("order_reference")
            charge_id = intent.get("latest_charge") or intent_id
        except (KeyError, TypeError, AttributeError):
            self._malformed(Provider.STRIPE, event)
            return ack

        outcome = self._apply_safely(
            Provider.STRIPE,
            status,
            order_reference=order_reference,
            provider_reference=intent_id,
            provider_transaction_id=charge_id,
            dedupe_key=intent_id,
            reason=event_type.replace(".", "_"),
        )
        return outcome.model_copy(update={"body": ack.body})

    def confirm_bank_transfer(self, transfer_id: str, bank_reference: str) -> tuple[str, StatusChange | None]:
        """Operator confirmation that a manual transfer arrived.

        Returns the order reference and the change; `None` when this bank
        reference was already confirmed. Raises `ReconciliationError` for an
        unknown transfer id.
        """

        order = self.store.find_by_provider_reference(transfer_id)
        if order is None or order.provider != Provider.BANK_TRANSFER.value:
            raise ReconciliationError(f"no bank transfer {transfer_id}", provider=Provider.BANK_TRANSFER.value)
        change = self.apply(
            Provider.BANK_TRANSFER,
            OrderPaymentStatus.COMPLETED,
            order_reference=order.order_reference,
            provider_transaction_id=bank_reference,
            dedupe_key=bank_reference,
            reason="bank_transfer_confirmed",
        )
        logger.info(
            "bank_transfer_confirmed transfer_id=%s order_reference=%s applied=%s",
            transfer_id,
            order.order_reference,
            bool(change and change.applied),
        )
        return order.order_reference, change

    async def handle_bank_transfer_webhook(self, secret: str | None, payload: Any) -> NotificationOutcome:
        """Bank-side notification authenticated by a shared secret header."""

        client = self.bank_transfer
        if client is None or not client.verify_webhook_secret(secret):
            webhook_notifications_total.labels(provider=Provider.BANK_TRANSFER.value, outcome="rejected").inc()
            logger.warning("bank_transfer_webhook_rejected reason=secret_mismatch")
            return NotificationOutcome(http_status=401, body={"error": "Invalid signature"})

        if not isinstance(payload, dict) or not payload.get("transferId"):
            self._malformed(Provider.BANK_TRANSFER, payload)
            return NotificationOutcome(body={"status": "processed"})

        transfer_id = str(payload["transferId"])
        bank_reference = payload.get("bankReference")
        ack = NotificationOutcome(
            body={"status": "processed", "transferId": transfer_id, "amount": payload.get("amount")}
        )
        mapped = map_transfer_status(payload.get("status"))
        if mapped == OrderPaymentStatus.PENDING:
            webhook_notifications_total.labels(provider=Provider.BANK_TRANSFER.value, outcome="ignored").inc()
            return ack

        order = self.store.find_by_provider_reference(transfer_id)
        amount = _parse_amount(payload.get("amount"))
        currency = payload.get("currency")
        if mapped == OrderPaymentStatus.COMPLETED and order is not None and not _amount_covers(order, amount, currency):
            logger.warning(
                "bank_transfer_amount_mismatch order_reference=%s expected=%s %s got=%s %s",
                order.order_reference,
                order.amount,
                order.currency,
                amount,
                currency,
            )
            mapped = OrderPaymentStatus.FAILED
        outcome = self._apply_safely(
            Provider.BANK_TRANSFER,
            mapped,
            provider_reference=transfer_id,
            provider_transaction_id=str(bank_reference) if bank_reference else None,
            dedupe_key=str(bank_reference) if bank_reference else transfer_id,
            reason=f"bank_transfer_{payload.get('status')}",
        )
        return outcome.model_copy(update={"body": ack.body})

    def record_verification(self, verification: VerificationResult) -> NotificationOutcome:
        """Apply the result of a status poll the same way a notification would be."""

        return self._apply_safely(
            verification.provider,
            verification.status,
            order_reference=verification.order_reference,
            provider_reference=verification.provider_reference,
            provider_transaction_id=verification.provider_transaction_id,
            reason=f"{verification.provider.value}_status_check",
        )

    async def confirm_paypal_capture(self, order_id: str) -> tuple[VerificationResult, NotificationOutcome]:
        """Capture an approved PayPal order; the provider confirms inline.

        Capture errors propagate to the caller. Order-store problems after a
        successful capture are logged, never reported as a failed capture.
        """

        client: PaypalClient = self.clients[Provider.PAYPAL]
        verification = await client.capture(order_id)
        outcome = self._apply_safely(
            Provider.PAYPAL,
            verification.status,
            order_reference=verification.order_reference,
            provider_reference=order_id,
            provider_transaction_id=verification.provider_transaction_id,
            reason=f"paypal_capture_{verification.provider_status.lower() or 'unknown'}",
        )
        return verification, outcome

    async def sweep_stale(self, older_than: timedelta, limit: int = 100) -> dict[str, int]:
        """Re-verify orders stuck in `processing` when no notification arrived."""

        summary = {"checked": 0, "completed": 0, "failed": 0, "unchanged": 0, "errors": 0}
        for order in self.store.stale_processing(older_than, limit=limit):
            summary["checked"] += 1
            if not order.provider or not order.provider_reference:
                summary["unchanged"] += 1
                continue
            try:
                verification = await self.clients[Provider(order.provider)].verify(order.provider_reference)
                change = self.apply(
                    Provider(order.provider),
                    verification.status,
                    order_reference=order.order_reference,
                    provider_transaction_id=verification.provider_transaction_id,
                    reason="stale_sweep",
                )
            except (PaymentError, KeyError, ValueError) as exc:
                summary["errors"] += 1
                logger.error("stale_sweep_failed order_reference=%s error=%s", order.order_reference, exc)
                continue
            if change is not None and change.applied:
                summary[change.current.value] += 1
            else:
                summary["unchanged"] += 1
        logger.info("stale_sweep_finished summary=%s", summary)
        return summary


def _parse_amount(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _amount_covers(order, amount: Decimal | None, currency: str | None) -> bool:
    if amount is None or not currency:
        return True
    if str(currency).upper() != (order.currency or "").upper():
        return False
    return amount >= Decimal(order.amount)
