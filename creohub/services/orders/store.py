"""Order store contract used by the payment core, plus its SQLAlchemy implementation."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from creohub.common.logging import logger
from creohub.common.metrics import order_status_transitions_total
from creohub.common.state_machine import OrderPaymentStatus, is_terminal, validate_transition
from creohub.services.orders.models import Order, OrderStatusTimeline


MAX_CONFLICT_RETRIES = 3


class StatusChange(BaseModel):
    """Result of one `apply_status` call."""

    order_reference: str
    previous: OrderPaymentStatus
    current: OrderPaymentStatus
    applied: bool


class OrderStore(Protocol):
    """Read an order by reference; write a status transition plus transaction id."""

    def get(self, order_reference: str) -> Order | None: ...

    def find_by_provider_reference(self, provider_reference: str) -> Order | None: ...

    def apply_status(
        self,
        order_reference: str,
        status: OrderPaymentStatus,
        provider_transaction_id: str | None = None,
        reason: str = "",
    ) -> StatusChange | None: ...


class SqlOrderStore:
    """`OrderStore` over the `orders` table with optimistic concurrency."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def get(self, order_reference: str) -> Order | None:
        with self.session_factory() as db:
            return db.get(Order, order_reference)

    def find_by_provider_reference(self, provider_reference: str) -> Order | None:
        with self.session_factory() as db:
            return db.execute(
                select(Order).where(Order.provider_reference == provider_reference)
            ).scalar_one_or_none()

    def resolve(self, reference: str) -> Order | None:
        """Look an order up by our reference first, then by the provider's."""

        return self.get(reference) or self.find_by_provider_reference(reference)

    def ensure_order(
        self,
        order_reference: str,
        amount: Decimal,
        currency: str,
        payment_method: str | None = None,
        customer_email: str | None = None,
    ) -> Order:
        """Create the order row in `pending` unless it already exists."""

        with self.session_factory() as db:
            existing = db.get(Order, order_reference)
            if existing:
                return existing
            order = Order(
                order_reference=order_reference,
                amount=amount,
                currency=currency.upper(),
                customer_email=customer_email,
                payment_method=payment_method,
                payment_status=OrderPaymentStatus.PENDING.value,
                state_version=0,
            )
            db.add(order)
            db.add(
                OrderStatusTimeline(
                    order_reference=order_reference,
                    from_state=None,
                    to_state=OrderPaymentStatus.PENDING.value,
                    reason="order_created",
                )
            )
            try:
                db.commit()
            except IntegrityError:
                # A concurrent initiation created the row first.
                db.rollback()
                existing = db.get(Order, order_reference)
                if existing is None:
                    raise
                logger.info("order_create_raced order_reference=%s", order_reference)
                return existing
            return order

    def attach_provider_reference(self, order_reference: str, provider: str, provider_reference: str) -> None:
        with self.session_factory() as db:
            db.execute(
                update(Order)
                .where(Order.order_reference == order_reference)
                .values(provider=provider, provider_reference=provider_reference)
            )
            db.commit()

    def mark_processing(self, order_reference: str, provider: str, provider_reference: str) -> StatusChange | None:
        """Record the provider reference and optimistically move to `processing`."""

        self.attach_provider_reference(order_reference, provider, provider_reference)
        return self.apply_status(order_reference, OrderPaymentStatus.PROCESSING, reason=f"{provider}_accepted")

    def apply_status(
        self,
        order_reference: str,
        status: OrderPaymentStatus,
        provider_transaction_id: str | None = None,
        reason: str = "",
    ) -> StatusChange | None:
        """Apply one validated transition; terminal and same-state writes are no-ops.

        Writes are guarded by `(order_reference, payment_status, state_version)`;
        a lost race re-reads the row and tries again.
        """

        for _ in range(MAX_CONFLICT_RETRIES):
            with self.session_factory() as db:
                order = db.get(Order, order_reference)
                if order is None:
                    return None
                current = OrderPaymentStatus(order.payment_status)
                if current == status or is_terminal(current) or status == OrderPaymentStatus.PENDING:
                    if is_terminal(current) and current != status:
                        logger.info(
                            "order_status_unchanged order_reference=%s terminal=%s requested=%s",
                            order_reference,
                            current.value,
                            status.value,
                        )
                    return StatusChange(
                        order_reference=order_reference, previous=current, current=current, applied=False
                    )
                validate_transition(current.value, status.value)

                values = {
                    "payment_status": status.value,
                    "state_version": order.state_version + 1,
                    "updated_at": datetime.now(timezone.utc),
                }
                if provider_transaction_id:
                    values["provider_transaction_id"] = provider_transaction_id
                result = db.execute(
                    update(Order)
                    .where(
                        Order.order_reference == order_reference,
                        Order.payment_status == current.value,
                        Order.state_version == order.state_version,
                    )
                    .values(**values)
                )
                if result.rowcount != 1:
                    db.rollback()
                    logger.warning("order_status_conflict order_reference=%s retrying", order_reference)
                    continue
                db.add(
                    OrderStatusTimeline(
                        order_reference=order_reference,
                        from_state=current.value,
                        to_state=status.value,
                        reason=reason or "status_update",
                        provider_transaction_id=provider_transaction_id,
                    )
                )
                db.commit()
                order_status_transitions_total.labels(to_state=status.value).inc()
                logger.info(
                    "order_status_changed order_reference=%s %s->%s",
                    order_reference,
                    current.value,
                    status.value,
                )
                return StatusChange(order_reference=order_reference, previous=current, current=status, applied=True)
        raise RuntimeError(f"optimistic concurrency conflict for order {order_reference}")

    def stale_processing(self, older_than: timedelta, limit: int = 100) -> list[Order]:
        """Orders still `processing` after `older_than`; inputs for the reconcile sweep."""

        cutoff = datetime.now(timezone.utc) - older_than
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Order)
                    .where(
                        Order.payment_status == OrderPaymentStatus.PROCESSING.value,
                        Order.updated_at < cutoff,
                    )
                    .order_by(Order.updated_at)
                    .limit(limit)
                ).scalars()
            )
