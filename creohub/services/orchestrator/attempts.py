"""Claim/record/release helpers guarding one submission per order reference.

Modeled on the outbox claim cycle: a row is claimed as `SUBMITTING` before the
network call, then marked `ACCEPTED` or `REJECTED`. A `SUBMITTING` row older than
the stale bound is treated as abandoned and may be claimed again.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from creohub.common.errors import DuplicateSubmissionError
from creohub.common.logging import logger
from creohub.services.gateways.base import PaymentResult
from creohub.services.orchestrator.models import PaymentAttempt


SUBMITTING = "SUBMITTING"
ACCEPTED = "ACCEPTED"
REJECTED = "REJECTED"


class AttemptLedger:
    def __init__(self, session_factory, stale_after_seconds: int = 120) -> None:
        self.session_factory = session_factory
        self.stale_after = timedelta(seconds=stale_after_seconds)

    def claim(self, order_reference: str, payment_method: str, provider: str) -> PaymentResult | None:
        """Claim the reference for a new submission.

        Returns the stored result when the reference was already accepted, so a
        retried initiation is a no-op; raises `DuplicateSubmissionError` while
        another submission is in flight.
        """

        with self.session_factory() as db:
            attempt = db.get(PaymentAttempt, order_reference)
            if attempt is None:
                db.add(
                    PaymentAttempt(
                        order_reference=order_reference,
                        payment_method=payment_method,
                        provider=provider,
                        status=SUBMITTING,
                        attempt_count=1,
                    )
                )
                try:
                    db.commit()
                except IntegrityError as exc:
                    db.rollback()
                    raise DuplicateSubmissionError(
                        f"submission already claimed for {order_reference}", provider=provider
                    ) from exc
                return None

            if attempt.status == ACCEPTED and attempt.result:
                logger.info(
                    "duplicate_initiation_replayed order_reference=%s provider=%s",
                    order_reference,
                    attempt.provider,
                )
                return PaymentResult.model_validate(attempt.result)

            stale_before = datetime.now(timezone.utc) - self.stale_after
            result = db.execute(
                update(PaymentAttempt)
                .where(
                    PaymentAttempt.order_reference == order_reference,
                    PaymentAttempt.attempt_count == attempt.attempt_count,
                    or_(
                        PaymentAttempt.status == REJECTED,
                        (PaymentAttempt.status == SUBMITTING) & (PaymentAttempt.updated_at < stale_before),
                    ),
                )
                .values(
                    status=SUBMITTING,
                    attempt_count=attempt.attempt_count + 1,
                    payment_method=payment_method,
                    provider=provider,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise DuplicateSubmissionError(
                    f"submission in progress for {order_reference}", provider=attempt.provider
                )
            db.commit()
            return None

    def record(self, order_reference: str, result: PaymentResult) -> None:
        with self.session_factory() as db:
            db.execute(
                update(PaymentAttempt)
                .where(PaymentAttempt.order_reference == order_reference)
                .values(
                    status=ACCEPTED if result.success else REJECTED,
                    provider_reference=result.provider_reference or None,
                    result=result.model_dump(mode="json", exclude={"raw_provider_response"}),
                    updated_at=datetime.now(timezone.utc),
                )
            )
            db.commit()

    def release(self, order_reference: str) -> None:
        """Mark a claimed attempt rejected after an exception so it can be retried."""

        with self.session_factory() as db:
            db.execute(
                update(PaymentAttempt)
                .where(PaymentAttempt.order_reference == order_reference, PaymentAttempt.status == SUBMITTING)
                .values(status=REJECTED, updated_at=datetime.now(timezone.utc))
            )
            db.commit()
