"""Reconciler persistence: dedupe records for provider notifications."""

from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from creohub.common.db import Base


class ProcessedNotification(Base):
    """A terminal notification already applied for `(provider, provider_transaction_id)`."""

    __tablename__ = "processed_notifications"
    __table_args__ = (
        UniqueConstraint("provider", "provider_transaction_id", name="uq_processed_notification"),
    )

    provider: Mapped[str] = mapped_column(String, primary_key=True)
    provider_transaction_id: Mapped[str] = mapped_column(String, primary_key=True)
    order_reference: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
