"""Orchestrator database models.

One `payment_attempts` row per order reference makes initiation idempotent:
a reference maps to exactly one live gateway submission.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from creohub.common.db import Base


class PaymentAttempt(Base):
    """Latest gateway submission for an order reference."""

    __tablename__ = "payment_attempts"

    order_reference: Mapped[str] = mapped_column(String, primary_key=True)
    payment_method: Mapped[str] = mapped_column(String)
    provider: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String, index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    provider_reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
