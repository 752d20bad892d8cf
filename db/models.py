# db/models.py
import uuid
from datetime import date, datetime as dt, time
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from libs.models import CURRENCY, TxnStatus


class Base(DeclarativeBase):
    pass


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default=CURRENCY)
    sender_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_number: Mapped[str] = mapped_column(String(10), nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    transaction_time: Mapped[time] = mapped_column(Time, nullable=False)
    raw_message: Mapped[str] = mapped_column(Text, nullable=False)
    parsed_at: Mapped[dt] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    # dedup key, see uq_transactions_webhook_id
    webhook_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TxnStatus.PROCESSED.value
    )
    created_at: Mapped[dt] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("webhook_id", name="uq_transactions_webhook_id"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "status IN ('processed', 'failed', 'duplicate')",
            name="ck_transactions_status",
        ),
        Index("idx_transactions_date", "transaction_date"),
        Index("idx_transactions_status", "status"),
        Index("idx_transactions_created_at", "created_at"),
    )


class ParseError(Base):
    __tablename__ = "parse_errors"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    raw_message: Mapped[str] = mapped_column(Text, nullable=False)
    error_reason: Mapped[str] = mapped_column(Text, nullable=False)
    webhook_id: Mapped[str] = mapped_column(String(255), nullable=False)
    occurred_at: Mapped[dt] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_parse_errors_webhook", "webhook_id"),
        Index("idx_parse_errors_occurred_at", "occurred_at"),
        Index("idx_parse_errors_resolved", "resolved"),
    )
