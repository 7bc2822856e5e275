from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class TransactionKind(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class DeleteScope(str, Enum):
    single = "single"
    future = "future"
    all = "all"


class AccountKind(str, Enum):
    asset = "asset"
    liability = "liability"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class LocalBlob(Base):
    """One JSON document per key in the on-device store."""

    __tablename__ = "local_blobs"

    key: Mapped[str] = mapped_column(String(40), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class TransactionRow(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    account_id: Mapped[str] = mapped_column(String(32), nullable=False)
    to_account_id: Mapped[Optional[str]] = mapped_column(String(32))
    date: Mapped[date] = mapped_column(Date, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    recurring_rule_id: Mapped[Optional[str]] = mapped_column(String(32))

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_rule", "user_id", "recurring_rule_id"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )


class RecurringRuleRow(Base, TimestampMixin):
    __tablename__ = "recurring_rules"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[TransactionKind] = mapped_column(
        SAEnum(TransactionKind), nullable=False
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    account_id: Mapped[str] = mapped_column(String(32), nullable=False)
    to_account_id: Mapped[Optional[str]] = mapped_column(String(32))
    note: Mapped[Optional[str]] = mapped_column(Text)
    frequency: Mapped[Frequency] = mapped_column(SAEnum(Frequency), nullable=False)
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    max_occurrences: Mapped[Optional[int]] = mapped_column(Integer)
    materialized_count: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    liability_id: Mapped[Optional[str]] = mapped_column(String(32))

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_rule_amount_positive"),
        CheckConstraint(
            "max_occurrences IS NULL OR max_occurrences > 0",
            name="ck_rule_max_occurrences_positive",
        ),
    )


class AccountRow(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    asset_type: Mapped[str] = mapped_column(String(40), nullable=False)
    cost_basis_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_value_cents: Mapped[int] = mapped_column(Integer, nullable=False)


class LiabilityRow(Base, TimestampMixin):
    __tablename__ = "liabilities"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    liability_type: Mapped[str] = mapped_column(String(40), nullable=False)
    base_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    interest_rate: Mapped[Optional[float]] = mapped_column(Float)
    monthly_payment_cents: Mapped[Optional[int]] = mapped_column(Integer)
    payment_account_id: Mapped[Optional[str]] = mapped_column(String(32))
    payment_day: Mapped[Optional[int]] = mapped_column(Integer)
    payment_periods: Mapped[Optional[int]] = mapped_column(Integer)
    start_date: Mapped[Optional[date]] = mapped_column(Date)
