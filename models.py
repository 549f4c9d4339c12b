from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class ObligationStatus(str, Enum):
    active = "active"
    paused = "paused"
    ended = "ended"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class TransactionStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    cancelled = "cancelled"


class BudgetPeriod(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class BudgetStatus(str, Enum):
    active = "active"
    exceeded = "exceeded"


class ErrorKind(str, Enum):
    invalid_frequency = "invalid_frequency"
    storage_unavailable = "storage_unavailable"
    concurrent_modification = "concurrent_modification"
    partial_commit = "partial_commit"
    occurrence_cap_reached = "occurrence_cap_reached"
    unexpected = "unexpected"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Obligation(Base, TimestampMixin):
    __tablename__ = "obligations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    # Plain string: rows written by other tools may carry units this engine
    # does not know, and those must surface per obligation instead of failing
    # the whole query.
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    next_due: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[ObligationStatus] = mapped_column(
        SAEnum(ObligationStatus), default=ObligationStatus.active, nullable=False
    )
    last_processed: Mapped[Optional[date]] = mapped_column(Date)
    total_occurrences: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    ledger_id: Mapped[Optional[str]] = mapped_column(String(64))
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="origin_obligation"
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_obligation_amount_positive"),
        CheckConstraint(
            "total_occurrences >= 0", name="ck_obligation_occurrences_positive"
        ),
        Index("ix_obligations_user_status_due", "user_id", "status", "next_due"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    ledger_id: Mapped[Optional[str]] = mapped_column(String(64))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), default=TransactionStatus.completed, nullable=False
    )
    origin_obligation_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("obligations.id")
    )
    occurrence_date: Mapped[Optional[date]] = mapped_column(Date)

    origin_obligation: Mapped[Optional["Obligation"]] = relationship(
        "Obligation", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "origin_obligation_id",
            "occurrence_date",
            name="uq_txn_origin_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category", "date"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    period: Mapped[BudgetPeriod] = mapped_column(SAEnum(BudgetPeriod), nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[BudgetStatus] = mapped_column(
        SAEnum(BudgetStatus), default=BudgetStatus.active, nullable=False
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint("spent_cents >= 0", name="ck_budget_spent_positive"),
        CheckConstraint("start_date <= end_date", name="ck_budget_window_ordered"),
        Index(
            "ix_budgets_user_category_window",
            "user_id",
            "category",
            "start_date",
            "end_date",
        ),
    )
