from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
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


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class WalletKind(str, Enum):
    cash = "cash"
    bank = "bank"
    investment = "investment"


class BudgetPeriod(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class Recurrence(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class MutationScope(str, Enum):
    single = "single"
    series = "series"
    future = "future"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Wallet(Base, TimestampMixin):
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[WalletKind] = mapped_column(
        SAEnum(WalletKind), nullable=False, default=WalletKind.bank
    )
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_wallet_user_name"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wallets.id"))
    to_wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wallets.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    subcategory_id: Mapped[Optional[int]] = mapped_column(Integer)
    trip_id: Mapped[Optional[int]] = mapped_column(Integer)
    investment_asset_id: Mapped[Optional[int]] = mapped_column(Integer)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    exclude_from_stats: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurrence: Mapped[Optional[Recurrence]] = mapped_column(SAEnum(Recurrence))
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("transactions.id"))
    # Scheduled slot filled by an occurrence; `date` may be edited later.
    occurrence_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    wallet: Mapped[Optional["Wallet"]] = relationship(
        "Wallet", foreign_keys=[wallet_id]
    )
    to_wallet: Mapped[Optional["Wallet"]] = relationship(
        "Wallet", foreign_keys=[to_wallet_id]
    )
    category: Mapped[Optional["Category"]] = relationship("Category")

    __table_args__ = (
        UniqueConstraint(
            "parent_id",
            "occurrence_date",
            name="uq_txn_parent_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_wallet_date", "user_id", "wallet_id", "date"),
        Index("ix_transactions_parent_date", "parent_id", "date"),
        Index("ix_transactions_recurring", "is_recurring", "active"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )

    @property
    def is_template(self) -> bool:
        return self.is_recurring and self.parent_id is None

    @property
    def in_series(self) -> bool:
        return self.is_template or self.parent_id is not None


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[Optional[str]] = mapped_column(String(120))
    period: Mapped[BudgetPeriod] = mapped_column(SAEnum(BudgetPeriod), nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wallets.id"))
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped[Optional["Category"]] = relationship("Category")
    wallet: Mapped[Optional["Wallet"]] = relationship("Wallet")
    snapshots: Mapped[list["BudgetPeriodSnapshot"]] = relationship(
        "BudgetPeriodSnapshot", back_populates="budget"
    )

    __table_args__ = (
        CheckConstraint("limit_cents > 0", name="ck_budget_limit_positive"),
        Index("ix_budgets_user_active_period", "user_id", "active", "period"),
    )


class BudgetPeriodSnapshot(Base, TimestampMixin):
    __tablename__ = "budget_period_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id"), nullable=False)
    period_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_to: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    limit_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    remaining_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    forced: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    closed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="snapshots")

    __table_args__ = (
        UniqueConstraint("budget_id", "period_from", name="uq_snapshot_budget_from"),
        Index("ix_snapshots_budget_to", "budget_id", "period_to"),
    )
