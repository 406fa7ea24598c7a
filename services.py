from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from errors import ForbiddenError, NotFoundError, ValidationError
from models import (
    Budget,
    BudgetPeriod,
    BudgetPeriodSnapshot,
    Category,
    Transaction,
    TransactionType,
    Wallet,
    WalletKind,
)
from periods import local_now
from schemas import BudgetIn, BudgetUpdateIn, CategoryIn, TransactionIn, WalletIn

OwnedT = TypeVar("OwnedT", Wallet, Category, Budget, Transaction)

# Fields an occurrence copies from its template.
SERIES_FIELDS = (
    "type",
    "amount_cents",
    "description",
    "wallet_id",
    "to_wallet_id",
    "category_id",
    "subcategory_id",
    "trip_id",
    "investment_asset_id",
    "exclude_from_stats",
)


def get_current_user_id() -> int:
    return get_settings().default_user_id


def get_owned(
    session: Session, model: type[OwnedT], obj_id: int, user_id: int, label: str
) -> OwnedT:
    obj = session.get(model, obj_id)
    if obj is None:
        raise NotFoundError(f"{label} not found")
    if obj.user_id != user_id:
        raise ForbiddenError(f"{label} belongs to another user")
    return obj


def _balance_deltas(txn: Transaction) -> list[tuple[int, int]]:
    if txn.is_template or not txn.active:
        return []
    if txn.type == TransactionType.transfer:
        deltas = []
        if txn.wallet_id:
            deltas.append((txn.wallet_id, -txn.amount_cents))
        if txn.to_wallet_id:
            deltas.append((txn.to_wallet_id, txn.amount_cents))
        return deltas
    if not txn.wallet_id:
        return []
    if txn.type == TransactionType.income:
        return [(txn.wallet_id, txn.amount_cents)]
    return [(txn.wallet_id, -txn.amount_cents)]


def apply_balance(session: Session, txn: Transaction, sign: int = 1) -> None:
    """Move wallet balances by the effect of a concrete transaction.

    Templates and inactive rows have no effect. ``sign=-1`` reverts.
    """
    for wallet_id, delta in _balance_deltas(txn):
        wallet = session.get(Wallet, wallet_id)
        if wallet is not None:
            wallet.balance_cents += sign * delta


def revert_balance(session: Session, txn: Transaction) -> None:
    apply_balance(session, txn, sign=-1)


def validate_links(session: Session, user_id: int, txn: Transaction) -> None:
    if txn.wallet_id is not None:
        get_owned(session, Wallet, txn.wallet_id, user_id, "Wallet")
    destination = None
    if txn.to_wallet_id is not None:
        destination = get_owned(
            session, Wallet, txn.to_wallet_id, user_id, "Destination wallet"
        )
    if txn.category_id is not None:
        get_owned(session, Category, txn.category_id, user_id, "Category")
    if txn.type == TransactionType.transfer:
        if not txn.wallet_id or not txn.to_wallet_id:
            raise ValidationError("Transfers need a source and a destination wallet")
        if txn.wallet_id == txn.to_wallet_id:
            raise ValidationError("Transfer wallets must differ")
        if destination.kind == WalletKind.investment and txn.investment_asset_id is None:
            raise ValidationError(
                "Transfers into an investment wallet need an investment asset"
            )


@dataclass
class TransactionFilters:
    wallet_id: Optional[int] = None
    type: Optional[TransactionType] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    include_templates: bool = False


class WalletService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Wallet]:
        stmt = select(Wallet).where(Wallet.user_id == self.user_id).order_by(Wallet.name)
        return self.session.scalars(stmt).all()

    def create(self, data: WalletIn) -> Wallet:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValidationError("Wallet name cannot be empty")
        stmt = select(Wallet).where(
            Wallet.user_id == self.user_id,
            func.lower(Wallet.name) == clean_name.lower(),
        )
        if self.session.scalar(stmt):
            raise ValidationError("Wallet already exists")

        wallet = Wallet(
            user_id=self.user_id,
            name=clean_name,
            kind=data.kind,
            balance_cents=data.balance_cents,
        )
        self.session.add(wallet)
        self.session.commit()
        self.session.refresh(wallet)
        return wallet


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValidationError("Category name cannot be empty")
        stmt = select(Category).where(
            Category.user_id == self.user_id,
            Category.type == data.type,
            func.lower(Category.name) == clean_name.lower(),
        )
        if self.session.scalar(stmt):
            raise ValidationError("Category already exists")

        category = Category(user_id=self.user_id, name=clean_name, type=data.type)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, transaction_id: int) -> Transaction:
        txn = get_owned(
            self.session, Transaction, transaction_id, self.user_id, "Transaction"
        )
        if not txn.active:
            raise NotFoundError("Transaction not found")
        return txn

    def list(self, filters: Optional[TransactionFilters] = None) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id, Transaction.active.is_(True)
        )
        if not filters.include_templates:
            stmt = stmt.where(Transaction.is_recurring.is_(False))
        if filters.wallet_id is not None:
            stmt = stmt.where(
                (Transaction.wallet_id == filters.wallet_id)
                | (Transaction.to_wallet_id == filters.wallet_id)
            )
        if filters.type is not None:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.date_from is not None:
            stmt = stmt.where(Transaction.date >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(Transaction.date <= filters.date_to)
        stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
        return self.session.scalars(stmt).all()

    def create(self, data: TransactionIn) -> Transaction:
        """Create a transaction; with ``recurrence`` also start a series.

        A series is a template row (the rule, excluded from stats and
        balances) plus its first occurrence at the template date, which is
        the transaction returned to the caller.
        """
        when = data.date or local_now()
        fields = {name: getattr(data, name) for name in SERIES_FIELDS}
        txn = Transaction(
            user_id=self.user_id, date=when, active=True, is_recurring=False, **fields
        )
        validate_links(self.session, self.user_id, txn)

        if data.recurrence is not None:
            template = Transaction(
                user_id=self.user_id,
                date=when,
                active=True,
                is_recurring=True,
                recurrence=data.recurrence,
                **fields,
            )
            self.session.add(template)
            self.session.flush()
            txn.parent_id = template.id
            txn.occurrence_date = when

        self.session.add(txn)
        self.session.flush()
        apply_balance(self.session, txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _validate_scope(
        self, category_id: Optional[int], wallet_id: Optional[int]
    ) -> None:
        if category_id is not None:
            get_owned(self.session, Category, category_id, self.user_id, "Category")
        if wallet_id is not None:
            get_owned(self.session, Wallet, wallet_id, self.user_id, "Wallet")

    def list_active(self, period: Optional[BudgetPeriod] = None) -> list[Budget]:
        stmt = select(Budget).where(
            Budget.user_id == self.user_id, Budget.active.is_(True)
        )
        if period is not None:
            stmt = stmt.where(Budget.period == period)
        return self.session.scalars(stmt.order_by(Budget.id)).all()

    def get(self, budget_id: int) -> Budget:
        budget = get_owned(self.session, Budget, budget_id, self.user_id, "Budget")
        if not budget.active:
            raise NotFoundError("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        self._validate_scope(data.category_id, data.wallet_id)
        budget = Budget(
            user_id=self.user_id,
            name=data.name,
            period=data.period,
            limit_cents=data.limit_cents,
            start_date=data.start_date,
            category_id=data.category_id,
            wallet_id=data.wallet_id,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetUpdateIn) -> Budget:
        budget = self.get(budget_id)
        changes = data.model_dump(exclude_unset=True)
        self._validate_scope(changes.get("category_id"), changes.get("wallet_id"))
        for field, value in changes.items():
            if value is None and field in ("period", "limit_cents", "start_date"):
                raise ValidationError(f"{field} cannot be cleared")
            setattr(budget, field, value)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        budget.active = False
        self.session.commit()

    def history(self, budget_id: int) -> list[BudgetPeriodSnapshot]:
        self.get(budget_id)
        stmt = (
            select(BudgetPeriodSnapshot)
            .where(BudgetPeriodSnapshot.budget_id == budget_id)
            .order_by(BudgetPeriodSnapshot.period_from.desc())
        )
        return self.session.scalars(stmt).all()
