from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import (
    Budget,
    BudgetPeriod,
    BudgetPeriodSnapshot,
    Transaction,
    TransactionType,
)
from periods import DateLike, Period, budget_window, compute_range, local_now
from services import BudgetService, get_current_user_id

WalletTotals = dict[Optional[int], int]
PairTotals = dict[tuple[Optional[int], Optional[int]], int]


def progress_for(limit_cents: int, spent_cents: int) -> tuple[int, float]:
    """Return ``(remaining_cents, progress)`` with both clamped."""
    remaining = max(limit_cents - spent_cents, 0)
    if limit_cents <= 0:
        return remaining, 0.0
    return remaining, min(spent_cents / limit_cents, 1.0)


def spent_from_groups(
    budget: Budget, by_wallet: WalletTotals, by_pair: PairTotals
) -> int:
    if budget.category_id is not None and budget.wallet_id is not None:
        return by_pair.get((budget.wallet_id, budget.category_id), 0)
    if budget.category_id is not None:
        return sum(
            spent
            for (_wallet_id, category_id), spent in by_pair.items()
            if category_id == budget.category_id
        )
    if budget.wallet_id is not None:
        return by_wallet.get(budget.wallet_id, 0)
    return sum(by_wallet.values())


@dataclass(frozen=True)
class BudgetProgress:
    budget: Budget
    window: Period
    spent_cents: int
    remaining_cents: int
    progress: float

    def as_dict(self) -> dict[str, object]:
        budget = self.budget
        return {
            "id": budget.id,
            "name": budget.name,
            "period": budget.period.value,
            "limit_cents": budget.limit_cents,
            "start_date": budget.start_date.isoformat(),
            "category_id": budget.category_id,
            "wallet_id": budget.wallet_id,
            "from": self.window.start.isoformat(),
            "to": self.window.end.isoformat(),
            "spent_cents": self.spent_cents,
            "remaining_cents": self.remaining_cents,
            "progress": self.progress,
        }


@dataclass(frozen=True)
class OverviewSummary:
    total_limit_cents: int = 0
    total_spent_cents: int = 0
    remaining_cents: int = 0
    count: int = 0


@dataclass(frozen=True)
class BudgetsOverview:
    period: str
    window: Period
    summary: OverviewSummary
    budgets: list[BudgetProgress]

    def as_dict(self) -> dict[str, object]:
        return {
            "period": self.period,
            "from": self.window.start.isoformat(),
            "to": self.window.end.isoformat(),
            "summary": {
                "total_limit_cents": self.summary.total_limit_cents,
                "total_spent_cents": self.summary.total_spent_cents,
                "remaining_cents": self.summary.remaining_cents,
                "count": self.summary.count,
            },
            "budgets": [item.as_dict() for item in self.budgets],
        }


class SpendAggregator:
    """Read-only spend totals for one owner's budgets."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _spend_filters(self, window: Period) -> list:
        return [
            Transaction.user_id == self.user_id,
            Transaction.active.is_(True),
            Transaction.exclude_from_stats.is_(False),
            Transaction.is_recurring.is_(False),
            Transaction.type == TransactionType.expense,
            Transaction.date >= window.start,
            Transaction.date <= window.end,
        ]

    def spent_by_wallet(self, window: Period) -> WalletTotals:
        stmt = (
            select(
                Transaction.wallet_id,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("spent"),
            )
            .where(*self._spend_filters(window))
            .group_by(Transaction.wallet_id)
        )
        return {row.wallet_id: int(row.spent or 0) for row in self.session.execute(stmt)}

    def spent_by_wallet_category(self, window: Period) -> PairTotals:
        stmt = (
            select(
                Transaction.wallet_id,
                Transaction.category_id,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("spent"),
            )
            .where(*self._spend_filters(window))
            .group_by(Transaction.wallet_id, Transaction.category_id)
        )
        return {
            (row.wallet_id, row.category_id): int(row.spent or 0)
            for row in self.session.execute(stmt)
        }

    def spent_in_window(
        self,
        window: Period,
        *,
        wallet_id: Optional[int] = None,
        category_id: Optional[int] = None,
    ) -> int:
        if window.is_empty:
            return 0
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            *self._spend_filters(window)
        )
        if wallet_id is not None:
            stmt = stmt.where(Transaction.wallet_id == wallet_id)
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def spent_for_budget(self, budget: Budget, window: Period) -> int:
        return self.spent_in_window(
            window, wallet_id=budget.wallet_id, category_id=budget.category_id
        )

    def closed_through(
        self, budget_ids: list[int], window: Period
    ) -> dict[int, datetime]:
        """End of the newest snapshot falling inside ``window``, per budget."""
        if not budget_ids:
            return {}
        stmt = (
            select(
                BudgetPeriodSnapshot.budget_id,
                func.max(BudgetPeriodSnapshot.period_to).label("closed_to"),
            )
            .where(
                BudgetPeriodSnapshot.budget_id.in_(budget_ids),
                BudgetPeriodSnapshot.period_to >= window.start,
                BudgetPeriodSnapshot.period_to < window.end,
            )
            .group_by(BudgetPeriodSnapshot.budget_id)
        )
        return {row.budget_id: row.closed_to for row in self.session.execute(stmt)}

    def progress_for_budget(
        self, budget: Budget, reference: Optional[DateLike] = None
    ) -> BudgetProgress:
        reference = reference if reference is not None else local_now()
        closed = self.closed_through(
            [budget.id], compute_range(budget.period, reference)
        )
        window = budget_window(
            budget.period, budget.start_date, reference, closed.get(budget.id)
        )
        return self._progress(budget, window, self.spent_for_budget(budget, window))

    @staticmethod
    def _progress(budget: Budget, window: Period, spent: int) -> BudgetProgress:
        remaining, progress = progress_for(budget.limit_cents, spent)
        return BudgetProgress(
            budget=budget,
            window=window,
            spent_cents=spent,
            remaining_cents=remaining,
            progress=progress,
        )

    def _group_progress(
        self, budgets: list[Budget], window: Period, reference: DateLike
    ) -> list[BudgetProgress]:
        closed = self.closed_through([b.id for b in budgets], window)
        normal: list[Budget] = []
        late_start: list[tuple[Budget, Period]] = []
        for budget in budgets:
            own = budget_window(
                budget.period, budget.start_date, reference, closed.get(budget.id)
            )
            if own.start > window.start:
                late_start.append((budget, own))
            else:
                normal.append(budget)

        results: list[BudgetProgress] = []
        if normal:
            by_wallet = self.spent_by_wallet(window)
            by_pair: PairTotals = {}
            if any(b.category_id is not None for b in normal):
                by_pair = self.spent_by_wallet_category(window)
            for budget in normal:
                spent = spent_from_groups(budget, by_wallet, by_pair)
                results.append(self._progress(budget, window, spent))

        for budget, own in late_start:
            results.append(
                self._progress(budget, own, self.spent_for_budget(budget, own))
            )
        return results

    def overview(
        self,
        reference: Optional[DateLike] = None,
        period: Optional[BudgetPeriod] = None,
    ) -> BudgetsOverview:
        reference = reference if reference is not None else local_now()
        headline = compute_range(period or BudgetPeriod.monthly, reference)
        budgets = BudgetService(self.session, self.user_id).list_active(period)
        if not budgets:
            return BudgetsOverview(
                period=headline.slug,
                window=headline,
                summary=OverviewSummary(),
                budgets=[],
            )

        groups: dict[BudgetPeriod, list[Budget]] = defaultdict(list)
        for budget in budgets:
            groups[budget.period].append(budget)

        progress_by_id: dict[int, BudgetProgress] = {}
        for group_period, members in groups.items():
            window = compute_range(group_period, reference)
            for item in self._group_progress(members, window, reference):
                progress_by_id[item.budget.id] = item

        ordered = [progress_by_id[b.id] for b in budgets]
        total_limit = sum(item.budget.limit_cents for item in ordered)
        total_spent = sum(item.spent_cents for item in ordered)
        summary = OverviewSummary(
            total_limit_cents=total_limit,
            total_spent_cents=total_spent,
            remaining_cents=max(total_limit - total_spent, 0),
            count=len(ordered),
        )
        return BudgetsOverview(
            period=headline.slug, window=headline, summary=summary, budgets=ordered
        )
