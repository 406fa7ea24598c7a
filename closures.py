import logging
from datetime import datetime, time, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from aggregation import SpendAggregator, progress_for
from config import get_settings
from database import session_scope
from errors import TransientStorageError
from models import Budget, BudgetPeriodSnapshot
from periods import Period, clamp_to_start, compute_range, local_now, next_window
from services import BudgetService

logger = logging.getLogger(__name__)


class BudgetClosureProcessor:
    """Snapshots elapsed budget windows into immutable history rows.

    Windows are derived from ``period`` and ``start_date``; the newest
    snapshot marks where the next closure resumes, so a window is never
    closed twice.
    """

    def __init__(self, session: Session, max_windows: Optional[int] = None) -> None:
        self.session = session
        self.max_windows = max_windows or get_settings().closure_max_windows

    def _last_closed_end(self, budget: Budget) -> Optional[datetime]:
        stmt = select(func.max(BudgetPeriodSnapshot.period_to)).where(
            BudgetPeriodSnapshot.budget_id == budget.id
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def first_open_window(self, budget: Budget) -> Period:
        start = datetime.combine(budget.start_date, time.min)
        closed_end = self._last_closed_end(budget)
        if closed_end is not None and closed_end >= start:
            start = closed_end + timedelta(microseconds=1)
        return clamp_to_start(compute_range(budget.period, start), start)

    def pending_windows(self, budget: Budget, now: datetime) -> list[Period]:
        windows: list[Period] = []
        window = self.first_open_window(budget)
        while window.end < now and len(windows) < self.max_windows:
            windows.append(window)
            window = next_window(window)
        return windows

    def close_budget(
        self,
        budget: Budget,
        now: Optional[datetime] = None,
        *,
        forced: bool = False,
    ) -> list[BudgetPeriodSnapshot]:
        now = now or local_now()
        windows = [(window, False) for window in self.pending_windows(budget, now)]
        if forced and len(windows) < self.max_windows:
            if windows:
                current = next_window(windows[-1][0])
            else:
                current = self.first_open_window(budget)
            # A budget that has not started yet has nothing to close. The open
            # window is closed up to now; the rest of it stays open.
            if current.contains(now):
                windows.append((Period(current.slug, current.start, now), True))

        aggregator = SpendAggregator(self.session, budget.user_id)
        created: list[BudgetPeriodSnapshot] = []
        for window, is_open in windows:
            snapshot = self._snapshot(budget, window, aggregator, now, forced=is_open)
            if snapshot is not None:
                created.append(snapshot)
        return created

    def _snapshot(
        self,
        budget: Budget,
        window: Period,
        aggregator: SpendAggregator,
        now: datetime,
        *,
        forced: bool,
    ) -> Optional[BudgetPeriodSnapshot]:
        exists_stmt = (
            select(BudgetPeriodSnapshot.id)
            .where(
                BudgetPeriodSnapshot.budget_id == budget.id,
                BudgetPeriodSnapshot.period_from == window.start,
            )
            .limit(1)
        )
        if self.session.execute(exists_stmt).scalar_one_or_none():
            return None

        spent = aggregator.spent_for_budget(budget, window)
        remaining, _progress = progress_for(budget.limit_cents, spent)
        snapshot = BudgetPeriodSnapshot(
            user_id=budget.user_id,
            budget_id=budget.id,
            period_from=window.start,
            period_to=window.end,
            limit_cents=budget.limit_cents,
            spent_cents=spent,
            remaining_cents=remaining,
            forced=forced,
            closed_at=now,
        )
        self.session.add(snapshot)
        self.session.flush()
        return snapshot

    def close_for_owner(
        self, user_id: int, budget_id: int, now: Optional[datetime] = None
    ) -> list[BudgetPeriodSnapshot]:
        """Forced closure of one budget, including its still-open window."""
        budget = BudgetService(self.session, user_id).get(budget_id)
        try:
            created = self.close_budget(budget, now, forced=True)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise TransientStorageError("Could not close the budget period") from exc
        except Exception:
            self.session.rollback()
            raise
        for snapshot in created:
            self.session.refresh(snapshot)
        return created


def close_elapsed_periods(
    session_factory: Optional[sessionmaker] = None,
    now: Optional[datetime] = None,
) -> int:
    now = now or local_now()
    with session_scope(session_factory) as session:
        budget_ids = list(
            session.scalars(
                select(Budget.id).where(Budget.active.is_(True)).order_by(Budget.id)
            ).all()
        )

    closed = 0
    failed = 0
    for budget_id in budget_ids:
        try:
            with session_scope(session_factory) as session:
                budget = session.get(Budget, budget_id)
                if budget is None or not budget.active:
                    continue
                count = len(BudgetClosureProcessor(session).close_budget(budget, now))
        except Exception:
            failed += 1
            logger.exception(f"budget_closure_failed: budget_id={budget_id}")
            continue
        closed += count

    if failed:
        logger.warning(
            f"budget_closure_tick: budgets={len(budget_ids)} failed={failed} "
            f"snapshots_written={closed}"
        )
    return closed
