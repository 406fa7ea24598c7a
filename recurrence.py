import logging
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import session_scope
from models import Recurrence, Transaction
from periods import local_now
from services import SERIES_FIELDS, apply_balance

logger = logging.getLogger(__name__)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: datetime, months: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def occurrence_at(anchor: datetime, recurrence: Recurrence, index: int) -> datetime:
    """Slot ``index`` of a series; always measured from the anchor so that
    month-end snapping never drifts (Jan 31 -> Feb 29 -> Mar 31)."""
    if recurrence == Recurrence.daily:
        return anchor + timedelta(days=index)
    if recurrence == Recurrence.weekly:
        return anchor + timedelta(weeks=index)
    if recurrence == Recurrence.monthly:
        return _add_months(anchor, index)
    return _add_months(anchor, 12 * index)


def _estimate_index(anchor: datetime, recurrence: Recurrence, after: datetime) -> int:
    if recurrence == Recurrence.daily:
        return (after - anchor).days
    if recurrence == Recurrence.weekly:
        return (after - anchor).days // 7
    months = (after.year - anchor.year) * 12 + (after.month - anchor.month)
    if recurrence == Recurrence.monthly:
        return months
    return months // 12


def next_occurrence_after(
    anchor: datetime, recurrence: Recurrence, after: datetime
) -> tuple[int, datetime]:
    index = max(_estimate_index(anchor, recurrence, after), 1)
    while index > 1 and occurrence_at(anchor, recurrence, index - 1) > after:
        index -= 1
    while occurrence_at(anchor, recurrence, index) <= after:
        index += 1
    return index, occurrence_at(anchor, recurrence, index)


class RecurrenceExpander:
    def __init__(self, session: Session, max_catch_up: Optional[int] = None) -> None:
        self.session = session
        self.max_catch_up = max_catch_up or get_settings().recurring_max_catch_up

    def active_template_ids(self) -> list[int]:
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.parent_id.is_(None),
                Transaction.recurrence.is_not(None),
                Transaction.active.is_(True),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def lock_template(self, template_id: int) -> Optional[Transaction]:
        stmt = select(Transaction).where(Transaction.id == template_id).with_for_update()
        return self.session.scalar(stmt)

    def latest_slot(self, template: Transaction) -> datetime:
        # Soft-deleted occurrences count, so a deleted slot is never refilled.
        stmt = select(func.max(Transaction.occurrence_date)).where(
            Transaction.parent_id == template.id
        )
        latest = self.session.execute(stmt).scalar_one_or_none()
        if latest is None or latest < template.date:
            return template.date
        return latest

    def catch_up_template(
        self, template: Transaction, now: Optional[datetime] = None
    ) -> int:
        now = now or local_now()
        if not template.active or not template.is_template or not template.recurrence:
            return 0

        latest = self.latest_slot(template)
        posted = 0
        iterations = 0
        while iterations < self.max_catch_up:
            _index, due = next_occurrence_after(
                template.date, template.recurrence, latest
            )
            if due > now:
                break
            if self._materialize(template, due):
                posted += 1
            latest = due
            iterations += 1

        if iterations >= self.max_catch_up:
            logger.warning(
                f"recurring_catch_up_capped: template_id={template.id} "
                f"posted={posted} resume_after={latest.isoformat()}"
            )
        return posted

    def _materialize(self, template: Transaction, due: datetime) -> bool:
        exists_stmt = (
            select(Transaction.id)
            .where(
                Transaction.parent_id == template.id,
                Transaction.occurrence_date == due,
            )
            .limit(1)
        )
        existing = self.session.execute(exists_stmt).scalar_one_or_none()
        if existing:
            return False

        txn = Transaction(
            user_id=template.user_id,
            date=due,
            occurrence_date=due,
            parent_id=template.id,
            active=True,
            is_recurring=False,
            recurrence=None,
            **{name: getattr(template, name) for name in SERIES_FIELDS},
        )
        self.session.add(txn)
        self.session.flush()
        apply_balance(self.session, txn)
        return True


def expand_due_templates(
    session_factory: Optional[sessionmaker] = None,
    now: Optional[datetime] = None,
) -> int:
    """Materialize every due occurrence of every active template.

    Each template is its own unit of work: a failure rolls back and is
    logged, and the remaining templates still run.
    """
    now = now or local_now()
    with session_scope(session_factory) as session:
        template_ids = RecurrenceExpander(session).active_template_ids()

    posted = 0
    failed = 0
    for template_id in template_ids:
        try:
            with session_scope(session_factory) as session:
                expander = RecurrenceExpander(session)
                template = expander.lock_template(template_id)
                count = expander.catch_up_template(template, now) if template else 0
        except Exception:
            failed += 1
            logger.exception(f"recurring_template_failed: template_id={template_id}")
            continue
        posted += count

    if failed:
        logger.warning(
            f"recurring_tick: templates={len(template_ids)} failed={failed} "
            f"occurrences_posted={posted}"
        )
    return posted
