from datetime import date, datetime, time, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from aggregation import SpendAggregator
from closures import BudgetClosureProcessor, close_elapsed_periods
from database import Base
from errors import ForbiddenError, TransientStorageError
from models import (
    Budget,
    BudgetPeriod,
    BudgetPeriodSnapshot,
    Transaction,
    TransactionType,
)
from services import BudgetService


def _expense(session: Session, amount_cents: int, when: datetime) -> None:
    session.add(
        Transaction(
            user_id=1,
            type=TransactionType.expense,
            amount_cents=amount_cents,
            date=when,
        )
    )
    session.flush()


def _weekly_budget(session: Session, start: date = date(2024, 1, 1)) -> Budget:
    budget = Budget(
        user_id=1,
        name="Weekly food",
        period=BudgetPeriod.weekly,
        limit_cents=10000,
        start_date=start,
    )
    session.add(budget)
    session.flush()
    return budget


def _end_of(day: date) -> datetime:
    return datetime.combine(day, time.max)


def test_elapsed_weeks_are_snapshotted_once():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        budget = _weekly_budget(session)
        _expense(session, 3000, datetime(2024, 1, 2, 10, 0))
        _expense(session, 12000, datetime(2024, 1, 9, 10, 0))
        _expense(session, 500, datetime(2024, 1, 16, 10, 0))

        processor = BudgetClosureProcessor(session)
        now = datetime(2024, 1, 17, 0, 5)
        created = processor.close_budget(budget, now)

        assert [(s.period_from, s.period_to) for s in created] == [
            (datetime(2024, 1, 1), _end_of(date(2024, 1, 7))),
            (datetime(2024, 1, 8), _end_of(date(2024, 1, 14))),
        ]
        assert [(s.spent_cents, s.remaining_cents) for s in created] == [
            (3000, 7000),
            (12000, 0),
        ]
        assert not any(s.forced for s in created)

        assert processor.close_budget(budget, now) == []


def test_late_start_budget_first_snapshot_begins_at_start_date():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        budget = Budget(
            user_id=1,
            period=BudgetPeriod.monthly,
            limit_cents=20000,
            start_date=date(2024, 1, 15),
        )
        session.add(budget)
        session.flush()
        _expense(session, 4000, datetime(2024, 1, 10))
        _expense(session, 6000, datetime(2024, 1, 20))

        created = BudgetClosureProcessor(session).close_budget(
            budget, datetime(2024, 2, 2)
        )

        assert len(created) == 1
        assert created[0].period_from == datetime(2024, 1, 15)
        assert created[0].period_to == _end_of(date(2024, 1, 31))
        assert created[0].spent_cents == 6000


def test_forced_closure_closes_open_window_up_to_now():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        budget = _weekly_budget(session)
        _expense(session, 2000, datetime(2024, 1, 16, 8, 0))
        session.commit()

        processor = BudgetClosureProcessor(session)
        closed_at = datetime(2024, 1, 17, 12, 0)
        created = processor.close_for_owner(1, budget.id, now=closed_at)

        assert len(created) == 3
        assert [s.forced for s in created] == [False, False, True]
        assert created[-1].period_from == datetime(2024, 1, 15)
        assert created[-1].period_to == closed_at
        assert created[-1].spent_cents == 2000

        # Spend after the forced closure lands in the rest of that week.
        _expense(session, 700, datetime(2024, 1, 19, 9, 0))
        rest = processor.close_budget(budget, datetime(2024, 1, 22, 0, 5))
        assert [(s.period_from, s.period_to, s.spent_cents) for s in rest] == [
            (
                closed_at + timedelta(microseconds=1),
                _end_of(date(2024, 1, 21)),
                700,
            )
        ]
        assert processor.close_budget(budget, datetime(2024, 1, 22, 0, 5)) == []

        following = processor.close_budget(budget, datetime(2024, 1, 29, 0, 5))
        assert [s.period_from for s in following] == [datetime(2024, 1, 22)]

        history = BudgetService(session).history(budget.id)
        assert sum(s.spent_cents for s in history) == 2700
        assert history[0].period_from == datetime(2024, 1, 22)
        assert history[-1].period_from == datetime(2024, 1, 1)


def test_forced_closure_restarts_progress_for_the_rest_of_the_window():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        budget = Budget(
            user_id=1,
            period=BudgetPeriod.monthly,
            limit_cents=10000,
            start_date=date(2024, 1, 1),
        )
        session.add(budget)
        _expense(session, 5000, datetime(2024, 1, 5, 12, 0))
        session.commit()

        BudgetClosureProcessor(session).close_for_owner(
            1, budget.id, now=datetime(2024, 1, 10)
        )
        aggregator = SpendAggregator(session)

        progress = aggregator.progress_for_budget(budget, date(2024, 1, 10))
        assert progress.window.start == datetime(2024, 1, 10, 0, 0, 0, 1)
        assert progress.spent_cents == 0
        assert progress.remaining_cents == 10000

        _expense(session, 1500, datetime(2024, 1, 20, 9, 0))
        later = aggregator.progress_for_budget(budget, date(2024, 1, 25))
        assert later.spent_cents == 1500
        overview = aggregator.overview(reference=date(2024, 1, 25))
        assert overview.budgets[0].spent_cents == 1500
        assert overview.summary.total_spent_cents == 1500

        # The next month starts from its own first day.
        february = aggregator.progress_for_budget(budget, date(2024, 2, 5))
        assert february.window.start == datetime(2024, 2, 1)
        assert february.spent_cents == 0


def test_storage_failure_on_forced_closure_is_transient(monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        budget = _weekly_budget(session)
        session.commit()

        def failing_commit():
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(session, "commit", failing_commit)

        with pytest.raises(TransientStorageError):
            BudgetClosureProcessor(session).close_for_owner(
                1, budget.id, now=datetime(2024, 1, 17)
            )
        count = session.scalar(select(func.count(BudgetPeriodSnapshot.id)))
        assert count == 0


def test_forced_closure_before_budget_starts_writes_nothing():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        budget = _weekly_budget(session, start=date(2024, 3, 4))
        session.commit()

        created = BudgetClosureProcessor(session).close_for_owner(
            1, budget.id, now=datetime(2024, 2, 1)
        )

        assert created == []


def test_forced_closure_of_someone_elses_budget_is_forbidden():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        budget = _weekly_budget(session)
        session.commit()

        with pytest.raises(ForbiddenError):
            BudgetClosureProcessor(session).close_for_owner(
                2, budget.id, now=datetime(2024, 1, 17)
            )


def test_scheduled_closure_pass_is_idempotent():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    with factory() as session:
        _weekly_budget(session)
        retired = _weekly_budget(session)
        retired.active = False
        _expense(session, 1500, datetime(2024, 1, 3))
        session.commit()

    now = datetime(2024, 1, 15, 0, 5)
    assert close_elapsed_periods(factory, now=now) == 2
    assert close_elapsed_periods(factory, now=now) == 0

    with factory() as session:
        count = session.scalar(select(func.count(BudgetPeriodSnapshot.id)))
        assert count == 2
        first = session.scalars(
            select(BudgetPeriodSnapshot).order_by(BudgetPeriodSnapshot.period_from)
        ).first()
        assert first.spent_cents == 1500
