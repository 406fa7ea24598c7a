from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from errors import ForbiddenError, NotFoundError, TransientStorageError, ValidationError
from models import MutationScope, Transaction
from periods import local_now
from schemas import TransactionPatch
from services import (
    SERIES_FIELDS,
    apply_balance,
    get_current_user_id,
    get_owned,
    revert_balance,
    validate_links,
)

Lineage = list[Transaction]
ScopeStrategy = Callable[[Lineage, Transaction, datetime], Lineage]

NOT_NULLABLE = ("type", "amount_cents", "exclude_from_stats", "date", "recurrence")


def _single_members(lineage: Lineage, target: Transaction, now: datetime) -> Lineage:
    return [target]


def _series_members(lineage: Lineage, target: Transaction, now: datetime) -> Lineage:
    return list(lineage)


def _future_members(lineage: Lineage, target: Transaction, now: datetime) -> Lineage:
    # From the template, rows already in the past stay pinned to the old
    # definition; from an occurrence, everything dated at or after it moves.
    cutoff = now if target.is_template else target.date
    return [row for row in lineage if row.is_template or row.date >= cutoff]


SCOPE_STRATEGIES: dict[MutationScope, ScopeStrategy] = {
    MutationScope.single: _single_members,
    MutationScope.series: _series_members,
    MutationScope.future: _future_members,
}


@dataclass
class SeriesMutationResult:
    scope: MutationScope
    transaction: Transaction
    affected_ids: list[int] = field(default_factory=list)
    series_ended: bool = False

    @property
    def affected_count(self) -> int:
        return len(self.affected_ids)


class ScopedSeriesMutator:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _resolve(self, transaction_id: int) -> Transaction:
        txn = get_owned(
            self.session, Transaction, transaction_id, self.user_id, "Transaction"
        )
        if not txn.active:
            raise NotFoundError("Transaction not found")
        return txn

    def _lock_template(self, target: Transaction) -> Optional[Transaction]:
        if not target.in_series:
            return None
        template_id = target.id if target.is_template else target.parent_id
        stmt = select(Transaction).where(Transaction.id == template_id).with_for_update()
        template = self.session.scalar(stmt)
        if template is None:
            return None
        if template.user_id != self.user_id:
            raise ForbiddenError("Recurring series belongs to another user")
        return template

    def _lineage(self, template: Transaction) -> Lineage:
        stmt = (
            select(Transaction)
            .where(
                Transaction.parent_id == template.id,
                Transaction.active.is_(True),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return [template, *self.session.scalars(stmt).all()]

    def _plan(
        self, transaction_id: int, scope: MutationScope, now: Optional[datetime]
    ) -> tuple[Transaction, Optional[Transaction], MutationScope, Lineage]:
        target = self._resolve(transaction_id)
        template = self._lock_template(target)
        if template is None:
            scope = MutationScope.single
        lineage = self._lineage(template) if template is not None else [target]
        members = SCOPE_STRATEGIES[scope](lineage, target, now or local_now())
        return target, template, scope, members

    @staticmethod
    def _validate_patch(
        target: Transaction, changes: dict[str, object], scope: MutationScope
    ) -> None:
        for name in NOT_NULLABLE:
            if name in changes and changes[name] is None:
                raise ValidationError(f"{name} cannot be cleared")
        if "recurrence" in changes:
            if not target.in_series:
                raise ValidationError("Only recurring series have a recurrence")
            if scope == MutationScope.single and not target.is_template:
                raise ValidationError("Recurrence changes need scope series or future")
        if "date" in changes:
            if target.is_template:
                raise ValidationError("The start of a recurring series cannot move")
            if scope != MutationScope.single:
                raise ValidationError("Dates can only change with scope single")

    def _apply(self, row: Transaction, changes: dict[str, object]) -> None:
        revert_balance(self.session, row)
        for name, value in changes.items():
            if name in SERIES_FIELDS:
                setattr(row, name, value)
            elif name == "recurrence" and row.is_template:
                row.recurrence = value
            elif name == "date" and not row.is_template:
                row.date = value
        validate_links(self.session, self.user_id, row)
        apply_balance(self.session, row)

    def _commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise TransientStorageError("Could not save the series change") from exc

    def update(
        self,
        transaction_id: int,
        patch: TransactionPatch,
        scope: MutationScope = MutationScope.single,
        *,
        now: Optional[datetime] = None,
    ) -> SeriesMutationResult:
        changes = patch.model_dump(exclude_unset=True)
        try:
            target, _template, scope, members = self._plan(transaction_id, scope, now)
            self._validate_patch(target, changes, scope)
            for row in members:
                self._apply(row, changes)
            self.session.flush()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise TransientStorageError("Could not update the series") from exc
        except Exception:
            self.session.rollback()
            raise
        self._commit()
        self.session.refresh(target)
        return SeriesMutationResult(
            scope=scope,
            transaction=target,
            affected_ids=[row.id for row in members],
        )

    def delete(
        self,
        transaction_id: int,
        scope: MutationScope = MutationScope.single,
        *,
        now: Optional[datetime] = None,
    ) -> SeriesMutationResult:
        try:
            target, template, scope, members = self._plan(transaction_id, scope, now)
            # Deleting the template or anything wider than one occurrence
            # ends the series; a single occurrence leaves its slot consumed.
            ends_series = template is not None and (
                scope != MutationScope.single or target.is_template
            )
            if ends_series and template not in members:
                members = [template, *members]
            affected: list[int] = []
            for row in members:
                if not row.active:
                    continue
                revert_balance(self.session, row)
                row.active = False
                affected.append(row.id)
            self.session.flush()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise TransientStorageError("Could not delete from the series") from exc
        except Exception:
            self.session.rollback()
            raise
        self._commit()
        return SeriesMutationResult(
            scope=scope,
            transaction=target,
            affected_ids=affected,
            series_ended=ends_series,
        )
