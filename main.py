import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from aggregation import SpendAggregator
from closures import BudgetClosureProcessor
from database import SessionLocal
from errors import ForbiddenError, NotFoundError, TransientStorageError
from models import BudgetPeriod, MutationScope, TransactionType
from scheduler import SchedulerManager
from schemas import (
    BudgetIn,
    BudgetOut,
    BudgetSnapshotOut,
    BudgetUpdateIn,
    CategoryIn,
    CategoryOut,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
    WalletIn,
    WalletOut,
)
from series import ScopedSeriesMutator
from services import (
    BudgetService,
    CategoryService,
    TransactionFilters,
    TransactionService,
    WalletService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_user_id(x_user_id: Optional[int] = Header(default=None)) -> int:
    return x_user_id or get_current_user_id()


def _http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, TransientStorageError):
        logger.warning(f"storage_error: detail={exc}")
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


scheduler_manager = SchedulerManager()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    scheduler_manager.start()
    try:
        yield
    finally:
        scheduler_manager.stop()


app = FastAPI(title="moneyflow", lifespan=lifespan)


@app.get("/wallets", response_model=list[WalletOut])
def list_wallets(db: Session = Depends(get_db), user_id: int = Depends(get_user_id)):
    return WalletService(db, user_id).list_all()


@app.post("/wallets", response_model=WalletOut, status_code=201)
def create_wallet(
    data: WalletIn, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return WalletService(db, user_id).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/categories", response_model=list[CategoryOut])
def list_categories(
    db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    return CategoryService(db, user_id).list_all()


@app.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(
    data: CategoryIn, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return CategoryService(db, user_id).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return TransactionService(db, user_id).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/transactions", response_model=list[TransactionOut])
def list_transactions(
    wallet_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    include_templates: bool = False,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    filters = TransactionFilters(
        wallet_id=wallet_id,
        type=type,
        date_from=date_from,
        date_to=date_to,
        include_templates=include_templates,
    )
    return TransactionService(db, user_id).list(filters)


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return TransactionService(db, user_id).get(transaction_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.patch("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    patch: TransactionPatch,
    scope: MutationScope = Query(default=MutationScope.single),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        result = ScopedSeriesMutator(db, user_id).update(transaction_id, patch, scope)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "scope": result.scope.value,
        "affected_count": result.affected_count,
        "transaction": TransactionOut.model_validate(result.transaction).model_dump(
            mode="json"
        ),
    }


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    scope: MutationScope = Query(default=MutationScope.single),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        result = ScopedSeriesMutator(db, user_id).delete(transaction_id, scope)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "scope": result.scope.value,
        "deleted_count": result.affected_count,
        "series_ended": result.series_ended,
    }


@app.get("/budgets")
@app.get("/budgets/overview")
def budgets_overview(
    period: Optional[BudgetPeriod] = None,
    on: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    overview = SpendAggregator(db, user_id).overview(reference=on, period=period)
    return overview.as_dict()


@app.post("/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    data: BudgetIn, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return BudgetService(db, user_id).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return BudgetService(db, user_id).get(budget_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.patch("/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetUpdateIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        return BudgetService(db, user_id).update(budget_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        BudgetService(db, user_id).delete(budget_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.get("/budgets/{budget_id}/progress")
def budget_progress(
    budget_id: int,
    on: Optional[date] = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    user_id: int = Depends(get_user_id),
):
    try:
        budget = BudgetService(db, user_id).get(budget_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return SpendAggregator(db, user_id).progress_for_budget(budget, on).as_dict()


@app.get("/budgets/{budget_id}/history", response_model=list[BudgetSnapshotOut])
def budget_history(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        return BudgetService(db, user_id).history(budget_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/budgets/{budget_id}/close-period")
def close_budget_period(
    budget_id: int, db: Session = Depends(get_db), user_id: int = Depends(get_user_id)
):
    try:
        created = BudgetClosureProcessor(db).close_for_owner(user_id, budget_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    logger.info(
        f"closure_forced: budget_id={budget_id} snapshots_written={len(created)}"
    )
    return {
        "closed": bool(created),
        "snapshots": [
            BudgetSnapshotOut.model_validate(s).model_dump(mode="json") for s in created
        ],
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
