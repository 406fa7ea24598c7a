from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    BudgetPeriod,
    CategoryType,
    Recurrence,
    TransactionType,
    WalletKind,
)


class WalletIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    kind: WalletKind = WalletKind.bank
    balance_cents: int = 0


class WalletOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    kind: WalletKind
    balance_cents: int


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: CategoryType


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    description: Optional[str] = Field(default=None, max_length=200)
    date: Optional[datetime] = None
    wallet_id: Optional[int] = None
    to_wallet_id: Optional[int] = None
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    trip_id: Optional[int] = None
    investment_asset_id: Optional[int] = None
    exclude_from_stats: bool = False
    recurrence: Optional[Recurrence] = None


class TransactionPatch(BaseModel):
    """Partial update; only fields present in the payload are applied."""

    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = Field(default=None, max_length=200)
    date: Optional[datetime] = None
    wallet_id: Optional[int] = None
    to_wallet_id: Optional[int] = None
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    trip_id: Optional[int] = None
    investment_asset_id: Optional[int] = None
    exclude_from_stats: Optional[bool] = None
    recurrence: Optional[Recurrence] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    amount_cents: int
    description: Optional[str]
    date: datetime
    wallet_id: Optional[int]
    to_wallet_id: Optional[int]
    category_id: Optional[int]
    subcategory_id: Optional[int]
    trip_id: Optional[int]
    investment_asset_id: Optional[int]
    active: bool
    exclude_from_stats: bool
    is_recurring: bool
    recurrence: Optional[Recurrence]
    parent_id: Optional[int]
    occurrence_date: Optional[datetime]


class BudgetIn(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    period: BudgetPeriod
    limit_cents: int = Field(..., gt=0)
    start_date: date
    category_id: Optional[int] = None
    wallet_id: Optional[int] = None


class BudgetUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=120)
    period: Optional[BudgetPeriod] = None
    limit_cents: Optional[int] = Field(default=None, gt=0)
    start_date: Optional[date] = None
    category_id: Optional[int] = None
    wallet_id: Optional[int] = None


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: Optional[str]
    period: BudgetPeriod
    limit_cents: int
    start_date: date
    category_id: Optional[int]
    wallet_id: Optional[int]
    active: bool


class BudgetSnapshotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    budget_id: int
    period_from: datetime
    period_to: datetime
    limit_cents: int
    spent_cents: int
    remaining_cents: int
    forced: bool
    closed_at: datetime
