import datetime as dt
import uuid
from datetime import date, datetime
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models import BudgetPeriod, BudgetStatusLevel, TransactionType


class BudgetIn(BaseModel):
    # Field rules are enforced by validation.py so that failures surface as
    # typed budget errors rather than a generic ValidationError.
    name: str
    amount_cents: int
    period: str = BudgetPeriod.monthly.value
    category_id: Optional[Union[uuid.UUID, str]] = None
    start_date: date
    end_date: Optional[date] = None


class BudgetUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    amount_cents: Optional[int] = None
    period: Optional[str] = None
    category_id: Optional[Union[uuid.UUID, str]] = None
    clear_category: bool = False
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: Optional[bool] = None


class BudgetFilter(BaseModel):
    period: Optional[BudgetPeriod] = None
    is_active: Optional[bool] = True
    category_id: Optional[Union[uuid.UUID, str]] = None
    limit: int = Field(default=20, ge=1, le=1000)
    offset: int = Field(default=0, ge=0)


class TransactionIn(BaseModel):
    date: dt.date
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    category_id: Union[uuid.UUID, str]
    description: Optional[str] = Field(default=None, max_length=1000)


class UsageStat(BaseModel):
    budget_id: uuid.UUID
    budget_name: str
    budget_amount_cents: int
    spent_cents: int
    remaining_cents: int
    usage_percentage: float
    period: BudgetPeriod
    start_date: date
    end_date: date
    days_remaining: int
    status: BudgetStatusLevel
    category_name: Optional[str] = None


class BudgetStatus(BaseModel):
    budget_id: uuid.UUID
    name: str
    total_amount_cents: int
    spent_cents: int
    remaining_cents: int
    usage_percentage: float
    status: BudgetStatusLevel
    is_over_budget: bool
    days_total: int
    days_elapsed: int
    days_remaining: int
    daily_budget_cents: int
    daily_spent_cents: int
    projected_overrun_cents: int
    recommendations: list[str] = Field(default_factory=list)
    checked_at: datetime
