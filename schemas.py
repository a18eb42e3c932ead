import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, BudgetPeriod, RecurringFrequency, TransactionType


class AccountIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    initial_balance_cents: int = 0
    currency_code: str = Field("BRL", min_length=3, max_length=3)
    is_active: bool = True
    color: Optional[str] = Field(None, max_length=9)
    icon: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = None


class AccountPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    initial_balance_cents: Optional[int] = None
    currency_code: Optional[str] = Field(None, min_length=3, max_length=3)
    is_active: Optional[bool] = None
    color: Optional[str] = Field(None, max_length=9)
    icon: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = None


class CategoryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    type: TransactionType
    color: Optional[str] = Field(None, max_length=9)
    icon: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = None


class CategoryPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[str] = Field(None, max_length=9)
    icon: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = None


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: int
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    date: date
    description: str = Field(..., min_length=1, max_length=200)
    category_id: Optional[int] = None
    notes: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    is_recurring: bool = False
    recurring_frequency: Optional[RecurringFrequency] = None
    transfer_from_account_id: Optional[int] = None
    transfer_to_account_id: Optional[int] = None


class TransactionPatch(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(None, gt=0)
    date: Optional[dt.date] = None
    description: Optional[str] = Field(None, min_length=1, max_length=200)
    category_id: Optional[int] = None
    notes: Optional[str] = None
    tags: Optional[list[str]] = None
    is_recurring: Optional[bool] = None
    recurring_frequency: Optional[RecurringFrequency] = None
    transfer_from_account_id: Optional[int] = None
    transfer_to_account_id: Optional[int] = None


class BudgetIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: int
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., gt=0)
    period: BudgetPeriod
    start_date: date
    end_date: Optional[date] = None
    is_active: bool = True


class BudgetPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: Optional[int] = None
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    amount_cents: Optional[int] = Field(None, gt=0)
    period: Optional[BudgetPeriod] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_active: Optional[bool] = None
