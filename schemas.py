from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import PeriodType


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=7)
    sort_order: int = 0


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class TransactionIn(BaseModel):
    date: date
    date_raw: str = Field(default="", max_length=40)
    amount: float
    description: str = Field(..., min_length=1, max_length=200)
    notes: str = ""
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    tags: list[str] = Field(default_factory=list)


class SavedFilterIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = Field(default=None, max_length=63)
    name: str = Field(..., min_length=1, max_length=120)
    expr: str = Field(..., min_length=1)


class RuleIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    saved_filter_id: str = Field(..., min_length=1, max_length=63)
    set_category_id: Optional[int] = None
    add_tag_ids: list[int] = Field(default_factory=list)
    enabled: bool = True
    sort_order: int = Field(default=0, ge=0, le=10_000)


class CategoryBudgetIn(BaseModel):
    category_id: int
    amount: float = Field(..., ge=0)


class BudgetOverrideIn(BaseModel):
    budget_id: int
    month_key: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    amount: float = Field(..., ge=0)


class SpendingTargetIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    saved_filter_id: str = Field(..., min_length=1, max_length=63)
    amount: float = Field(..., ge=0)
    period_type: PeriodType = PeriodType.monthly


class TargetOverrideIn(BaseModel):
    target_id: int
    period_key: str = Field(..., pattern=r"^\d{4}(-(0[1-9]|1[0-2])|-Q[1-4])?$")
    amount: float = Field(..., ge=0)


class CreditOffsetIn(BaseModel):
    credit_transaction_id: int
    debit_transaction_id: int
    amount: float = Field(..., gt=0)

    @field_validator("debit_transaction_id")
    @classmethod
    def _distinct_transactions(cls, value: int, info) -> int:
        if value == info.data.get("credit_transaction_id"):
            raise ValueError("Credit and debit must be different transactions")
        return value


class AllocationIn(BaseModel):
    parent_transaction_id: int
    amount: float = Field(..., gt=0)
    category_id: Optional[int] = None
    note: str = ""
    tags: list[str] = Field(default_factory=list)
