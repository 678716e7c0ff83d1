from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

UNCATEGORISED = "Uncategorised"


@dataclass(frozen=True)
class TransactionRecord:
    id: int
    date_iso: str
    amount: float
    description: str = ""
    category_id: Optional[int] = None
    category_name: str = UNCATEGORISED
    account_id: Optional[int] = None
    account_name: str = ""
    notes: str = ""
    date_raw: str = ""


@dataclass(frozen=True)
class TagRecord:
    id: int
    name: str


@dataclass(frozen=True)
class CategoryRecord:
    id: int
    name: str
    color: Optional[str] = None
    sort_order: int = 0


@dataclass(frozen=True)
class SavedFilterRecord:
    id: str
    name: str
    expr: str


@dataclass(frozen=True)
class RuleRecord:
    id: int
    name: str
    saved_filter_id: str
    set_category_id: Optional[int] = None
    add_tag_ids: tuple[int, ...] = field(default_factory=tuple)
    enabled: bool = True
    sort_order: int = 0
    tag_error: Optional[str] = None


@dataclass(frozen=True)
class CategoryBudgetRecord:
    id: int
    category_id: int
    amount: float


@dataclass(frozen=True)
class BudgetOverrideRecord:
    id: int
    budget_id: int
    month_key: str
    amount: float


@dataclass(frozen=True)
class SpendingTargetRecord:
    id: int
    name: str
    saved_filter_id: str
    amount: float
    period_type: str = "monthly"


@dataclass(frozen=True)
class TargetOverrideRecord:
    id: int
    target_id: int
    period_key: str
    amount: float


@dataclass(frozen=True)
class CreditOffsetRecord:
    id: int
    credit_transaction_id: int
    debit_transaction_id: int
    amount: float


@dataclass(frozen=True)
class AllocationRecord:
    """Share of a parent transaction carried under its own category and tags."""

    id: int
    parent_transaction_id: int
    amount: float
    category_id: Optional[int] = None
    category_name: str = UNCATEGORISED
    note: str = ""
    tags: tuple[TagRecord, ...] = field(default_factory=tuple)


def index_credit_offsets(
    offsets: Iterable[CreditOffsetRecord],
) -> tuple[dict[int, float], dict[int, float]]:
    """Sum offset amounts per debit and per credit transaction."""
    by_debit: dict[int, float] = {}
    by_credit: dict[int, float] = {}
    for offset in offsets:
        by_debit[offset.debit_transaction_id] = (
            by_debit.get(offset.debit_transaction_id, 0.0) + offset.amount
        )
        by_credit[offset.credit_transaction_id] = (
            by_credit.get(offset.credit_transaction_id, 0.0) + offset.amount
        )
    return by_debit, by_credit


def group_by_parent(
    overrides: Iterable[BudgetOverrideRecord | TargetOverrideRecord],
) -> dict[int, list]:
    grouped: dict[int, list] = {}
    for override in overrides:
        if isinstance(override, BudgetOverrideRecord):
            parent = override.budget_id
        else:
            parent = override.target_id
        grouped.setdefault(parent, []).append(override)
    return grouped
