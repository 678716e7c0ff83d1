from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import date
from typing import Collection, Iterable, Mapping, Optional, Sequence

from filtering import FilterNode, FilterParseError, compile_filter, evaluate
from periods import Period, period_for, resolve_month
from records import (
    AllocationRecord,
    BudgetOverrideRecord,
    CategoryBudgetRecord,
    CategoryRecord,
    SavedFilterRecord,
    SpendingTargetRecord,
    TagRecord,
    TargetOverrideRecord,
    TransactionRecord,
)

logger = logging.getLogger(__name__)


class TargetFilterError(ValueError):
    pass


@dataclass(frozen=True)
class BudgetLine:
    category_id: int
    category_name: str
    category_color: Optional[str]
    budgeted: float
    spent: float
    offsets: float
    net_spent: float
    remaining: float
    over_budget: bool


@dataclass(frozen=True)
class TargetLine:
    target_id: int
    name: str
    saved_filter_id: str
    period_type: str
    period_key: str
    budgeted: float
    spent: float = 0.0
    offsets: float = 0.0
    net_spent: float = 0.0
    remaining: float = 0.0
    over_budget: bool = False
    error: Optional[str] = None


def _txn_day(txn: TransactionRecord) -> Optional[date]:
    try:
        return date.fromisoformat((txn.date_iso or "").strip())
    except ValueError:
        return None


def split_allocations(
    transactions: Iterable[TransactionRecord],
    allocations: Iterable[AllocationRecord] = (),
    transaction_tags: Optional[Mapping[int, Iterable[TagRecord]]] = None,
) -> tuple[list[TransactionRecord], dict[int, tuple[TagRecord, ...]]]:
    """
    Effective spend rows. A parent keeps the remainder of its amount and each
    allocation becomes its own row under a negative id, with the allocation's
    category, tags and note. Returns the rows and their tags keyed by row id.
    """
    by_parent: dict[int, list[AllocationRecord]] = {}
    for alloc in allocations:
        by_parent.setdefault(alloc.parent_transaction_id, []).append(alloc)
    tags = transaction_tags or {}

    rows: list[TransactionRecord] = []
    row_tags: dict[int, tuple[TagRecord, ...]] = {}
    for txn in transactions:
        parts = by_parent.get(txn.id, [])
        row_tags[txn.id] = tuple(tags.get(txn.id, ()))
        if not parts:
            rows.append(txn)
            continue
        allocated = sum(alloc.amount for alloc in parts)
        rows.append(dataclasses.replace(txn, amount=txn.amount - allocated))
        for alloc in parts:
            child = dataclasses.replace(
                txn,
                id=-alloc.id,
                amount=alloc.amount,
                description=alloc.note if alloc.note.strip() else "Allocation",
                notes=alloc.note,
                category_id=alloc.category_id,
                category_name=alloc.category_name,
            )
            rows.append(child)
            row_tags[child.id] = tuple(alloc.tags)
    return rows, row_tags


def _scoped_debits(
    transactions: Iterable[TransactionRecord],
    period: Period,
    account_scope: Optional[Collection[int]],
    allocations: Iterable[AllocationRecord] = (),
    transaction_tags: Optional[Mapping[int, Iterable[TagRecord]]] = None,
) -> tuple[list[TransactionRecord], dict[int, tuple[TagRecord, ...]]]:
    # Window and account scope apply to the parent; the debit test applies to
    # each effective row after splitting.
    scope = set(account_scope) if account_scope else None
    in_window: list[TransactionRecord] = []
    for txn in transactions:
        if scope is not None and txn.account_id not in scope:
            continue
        day = _txn_day(txn)
        if day is None or not period.contains(day):
            continue
        in_window.append(txn)
    rows, row_tags = split_allocations(in_window, allocations, transaction_tags)
    return [row for row in rows if row.amount < 0], row_tags


def _net(budgeted: float, spent: float, offsets: float) -> tuple[float, float, bool]:
    # Offsets are not clamped to the debit magnitude; net spend may go negative.
    net_spent = spent - offsets
    remaining = budgeted - net_spent
    return net_spent, remaining, remaining < 0


def _override_amount(base: float, overrides: Iterable, key: str, attr: str) -> float:
    for override in overrides:
        if getattr(override, attr) == key:
            return override.amount
    return base


def compute_budget_lines(
    budgets: Sequence[CategoryBudgetRecord],
    overrides: Mapping[int, Sequence[BudgetOverrideRecord]],
    offsets_by_debit: Mapping[int, float],
    month_key: str,
    account_scope: Optional[Collection[int]],
    *,
    transactions: Iterable[TransactionRecord],
    categories: Iterable[CategoryRecord],
    allocations: Iterable[AllocationRecord] = (),
) -> list[BudgetLine]:
    period = resolve_month(month_key)
    cat_by_id = {c.id: c for c in categories}

    spent_by_cat: dict[int, float] = {}
    offsets_by_cat: dict[int, float] = {}
    debits, _ = _scoped_debits(transactions, period, account_scope, allocations)
    for txn in debits:
        if txn.category_id is None:
            continue
        cat_id = txn.category_id
        spent_by_cat[cat_id] = spent_by_cat.get(cat_id, 0.0) - txn.amount
        offsets_by_cat[cat_id] = offsets_by_cat.get(cat_id, 0.0) + offsets_by_debit.get(
            txn.id, 0.0
        )

    def sort_key(budget: CategoryBudgetRecord) -> tuple[int, int]:
        cat = cat_by_id.get(budget.category_id)
        return (cat.sort_order if cat else 0, budget.category_id)

    lines: list[BudgetLine] = []
    for budget in sorted(budgets, key=sort_key):
        budgeted = _override_amount(
            budget.amount, overrides.get(budget.id, ()), period.key, "month_key"
        )
        spent = spent_by_cat.get(budget.category_id, 0.0)
        offsets = offsets_by_cat.get(budget.category_id, 0.0)
        net_spent, remaining, over = _net(budgeted, spent, offsets)
        cat = cat_by_id.get(budget.category_id)
        lines.append(
            BudgetLine(
                category_id=budget.category_id,
                category_name=cat.name if cat else f"Category {budget.category_id}",
                category_color=cat.color if cat else None,
                budgeted=budgeted,
                spent=spent,
                offsets=offsets,
                net_spent=net_spent,
                remaining=remaining,
                over_budget=over,
            )
        )
    return lines


def _target_filter(
    target: SpendingTargetRecord, saved_filters: Iterable[SavedFilterRecord]
) -> FilterNode:
    wanted = (target.saved_filter_id or "").strip().lower()
    saved = next(
        (sf for sf in saved_filters if (sf.id or "").strip().lower() == wanted), None
    )
    if saved is None:
        raise TargetFilterError(
            f"saved filter {target.saved_filter_id.strip()!r} not found"
        )
    try:
        node = compile_filter(saved.expr.strip(), strict=True)
    except FilterParseError as exc:
        raise TargetFilterError(
            f"parse target filter {saved.id!r}: {exc}"
        ) from exc
    if node is None:
        raise TargetFilterError(f"saved filter {saved.id!r} is empty")
    return node


def compute_target_line(
    target: SpendingTargetRecord,
    overrides: Sequence[TargetOverrideRecord],
    offsets_by_debit: Mapping[int, float],
    transaction_tags: Mapping[int, Iterable[TagRecord]],
    saved_filters: Iterable[SavedFilterRecord],
    account_scope: Optional[Collection[int]],
    *,
    transactions: Iterable[TransactionRecord],
    allocations: Iterable[AllocationRecord] = (),
    today: Optional[date] = None,
) -> TargetLine:
    """
    Spend of the target's saved-filter cohort for the current period.

    Raises TargetFilterError when the saved filter is missing or malformed and
    ValueError for an unknown period type.
    """
    period = period_for(target.period_type, today)
    budgeted = _override_amount(target.amount, overrides, period.key, "period_key")
    node = _target_filter(target, saved_filters)

    spent = 0.0
    offsets = 0.0
    debits, row_tags = _scoped_debits(
        transactions, period, account_scope, allocations, transaction_tags
    )
    for txn in debits:
        if not evaluate(node, txn, row_tags.get(txn.id, ())):
            continue
        spent -= txn.amount
        offsets += offsets_by_debit.get(txn.id, 0.0)

    net_spent, remaining, over = _net(budgeted, spent, offsets)
    return TargetLine(
        target_id=target.id,
        name=target.name,
        saved_filter_id=target.saved_filter_id,
        period_type=target.period_type,
        period_key=period.key,
        budgeted=budgeted,
        spent=spent,
        offsets=offsets,
        net_spent=net_spent,
        remaining=remaining,
        over_budget=over,
    )


def compute_target_lines(
    targets: Sequence[SpendingTargetRecord],
    overrides: Mapping[int, Sequence[TargetOverrideRecord]],
    offsets_by_debit: Mapping[int, float],
    transaction_tags: Mapping[int, Iterable[TagRecord]],
    saved_filters: Sequence[SavedFilterRecord],
    account_scope: Optional[Collection[int]],
    *,
    transactions: Sequence[TransactionRecord],
    allocations: Sequence[AllocationRecord] = (),
    today: Optional[date] = None,
) -> list[TargetLine]:
    lines: list[TargetLine] = []
    for target in sorted(targets, key=lambda t: (t.name.lower(), t.id)):
        target_overrides = overrides.get(target.id, ())
        try:
            line = compute_target_line(
                target,
                target_overrides,
                offsets_by_debit,
                transaction_tags,
                saved_filters,
                account_scope,
                transactions=transactions,
                allocations=allocations,
                today=today,
            )
        except TargetFilterError as exc:
            logger.warning(f"target_failed: target={target.id} error={exc}")
            period = period_for(target.period_type, today)
            budgeted = _override_amount(
                target.amount, target_overrides, period.key, "period_key"
            )
            line = TargetLine(
                target_id=target.id,
                name=target.name,
                saved_filter_id=target.saved_filter_id,
                period_type=target.period_type,
                period_key=period.key,
                budgeted=budgeted,
                remaining=budgeted,
                error=str(exc),
            )
        lines.append(line)
    return lines
