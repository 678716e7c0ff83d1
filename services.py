from __future__ import annotations

import json
from datetime import date
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload, selectinload

from budgets import BudgetLine, TargetLine, compute_budget_lines, compute_target_lines
from config import get_settings
from filtering import (
    and_nodes,
    compile_filter,
    evaluate,
    next_unique_saved_filter_id,
    normalize_saved_filter_id,
    parse_strict,
    to_string,
)
from models import (
    Account,
    BudgetOverride,
    Category,
    CategoryBudget,
    CreditOffset,
    Rule,
    SavedFilter,
    SpendingTarget,
    Tag,
    TargetOverride,
    Transaction,
    TransactionAllocation,
)
from periods import resolve_month
from records import (
    UNCATEGORISED,
    AllocationRecord,
    BudgetOverrideRecord,
    CategoryBudgetRecord,
    CategoryRecord,
    CreditOffsetRecord,
    RuleRecord,
    SavedFilterRecord,
    SpendingTargetRecord,
    TagRecord,
    TargetOverrideRecord,
    TransactionRecord,
    group_by_parent,
    index_credit_offsets,
)
from rules_engine import (
    DryRunResult,
    RuleRunResult,
    TransactionChange,
    apply_rules_to_scope,
    dry_run_rules,
)
from schemas import (
    AccountIn,
    AllocationIn,
    BudgetOverrideIn,
    CategoryBudgetIn,
    CategoryIn,
    CreditOffsetIn,
    RuleIn,
    SavedFilterIn,
    SpendingTargetIn,
    TargetOverrideIn,
    TransactionIn,
)


def transaction_record(txn: Transaction) -> TransactionRecord:
    return TransactionRecord(
        id=txn.id,
        date_iso=txn.date.isoformat(),
        amount=txn.amount,
        description=txn.description or "",
        category_id=txn.category_id,
        category_name=txn.category.name if txn.category else UNCATEGORISED,
        account_id=txn.account_id,
        account_name=txn.account.name if txn.account else "",
        notes=txn.notes or "",
        date_raw=txn.date_raw or "",
    )


def category_record(category: Category) -> CategoryRecord:
    return CategoryRecord(
        id=category.id,
        name=category.name,
        color=category.color,
        sort_order=category.sort_order,
    )


def rule_record(rule: Rule) -> RuleRecord:
    tag_ids: list[int] = []
    tag_error = None
    if rule.add_tag_ids_json:
        try:
            tag_ids = [int(v) for v in json.loads(rule.add_tag_ids_json) or []]
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            tag_error = f"invalid add_tag_ids: {exc}"
            tag_ids = []
    return RuleRecord(
        id=rule.id,
        name=rule.name,
        saved_filter_id=rule.saved_filter_id,
        set_category_id=rule.set_category_id,
        add_tag_ids=tuple(tag_ids),
        enabled=rule.enabled,
        sort_order=rule.sort_order,
        tag_error=tag_error,
    )


def saved_filter_record(saved: SavedFilter) -> SavedFilterRecord:
    return SavedFilterRecord(id=saved.id, name=saved.name, expr=saved.expr)


def _scope_ids(account_ids: Optional[Iterable[int]]) -> Optional[list[int]]:
    if not account_ids:
        return None
    return sorted(set(account_ids))


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        stmt = select(Category).order_by(Category.sort_order.asc(), Category.id.asc())
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise ValueError("Category not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        stmt = select(Category).where(func.lower(Category.name) == clean_name.lower())
        if self.session.scalar(stmt):
            raise ValueError("Category already exists")

        category = Category(
            name=clean_name, color=data.color, sort_order=data.sort_order
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def records(self) -> list[CategoryRecord]:
        return [category_record(c) for c in self.list_all()]


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Account]:
        return self.session.scalars(select(Account).order_by(Account.name)).all()

    def create(self, data: AccountIn) -> Account:
        clean_name = data.name.strip()
        stmt = select(Account).where(func.lower(Account.name) == clean_name.lower())
        if self.session.scalar(stmt):
            raise ValueError("Account already exists")
        account = Account(name=clean_name)
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account


class TagService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Tag]:
        return self.session.scalars(select(Tag).order_by(Tag.name)).all()

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Tag name cannot be empty")

        stmt = select(Tag).where(func.lower(Tag.name) == clean_name.lower())
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def records(self) -> list[TagRecord]:
        return [TagRecord(id=t.id, name=t.name) for t in self.list_all()]


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: TransactionIn) -> Transaction:
        if data.category_id is not None:
            CategoryService(self.session).get(data.category_id)
        if data.account_id is not None and not self.session.get(
            Account, data.account_id
        ):
            raise ValueError("Account not found")

        txn = Transaction(
            date=data.date,
            date_raw=data.date_raw or data.date.isoformat(),
            amount=data.amount,
            description=data.description.strip(),
            notes=data.notes,
            category_id=data.category_id,
            account_id=data.account_id,
        )
        if data.tags:
            tag_service = TagService(self.session)
            tags: list[Tag] = []
            tag_ids: set[int] = set()
            for name in data.tags:
                tag = tag_service.get_or_create(name)
                if tag.id not in tag_ids:
                    tags.append(tag)
                    tag_ids.add(tag.id)
            txn.tags = tags

        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.account),
                selectinload(Transaction.tags),
            )
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def list(
        self,
        *,
        account_ids: Optional[Iterable[int]] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Transaction]:
        """Transactions ordered by date, optionally within ``[start, end)``."""
        stmt = select(Transaction).options(
            joinedload(Transaction.category),
            joinedload(Transaction.account),
            selectinload(Transaction.tags),
        )
        scope = _scope_ids(account_ids)
        if scope:
            stmt = stmt.where(Transaction.account_id.in_(scope))
        if start:
            stmt = stmt.where(Transaction.date >= start)
        if end:
            stmt = stmt.where(Transaction.date < end)
        stmt = stmt.order_by(Transaction.date.asc(), Transaction.id.asc())
        return self.session.scalars(stmt).all()

    def search(
        self,
        query: str,
        *,
        account_ids: Optional[Iterable[int]] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        base_filter: Optional[str] = None,
    ) -> list[Transaction]:
        """
        Live filtering: the query is parsed leniently and may be combined with
        a saved filter expression through AND.
        """
        node = and_nodes(
            compile_filter(base_filter, strict=True) if base_filter else None,
            compile_filter(query or ""),
        )
        rows = self.list(account_ids=account_ids, start=start, end=end)
        if node is None:
            return rows
        return [
            txn
            for txn in rows
            if evaluate(node, transaction_record(txn), [t.name for t in txn.tags])
        ]

    def records(
        self,
        *,
        account_ids: Optional[Iterable[int]] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> tuple[list[TransactionRecord], dict[int, list[TagRecord]]]:
        rows = self.list(account_ids=account_ids, start=start, end=end)
        tags_by_txn = {
            txn.id: [TagRecord(id=t.id, name=t.name) for t in txn.tags] for txn in rows
        }
        return [transaction_record(txn) for txn in rows], tags_by_txn


class SavedFilterService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[SavedFilter]:
        stmt = select(SavedFilter).order_by(
            func.lower(SavedFilter.name).asc(), SavedFilter.id.asc()
        )
        return self.session.scalars(stmt).all()

    def get(self, filter_id: str) -> SavedFilter:
        saved = self.session.get(SavedFilter, (filter_id or "").strip().lower())
        if not saved:
            raise ValueError("Saved filter not found")
        return saved

    @staticmethod
    def _canonical_expr(expr: str) -> str:
        node = parse_strict(expr)
        if node is None:
            raise ValueError("Filter expression cannot be empty")
        return to_string(node)

    def create(self, data: SavedFilterIn) -> SavedFilter:
        expr = self._canonical_expr(data.expr)
        existing_ids = self.session.scalars(select(SavedFilter.id)).all()
        if data.id:
            filter_id = normalize_saved_filter_id(data.id)
            if filter_id in existing_ids:
                raise ValueError("Saved filter id already exists")
        else:
            filter_id = next_unique_saved_filter_id(existing_ids, data.name)

        saved = SavedFilter(id=filter_id, name=data.name.strip(), expr=expr)
        self.session.add(saved)
        self.session.commit()
        self.session.refresh(saved)
        return saved

    def update(self, filter_id: str, data: SavedFilterIn) -> SavedFilter:
        saved = self.get(filter_id)
        saved.name = data.name.strip()
        saved.expr = self._canonical_expr(data.expr)
        self.session.commit()
        self.session.refresh(saved)
        return saved

    def delete(self, filter_id: str) -> None:
        saved = self.get(filter_id)
        self.session.delete(saved)
        self.session.commit()

    def records(self) -> list[SavedFilterRecord]:
        return [saved_filter_record(sf) for sf in self.list_all()]


class RuleService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Rule]:
        stmt = (
            select(Rule)
            .options(joinedload(Rule.set_category))
            .order_by(Rule.sort_order.asc(), Rule.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, rule_id: int) -> Rule:
        rule = self.session.get(Rule, rule_id)
        if not rule:
            raise ValueError("Rule not found")
        return rule

    def _validate(self, data: RuleIn) -> tuple[str, list[int]]:
        saved = SavedFilterService(self.session).get(data.saved_filter_id)
        if data.set_category_id is not None:
            CategoryService(self.session).get(data.set_category_id)
        tag_ids = sorted(set(data.add_tag_ids))
        for tag_id in tag_ids:
            if not self.session.get(Tag, tag_id):
                raise ValueError("Tag not found")
        if data.set_category_id is None and not tag_ids:
            raise ValueError("Rule needs a category or at least one tag")
        return saved.id, tag_ids

    def create(self, data: RuleIn) -> Rule:
        filter_id, tag_ids = self._validate(data)
        rule = Rule(
            name=data.name.strip(),
            saved_filter_id=filter_id,
            set_category_id=data.set_category_id,
            add_tag_ids_json=json.dumps(tag_ids),
            enabled=data.enabled,
            sort_order=data.sort_order,
        )
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update(self, rule_id: int, data: RuleIn) -> Rule:
        rule = self.get(rule_id)
        filter_id, tag_ids = self._validate(data)

        rule.name = data.name.strip()
        rule.saved_filter_id = filter_id
        rule.set_category_id = data.set_category_id
        rule.add_tag_ids_json = json.dumps(tag_ids)
        rule.enabled = data.enabled
        rule.sort_order = data.sort_order

        self.session.commit()
        self.session.refresh(rule)
        return rule

    def toggle(self, rule_id: int, enabled: bool) -> None:
        rule = self.get(rule_id)
        rule.enabled = enabled
        self.session.commit()

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.delete(rule)
        self.session.commit()

    def _engine_inputs(self) -> dict[str, object]:
        transactions, tags_by_txn = TransactionService(self.session).records()
        return {
            "rules": [rule_record(r) for r in self.list_all()],
            "transactions": transactions,
            "transaction_tags": tags_by_txn,
            "saved_filters": SavedFilterService(self.session).records(),
            "categories": CategoryService(self.session).records(),
            "tags": TagService(self.session).records(),
        }

    def dry_run(self, account_ids: Optional[Iterable[int]] = None) -> DryRunResult:
        inputs = self._engine_inputs()
        return dry_run_rules(
            inputs["rules"],
            inputs["transactions"],
            inputs["transaction_tags"],
            inputs["saved_filters"],
            _scope_ids(account_ids),
            categories=inputs["categories"],
            tags=inputs["tags"],
            sample_limit=get_settings().sample_limit,
        )

    def _persist(self, changes: Sequence[TransactionChange]) -> None:
        try:
            for change in changes:
                txn = self.session.get(Transaction, change.transaction_id)
                if not txn:
                    raise ValueError("Transaction not found")
                if change.category_changed:
                    txn.category_id = change.category_id
                attached = {t.id for t in txn.tags}
                for tag_id in change.added_tag_ids:
                    if tag_id in attached:
                        continue
                    tag = self.session.get(Tag, tag_id)
                    if not tag:
                        raise ValueError("Tag not found")
                    txn.tags.append(tag)
                    attached.add(tag_id)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def apply(self, account_ids: Optional[Iterable[int]] = None) -> RuleRunResult:
        """
        Apply all enabled rules to the scoped transactions and persist the
        resulting category and tag changes in a single commit.
        """
        inputs = self._engine_inputs()
        return apply_rules_to_scope(
            inputs["rules"],
            inputs["transactions"],
            inputs["transaction_tags"],
            _scope_ids(account_ids),
            inputs["saved_filters"],
            categories=inputs["categories"],
            tags=inputs["tags"],
            persist=self._persist,
            sample_limit=get_settings().sample_limit,
        )


class BudgetService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_budgets(self) -> list[CategoryBudget]:
        stmt = (
            select(CategoryBudget)
            .options(joinedload(CategoryBudget.category))
            .order_by(CategoryBudget.category_id.asc())
        )
        return self.session.scalars(stmt).all()

    def upsert_budget(self, data: CategoryBudgetIn) -> CategoryBudget:
        CategoryService(self.session).get(data.category_id)
        stmt = select(CategoryBudget).where(
            CategoryBudget.category_id == data.category_id
        )
        existing = self.session.scalar(stmt)
        if existing:
            existing.amount = data.amount
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = CategoryBudget(category_id=data.category_id, amount=data.amount)
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete_budget(self, budget_id: int) -> None:
        budget = self.session.get(CategoryBudget, budget_id)
        if not budget:
            raise ValueError("Budget not found")
        self.session.delete(budget)
        self.session.commit()

    def upsert_override(self, data: BudgetOverrideIn) -> BudgetOverride:
        if not self.session.get(CategoryBudget, data.budget_id):
            raise ValueError("Budget not found")

        stmt = select(BudgetOverride).where(
            BudgetOverride.budget_id == data.budget_id,
            BudgetOverride.month_key == data.month_key,
        )
        existing = self.session.scalar(stmt)
        if existing:
            existing.amount = data.amount
            self.session.commit()
            self.session.refresh(existing)
            return existing

        override = BudgetOverride(
            budget_id=data.budget_id, month_key=data.month_key, amount=data.amount
        )
        self.session.add(override)
        self.session.commit()
        self.session.refresh(override)
        return override

    def delete_override(self, override_id: int) -> None:
        override = self.session.get(BudgetOverride, override_id)
        if not override:
            raise ValueError("Override not found")
        self.session.delete(override)
        self.session.commit()

    def budget_lines(
        self, month_key: str, account_ids: Optional[Iterable[int]] = None
    ) -> list[BudgetLine]:
        period = resolve_month(month_key)
        budgets = [
            CategoryBudgetRecord(id=b.id, category_id=b.category_id, amount=b.amount)
            for b in self.list_budgets()
        ]
        overrides = group_by_parent(
            BudgetOverrideRecord(
                id=o.id, budget_id=o.budget_id, month_key=o.month_key, amount=o.amount
            )
            for o in self.session.scalars(select(BudgetOverride)).all()
        )
        transactions, _ = TransactionService(self.session).records(
            account_ids=account_ids, start=period.start, end=period.end
        )
        allocations = AllocationService(self.session).records(
            parent_ids=[txn.id for txn in transactions]
        )
        return compute_budget_lines(
            budgets,
            overrides,
            CreditOffsetService(self.session).offsets_by_debit(),
            period.key,
            _scope_ids(account_ids),
            transactions=transactions,
            categories=CategoryService(self.session).records(),
            allocations=allocations,
        )


class SpendingTargetService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[SpendingTarget]:
        stmt = select(SpendingTarget).order_by(
            func.lower(SpendingTarget.name).asc(), SpendingTarget.id.asc()
        )
        return self.session.scalars(stmt).all()

    def get(self, target_id: int) -> SpendingTarget:
        target = self.session.get(SpendingTarget, target_id)
        if not target:
            raise ValueError("Spending target not found")
        return target

    def create(self, data: SpendingTargetIn) -> SpendingTarget:
        saved = SavedFilterService(self.session).get(data.saved_filter_id)
        target = SpendingTarget(
            name=data.name.strip(),
            saved_filter_id=saved.id,
            amount=data.amount,
            period_type=data.period_type,
        )
        self.session.add(target)
        self.session.commit()
        self.session.refresh(target)
        return target

    def delete(self, target_id: int) -> None:
        target = self.get(target_id)
        self.session.delete(target)
        self.session.commit()

    def upsert_override(self, data: TargetOverrideIn) -> TargetOverride:
        self.get(data.target_id)
        stmt = select(TargetOverride).where(
            TargetOverride.target_id == data.target_id,
            TargetOverride.period_key == data.period_key,
        )
        existing = self.session.scalar(stmt)
        if existing:
            existing.amount = data.amount
            self.session.commit()
            self.session.refresh(existing)
            return existing

        override = TargetOverride(
            target_id=data.target_id, period_key=data.period_key, amount=data.amount
        )
        self.session.add(override)
        self.session.commit()
        self.session.refresh(override)
        return override

    def target_lines(
        self,
        account_ids: Optional[Iterable[int]] = None,
        today: Optional[date] = None,
    ) -> list[TargetLine]:
        targets = [
            SpendingTargetRecord(
                id=t.id,
                name=t.name,
                saved_filter_id=t.saved_filter_id,
                amount=t.amount,
                period_type=t.period_type.value,
            )
            for t in self.list_all()
        ]
        overrides = group_by_parent(
            TargetOverrideRecord(
                id=o.id, target_id=o.target_id, period_key=o.period_key, amount=o.amount
            )
            for o in self.session.scalars(select(TargetOverride)).all()
        )
        transactions, tags_by_txn = TransactionService(self.session).records(
            account_ids=account_ids
        )
        allocations = AllocationService(self.session).records(
            parent_ids=[txn.id for txn in transactions]
        )
        return compute_target_lines(
            targets,
            overrides,
            CreditOffsetService(self.session).offsets_by_debit(),
            tags_by_txn,
            SavedFilterService(self.session).records(),
            _scope_ids(account_ids),
            transactions=transactions,
            allocations=allocations,
            today=today,
        )


class CreditOffsetService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[CreditOffset]:
        return self.session.scalars(
            select(CreditOffset).order_by(CreditOffset.id.asc())
        ).all()

    def create(self, data: CreditOffsetIn) -> CreditOffset:
        credit = self.session.get(Transaction, data.credit_transaction_id)
        if not credit:
            raise ValueError("Credit transaction not found")
        if credit.amount <= 0:
            raise ValueError("Offsets must start from a credit transaction")
        debit = self.session.get(Transaction, data.debit_transaction_id)
        if not debit:
            raise ValueError("Debit transaction not found")
        if debit.amount >= 0:
            raise ValueError("Offsets can only target debit transactions")

        existing = self.session.scalar(
            select(CreditOffset).where(
                CreditOffset.credit_transaction_id == data.credit_transaction_id,
                CreditOffset.debit_transaction_id == data.debit_transaction_id,
            )
        )
        if existing:
            raise ValueError("Offset already exists for this pair")

        allocated = float(
            self.session.execute(
                select(func.coalesce(func.sum(CreditOffset.amount), 0.0)).where(
                    CreditOffset.credit_transaction_id == data.credit_transaction_id
                )
            ).scalar_one()
            or 0.0
        )
        if allocated + data.amount > credit.amount:
            raise ValueError("Offset exceeds credit amount")

        offset = CreditOffset(
            credit_transaction_id=data.credit_transaction_id,
            debit_transaction_id=data.debit_transaction_id,
            amount=data.amount,
        )
        self.session.add(offset)
        self.session.commit()
        self.session.refresh(offset)
        return offset

    def delete(self, offset_id: int) -> None:
        offset = self.session.get(CreditOffset, offset_id)
        if not offset:
            raise ValueError("Offset not found")
        self.session.delete(offset)
        self.session.commit()

    def records(self) -> list[CreditOffsetRecord]:
        return [
            CreditOffsetRecord(
                id=o.id,
                credit_transaction_id=o.credit_transaction_id,
                debit_transaction_id=o.debit_transaction_id,
                amount=o.amount,
            )
            for o in self.list_all()
        ]

    def offsets_by_debit(self) -> dict[int, float]:
        by_debit, _ = index_credit_offsets(self.records())
        return by_debit


class AllocationService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(
        self, parent_ids: Optional[Iterable[int]] = None
    ) -> list[TransactionAllocation]:
        stmt = select(TransactionAllocation).options(
            joinedload(TransactionAllocation.category),
            selectinload(TransactionAllocation.tags),
        )
        if parent_ids is not None:
            stmt = stmt.where(
                TransactionAllocation.parent_transaction_id.in_(list(parent_ids))
            )
        stmt = stmt.order_by(TransactionAllocation.id.asc())
        return self.session.scalars(stmt).all()

    def create(self, data: AllocationIn) -> TransactionAllocation:
        """
        Split ``data.amount`` off a parent transaction. The amount is given as
        a magnitude and stored with the parent's sign; allocations on one
        parent may not exceed the parent's amount.
        """
        parent = self.session.get(Transaction, data.parent_transaction_id)
        if not parent:
            raise ValueError("Transaction not found")
        if data.category_id is not None:
            CategoryService(self.session).get(data.category_id)

        allocated = float(
            self.session.execute(
                select(
                    func.coalesce(
                        func.sum(func.abs(TransactionAllocation.amount)), 0.0
                    )
                ).where(TransactionAllocation.parent_transaction_id == parent.id)
            ).scalar_one()
            or 0.0
        )
        if allocated + data.amount > abs(parent.amount):
            raise ValueError("Allocation exceeds transaction amount")

        sign = -1.0 if parent.amount < 0 else 1.0
        allocation = TransactionAllocation(
            parent_transaction_id=parent.id,
            amount=sign * data.amount,
            category_id=data.category_id,
            note=data.note,
        )
        if data.tags:
            tag_service = TagService(self.session)
            tags: list[Tag] = []
            for name in data.tags:
                tag = tag_service.get_or_create(name)
                if tag not in tags:
                    tags.append(tag)
            allocation.tags = tags

        self.session.add(allocation)
        self.session.commit()
        self.session.refresh(allocation)
        return allocation

    def delete(self, allocation_id: int) -> None:
        allocation = self.session.get(TransactionAllocation, allocation_id)
        if not allocation:
            raise ValueError("Allocation not found")
        self.session.delete(allocation)
        self.session.commit()

    def records(
        self, parent_ids: Optional[Iterable[int]] = None
    ) -> list[AllocationRecord]:
        return [
            AllocationRecord(
                id=a.id,
                parent_transaction_id=a.parent_transaction_id,
                amount=a.amount,
                category_id=a.category_id,
                category_name=a.category.name if a.category else UNCATEGORISED,
                note=a.note or "",
                tags=tuple(TagRecord(id=t.id, name=t.name) for t in a.tags),
            )
            for a in self.list_all(parent_ids)
        ]
