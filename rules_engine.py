from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Callable, Collection, Iterable, Mapping, Optional, Sequence

from filtering import (
    FilterNode,
    FilterParseError,
    contains_field_predicate,
    evaluate,
    parse_strict,
    reclassify,
    to_string,
)
from records import (
    UNCATEGORISED,
    CategoryRecord,
    RuleRecord,
    SavedFilterRecord,
    TagRecord,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_LIMIT = 3


@dataclass(frozen=True)
class RuleSample:
    transaction_id: int
    date_iso: str
    amount: float
    description: str
    current_category: str
    new_category: str
    added_tag_names: tuple[str, ...]


@dataclass
class RuleOutcome:
    rule_id: int
    rule_name: str
    filter_id: str
    filter_expr: str = ""
    filter_name: str = ""
    error: Optional[str] = None
    matched: int = 0
    category_changes: int = 0
    tag_changes: int = 0
    samples: list[RuleSample] = field(default_factory=list)


@dataclass(frozen=True)
class RuleRunSummary:
    transactions_scoped: int = 0
    total_modified: int = 0
    total_cat_change: int = 0
    total_tag_change: int = 0
    failed_rules: int = 0


@dataclass(frozen=True)
class TransactionChange:
    transaction_id: int
    category_id: Optional[int]
    category_changed: bool
    added_tag_ids: tuple[int, ...]


@dataclass(frozen=True)
class RuleRunResult:
    updated_count: int
    category_change_count: int
    tag_change_count: int
    failed_rule_count: int
    outcomes: list[RuleOutcome]
    changes: list[TransactionChange]


@dataclass(frozen=True)
class DryRunResult:
    outcomes: list[RuleOutcome]
    summary: RuleRunSummary
    failed_rule_count: int


@dataclass(frozen=True)
class _ResolvedRule:
    rule: RuleRecord
    node: Optional[FilterNode]
    outcome: RuleOutcome


def ordered_enabled_rules(rules: Iterable[RuleRecord]) -> list[RuleRecord]:
    return sorted(
        (rule for rule in rules if rule.enabled),
        key=lambda rule: (rule.sort_order, rule.id),
    )


def _filter_key(filter_id: str) -> str:
    return (filter_id or "").strip().lower()


def _resolve_rules(
    rules: Iterable[RuleRecord], saved_filters: Iterable[SavedFilterRecord]
) -> tuple[list[RuleOutcome], list[_ResolvedRule]]:
    by_id = {_filter_key(sf.id): sf for sf in saved_filters}
    outcomes: list[RuleOutcome] = []
    resolved: list[_ResolvedRule] = []
    for rule in ordered_enabled_rules(rules):
        outcome = RuleOutcome(
            rule_id=rule.id, rule_name=rule.name, filter_id=rule.saved_filter_id
        )
        outcomes.append(outcome)

        saved = by_id.get(_filter_key(rule.saved_filter_id))
        if saved is None:
            outcome.error = f"saved filter not found: {rule.saved_filter_id.strip()}"
            logger.warning(f"rules_skip: rule={rule.id} reason={outcome.error}")
            continue
        try:
            node = parse_strict(saved.expr.strip())
        except FilterParseError as exc:
            outcome.error = f"saved filter invalid: {exc}"
            logger.warning(f"rules_skip: rule={rule.id} reason={outcome.error}")
            continue
        if not contains_field_predicate(node):
            node = reclassify(node)
        if rule.tag_error:
            outcome.error = rule.tag_error
            logger.warning(f"rules_skip: rule={rule.id} reason={outcome.error}")
            continue
        outcome.filter_expr = to_string(node)
        outcome.filter_name = saved.name.strip()
        resolved.append(_ResolvedRule(rule=rule, node=node, outcome=outcome))
    return outcomes, resolved


def _in_scope(
    transactions: Iterable[TransactionRecord],
    account_scope: Optional[Collection[int]],
) -> list[TransactionRecord]:
    if not account_scope:
        return list(transactions)
    scope = set(account_scope)
    return [txn for txn in transactions if txn.account_id in scope]


class _Names:
    def __init__(
        self,
        categories: Iterable[CategoryRecord],
        tags: Iterable[TagRecord],
        transaction_tags: Mapping[int, Iterable[TagRecord]],
        transactions: Iterable[TransactionRecord] = (),
    ) -> None:
        self.categories = {c.id: c.name for c in categories}
        for txn in transactions:
            if txn.category_id is not None:
                self.categories.setdefault(txn.category_id, txn.category_name)
        self.tags = {t.id: t.name.strip() for t in tags}
        for attached in transaction_tags.values():
            for tag in attached:
                self.tags.setdefault(tag.id, tag.name.strip())

    def category(self, category_id: Optional[int]) -> str:
        if category_id is None:
            return UNCATEGORISED
        name = (self.categories.get(category_id) or "").strip()
        return name or f"Category {category_id}"

    def tag(self, tag_id: int) -> str:
        return self.tags.get(tag_id) or f"tag#{tag_id}"


def _run_rules(
    rules: Iterable[RuleRecord],
    transactions: Iterable[TransactionRecord],
    transaction_tags: Mapping[int, Iterable[TagRecord]],
    account_scope: Optional[Collection[int]],
    saved_filters: Iterable[SavedFilterRecord],
    categories: Iterable[CategoryRecord],
    tags: Iterable[TagRecord],
    sample_limit: int,
) -> tuple[list[RuleOutcome], RuleRunSummary, list[TransactionChange]]:
    """
    Single evaluation pass shared by apply and dry run. Each transaction walks
    the resolved rules in order on a working copy, so later rules see the
    category and tags written by earlier ones.
    """
    outcomes, resolved = _resolve_rules(rules, saved_filters)
    failed = sum(1 for outcome in outcomes if outcome.error)
    if not resolved:
        return outcomes, RuleRunSummary(failed_rules=failed), []

    scoped = _in_scope(transactions, account_scope)
    names = _Names(categories, tags, transaction_tags, scoped)

    modified = 0
    cat_changes = 0
    tag_changes = 0
    changes: list[TransactionChange] = []
    for txn in scoped:
        original_tags = {t.id for t in transaction_tags.get(txn.id, ())}
        work_category = txn.category_id
        work_tags = set(original_tags)
        row = txn

        for item in resolved:
            tag_names = [names.tag(tag_id) for tag_id in sorted(work_tags)]
            if not evaluate(item.node, row, tag_names):
                continue

            outcome = item.outcome
            outcome.matched += 1
            before_category = work_category
            before_tags = set(work_tags)

            if item.rule.set_category_id is not None:
                work_category = item.rule.set_category_id
            work_tags.update(tag_id for tag_id in item.rule.add_tag_ids if tag_id > 0)

            category_changed = before_category != work_category
            added = sorted(work_tags - before_tags)
            if category_changed:
                outcome.category_changes += 1
                row = dataclasses.replace(
                    txn,
                    category_id=work_category,
                    category_name=names.category(work_category),
                )
            outcome.tag_changes += len(added)

            if len(outcome.samples) < sample_limit and (category_changed or added):
                outcome.samples.append(
                    RuleSample(
                        transaction_id=txn.id,
                        date_iso=txn.date_iso,
                        amount=txn.amount,
                        description=txn.description,
                        current_category=names.category(before_category),
                        new_category=names.category(work_category),
                        added_tag_names=tuple(names.tag(i) for i in added),
                    )
                )

        category_changed = work_category != txn.category_id
        added_final = tuple(sorted(work_tags - original_tags))
        if not category_changed and not added_final:
            continue
        modified += 1
        if category_changed:
            cat_changes += 1
        tag_changes += len(added_final)
        changes.append(
            TransactionChange(
                transaction_id=txn.id,
                category_id=work_category,
                category_changed=category_changed,
                added_tag_ids=added_final,
            )
        )

    summary = RuleRunSummary(
        transactions_scoped=len(scoped),
        total_modified=modified,
        total_cat_change=cat_changes,
        total_tag_change=tag_changes,
        failed_rules=failed,
    )
    return outcomes, summary, changes


def dry_run_rules(
    rules: Sequence[RuleRecord],
    transactions: Sequence[TransactionRecord],
    transaction_tags: Mapping[int, Iterable[TagRecord]],
    saved_filters: Sequence[SavedFilterRecord],
    account_scope: Optional[Collection[int]] = None,
    *,
    categories: Iterable[CategoryRecord] = (),
    tags: Iterable[TagRecord] = (),
    sample_limit: int = DEFAULT_SAMPLE_LIMIT,
) -> DryRunResult:
    outcomes, summary, _ = _run_rules(
        rules,
        transactions,
        transaction_tags,
        account_scope,
        saved_filters,
        categories,
        tags,
        sample_limit,
    )
    logger.info(
        f"rules_dry_run: rules={len(outcomes)} scoped={summary.transactions_scoped} "
        f"modified={summary.total_modified} failed={summary.failed_rules}"
    )
    return DryRunResult(
        outcomes=outcomes, summary=summary, failed_rule_count=summary.failed_rules
    )


def apply_rules_to_scope(
    rules: Sequence[RuleRecord],
    transactions: Sequence[TransactionRecord],
    transaction_tags: Mapping[int, Iterable[TagRecord]],
    account_scope: Optional[Collection[int]],
    saved_filters: Sequence[SavedFilterRecord],
    *,
    categories: Iterable[CategoryRecord] = (),
    tags: Iterable[TagRecord] = (),
    persist: Optional[Callable[[list[TransactionChange]], None]] = None,
    sample_limit: int = DEFAULT_SAMPLE_LIMIT,
) -> RuleRunResult:
    """
    Apply enabled rules in (sort_order, id) order. Category targets are
    last-match-wins, tag targets accumulate. Computed changes are handed to
    ``persist`` in one call; its errors propagate to the caller.
    """
    outcomes, summary, changes = _run_rules(
        rules,
        transactions,
        transaction_tags,
        account_scope,
        saved_filters,
        categories,
        tags,
        sample_limit,
    )
    if changes and persist is not None:
        try:
            persist(changes)
        except Exception:
            logger.exception(f"rules_apply: persist failed changes={len(changes)}")
            raise
    logger.info(
        f"rules_apply: rules={len(outcomes)} scoped={summary.transactions_scoped} "
        f"modified={summary.total_modified} categories={summary.total_cat_change} "
        f"tags={summary.total_tag_change} failed={summary.failed_rules}"
    )
    return RuleRunResult(
        updated_count=summary.total_modified,
        category_change_count=summary.total_cat_change,
        tag_change_count=summary.total_tag_change,
        failed_rule_count=summary.failed_rules,
        outcomes=outcomes,
        changes=changes,
    )
