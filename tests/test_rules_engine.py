import pytest

from records import (
    CategoryRecord,
    RuleRecord,
    SavedFilterRecord,
    TagRecord,
    TransactionRecord,
)
from rules_engine import apply_rules_to_scope, dry_run_rules

FOOD = CategoryRecord(id=1, name="Food", sort_order=0)
SUBSCRIPTIONS = CategoryRecord(id=2, name="Subscriptions", sort_order=1)
TRAVEL = CategoryRecord(id=3, name="Travel", sort_order=2)
CATEGORIES = [FOOD, SUBSCRIPTIONS, TRAVEL]

STREAMING = TagRecord(id=10, name="Streaming")
RECURRING = TagRecord(id=11, name="Recurring")
TAGS = [STREAMING, RECURRING]

FILTERS = [
    SavedFilterRecord(id="netflix", name="Netflix", expr="desc:netflix"),
    SavedFilterRecord(id="subs", name="Subscriptions", expr="cat:subscriptions"),
    SavedFilterRecord(id="bad", name="Broken", expr="a OR b c"),
    SavedFilterRecord(id="meta", name="Metadata", expr="subscriptions"),
]


def _transactions() -> list[TransactionRecord]:
    return [
        TransactionRecord(
            id=1,
            date_iso="2024-03-01",
            amount=-12.99,
            description="NETFLIX.COM",
            account_id=1,
        ),
        TransactionRecord(
            id=2,
            date_iso="2024-03-02",
            amount=-40.0,
            description="Rewe Markt",
            category_id=1,
            category_name="Food",
            account_id=1,
        ),
        TransactionRecord(
            id=3,
            date_iso="2024-03-03",
            amount=-12.99,
            description="Netflix second profile",
            account_id=2,
        ),
    ]


def _run(rules, transactions=None, transaction_tags=None, scope=None, **kwargs):
    return apply_rules_to_scope(
        rules,
        transactions if transactions is not None else _transactions(),
        transaction_tags or {},
        scope,
        FILTERS,
        categories=CATEGORIES,
        tags=TAGS,
        **kwargs,
    )


def test_last_matching_rule_wins_category_and_tags_accumulate() -> None:
    rules = [
        RuleRecord(
            2, "Travel", "netflix", set_category_id=3, add_tag_ids=(11,), sort_order=20
        ),
        RuleRecord(
            1, "Subs", "netflix", set_category_id=2, add_tag_ids=(10,), sort_order=10
        ),
    ]
    result = _run(rules, scope=[1])

    assert result.updated_count == 1
    assert result.category_change_count == 1
    assert result.tag_change_count == 2
    assert result.failed_rule_count == 0
    [change] = result.changes
    assert change.transaction_id == 1
    assert change.category_id == 3
    assert change.added_tag_ids == (10, 11)

    first, second = result.outcomes
    assert (first.rule_id, first.matched, first.category_changes) == (1, 1, 1)
    assert (second.rule_id, second.matched, second.category_changes) == (2, 1, 1)
    assert second.samples[0].current_category == "Subscriptions"
    assert second.samples[0].new_category == "Travel"


def test_ties_in_sort_order_break_by_id() -> None:
    rules = [
        RuleRecord(5, "Food", "netflix", set_category_id=1),
        RuleRecord(4, "Subs", "netflix", set_category_id=2),
    ]
    result = _run(rules, scope=[1])
    assert result.changes[0].category_id == 1
    assert [o.rule_id for o in result.outcomes] == [4, 5]


def test_later_rules_see_earlier_rule_output() -> None:
    rules = [
        RuleRecord(1, "Subs", "netflix", set_category_id=2, sort_order=0),
        RuleRecord(2, "Tag subs", "subs", add_tag_ids=(11,), sort_order=1),
    ]
    result = _run(rules, scope=[1])
    [change] = result.changes
    assert change.category_id == 2
    assert change.added_tag_ids == (11,)
    assert result.outcomes[1].matched == 1


def test_account_scope_restricts_transactions() -> None:
    rules = [RuleRecord(1, "Subs", "netflix", set_category_id=2)]
    assert _run(rules).updated_count == 2
    assert _run(rules, scope=[2]).updated_count == 1
    assert _run(rules, scope=[]).updated_count == 2


def test_missing_and_malformed_filters_are_counted_not_fatal() -> None:
    rules = [
        RuleRecord(1, "Gone", "does-not-exist", set_category_id=1),
        RuleRecord(2, "Broken", "bad", set_category_id=1),
        RuleRecord(3, "Subs", "NETFLIX", set_category_id=2),
    ]
    result = _run(rules)
    assert result.failed_rule_count == 2
    assert "not found" in result.outcomes[0].error
    assert "invalid" in result.outcomes[1].error
    assert result.outcomes[2].error is None
    assert result.updated_count == 2


def test_rule_with_unreadable_tag_list_is_counted_as_failed() -> None:
    rules = [
        RuleRecord(
            1,
            "Corrupt",
            "netflix",
            set_category_id=3,
            tag_error="invalid add_tag_ids: Expecting value",
        ),
    ]
    result = _run(rules)
    assert result.failed_rule_count == 1
    assert result.outcomes[0].error.startswith("invalid add_tag_ids")
    assert result.outcomes[0].matched == 0
    assert result.changes == []


def test_disabled_rules_are_ignored() -> None:
    rules = [RuleRecord(1, "Subs", "netflix", set_category_id=2, enabled=False)]
    result = _run(rules)
    assert result.outcomes == []
    assert result.changes == []


def test_existing_tags_and_same_category_are_not_changes() -> None:
    transactions = [
        TransactionRecord(
            id=1,
            date_iso="2024-03-01",
            amount=-12.99,
            description="Netflix",
            category_id=2,
            category_name="Subscriptions",
        )
    ]
    rules = [RuleRecord(1, "Subs", "netflix", set_category_id=2, add_tag_ids=(10,))]
    result = _run(rules, transactions, {1: [STREAMING]})
    assert result.outcomes[0].matched == 1
    assert result.updated_count == 0
    assert result.changes == []


def test_filter_without_fields_matches_metadata() -> None:
    transactions = [
        TransactionRecord(
            id=7,
            date_iso="2024-03-01",
            amount=-9.99,
            description="Spotify",
            category_id=2,
            category_name="Subscriptions",
        )
    ]
    rules = [RuleRecord(1, "Meta", "meta", add_tag_ids=(10,))]
    result = _run(rules, transactions)
    assert result.changes[0].added_tag_ids == (10,)
    assert result.outcomes[0].filter_expr == "subscriptions"


def test_samples_are_capped() -> None:
    transactions = [
        TransactionRecord(
            id=i, date_iso="2024-03-01", amount=-1.0, description="netflix"
        )
        for i in range(1, 6)
    ]
    rules = [RuleRecord(1, "Subs", "netflix", set_category_id=2)]
    result = _run(rules, transactions)
    assert result.outcomes[0].matched == 5
    assert len(result.outcomes[0].samples) == 3
    assert len(_run(rules, transactions, sample_limit=1).outcomes[0].samples) == 1


def test_dry_run_matches_apply_counts() -> None:
    rules = [
        RuleRecord(1, "Subs", "netflix", set_category_id=2, add_tag_ids=(10,)),
        RuleRecord(2, "Tag subs", "subs", add_tag_ids=(11,), sort_order=1),
        RuleRecord(3, "Broken", "bad", set_category_id=1),
    ]
    transactions = _transactions()
    tags = {3: [STREAMING]}

    dry = dry_run_rules(
        rules, transactions, tags, FILTERS, categories=CATEGORIES, tags=TAGS
    )
    persisted = []
    applied = _run(rules, transactions, tags, persist=persisted.extend)

    assert dry.summary.total_modified == applied.updated_count
    assert dry.summary.total_cat_change == applied.category_change_count
    assert dry.summary.total_tag_change == applied.tag_change_count
    assert dry.failed_rule_count == applied.failed_rule_count == 1
    assert dry.summary.transactions_scoped == 3
    assert dry.outcomes == applied.outcomes
    assert persisted == applied.changes


def test_persist_is_skipped_without_changes() -> None:
    calls = []
    rules = [RuleRecord(1, "Subs", "netflix", set_category_id=2)]
    result = _run(rules, [], persist=calls.append)
    assert calls == []
    assert result.updated_count == 0


def test_persist_errors_propagate() -> None:
    def fail(_changes) -> None:
        raise RuntimeError("disk full")

    rules = [RuleRecord(1, "Subs", "netflix", set_category_id=2)]
    with pytest.raises(RuntimeError, match="disk full"):
        _run(rules, persist=fail)
