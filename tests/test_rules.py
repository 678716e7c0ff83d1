from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Rule, Transaction
from schemas import AccountIn, CategoryIn, RuleIn, SavedFilterIn, TransactionIn
from services import (
    AccountService,
    CategoryService,
    RuleService,
    SavedFilterService,
    TagService,
    TransactionService,
)


def _seed(session: Session) -> dict[str, int]:
    checking = AccountService(session).create(AccountIn(name="Checking"))
    card = AccountService(session).create(AccountIn(name="Card"))
    misc = CategoryService(session).create(CategoryIn(name="Misc"))
    subs = CategoryService(session).create(CategoryIn(name="Subscriptions"))
    streaming = TagService(session).get_or_create("Streaming")
    session.commit()

    transactions = TransactionService(session)
    netflix = transactions.create(
        TransactionIn(
            date=date(2025, 1, 5),
            amount=-12.99,
            description="Netflix January",
            category_id=misc.id,
            account_id=checking.id,
        )
    )
    netflix_card = transactions.create(
        TransactionIn(
            date=date(2025, 1, 6),
            amount=-12.99,
            description="NETFLIX.COM",
            account_id=card.id,
        )
    )
    coffee = transactions.create(
        TransactionIn(
            date=date(2025, 1, 7),
            amount=-3.5,
            description="Coffee",
            category_id=misc.id,
            account_id=checking.id,
        )
    )
    SavedFilterService(session).create(
        SavedFilterIn(id="netflix", name="Netflix", expr="desc:netflix")
    )
    return {
        "checking": checking.id,
        "card": card.id,
        "misc": misc.id,
        "subs": subs.id,
        "streaming": streaming.id,
        "netflix": netflix.id,
        "netflix_card": netflix_card.id,
        "coffee": coffee.id,
    }


def test_apply_persists_category_and_tags() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _seed(session)
        RuleService(session).create(
            RuleIn(
                name="Netflix → Subscriptions",
                saved_filter_id="netflix",
                set_category_id=ids["subs"],
                add_tag_ids=[ids["streaming"]],
            )
        )

        result = RuleService(session).apply()

        assert result.updated_count == 2
        assert result.category_change_count == 2
        assert result.tag_change_count == 2
        assert result.failed_rule_count == 0

        txn = TransactionService(session).get(ids["netflix"])
        assert txn.category_id == ids["subs"]
        assert {t.name for t in txn.tags} == {"Streaming"}
        assert TransactionService(session).get(ids["coffee"]).category_id == ids["misc"]

        again = RuleService(session).apply()
        assert again.updated_count == 0


def test_apply_respects_account_scope() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _seed(session)
        RuleService(session).create(
            RuleIn(name="Subs", saved_filter_id="netflix", set_category_id=ids["subs"])
        )

        result = RuleService(session).apply(account_ids=[ids["card"]])

        assert result.updated_count == 1
        assert session.get(Transaction, ids["netflix_card"]).category_id == ids["subs"]
        assert session.get(Transaction, ids["netflix"]).category_id == ids["misc"]


def test_dry_run_does_not_persist_and_matches_apply() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _seed(session)
        RuleService(session).create(
            RuleIn(
                name="Subs",
                saved_filter_id="netflix",
                set_category_id=ids["subs"],
                add_tag_ids=[ids["streaming"]],
            )
        )

        dry = RuleService(session).dry_run()
        assert session.get(Transaction, ids["netflix"]).category_id == ids["misc"]
        assert dry.outcomes[0].matched == 2
        assert dry.outcomes[0].samples[0].new_category == "Subscriptions"

        applied = RuleService(session).apply()
        assert dry.summary.total_modified == applied.updated_count
        assert dry.summary.total_cat_change == applied.category_change_count
        assert dry.summary.total_tag_change == applied.tag_change_count


def test_rule_with_deleted_filter_is_counted_as_failed() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _seed(session)
        SavedFilterService(session).create(
            SavedFilterIn(id="coffee", name="Coffee", expr="desc:coffee")
        )
        RuleService(session).create(
            RuleIn(name="Coffee", saved_filter_id="coffee", set_category_id=ids["subs"])
        )
        RuleService(session).create(
            RuleIn(name="Subs", saved_filter_id="netflix", set_category_id=ids["subs"])
        )
        SavedFilterService(session).delete("coffee")

        result = RuleService(session).apply()

        assert result.failed_rule_count == 1
        assert result.updated_count == 2


def test_rule_with_corrupt_tag_list_is_reported_failed() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _seed(session)
        session.add(
            Rule(
                name="Corrupt tags",
                saved_filter_id="netflix",
                set_category_id=ids["subs"],
                add_tag_ids_json="[1, oops",
            )
        )
        session.commit()

        result = RuleService(session).apply()

        assert result.failed_rule_count == 1
        assert result.outcomes[0].error.startswith("invalid add_tag_ids")
        assert result.updated_count == 0
        assert session.get(Transaction, ids["netflix"]).category_id == ids["misc"]


def test_failed_write_rolls_back_whole_batch() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _seed(session)
        RuleService(session).create(
            RuleIn(name="Subs", saved_filter_id="netflix", set_category_id=ids["subs"])
        )
        session.add(
            Rule(
                name="Dangling tag",
                saved_filter_id="netflix",
                add_tag_ids_json="[999]",
                sort_order=1,
            )
        )
        session.commit()

        with pytest.raises(ValueError, match="Tag not found"):
            RuleService(session).apply()

        assert session.get(Transaction, ids["netflix"]).category_id == ids["misc"]
        assert session.get(Transaction, ids["netflix_card"]).category_id is None


def test_rule_validation() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        ids = _seed(session)
        rules = RuleService(session)

        with pytest.raises(ValueError, match="Saved filter not found"):
            rules.create(
                RuleIn(name="x", saved_filter_id="nope", set_category_id=ids["subs"])
            )
        with pytest.raises(ValueError, match="Category not found"):
            rules.create(
                RuleIn(name="x", saved_filter_id="netflix", set_category_id=999)
            )
        with pytest.raises(ValueError, match="Tag not found"):
            rules.create(
                RuleIn(name="x", saved_filter_id="netflix", add_tag_ids=[999])
            )
        with pytest.raises(ValueError, match="category or at least one tag"):
            rules.create(RuleIn(name="x", saved_filter_id="netflix"))

        rule = rules.create(
            RuleIn(name="x", saved_filter_id="NETFLIX", set_category_id=ids["subs"])
        )
        assert rule.saved_filter_id == "netflix"
        rules.toggle(rule.id, False)
        assert rules.apply().outcomes == []
