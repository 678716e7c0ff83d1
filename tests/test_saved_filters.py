from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from filtering import FilterParseError
from schemas import AccountIn, CategoryIn, SavedFilterIn, TransactionIn
from services import (
    AccountService,
    CategoryService,
    SavedFilterService,
    TransactionService,
)


def test_saved_filters_are_stored_canonical_with_unique_ids() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        filters = SavedFilterService(session)
        first = filters.create(
            SavedFilterIn(name="Coffee runs", expr="desc:coffee  or  desc:espresso")
        )
        second = filters.create(SavedFilterIn(name="Coffee Runs", expr="coffee"))

        assert first.id == "coffee-runs"
        assert first.expr == "desc:coffee OR desc:espresso"
        assert second.id == "coffee-runs-2"
        assert [sf.id for sf in filters.records()] == ["coffee-runs", "coffee-runs-2"]
        assert filters.get("COFFEE-RUNS").name == "Coffee runs"


def test_saved_filter_validation() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        filters = SavedFilterService(session)
        with pytest.raises(FilterParseError, match="parentheses"):
            filters.create(SavedFilterIn(name="Mixed", expr="a OR b c"))
        with pytest.raises(ValueError, match="empty"):
            filters.create(SavedFilterIn(name="Blank", expr="   "))
        with pytest.raises(ValueError, match="Saved filter id"):
            filters.create(SavedFilterIn(id="has space", name="x", expr="x"))

        filters.create(SavedFilterIn(id="groceries", name="Groceries", expr="cat:food"))
        with pytest.raises(ValueError, match="already exists"):
            filters.create(SavedFilterIn(id="Groceries", name="Dup", expr="x"))

        updated = filters.update(
            "groceries", SavedFilterIn(name="Food", expr="cat:food or cat:snacks")
        )
        assert updated.expr == "cat:food OR cat:snacks"

        filters.delete("groceries")
        with pytest.raises(ValueError, match="not found"):
            filters.get("groceries")


def test_transaction_search_uses_lenient_filters() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        checking = AccountService(session).create(AccountIn(name="Checking"))
        food = CategoryService(session).create(CategoryIn(name="Food"))
        transactions = TransactionService(session)
        rewe = transactions.create(
            TransactionIn(
                date=date(2025, 2, 1),
                amount=-42.0,
                description="REWE",
                category_id=food.id,
                account_id=checking.id,
                tags=["weekly"],
            )
        )
        cafe = transactions.create(
            TransactionIn(
                date=date(2025, 3, 1),
                amount=-4.5,
                description="Cafe",
                category_id=food.id,
            )
        )
        salary = transactions.create(
            TransactionIn(date=date(2025, 2, 28), amount=2500.0, description="Salary")
        )

        def ids(rows) -> list[int]:
            return [txn.id for txn in rows]

        assert ids(transactions.search("")) == [rewe.id, salary.id, cafe.id]
        assert ids(transactions.search("food")) == [rewe.id, cafe.id]
        assert ids(transactions.search("weekly")) == [rewe.id]
        assert ids(transactions.search("cat:food amt:<-10")) == [rewe.id]
        assert ids(transactions.search("type:credit")) == [salary.id]
        assert ids(transactions.search('desc:"unclosed')) == []
        assert ids(
            transactions.search("food", start=date(2025, 3, 1), end=date(2025, 4, 1))
        ) == [cafe.id]
        assert ids(transactions.search("", account_ids=[checking.id])) == [rewe.id]
        assert ids(transactions.search("cafe", base_filter="amt:<-10")) == []
