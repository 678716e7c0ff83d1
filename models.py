from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class PeriodType(str, Enum):
    monthly = "monthly"
    quarterly = "quarterly"
    annual = "annual"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    color: Mapped[Optional[str]] = mapped_column(String(7))
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    color: Mapped[Optional[str]] = mapped_column(String(9))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", secondary="transaction_tags", back_populates="tags"
    )


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column("transaction_id", Integer, ForeignKey("transactions.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    date_raw: Mapped[str] = mapped_column(String(40), default="", nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    account: Mapped[Optional["Account"]] = relationship(
        "Account", back_populates="transactions"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="transaction_tags", back_populates="transactions"
    )
    allocations: Mapped[list["TransactionAllocation"]] = relationship(
        "TransactionAllocation",
        back_populates="parent",
        cascade="all, delete-orphan",
        order_by="TransactionAllocation.id",
    )

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_category_date", "category_id", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
    )


transaction_allocation_tags = Table(
    "transaction_allocation_tags",
    Base.metadata,
    Column(
        "allocation_id",
        Integer,
        ForeignKey("transaction_allocations.id"),
        primary_key=True,
    ),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class TransactionAllocation(Base, TimestampMixin):
    __tablename__ = "transaction_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    parent_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    # Stored with the parent's sign.
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    note: Mapped[str] = mapped_column(Text, default="", nullable=False)

    parent: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="allocations"
    )
    category: Mapped[Optional["Category"]] = relationship("Category")
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="transaction_allocation_tags"
    )

    __table_args__ = (
        CheckConstraint("amount != 0", name="ck_transaction_allocation_nonzero"),
        Index("ix_transaction_allocations_parent", "parent_transaction_id"),
    )


class SavedFilter(Base, TimestampMixin):
    __tablename__ = "saved_filters"

    id: Mapped[str] = mapped_column(String(63), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    expr: Mapped[str] = mapped_column(Text, nullable=False)


class Rule(Base, TimestampMixin):
    __tablename__ = "rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    # Not a foreign key: a rule outlives a deleted filter and is reported as failed.
    saved_filter_id: Mapped[str] = mapped_column(String(63), nullable=False)
    set_category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    add_tag_ids_json: Mapped[Optional[str]] = mapped_column(Text)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    set_category: Mapped[Optional["Category"]] = relationship(
        "Category", foreign_keys=[set_category_id]
    )

    __table_args__ = (Index("ix_rules_enabled_sort", "enabled", "sort_order", "id"),)


class CategoryBudget(Base, TimestampMixin):
    __tablename__ = "category_budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False, unique=True
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)

    category: Mapped["Category"] = relationship("Category")
    overrides: Mapped[list["BudgetOverride"]] = relationship(
        "BudgetOverride", back_populates="budget", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_category_budget_amount_positive"),
    )


class BudgetOverride(Base, TimestampMixin):
    __tablename__ = "budget_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("category_budgets.id"), nullable=False
    )
    month_key: Mapped[str] = mapped_column(String(7), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)

    budget: Mapped["CategoryBudget"] = relationship(
        "CategoryBudget", back_populates="overrides"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_budget_override_amount_positive"),
        UniqueConstraint("budget_id", "month_key", name="uq_budget_override_month"),
    )


class SpendingTarget(Base, TimestampMixin):
    __tablename__ = "spending_targets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    saved_filter_id: Mapped[str] = mapped_column(String(63), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(
        SAEnum(PeriodType), default=PeriodType.monthly, nullable=False
    )

    overrides: Mapped[list["TargetOverride"]] = relationship(
        "TargetOverride", back_populates="target", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_spending_target_amount_positive"),
    )


class TargetOverride(Base, TimestampMixin):
    __tablename__ = "target_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    target_id: Mapped[int] = mapped_column(
        ForeignKey("spending_targets.id"), nullable=False
    )
    period_key: Mapped[str] = mapped_column(String(7), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)

    target: Mapped["SpendingTarget"] = relationship(
        "SpendingTarget", back_populates="overrides"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_target_override_amount_positive"),
        UniqueConstraint("target_id", "period_key", name="uq_target_override_period"),
    )


class CreditOffset(Base, TimestampMixin):
    __tablename__ = "credit_offsets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    credit_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    debit_transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    amount: Mapped[float] = mapped_column(Float, nullable=False)

    credit_transaction: Mapped["Transaction"] = relationship(
        "Transaction", foreign_keys=[credit_transaction_id]
    )
    debit_transaction: Mapped["Transaction"] = relationship(
        "Transaction", foreign_keys=[debit_transaction_id]
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_offset_amount_positive"),
        UniqueConstraint(
            "credit_transaction_id",
            "debit_transaction_id",
            name="uq_credit_offset_pair",
        ),
        Index("ix_credit_offsets_debit", "debit_transaction_id"),
    )
