from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class CategoryKind(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class RuleMatchType(str, Enum):
    exact = "exact"
    contains = "contains"
    regex = "regex"


class CategorySource(str, Enum):
    bank = "bank"
    auto = "auto"
    manual = "manual"


class ImportStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    processed = "processed"
    failed = "failed"


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
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    source_key: Mapped[Optional[str]] = mapped_column(String(40))
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (Index("ix_accounts_owner", "owner_id"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[CategoryKind] = mapped_column(SAEnum(CategoryKind), nullable=False)


class CategoryRule(Base, TimestampMixin):
    __tablename__ = "category_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    pattern: Mapped[str] = mapped_column(String(200), nullable=False)
    match_type: Mapped[RuleMatchType] = mapped_column(
        SAEnum(RuleMatchType), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    source_filter: Mapped[Optional[str]] = mapped_column(String(40))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        Index("ix_category_rules_active_priority", "is_active", "priority", "id"),
    )


class ImportBatch(Base, TimestampMixin):
    __tablename__ = "import_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_key: Mapped[str] = mapped_column(String(40), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(500), nullable=False)
    mime_type: Mapped[Optional[str]] = mapped_column(String(120))
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[ImportStatus] = mapped_column(
        SAEnum(ImportStatus), nullable=False, default=ImportStatus.pending
    )
    inserted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deleted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    warnings_json: Mapped[Optional[str]] = mapped_column(Text)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (Index("ix_import_batches_account_status", "account_id", "status"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    raw_type: Mapped[Optional[str]] = mapped_column(String(80))
    external_ref: Mapped[Optional[str]] = mapped_column(String(120))
    bank_category: Mapped[Optional[str]] = mapped_column(String(200))
    source_key: Mapped[Optional[str]] = mapped_column(String(40))
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    import_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("import_batches.id", ondelete="SET NULL")
    )
    is_internal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    assignment: Mapped[Optional["TransactionCategory"]] = relationship(
        "TransactionCategory",
        back_populates="transaction",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint(
            "account_id", "fingerprint", name="uq_transactions_account_fingerprint"
        ),
        Index("ix_transactions_account_date", "account_id", "date"),
        Index("ix_transactions_date_amount", "date", "amount_cents"),
        CheckConstraint("amount_cents != 0", name="ck_transactions_amount_nonzero"),
    )


class TransactionCategory(Base, TimestampMixin):
    __tablename__ = "transaction_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    source: Mapped[CategorySource] = mapped_column(
        SAEnum(CategorySource), nullable=False
    )
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    rule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("category_rules.id", ondelete="SET NULL")
    )

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="assignment"
    )
    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="ck_transaction_categories_confidence_range",
        ),
    )
