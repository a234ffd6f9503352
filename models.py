from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    investment = "investment"
    cash = "cash"
    other = "other"


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class SubscriptionFrequency(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class SubscriptionStatus(str, Enum):
    active = "active"
    paused = "paused"
    cancelled = "cancelled"


class CryptoHoldingStatus(str, Enum):
    active = "active"
    sold = "sold"


CRYPTO_QUANTITY = Numeric(28, 10)
CRYPTO_PRICE = Numeric(28, 10)


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
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    # balance_cents == opening_balance_cents + signed effects of its transactions
    opening_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    description: Mapped[Optional[str]] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (Index("ix_accounts_user_active", "user_id", "is_active"),)

    @property
    def is_credit_card(self) -> bool:
        return self.type == AccountType.credit_card


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    icon: Mapped[Optional[str]] = mapped_column(String(40))
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id", back_populates="children"
    )
    children: Mapped[list["Category"]] = relationship(
        "Category", back_populates="parent"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tag_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
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
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    to_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[to_account_id]
    )
    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="transaction_tags", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_account", "account_id"),
        Index("ix_transactions_to_account", "to_account_id"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "(type = 'transfer' AND to_account_id IS NOT NULL) "
            "OR (type != 'transfer' AND to_account_id IS NULL)",
            name="ck_transactions_transfer_destination",
        ),
    )


class Debt(Base, TimestampMixin):
    __tablename__ = "debts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    person_name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    paid_date: Mapped[Optional[date]] = mapped_column(Date)
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id"), unique=True
    )

    transaction: Mapped[Optional["Transaction"]] = relationship("Transaction")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_debts_amount_positive"),
    )


class Subscription(Base, TimestampMixin):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    frequency: Mapped[SubscriptionFrequency] = mapped_column(
        SAEnum(SubscriptionFrequency), nullable=False
    )
    next_billing_date: Mapped[date] = mapped_column(Date, nullable=False)
    # day of month the schedule is anchored to, survives clamping in short months
    billing_day: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        SAEnum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.active
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    account: Mapped["Account"] = relationship("Account")
    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_subscriptions_amount_positive"),
        CheckConstraint(
            "billing_day BETWEEN 1 AND 31", name="ck_subscriptions_billing_day"
        ),
        Index("ix_subscriptions_due", "status", "next_billing_date"),
        Index("ix_subscriptions_user", "user_id"),
    )


class CryptoHolding(Base, TimestampMixin):
    __tablename__ = "crypto_holdings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(CRYPTO_QUANTITY, nullable=False)
    purchase_price: Mapped[Decimal] = mapped_column(CRYPTO_PRICE, nullable=False)
    purchase_date: Mapped[date] = mapped_column(Date, nullable=False)
    purchase_fee: Mapped[Decimal] = mapped_column(
        CRYPTO_PRICE, nullable=False, default=Decimal("0")
    )
    current_price: Mapped[Decimal] = mapped_column(CRYPTO_PRICE, nullable=False)
    last_price_update: Mapped[Optional[datetime]] = mapped_column(DateTime)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    status: Mapped[CryptoHoldingStatus] = mapped_column(
        SAEnum(CryptoHoldingStatus),
        nullable=False,
        default=CryptoHoldingStatus.active,
    )
    sale_price: Mapped[Optional[Decimal]] = mapped_column(CRYPTO_PRICE)
    sale_date: Mapped[Optional[date]] = mapped_column(Date)
    sale_fee: Mapped[Optional[Decimal]] = mapped_column(CRYPTO_PRICE)
    sale_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    sale_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_crypto_amount_positive"),
        Index("ix_crypto_holdings_symbol", "symbol"),
    )


class CryptoPrice(Base, TimestampMixin):
    __tablename__ = "crypto_prices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    price: Mapped[Decimal] = mapped_column(CRYPTO_PRICE, nullable=False)
    market_cap: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 2))
    volume_24h: Mapped[Optional[Decimal]] = mapped_column(Numeric(28, 2))
    percent_change_24h: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 6))
    percent_change_7d: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 6))
    last_updated: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class CryptoPriceHistory(Base):
    __tablename__ = "crypto_price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)
    price: Mapped[Decimal] = mapped_column(CRYPTO_PRICE, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_crypto_price_history_symbol_ts", "symbol", "timestamp"),
    )
