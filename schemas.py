import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    AccountType,
    CategoryType,
    SubscriptionFrequency,
    SubscriptionStatus,
    TransactionType,
)


def _strip_required(value: str) -> str:
    clean = value.strip()
    if not clean:
        raise ValueError("must not be blank")
    return clean


def _strip_optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return _strip_required(value)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance_cents: int = 0
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    description: Optional[str] = None

    clean_name = field_validator("name")(_strip_required)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class AccountUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    balance_cents: Optional[int] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    description: Optional[str] = None
    is_active: Optional[bool] = None

    clean_name = field_validator("name")(_strip_optional)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=40)
    parent_id: Optional[int] = None

    clean_name = field_validator("name")(_strip_required)


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[CategoryType] = None
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=40)
    parent_id: Optional[int] = None

    clean_name = field_validator("name")(_strip_optional)


class TagIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: Optional[str] = Field(None, max_length=9)

    clean_name = field_validator("name")(_strip_required)


class TransactionIn(BaseModel):
    account_id: int
    to_account_id: Optional[int] = None
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    reason: Optional[str] = None
    category_id: int
    date: date
    tag_ids: list[int] = Field(default_factory=list)

    clean_description = field_validator("description")(_strip_required)


class TransactionUpdate(BaseModel):
    """Partial update; fields left as ``None`` keep their stored value."""

    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    amount_cents: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    reason: Optional[str] = None
    category_id: Optional[int] = None
    date: Optional[dt.date] = None
    tag_ids: Optional[list[int]] = None

    clean_description = field_validator("description")(_strip_optional)


class TransferIn(BaseModel):
    from_account_id: int
    to_account_id: int
    amount_cents: int = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    category_id: int
    date: date
    tag_ids: list[int] = Field(default_factory=list)

    clean_description = field_validator("description")(_strip_required)


class DebtIn(BaseModel):
    person_name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., gt=0)
    description: Optional[str] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None

    clean_person = field_validator("person_name")(_strip_required)


class DebtUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    person_name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    description: Optional[str] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None

    clean_person = field_validator("person_name")(_strip_optional)


class DebtPaymentIn(BaseModel):
    account_id: int
    category_id: int
    paid_date: Optional[date] = None


class SubscriptionIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    amount_cents: int = Field(..., gt=0)
    frequency: SubscriptionFrequency
    next_billing_date: date
    account_id: int
    category_id: int
    notes: Optional[str] = None

    clean_name = field_validator("name")(_strip_required)


class SubscriptionUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    frequency: Optional[SubscriptionFrequency] = None
    next_billing_date: Optional[date] = None
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    status: Optional[SubscriptionStatus] = None
    notes: Optional[str] = None

    clean_name = field_validator("name")(_strip_optional)


class CryptoHoldingIn(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=100)
    amount: Decimal = Field(..., gt=0)
    purchase_price: Decimal = Field(..., gt=0)
    purchase_date: date
    purchase_fee: Decimal = Field(default=Decimal("0"), ge=0)
    notes: Optional[str] = None
    account_id: Optional[int] = None
    category_id: Optional[int] = None

    clean_name = field_validator("name")(_strip_required)

    @field_validator("symbol")
    @classmethod
    def _upper_symbol(cls, value: str) -> str:
        return _strip_required(value).upper()


class CryptoHoldingUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    symbol: Optional[str] = Field(default=None, min_length=1, max_length=20)
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount: Optional[Decimal] = Field(default=None, gt=0)
    purchase_price: Optional[Decimal] = Field(default=None, gt=0)
    purchase_date: Optional[date] = None
    notes: Optional[str] = None

    @field_validator("symbol")
    @classmethod
    def _upper_symbol(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _strip_required(value).upper()


class CryptoSaleIn(BaseModel):
    sale_price: Decimal = Field(..., gt=0)
    sale_date: date
    sale_fee: Decimal = Field(default=Decimal("0"), ge=0)
    sale_account_id: int
    category_id: int
