from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    CategoryHasChildren,
    CircularCategoryParent,
    DuplicateName,
    ResourceInUse,
    ValidationError,
)
from models import AccountType, CategoryType, TransactionType
from schemas import AccountIn, CategoryIn, CategoryUpdate, TransactionIn
from services import AccountService, CategoryService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_parent_must_not_form_a_cycle() -> None:
    session = make_session()
    categories = CategoryService(session, "alice")
    home = categories.create(CategoryIn(name="Home", type=CategoryType.expense))
    rent = categories.create(
        CategoryIn(name="Rent", type=CategoryType.expense, parent_id=home.id)
    )
    deposit = categories.create(
        CategoryIn(name="Deposit", type=CategoryType.expense, parent_id=rent.id)
    )

    with pytest.raises(CircularCategoryParent):
        categories.update(home.id, CategoryUpdate(parent_id=home.id))
    with pytest.raises(CircularCategoryParent):
        categories.update(home.id, CategoryUpdate(parent_id=deposit.id))

    assert home.parent_id is None


def test_parent_must_share_type() -> None:
    session = make_session()
    categories = CategoryService(session, "alice")
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))

    with pytest.raises(ValidationError):
        categories.create(
            CategoryIn(name="Food", type=CategoryType.expense, parent_id=salary.id)
        )


def test_parent_can_be_detached() -> None:
    session = make_session()
    categories = CategoryService(session, "alice")
    home = categories.create(CategoryIn(name="Home", type=CategoryType.expense))
    rent = categories.create(
        CategoryIn(name="Rent", type=CategoryType.expense, parent_id=home.id)
    )

    categories.update(rent.id, CategoryUpdate(color="#123456"))
    assert rent.parent_id == home.id

    categories.update(rent.id, CategoryUpdate(parent_id=None))
    assert rent.parent_id is None
    assert rent.color == "#123456"


def test_delete_rules() -> None:
    session = make_session()
    categories = CategoryService(session, "alice")
    home = categories.create(CategoryIn(name="Home", type=CategoryType.expense))
    rent = categories.create(
        CategoryIn(name="Rent", type=CategoryType.expense, parent_id=home.id)
    )
    account = AccountService(session, "alice").create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=5_000)
    )
    TransactionService(session, "alice").create(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=1_000,
            description="March rent",
            category_id=rent.id,
            date=date(2025, 3, 1),
        )
    )

    with pytest.raises(CategoryHasChildren):
        categories.delete(home.id)
    with pytest.raises(ResourceInUse):
        categories.delete(rent.id)

    spare = categories.create(CategoryIn(name="Spare", type=CategoryType.expense))
    categories.delete(spare.id)
    assert [c.name for c in categories.list_all()] == ["Home", "Rent"]


def test_names_are_unique_per_owner_and_type() -> None:
    session = make_session()
    categories = CategoryService(session, "alice")
    categories.create(CategoryIn(name="Gifts", type=CategoryType.expense))

    with pytest.raises(DuplicateName):
        categories.create(CategoryIn(name="gifts", type=CategoryType.expense))

    categories.create(CategoryIn(name="Gifts", type=CategoryType.income))
    CategoryService(session, "bob").create(
        CategoryIn(name="Gifts", type=CategoryType.expense)
    )
    assert len(categories.list_all()) == 2
    assert len(categories.list_all(CategoryType.income)) == 1
