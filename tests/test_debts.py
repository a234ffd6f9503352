from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import AlreadyPaid, NotFound, ResourceInUse, Unauthorized, ValidationError
from models import AccountType, CategoryType, TransactionType
from schemas import AccountIn, CategoryIn, DebtIn, DebtPaymentIn, DebtUpdate
from services import AccountService, CategoryService, DebtService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session, user_id="alice"):
    account = AccountService(session, user_id).create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=100)
    )
    category = CategoryService(session, user_id).create(
        CategoryIn(name="Repayments", type=CategoryType.income)
    )
    return account, category


def test_settle_books_income_and_links_transaction() -> None:
    session = make_session()
    account, category = seed(session)
    debts = DebtService(session, "alice")
    debt = debts.create(
        DebtIn(person_name="Bob", amount_cents=50, description="Concert tickets")
    )

    debts.settle(
        debt.id,
        DebtPaymentIn(
            account_id=account.id, category_id=category.id, paid_date=date(2025, 3, 1)
        ),
    )

    assert debt.is_paid
    assert debt.paid_date == date(2025, 3, 1)
    assert account.balance_cents == 150
    txn = TransactionService(session, "alice").get(debt.transaction_id)
    assert txn.type == TransactionType.income
    assert txn.amount_cents == 50
    assert txn.description == "Payment received from Bob"
    assert txn.reason == "Concert tickets"


def test_settling_twice_is_rejected() -> None:
    session = make_session()
    account, category = seed(session)
    debts = DebtService(session, "alice")
    debt = debts.create(DebtIn(person_name="Bob", amount_cents=50))
    payment = DebtPaymentIn(account_id=account.id, category_id=category.id)
    debts.settle(debt.id, payment)

    with pytest.raises(AlreadyPaid):
        debts.settle(debt.id, payment)

    assert account.balance_cents == 150
    assert len(TransactionService(session, "alice").list()) == 1


def test_settle_checks_ownership() -> None:
    session = make_session()
    account, category = seed(session)
    bob_account, _ = seed(session, "bob")
    debt = DebtService(session, "alice").create(DebtIn(person_name="Carol", amount_cents=50))

    with pytest.raises(Unauthorized):
        DebtService(session, "bob").settle(
            debt.id, DebtPaymentIn(account_id=bob_account.id, category_id=category.id)
        )
    with pytest.raises(Unauthorized):
        DebtService(session, "alice").settle(
            debt.id, DebtPaymentIn(account_id=bob_account.id, category_id=category.id)
        )
    with pytest.raises(NotFound):
        DebtService(session, "alice").settle(
            999, DebtPaymentIn(account_id=account.id, category_id=category.id)
        )

    assert not debt.is_paid
    assert bob_account.balance_cents == 100


def test_settle_with_expense_category_rolls_back() -> None:
    session = make_session()
    account, _ = seed(session)
    expense = CategoryService(session, "alice").create(
        CategoryIn(name="Food", type=CategoryType.expense)
    )
    debt = DebtService(session, "alice").create(DebtIn(person_name="Bob", amount_cents=50))

    with pytest.raises(ValidationError):
        DebtService(session, "alice").settle(
            debt.id, DebtPaymentIn(account_id=account.id, category_id=expense.id)
        )

    assert not debt.is_paid
    assert debt.transaction_id is None
    assert account.balance_cents == 100


def test_paid_debt_and_its_transaction_are_locked() -> None:
    session = make_session()
    account, category = seed(session)
    debts = DebtService(session, "alice")
    debt = debts.create(DebtIn(person_name="Bob", amount_cents=50))
    debts.settle(debt.id, DebtPaymentIn(account_id=account.id, category_id=category.id))

    with pytest.raises(AlreadyPaid):
        debts.update(debt.id, DebtUpdate(amount_cents=70))
    with pytest.raises(ResourceInUse):
        TransactionService(session, "alice").delete(debt.transaction_id)


def test_summary_and_filters() -> None:
    session = make_session()
    account, category = seed(session)
    debts = DebtService(session, "alice")
    paid = debts.create(DebtIn(person_name="Bob", amount_cents=50))
    debts.create(DebtIn(person_name="Carol", amount_cents=200))
    debts.create(DebtIn(person_name="Dan", amount_cents=30))
    DebtService(session, "bob").create(DebtIn(person_name="Eve", amount_cents=1_000))
    debts.settle(paid.id, DebtPaymentIn(account_id=account.id, category_id=category.id))

    assert debts.summary() == {
        "total_debts": 3,
        "total_amount_cents": 280,
        "paid_debts": 1,
        "paid_amount_cents": 50,
        "unpaid_debts": 2,
        "unpaid_amount_cents": 230,
    }
    unpaid = debts.list(is_paid=False, min_amount_cents=100)
    assert [d.person_name for d in unpaid] == ["Carol"]
