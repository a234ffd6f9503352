from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

import ledger
from database import Base, atomic
from errors import (
    InsufficientBalance,
    NotFound,
    ResourceInUse,
    SameAccountTransfer,
    StoreError,
    Unauthorized,
    ValidationError,
)
from ledger import rebuild_account_balances
from models import Account, AccountType, CategoryType, Transaction, TransactionType
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    TransactionIn,
    TransactionUpdate,
    TransferIn,
)
from services import (
    AccountService,
    CategoryService,
    TransactionFilters,
    TransactionService,
)

USER = "alice"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session, balance_cents=10_000, account_type=AccountType.checking):
    account = AccountService(session, USER).create(
        AccountIn(name="Checking", type=account_type, balance_cents=balance_cents)
    )
    categories = CategoryService(session, USER)
    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))
    return account, food, salary


def expense(account, category, amount_cents, day=date(2025, 1, 10)):
    return TransactionIn(
        account_id=account.id,
        type=TransactionType.expense,
        amount_cents=amount_cents,
        description="Groceries",
        category_id=category.id,
        date=day,
    )


def test_expense_update_and_delete_restore_balance() -> None:
    session = make_session()
    account, food, _ = seed(session, balance_cents=100)
    txns = TransactionService(session, USER)

    txn = txns.create(expense(account, food, 40))
    assert account.balance_cents == 60

    txns.update(txn.id, TransactionUpdate(amount_cents=70))
    assert account.balance_cents == 30

    txns.delete(txn.id)
    assert account.balance_cents == 100
    assert session.scalars(select(Transaction)).all() == []


def test_balance_matches_ledger_after_mixed_edits() -> None:
    session = make_session()
    account, food, salary = seed(session)
    txns = TransactionService(session, USER)

    txns.create(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.income,
            amount_cents=5_000,
            description="Salary",
            category_id=salary.id,
            date=date(2025, 1, 1),
        )
    )
    groceries = txns.create(expense(account, food, 2_000))
    rent = txns.create(expense(account, food, 3_000))
    assert account.balance_cents == 10_000

    txns.update(
        groceries.id,
        TransactionUpdate(
            type=TransactionType.income, amount_cents=2_500, category_id=salary.id
        ),
    )
    assert account.balance_cents == 14_500

    txns.delete(rent.id)
    assert account.balance_cents == 17_500
    assert rebuild_account_balances(session, USER) == 0
    assert account.balance_cents == 17_500


def test_expense_exceeding_balance_is_rejected() -> None:
    session = make_session()
    account, food, _ = seed(session, balance_cents=100)

    with pytest.raises(InsufficientBalance):
        TransactionService(session, USER).create(expense(account, food, 150))

    assert account.balance_cents == 100
    assert TransactionService(session, USER).list() == []


def test_credit_card_may_go_negative() -> None:
    session = make_session()
    card, food, _ = seed(session, balance_cents=0, account_type=AccountType.credit_card)

    TransactionService(session, USER).create(expense(card, food, 500))

    assert card.balance_cents == -500


def test_update_checks_balance_with_original_effect_reversed() -> None:
    session = make_session()
    account, food, _ = seed(session, balance_cents=100)
    txns = TransactionService(session, USER)
    txn = txns.create(expense(account, food, 60))

    txns.update(txn.id, TransactionUpdate(amount_cents=90))
    assert account.balance_cents == 10

    with pytest.raises(InsufficientBalance):
        txns.update(txn.id, TransactionUpdate(amount_cents=120))
    assert account.balance_cents == 10
    assert txns.get(txn.id).amount_cents == 90


def test_moving_expense_between_accounts() -> None:
    session = make_session()
    checking, food, _ = seed(session, balance_cents=1_000)
    savings = AccountService(session, USER).create(
        AccountIn(name="Savings", type=AccountType.savings, balance_cents=5_000)
    )
    txns = TransactionService(session, USER)
    txn = txns.create(expense(checking, food, 400))

    txns.update(txn.id, TransactionUpdate(account_id=savings.id))

    assert checking.balance_cents == 1_000
    assert savings.balance_cents == 4_600


def test_transfer_moves_money_between_accounts() -> None:
    session = make_session()
    checking, food, _ = seed(session)
    savings = AccountService(session, USER).create(
        AccountIn(name="Savings", type=AccountType.savings)
    )
    txns = TransactionService(session, USER)

    transfer = txns.create_transfer(
        TransferIn(
            from_account_id=checking.id,
            to_account_id=savings.id,
            amount_cents=3_000,
            description="Monthly savings",
            category_id=food.id,
            date=date(2025, 1, 2),
        )
    )

    assert transfer.type == TransactionType.transfer
    assert checking.balance_cents == 7_000
    assert savings.balance_cents == 3_000
    listed = txns.list(TransactionFilters(account_id=savings.id))
    assert [t.id for t in listed] == [transfer.id]

    txns.delete(transfer.id)
    assert checking.balance_cents == 10_000
    assert savings.balance_cents == 0


def test_transfer_validation() -> None:
    session = make_session()
    checking, food, _ = seed(session, balance_cents=100)
    savings = AccountService(session, USER).create(
        AccountIn(name="Savings", type=AccountType.savings)
    )
    txns = TransactionService(session, USER)

    def transfer(source, destination, amount):
        return TransferIn(
            from_account_id=source.id,
            to_account_id=destination.id,
            amount_cents=amount,
            description="Move",
            category_id=food.id,
            date=date(2025, 1, 2),
        )

    with pytest.raises(SameAccountTransfer):
        txns.create_transfer(transfer(checking, checking, 10))
    with pytest.raises(InsufficientBalance, match="source account"):
        txns.create_transfer(transfer(checking, savings, 500))
    with pytest.raises(ValidationError):
        txns.create(
            TransactionIn(
                account_id=checking.id,
                type=TransactionType.transfer,
                amount_cents=10,
                description="Missing destination",
                category_id=food.id,
                date=date(2025, 1, 2),
            )
        )
    assert checking.balance_cents == 100
    assert savings.balance_cents == 0


def test_other_owner_cannot_touch_accounts_or_transactions() -> None:
    session = make_session()
    account, food, _ = seed(session)
    bob_account = AccountService(session, "bob").create(
        AccountIn(name="Bob checking", type=AccountType.checking, balance_cents=500)
    )

    with pytest.raises(Unauthorized):
        TransactionService(session, USER).create(expense(bob_account, food, 10))
    assert bob_account.balance_cents == 500

    txn = TransactionService(session, USER).create(expense(account, food, 10))
    with pytest.raises(Unauthorized):
        TransactionService(session, "bob").get(txn.id)
    with pytest.raises(Unauthorized):
        TransactionService(session, "bob").delete(txn.id)
    with pytest.raises(NotFound):
        TransactionService(session, USER).get(9999)


def test_category_type_must_match_transaction_type() -> None:
    session = make_session()
    account, _, salary = seed(session)

    with pytest.raises(ValidationError):
        TransactionService(session, USER).create(expense(account, salary, 10))


def test_balance_adjustment_moves_opening_balance() -> None:
    session = make_session()
    account, food, _ = seed(session)
    TransactionService(session, USER).create(expense(account, food, 1_000))

    AccountService(session, USER).update(account.id, AccountUpdate(balance_cents=20_000))

    assert account.balance_cents == 20_000
    assert account.opening_balance_cents == 21_000
    assert rebuild_account_balances(session, USER) == 0


def test_rebuild_corrects_drifted_balance() -> None:
    session = make_session()
    account, food, _ = seed(session)
    TransactionService(session, USER).create(expense(account, food, 2_500))
    account.balance_cents = 1
    session.commit()

    assert rebuild_account_balances(session, USER) == 1
    assert account.balance_cents == 7_500


def test_account_with_transactions_cannot_be_deleted() -> None:
    session = make_session()
    account, food, _ = seed(session)
    TransactionService(session, USER).create(expense(account, food, 100))

    with pytest.raises(ResourceInUse):
        AccountService(session, USER).delete(account.id)


def test_total_balance_counts_active_accounts_only() -> None:
    session = make_session()
    accounts = AccountService(session, USER)
    accounts.create(AccountIn(name="A", type=AccountType.checking, balance_cents=1_000))
    closed = accounts.create(
        AccountIn(name="B", type=AccountType.savings, balance_cents=500)
    )
    accounts.update(closed.id, AccountUpdate(is_active=False))
    AccountService(session, "bob").create(
        AccountIn(name="C", type=AccountType.cash, balance_cents=9_999)
    )

    assert accounts.total_balance() == 1_000


def test_lost_update_surfaces_as_retryable_store_error() -> None:
    session = make_session()

    with pytest.raises(StoreError) as exc_info:
        with atomic(session):
            session.add(
                Account(
                    user_id=USER,
                    name="Ghost",
                    type=AccountType.cash,
                    opening_balance_cents=0,
                    balance_cents=0,
                )
            )
            raise StaleDataError("simulated concurrent update")

    assert exc_info.value.retryable
    assert exc_info.value.status_code == 503
    assert session.scalars(select(Account)).all() == []


def test_transfer_update_and_type_switch_keep_both_balances() -> None:
    session = make_session()
    checking, food, _ = seed(session)
    accounts = AccountService(session, USER)
    savings = accounts.create(AccountIn(name="Savings", type=AccountType.savings))
    brokerage = accounts.create(AccountIn(name="Brokerage", type=AccountType.investment))
    txns = TransactionService(session, USER)
    transfer = txns.create_transfer(
        TransferIn(
            from_account_id=checking.id,
            to_account_id=savings.id,
            amount_cents=3_000,
            description="Monthly savings",
            category_id=food.id,
            date=date(2025, 1, 2),
        )
    )

    txns.update(transfer.id, TransactionUpdate(amount_cents=4_000))
    assert (checking.balance_cents, savings.balance_cents) == (6_000, 4_000)

    txns.update(transfer.id, TransactionUpdate(to_account_id=brokerage.id))
    assert (savings.balance_cents, brokerage.balance_cents) == (0, 4_000)
    assert checking.balance_cents == 6_000

    txns.update(transfer.id, TransactionUpdate(type=TransactionType.expense))
    assert transfer.to_account_id is None
    assert (checking.balance_cents, brokerage.balance_cents) == (6_000, 0)

    txns.update(
        transfer.id,
        TransactionUpdate(
            type=TransactionType.transfer, to_account_id=savings.id, amount_cents=2_500
        ),
    )
    assert (checking.balance_cents, savings.balance_cents) == (7_500, 2_500)
    assert brokerage.balance_cents == 0
    assert rebuild_account_balances(session, USER) == 0


def test_transfer_locks_accounts_in_id_order(monkeypatch) -> None:
    session = make_session()
    checking, food, _ = seed(session)
    savings = AccountService(session, USER).create(
        AccountIn(name="Savings", type=AccountType.savings, balance_cents=5_000)
    )
    bob_account = AccountService(session, "bob").create(
        AccountIn(name="Bob", type=AccountType.checking)
    )
    locked: list[int] = []
    original = ledger.load_owned_account

    def recording(session, user_id, account_id, **kwargs):
        if kwargs.get("for_update"):
            locked.append(account_id)
        return original(session, user_id, account_id, **kwargs)

    monkeypatch.setattr(ledger, "load_owned_account", recording)
    txns = TransactionService(session, USER)

    def transfer(source_id, destination_id):
        return TransferIn(
            from_account_id=source_id,
            to_account_id=destination_id,
            amount_cents=1_000,
            description="Move back",
            category_id=food.id,
            date=date(2025, 1, 2),
        )

    txns.create_transfer(transfer(savings.id, checking.id))
    assert locked == sorted([savings.id, checking.id])

    with pytest.raises(Unauthorized, match="Destination account"):
        txns.create_transfer(transfer(checking.id, bob_account.id))
    with pytest.raises(NotFound, match="Source account"):
        txns.create_transfer(transfer(999, checking.id))
    assert (checking.balance_cents, savings.balance_cents) == (11_000, 4_000)
