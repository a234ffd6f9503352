from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import (
    InactiveSubscription,
    InsufficientBalance,
    SubscriptionNotDue,
    ValidationError,
)
from models import (
    AccountType,
    CategoryType,
    SubscriptionFrequency,
    SubscriptionStatus,
    TransactionType,
)
from recurrence import SubscriptionBiller
from schemas import AccountIn, CategoryIn, SubscriptionIn, SubscriptionUpdate
from services import (
    AccountService,
    CategoryService,
    SubscriptionService,
    TransactionFilters,
    TransactionService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def seed(session, user_id="alice", balance_cents=10_000):
    account = AccountService(session, user_id).create(
        AccountIn(name="Checking", type=AccountType.checking, balance_cents=balance_cents)
    )
    category = CategoryService(session, user_id).create(
        CategoryIn(name="Streaming", type=CategoryType.expense)
    )
    return account, category


def subscription_in(account, category, **overrides):
    data = dict(
        name="Music",
        amount_cents=999,
        frequency=SubscriptionFrequency.monthly,
        next_billing_date=date(2025, 1, 31),
        account_id=account.id,
        category_id=category.id,
    )
    data.update(overrides)
    return SubscriptionIn(**data)


def test_process_books_expense_and_advances_date() -> None:
    session = make_session()
    account, category = seed(session)
    service = SubscriptionService(session, "alice")
    subscription = service.create(subscription_in(account, category))

    service.process(subscription.id)

    assert subscription.next_billing_date == date(2025, 2, 28)
    assert account.balance_cents == 10_000 - 999
    txns = TransactionService(session, "alice").list(TransactionFilters())
    assert len(txns) == 1
    assert txns[0].type == TransactionType.expense
    assert txns[0].date == date(2025, 1, 31)
    assert txns[0].description == "Subscription: Music"

    service.process(subscription.id)
    assert subscription.next_billing_date == date(2025, 3, 31)


def test_paused_subscription_is_not_processed() -> None:
    session = make_session()
    account, category = seed(session)
    service = SubscriptionService(session, "alice")
    subscription = service.create(subscription_in(account, category))
    service.update(subscription.id, SubscriptionUpdate(status=SubscriptionStatus.paused))

    with pytest.raises(InactiveSubscription):
        service.process(subscription.id)

    assert account.balance_cents == 10_000
    assert TransactionService(session, "alice").list() == []


def test_failed_process_leaves_date_untouched() -> None:
    session = make_session()
    account, category = seed(session, balance_cents=100)
    service = SubscriptionService(session, "alice")
    subscription = service.create(subscription_in(account, category))

    with pytest.raises(InsufficientBalance):
        service.process(subscription.id)

    assert subscription.next_billing_date == date(2025, 1, 31)
    assert account.balance_cents == 100


def test_process_due_isolates_failures() -> None:
    session = make_session()
    alice_account, alice_category = seed(session, "alice")
    bob_account, bob_category = seed(session, "bob", balance_cents=50)

    music = SubscriptionService(session, "alice").create(
        subscription_in(alice_account, alice_category)
    )
    later = SubscriptionService(session, "alice").create(
        subscription_in(
            alice_account,
            alice_category,
            name="Cloud",
            next_billing_date=date(2025, 3, 1),
        )
    )
    broke = SubscriptionService(session, "bob").create(
        subscription_in(bob_account, bob_category, name="Gym")
    )

    processed = SubscriptionBiller(session).process_due(as_of=date(2025, 2, 1))

    assert [s.id for s in processed] == [music.id]
    assert music.next_billing_date == date(2025, 2, 28)
    assert later.next_billing_date == date(2025, 3, 1)
    assert broke.next_billing_date == date(2025, 1, 31)
    assert bob_account.balance_cents == 50


def test_process_due_bills_each_subscription_once_per_run() -> None:
    session = make_session()
    account, category = seed(session)
    subscription = SubscriptionService(session, "alice").create(
        subscription_in(
            account,
            category,
            frequency=SubscriptionFrequency.weekly,
            next_billing_date=date(2025, 1, 1),
        )
    )

    SubscriptionBiller(session).process_due(as_of=date(2025, 1, 31))

    assert subscription.next_billing_date == date(2025, 1, 8)
    assert len(TransactionService(session, "alice").list()) == 1


def test_subscription_requires_expense_category() -> None:
    session = make_session()
    account, _ = seed(session)
    income = CategoryService(session, "alice").create(
        CategoryIn(name="Salary", type=CategoryType.income)
    )

    with pytest.raises(ValidationError):
        SubscriptionService(session, "alice").create(subscription_in(account, income))


def test_cancelled_subscription_cannot_be_resumed() -> None:
    session = make_session()
    account, category = seed(session)
    service = SubscriptionService(session, "alice")
    subscription = service.create(subscription_in(account, category))
    service.update(
        subscription.id, SubscriptionUpdate(status=SubscriptionStatus.cancelled)
    )

    with pytest.raises(InactiveSubscription):
        service.update(
            subscription.id, SubscriptionUpdate(status=SubscriptionStatus.active)
        )


def test_summary_normalizes_active_subscriptions() -> None:
    session = make_session()
    account, category = seed(session)
    service = SubscriptionService(session, "alice")
    service.create(
        subscription_in(
            account,
            category,
            name="Cleaning",
            amount_cents=1_000,
            frequency=SubscriptionFrequency.weekly,
            next_billing_date=date(2025, 1, 20),
        )
    )
    service.create(
        subscription_in(
            account,
            category,
            name="Domain",
            amount_cents=12_000,
            frequency=SubscriptionFrequency.yearly,
            next_billing_date=date(2025, 1, 10),
        )
    )
    paused = service.create(subscription_in(account, category, amount_cents=500))
    service.update(paused.id, SubscriptionUpdate(status=SubscriptionStatus.paused))

    summary = service.summary()

    assert summary["total_subscriptions"] == 3
    assert summary["active_subscriptions"] == 2
    assert summary["paused_subscriptions"] == 1
    assert summary["total_monthly_amount_cents"] == 5_330
    assert summary["next_billing_date"] == date(2025, 1, 10)


def test_overlapping_runs_bill_a_period_once(tmp_path, monkeypatch) -> None:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    first, second = SessionLocal(), SessionLocal()
    account, category = seed(first)
    subscription = SubscriptionService(first, "alice").create(
        subscription_in(account, category, next_billing_date=date(2025, 1, 15))
    )
    as_of = date(2025, 1, 20)

    slow = SubscriptionBiller(first)
    stale = slow.due_subscriptions(as_of)
    SubscriptionBiller(second).process_due(as_of=as_of)
    monkeypatch.setattr(slow, "due_subscriptions", lambda as_of, user_id=None: stale)

    assert slow.process_due(as_of=as_of) == []
    with pytest.raises(SubscriptionNotDue):
        SubscriptionService(first, "alice").process(subscription.id, as_of=as_of)

    check = SessionLocal()
    assert len(TransactionService(check, "alice").list()) == 1
    assert SubscriptionService(check, "alice").get(subscription.id).next_billing_date == (
        date(2025, 2, 15)
    )
    assert AccountService(check, "alice").get(account.id).balance_cents == 10_000 - 999


def test_out_of_range_billing_date_does_not_stop_the_batch() -> None:
    session = make_session()
    account, category = seed(session)
    service = SubscriptionService(session, "alice")
    last_year = service.create(
        subscription_in(
            account,
            category,
            name="Archive",
            frequency=SubscriptionFrequency.yearly,
            next_billing_date=date(9999, 1, 1),
        )
    )
    weekly = service.create(
        subscription_in(
            account,
            category,
            frequency=SubscriptionFrequency.weekly,
            next_billing_date=date(9999, 12, 20),
        )
    )

    processed = SubscriptionBiller(session).process_due(as_of=date.max)

    assert [s.id for s in processed] == [weekly.id]
    assert weekly.next_billing_date == date(9999, 12, 27)
    assert service.get(last_year.id).next_billing_date == date(9999, 1, 1)
    assert account.balance_cents == 10_000 - 999

    with pytest.raises(ValidationError, match="out of range"):
        service.process(last_year.id)
    assert len(TransactionService(session, "alice").list()) == 1
