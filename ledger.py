"""Account balance bookkeeping.

Balances are never adjusted by bare increments. Every write that adds,
changes or removes a transaction recomputes the touched accounts from the
ledger (opening balance plus the signed effect of every stored transaction)
inside the caller's atomic unit, so a reversal followed by a re-application
can neither drop nor double count an effect.
"""

from collections.abc import Iterable
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from database import atomic
from errors import InsufficientBalance, NotFound, Unauthorized
from models import Account, Transaction, TransactionType


def transaction_effects(
    txn_type: TransactionType,
    amount_cents: int,
    account_id: int,
    to_account_id: Optional[int] = None,
) -> dict[int, int]:
    """Signed balance change per account id for one transaction."""
    if txn_type == TransactionType.income:
        return {account_id: amount_cents}
    if txn_type == TransactionType.expense:
        return {account_id: -amount_cents}
    if to_account_id is None:
        raise ValueError("Transfer effect needs a destination account")
    return {account_id: -amount_cents, to_account_id: amount_cents}


def effects_of(txn: Transaction) -> dict[int, int]:
    return transaction_effects(
        txn.type, txn.amount_cents, txn.account_id, txn.to_account_id
    )


def load_owned_account(
    session: Session,
    user_id: str,
    account_id: int,
    *,
    label: str = "Account",
    for_update: bool = False,
) -> Account:
    stmt = select(Account).where(Account.id == account_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    account = session.scalar(stmt)
    if not account:
        raise NotFound(f"{label} not found")
    if account.user_id != user_id:
        raise Unauthorized(f"{label} does not belong to you")
    return account


def lock_accounts(
    session: Session,
    user_id: str,
    account_ids: Iterable[int],
    *,
    labels: Optional[dict[int, str]] = None,
) -> dict[int, Account]:
    """Load and row-lock accounts in id order so concurrent writers queue up.

    ``labels`` names accounts in the NotFound/Unauthorized messages.
    """
    labels = labels or {}
    locked: dict[int, Account] = {}
    for account_id in sorted(set(account_ids)):
        locked[account_id] = load_owned_account(
            session,
            user_id,
            account_id,
            label=labels.get(account_id, "Account"),
            for_update=True,
        )
    return locked


def ensure_can_debit(
    account: Account,
    amount_cents: int,
    *,
    available_cents: Optional[int] = None,
    label: str = "account",
) -> None:
    """Reject a debit that would overdraw a non credit-card account."""
    if account.is_credit_card:
        return
    available = account.balance_cents if available_cents is None else available_cents
    if available < amount_cents:
        raise InsufficientBalance(f"Insufficient balance in {label}")


def ledger_effect_cents(session: Session, account_id: int) -> int:
    stmt = select(
        func.coalesce(
            func.sum(
                case(
                    (
                        (Transaction.account_id == account_id)
                        & (Transaction.type == TransactionType.income),
                        Transaction.amount_cents,
                    ),
                    (
                        (Transaction.account_id == account_id)
                        & (
                            Transaction.type.in_(
                                [TransactionType.expense, TransactionType.transfer]
                            )
                        ),
                        -Transaction.amount_cents,
                    ),
                    (
                        (Transaction.to_account_id == account_id)
                        & (Transaction.type == TransactionType.transfer),
                        Transaction.amount_cents,
                    ),
                    else_=0,
                )
            ),
            0,
        )
    ).where(
        (Transaction.account_id == account_id)
        | (Transaction.to_account_id == account_id)
    )
    return int(session.execute(stmt).scalar_one() or 0)


def recompute_account_balance(session: Session, account: Account) -> int:
    session.flush()
    balance = account.opening_balance_cents + ledger_effect_cents(session, account.id)
    if account.balance_cents != balance:
        account.balance_cents = balance
    return balance


def recompute_balances(session: Session, accounts: Iterable[Account]) -> None:
    for account in accounts:
        recompute_account_balance(session, account)
    session.flush()


def rebuild_account_balances(session: Session, user_id: str) -> int:
    """Recompute every account of one owner; returns how many were corrected."""
    accounts = session.scalars(
        select(Account).where(Account.user_id == user_id).order_by(Account.id)
    ).all()
    corrected = 0
    with atomic(session):
        for account in accounts:
            before = account.balance_cents
            if recompute_account_balance(session, account) != before:
                corrected += 1
    return corrected
