from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from crypto_prices import CryptoPriceClient
from database import atomic
from errors import (
    AlreadyPaid,
    AlreadySold,
    CategoryHasChildren,
    CircularCategoryParent,
    Conflict,
    DuplicateName,
    InactiveSubscription,
    NotFound,
    ResourceInUse,
    SameAccountTransfer,
    SubscriptionNotDue,
    Unauthorized,
    ValidationError,
)
from ledger import (
    effects_of,
    ensure_can_debit,
    ledger_effect_cents,
    load_owned_account,
    lock_accounts,
    recompute_balances,
    transaction_effects,
)
from models import (
    Account,
    Category,
    CategoryType,
    CryptoHolding,
    CryptoHoldingStatus,
    CryptoPrice,
    CryptoPriceHistory,
    Debt,
    Subscription,
    SubscriptionStatus,
    Tag,
    Transaction,
    TransactionType,
)
from periods import Period, month_end, month_start, resolve_period, trailing_months
from recurrence import calculate_next_billing_date, local_today, normalize_to_monthly
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    CategoryUpdate,
    CryptoHoldingIn,
    CryptoHoldingUpdate,
    CryptoSaleIn,
    DebtIn,
    DebtPaymentIn,
    DebtUpdate,
    SubscriptionIn,
    SubscriptionUpdate,
    TagIn,
    TransactionIn,
    TransactionUpdate,
    TransferIn,
)

logger = logging.getLogger(__name__)

BREAKDOWN_LIMIT = 8
TOP_SPENDING_LIMIT = 5
TREND_MONTHS = 6
DEFAULT_CATEGORY_COLOR = "#888888"
CENT = Decimal("1")


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(CENT, rounding=ROUND_HALF_UP))


def _get_owned(session: Session, model, entity_id: int, user_id: str, label: str):
    entity = session.get(model, entity_id)
    if not entity:
        raise NotFound(f"{label} not found")
    if entity.user_id != user_id:
        raise Unauthorized(f"{label} does not belong to you")
    return entity


def _lock_owned(session: Session, model, entity_id: int, user_id: str, label: str):
    entity = session.scalar(
        select(model)
        .where(model.id == entity_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if not entity:
        raise NotFound(f"{label} not found")
    if entity.user_id != user_id:
        raise Unauthorized(f"{label} does not belong to you")
    return entity


class AccountService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, *, active_only: bool = False) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        if active_only:
            stmt = stmt.where(Account.is_active.is_(True))
        return list(self.session.scalars(stmt).all())

    def get(self, account_id: int) -> Account:
        return _get_owned(self.session, Account, account_id, self.user_id, "Account")

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            opening_balance_cents=data.balance_cents,
            balance_cents=data.balance_cents,
            currency=data.currency,
            description=data.description,
        )
        with atomic(self.session):
            self.session.add(account)
        logger.info(f"account_created: id={account.id} user={self.user_id}")
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        changes = data.model_dump(exclude_unset=True)
        with atomic(self.session):
            account = load_owned_account(
                self.session, self.user_id, account_id, for_update=True
            )
            new_balance = changes.pop("balance_cents", None)
            for field, value in changes.items():
                if field in ("name", "type", "currency", "is_active") and value is None:
                    continue
                if field == "currency":
                    value = value.upper()
                setattr(account, field, value)
            if new_balance is not None and new_balance != account.balance_cents:
                # a manual balance correction moves the opening balance so that
                # the ledger still explains the current balance
                effect = ledger_effect_cents(self.session, account.id)
                account.opening_balance_cents = new_balance - effect
                account.balance_cents = new_balance
                logger.info(
                    f"account_balance_adjusted: id={account.id} "
                    f"balance_cents={new_balance}"
                )
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        in_use = self.session.scalar(
            select(func.count(Transaction.id)).where(
                or_(
                    Transaction.account_id == account.id,
                    Transaction.to_account_id == account.id,
                )
            )
        )
        in_use = (in_use or 0) + (
            self.session.scalar(
                select(func.count(Subscription.id)).where(
                    Subscription.account_id == account.id
                )
            )
            or 0
        )
        if in_use:
            raise ResourceInUse(
                "Account has transactions or subscriptions; deactivate it instead"
            )
        with atomic(self.session):
            self.session.execute(
                update(CryptoHolding)
                .where(CryptoHolding.account_id == account.id)
                .values(account_id=None)
            )
            self.session.execute(
                update(CryptoHolding)
                .where(CryptoHolding.sale_account_id == account.id)
                .values(sale_account_id=None)
            )
            self.session.delete(account)
        logger.info(f"account_deleted: id={account_id} user={self.user_id}")

    def total_balance(self) -> int:
        stmt = select(func.coalesce(func.sum(Account.balance_cents), 0)).where(
            Account.user_id == self.user_id,
            Account.is_active.is_(True),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)


class CategoryService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self, category_type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        if category_type:
            stmt = stmt.where(Category.type == category_type)
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: int) -> Category:
        return _get_owned(
            self.session, Category, category_id, self.user_id, "Category"
        )

    def _ensure_unique_name(
        self, name: str, category_type: CategoryType, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id,
            Category.type == category_type,
            func.lower(Category.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt):
            raise DuplicateName("Category with this name already exists")

    def _validate_parent(
        self,
        parent_id: int,
        category_type: CategoryType,
        category_id: Optional[int] = None,
    ) -> Category:
        if category_id is not None and parent_id == category_id:
            raise CircularCategoryParent("Category cannot be its own parent")
        try:
            parent = self.get(parent_id)
        except NotFound as exc:
            raise NotFound("Parent category not found") from exc
        if parent.type != category_type:
            raise ValidationError("Parent category must be of the same type")
        if category_id is not None:
            ancestor_id: Optional[int] = parent.id
            seen: set[int] = set()
            while ancestor_id is not None and ancestor_id not in seen:
                if ancestor_id == category_id:
                    raise CircularCategoryParent(
                        "Category cannot be moved below one of its subcategories"
                    )
                seen.add(ancestor_id)
                ancestor_id = self.session.scalar(
                    select(Category.parent_id).where(Category.id == ancestor_id)
                )
        return parent

    def create(self, data: CategoryIn) -> Category:
        self._ensure_unique_name(data.name, data.type)
        if data.parent_id is not None:
            self._validate_parent(data.parent_id, data.type)
        category = Category(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            description=data.description,
            color=data.color,
            icon=data.icon,
            parent_id=data.parent_id,
        )
        with atomic(self.session):
            self.session.add(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        changes = data.model_dump(exclude_unset=True)
        new_type = changes.get("type") or category.type
        new_name = changes.get("name") or category.name

        if new_type != category.type:
            if self._child_count(category.id):
                raise Conflict("Cannot change the type of a category with subcategories")
            if self._usage_count(category.id):
                raise ResourceInUse("Cannot change the type of a category in use")
        if new_name != category.name or new_type != category.type:
            self._ensure_unique_name(new_name, new_type, exclude_id=category.id)

        parent_id = changes.get("parent_id", category.parent_id)
        if parent_id is not None:
            self._validate_parent(parent_id, new_type, category.id)

        with atomic(self.session):
            category.name = new_name
            category.type = new_type
            category.parent_id = parent_id
            for field in ("description", "color", "icon"):
                if field in changes:
                    setattr(category, field, changes[field])
        return category

    def _child_count(self, category_id: int) -> int:
        count = self.session.scalar(
            select(func.count(Category.id)).where(Category.parent_id == category_id)
        )
        return int(count or 0)

    def _usage_count(self, category_id: int) -> int:
        txns = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.category_id == category_id
            )
        )
        subs = self.session.scalar(
            select(func.count(Subscription.id)).where(
                Subscription.category_id == category_id
            )
        )
        return int(txns or 0) + int(subs or 0)

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        if self._child_count(category.id):
            raise CategoryHasChildren("Cannot delete category with subcategories")
        if self._usage_count(category.id):
            raise ResourceInUse("Category is used by transactions or subscriptions")
        with atomic(self.session):
            self.session.delete(category)


class TagService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        return list(self.session.scalars(stmt).all())

    def get(self, tag_id: int) -> Tag:
        return _get_owned(self.session, Tag, tag_id, self.user_id, "Tag")

    def _ensure_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(Tag.id).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Tag.id != exclude_id)
        if self.session.scalar(stmt):
            raise DuplicateName("Tag already exists")

    def create(self, data: TagIn) -> Tag:
        self._ensure_unique_name(data.name)
        tag = Tag(user_id=self.user_id, name=data.name, color=data.color)
        with atomic(self.session):
            self.session.add(tag)
        return tag

    def update(self, tag_id: int, data: TagIn) -> Tag:
        tag = self.get(tag_id)
        self._ensure_unique_name(data.name, exclude_id=tag.id)
        with atomic(self.session):
            tag.name = data.name
            tag.color = data.color
        return tag

    def delete(self, tag_id: int) -> None:
        tag = self.get(tag_id)
        with atomic(self.session):
            for txn in list(tag.transactions):
                txn.tags.remove(tag)
            self.session.delete(tag)

    def resolve(self, tag_ids: list[int]) -> list[Tag]:
        tags: list[Tag] = []
        seen: set[int] = set()
        for tag_id in tag_ids:
            if tag_id in seen:
                continue
            tags.append(self.get(tag_id))
            seen.add(tag_id)
        return tags


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    tag_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    min_amount_cents: Optional[int] = None
    max_amount_cents: Optional[int] = None
    query: Optional[str] = None


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _category_for(self, category_id: int, txn_type: TransactionType) -> Category:
        category = _get_owned(
            self.session, Category, category_id, self.user_id, "Category"
        )
        if txn_type != TransactionType.transfer and category.type.value != txn_type.value:
            raise ValidationError("Category type mismatch")
        return category

    @staticmethod
    def _check_destination(
        txn_type: TransactionType, account_id: int, to_account_id: Optional[int]
    ) -> None:
        if txn_type == TransactionType.transfer:
            if to_account_id is None:
                raise ValidationError("Transfers require a destination account")
            if to_account_id == account_id:
                raise SameAccountTransfer("Cannot transfer to the same account")
        elif to_account_id is not None:
            raise ValidationError("Only transfers can have a destination account")

    def _lock_for(
        self,
        account_id: int,
        to_account_id: Optional[int],
        also: Iterable[int] = (),
    ) -> dict[int, Account]:
        account_ids = [account_id, *also]
        labels = None
        if to_account_id is not None:
            account_ids.append(to_account_id)
            labels = {
                account_id: "Source account",
                to_account_id: "Destination account",
            }
        return lock_accounts(self.session, self.user_id, account_ids, labels=labels)

    def post(self, data: TransactionIn) -> Transaction:
        """Validate and write one transaction plus its balance effects.

        Runs inside the caller's atomic unit and does not commit.
        """
        self._check_destination(data.type, data.account_id, data.to_account_id)
        self._category_for(data.category_id, data.type)
        tags = TagService(self.session, self.user_id).resolve(data.tag_ids)
        accounts = self._lock_for(data.account_id, data.to_account_id)

        if data.type != TransactionType.income:
            label = "source account" if data.to_account_id else "account"
            ensure_can_debit(accounts[data.account_id], data.amount_cents, label=label)

        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description,
            reason=data.reason,
            category_id=data.category_id,
            date=data.date,
        )
        txn.tags = tags
        self.session.add(txn)
        recompute_balances(self.session, accounts.values())
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            txn = self.post(data)
        logger.info(
            f"transaction_created: id={txn.id} type={txn.type.value} "
            f"amount_cents={txn.amount_cents} user={self.user_id}"
        )
        return txn

    def create_transfer(self, data: TransferIn) -> Transaction:
        return self.create(
            TransactionIn(
                account_id=data.from_account_id,
                to_account_id=data.to_account_id,
                type=TransactionType.transfer,
                amount_cents=data.amount_cents,
                description=data.description,
                category_id=data.category_id,
                date=data.date,
                tag_ids=data.tag_ids,
            )
        )

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.tags))
            .where(Transaction.id == transaction_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        if txn.user_id != self.user_id:
            raise Unauthorized("Transaction does not belong to you")
        return txn

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.tags))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if filters.account_id:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.to_account_id == filters.account_id,
                )
            )
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start:
            stmt = stmt.where(Transaction.date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.date <= filters.end)
        if filters.min_amount_cents is not None:
            stmt = stmt.where(Transaction.amount_cents >= filters.min_amount_cents)
        if filters.max_amount_cents is not None:
            stmt = stmt.where(Transaction.amount_cents <= filters.max_amount_cents)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(func.lower(Transaction.description).like(like))
        if filters.tag_id:
            stmt = stmt.where(Transaction.tags.any(Tag.id == filters.tag_id))
        return list(self.session.scalars(stmt).unique().all())

    def _linked_to(self, transaction_id: int) -> Optional[str]:
        if self.session.scalar(
            select(Debt.id).where(Debt.transaction_id == transaction_id)
        ):
            return "a settled debt"
        if self.session.scalar(
            select(CryptoHolding.id).where(
                or_(
                    CryptoHolding.transaction_id == transaction_id,
                    CryptoHolding.sale_transaction_id == transaction_id,
                )
            )
        ):
            return "a crypto holding"
        return None

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        changes = data.model_dump(exclude_unset=True)

        new_type = changes.get("type") or txn.type
        new_account_id = changes.get("account_id") or txn.account_id
        new_amount = changes.get("amount_cents") or txn.amount_cents
        new_category_id = changes.get("category_id") or txn.category_id
        if new_type == TransactionType.transfer:
            new_to_account_id = changes.get("to_account_id") or txn.to_account_id
        else:
            new_to_account_id = None

        financial_change = (
            new_type != txn.type
            or new_account_id != txn.account_id
            or new_to_account_id != txn.to_account_id
            or new_amount != txn.amount_cents
        )
        if financial_change:
            linked = self._linked_to(txn.id)
            if linked:
                raise ResourceInUse(f"Transaction is linked to {linked}")

        self._check_destination(new_type, new_account_id, new_to_account_id)
        if new_category_id != txn.category_id or new_type != txn.type:
            self._category_for(new_category_id, new_type)
        tags = None
        if changes.get("tag_ids") is not None:
            tags = TagService(self.session, self.user_id).resolve(changes["tag_ids"])

        with atomic(self.session):
            old_effects = effects_of(txn)
            new_effects = transaction_effects(
                new_type, new_amount, new_account_id, new_to_account_id
            )
            involved = set(old_effects) | set(new_effects)
            accounts = self._lock_for(new_account_id, new_to_account_id, involved)

            if new_type != TransactionType.income:
                source = accounts[new_account_id]
                # the original effect is reversed before the new one applies
                available = source.balance_cents - old_effects.get(source.id, 0)
                ensure_can_debit(
                    source,
                    new_amount,
                    available_cents=available,
                    label="source account" if new_to_account_id else "account",
                )

            txn.type = new_type
            txn.account_id = new_account_id
            txn.to_account_id = new_to_account_id
            txn.amount_cents = new_amount
            txn.category_id = new_category_id
            for field in ("description", "reason", "date"):
                if field in changes and (changes[field] is not None or field == "reason"):
                    setattr(txn, field, changes[field])
            if tags is not None:
                txn.tags = tags
            recompute_balances(self.session, accounts.values())
        logger.info(f"transaction_updated: id={txn.id} user={self.user_id}")
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        linked = self._linked_to(txn.id)
        if linked:
            raise ResourceInUse(f"Transaction is linked to {linked}")
        with atomic(self.session):
            accounts = lock_accounts(self.session, self.user_id, effects_of(txn))
            self.session.delete(txn)
            recompute_balances(self.session, accounts.values())
        logger.info(f"transaction_deleted: id={transaction_id} user={self.user_id}")


class DebtService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list(
        self,
        *,
        is_paid: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        min_amount_cents: Optional[int] = None,
        max_amount_cents: Optional[int] = None,
    ) -> list[Debt]:
        stmt = (
            select(Debt)
            .where(Debt.user_id == self.user_id)
            .order_by(Debt.created_at.desc(), Debt.id.desc())
        )
        if is_paid is not None:
            stmt = stmt.where(Debt.is_paid.is_(is_paid))
        if start:
            stmt = stmt.where(Debt.created_at >= start)
        if end:
            stmt = stmt.where(Debt.created_at <= end)
        if min_amount_cents is not None:
            stmt = stmt.where(Debt.amount_cents >= min_amount_cents)
        if max_amount_cents is not None:
            stmt = stmt.where(Debt.amount_cents <= max_amount_cents)
        return list(self.session.scalars(stmt).all())

    def get(self, debt_id: int) -> Debt:
        return _get_owned(self.session, Debt, debt_id, self.user_id, "Debt")

    def create(self, data: DebtIn) -> Debt:
        debt = Debt(
            user_id=self.user_id,
            person_name=data.person_name,
            amount_cents=data.amount_cents,
            description=data.description,
            due_date=data.due_date,
            notes=data.notes,
        )
        with atomic(self.session):
            self.session.add(debt)
        return debt

    def update(self, debt_id: int, data: DebtUpdate) -> Debt:
        debt = self.get(debt_id)
        if debt.is_paid:
            raise AlreadyPaid("Cannot update a paid debt")
        with atomic(self.session):
            for field, value in data.model_dump(exclude_unset=True).items():
                if field in ("person_name", "amount_cents") and value is None:
                    continue
                setattr(debt, field, value)
        return debt

    def delete(self, debt_id: int) -> None:
        debt = self.get(debt_id)
        with atomic(self.session):
            self.session.delete(debt)

    def settle(self, debt_id: int, data: DebtPaymentIn) -> Debt:
        """Mark a debt as paid and book the payment as income.

        The income transaction, the balance change and the debt update land
        together or not at all.
        """
        with atomic(self.session):
            debt = _lock_owned(self.session, Debt, debt_id, self.user_id, "Debt")
            if debt.is_paid:
                raise AlreadyPaid("Debt is already paid")
            load_owned_account(self.session, self.user_id, data.account_id)

            paid_date = data.paid_date or local_today()
            txn = TransactionService(self.session, self.user_id).post(
                TransactionIn(
                    account_id=data.account_id,
                    type=TransactionType.income,
                    amount_cents=debt.amount_cents,
                    description=f"Payment received from {debt.person_name}",
                    reason=debt.description,
                    category_id=data.category_id,
                    date=paid_date,
                )
            )
            self.session.flush()
            debt.is_paid = True
            debt.paid_date = paid_date
            debt.transaction_id = txn.id
        logger.info(
            f"debt_settled: id={debt.id} transaction={debt.transaction_id} "
            f"user={self.user_id}"
        )
        return debt

    def summary(self) -> dict[str, int]:
        stmt = select(
            func.count(Debt.id),
            func.coalesce(func.sum(Debt.amount_cents), 0),
            func.coalesce(func.sum(case((Debt.is_paid.is_(True), 1), else_=0)), 0),
            func.coalesce(
                func.sum(case((Debt.is_paid.is_(True), Debt.amount_cents), else_=0)), 0
            ),
        ).where(Debt.user_id == self.user_id)
        total, total_amount, paid, paid_amount = self.session.execute(stmt).one()
        total = int(total or 0)
        total_amount = int(total_amount or 0)
        paid = int(paid or 0)
        paid_amount = int(paid_amount or 0)
        return {
            "total_debts": total,
            "total_amount_cents": total_amount,
            "paid_debts": paid,
            "paid_amount_cents": paid_amount,
            "unpaid_debts": total - paid,
            "unpaid_amount_cents": total_amount - paid_amount,
        }


class SubscriptionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list(
        self,
        *,
        status: Optional[SubscriptionStatus] = None,
        account_id: Optional[int] = None,
    ) -> list[Subscription]:
        stmt = (
            select(Subscription)
            .options(
                joinedload(Subscription.account), joinedload(Subscription.category)
            )
            .where(Subscription.user_id == self.user_id)
            .order_by(Subscription.next_billing_date, Subscription.id)
        )
        if status:
            stmt = stmt.where(Subscription.status == status)
        if account_id:
            stmt = stmt.where(Subscription.account_id == account_id)
        return list(self.session.scalars(stmt).all())

    def get(self, subscription_id: int) -> Subscription:
        return _get_owned(
            self.session, Subscription, subscription_id, self.user_id, "Subscription"
        )

    def _expense_category(self, category_id: int) -> Category:
        category = _get_owned(
            self.session, Category, category_id, self.user_id, "Category"
        )
        if category.type != CategoryType.expense:
            raise ValidationError("Subscriptions must use an expense category")
        return category

    def create(self, data: SubscriptionIn) -> Subscription:
        load_owned_account(self.session, self.user_id, data.account_id)
        self._expense_category(data.category_id)
        subscription = Subscription(
            user_id=self.user_id,
            name=data.name,
            amount_cents=data.amount_cents,
            frequency=data.frequency,
            next_billing_date=data.next_billing_date,
            billing_day=data.next_billing_date.day,
            account_id=data.account_id,
            category_id=data.category_id,
            status=SubscriptionStatus.active,
            notes=data.notes,
        )
        with atomic(self.session):
            self.session.add(subscription)
        return subscription

    def update(self, subscription_id: int, data: SubscriptionUpdate) -> Subscription:
        subscription = self.get(subscription_id)
        changes = {
            field: value
            for field, value in data.model_dump(exclude_unset=True).items()
            if value is not None or field == "notes"
        }
        if "account_id" in changes and changes["account_id"] != subscription.account_id:
            load_owned_account(self.session, self.user_id, changes["account_id"])
        if (
            "category_id" in changes
            and changes["category_id"] != subscription.category_id
        ):
            self._expense_category(changes["category_id"])
        new_status = changes.get("status")
        if (
            subscription.status == SubscriptionStatus.cancelled
            and new_status is not None
            and new_status != SubscriptionStatus.cancelled
        ):
            raise InactiveSubscription("Cancelled subscriptions cannot be resumed")

        with atomic(self.session):
            for field, value in changes.items():
                setattr(subscription, field, value)
            if "next_billing_date" in changes:
                subscription.billing_day = changes["next_billing_date"].day
        return subscription

    def delete(self, subscription_id: int) -> None:
        subscription = self.get(subscription_id)
        with atomic(self.session):
            self.session.delete(subscription)

    def process(
        self, subscription_id: int, *, as_of: Optional[date] = None
    ) -> Subscription:
        """Bill one period: book the expense and move the billing date on.

        With ``as_of`` the period is only billed while it is still due once
        the row is locked; a run that lost the race to another biller gets
        ``SubscriptionNotDue`` and books nothing.
        """
        with atomic(self.session):
            subscription = _lock_owned(
                self.session, Subscription, subscription_id, self.user_id, "Subscription"
            )
            if subscription.status != SubscriptionStatus.active:
                raise InactiveSubscription("Subscription is not active")
            billed_on = subscription.next_billing_date
            if as_of is not None and billed_on > as_of:
                raise SubscriptionNotDue(
                    f"Subscription is not due until {billed_on.isoformat()}"
                )
            try:
                next_billing = calculate_next_billing_date(
                    billed_on, subscription.frequency, anchor_day=subscription.billing_day
                )
            except (OverflowError, ValueError) as exc:
                raise ValidationError("Next billing date is out of range") from exc
            TransactionService(self.session, self.user_id).post(
                TransactionIn(
                    account_id=subscription.account_id,
                    type=TransactionType.expense,
                    amount_cents=subscription.amount_cents,
                    description=f"Subscription: {subscription.name}",
                    reason=subscription.notes,
                    category_id=subscription.category_id,
                    date=billed_on,
                )
            )
            subscription.next_billing_date = next_billing
        logger.info(
            f"subscription_processed: id={subscription.id} billed_on={billed_on} "
            f"next={subscription.next_billing_date} user={self.user_id}"
        )
        return subscription

    def summary(self) -> dict[str, object]:
        subscriptions = self.list()
        counts = {status: 0 for status in SubscriptionStatus}
        monthly_total = 0.0
        next_billing: Optional[date] = None
        for subscription in subscriptions:
            counts[subscription.status] += 1
            if subscription.status != SubscriptionStatus.active:
                continue
            monthly_total += normalize_to_monthly(
                subscription.amount_cents, subscription.frequency
            )
            if next_billing is None or subscription.next_billing_date < next_billing:
                next_billing = subscription.next_billing_date
        return {
            "total_subscriptions": len(subscriptions),
            "active_subscriptions": counts[SubscriptionStatus.active],
            "paused_subscriptions": counts[SubscriptionStatus.paused],
            "cancelled_subscriptions": counts[SubscriptionStatus.cancelled],
            "total_monthly_amount_cents": int(round(monthly_total)),
            "next_billing_date": next_billing,
        }


class CryptoService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(
        self, status: Optional[CryptoHoldingStatus] = None
    ) -> list[CryptoHolding]:
        stmt = (
            select(CryptoHolding)
            .where(CryptoHolding.user_id == self.user_id)
            .order_by(CryptoHolding.created_at.desc(), CryptoHolding.id.desc())
        )
        if status:
            stmt = stmt.where(CryptoHolding.status == status)
        return list(self.session.scalars(stmt).all())

    def by_symbol(self, symbol: str) -> list[CryptoHolding]:
        stmt = (
            select(CryptoHolding)
            .where(
                CryptoHolding.user_id == self.user_id,
                CryptoHolding.symbol == symbol.strip().upper(),
            )
            .order_by(CryptoHolding.purchase_date.desc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, holding_id: int) -> CryptoHolding:
        return _get_owned(
            self.session, CryptoHolding, holding_id, self.user_id, "Crypto holding"
        )

    def _latest_price(self, symbol: str) -> Optional[Decimal]:
        return self.session.scalar(
            select(CryptoPrice.price).where(CryptoPrice.symbol == symbol)
        )

    def create(self, data: CryptoHoldingIn) -> CryptoHolding:
        if data.account_id is not None:
            load_owned_account(self.session, self.user_id, data.account_id)
            if data.category_id is None:
                raise ValidationError("Category is required when paying from an account")
        current_price = self._latest_price(data.symbol) or data.purchase_price
        holding = CryptoHolding(
            user_id=self.user_id,
            symbol=data.symbol,
            name=data.name,
            amount=data.amount,
            purchase_price=data.purchase_price,
            purchase_date=data.purchase_date,
            purchase_fee=data.purchase_fee,
            current_price=current_price,
            last_price_update=datetime.utcnow(),
            notes=data.notes,
            account_id=data.account_id,
            status=CryptoHoldingStatus.active,
        )
        with atomic(self.session):
            if data.account_id is not None:
                cost_cents = to_cents(data.amount * data.purchase_price + data.purchase_fee)
                txn = TransactionService(self.session, self.user_id).post(
                    TransactionIn(
                        account_id=data.account_id,
                        type=TransactionType.expense,
                        amount_cents=cost_cents,
                        description=(
                            f"Bought {data.amount} {data.symbol} ({data.name})"
                        )[:200],
                        reason=data.notes,
                        category_id=data.category_id,
                        date=data.purchase_date,
                    )
                )
                self.session.flush()
                holding.transaction_id = txn.id
            self.session.add(holding)
        logger.info(
            f"crypto_holding_created: id={holding.id} symbol={holding.symbol} "
            f"user={self.user_id}"
        )
        return holding

    def update(self, holding_id: int, data: CryptoHoldingUpdate) -> CryptoHolding:
        holding = self.get(holding_id)
        if holding.status == CryptoHoldingStatus.sold:
            raise AlreadySold("Sold holdings cannot be changed")
        with atomic(self.session):
            for field, value in data.model_dump(exclude_unset=True).items():
                if value is None and field != "notes":
                    continue
                setattr(holding, field, value)
        return holding

    def delete(self, holding_id: int) -> None:
        holding = self.get(holding_id)
        with atomic(self.session):
            self.session.delete(holding)

    def sell(self, holding_id: int, data: CryptoSaleIn) -> CryptoHolding:
        with atomic(self.session):
            holding = _lock_owned(
                self.session, CryptoHolding, holding_id, self.user_id, "Crypto holding"
            )
            if holding.status == CryptoHoldingStatus.sold:
                raise AlreadySold("This crypto holding has already been sold")
            load_owned_account(
                self.session,
                self.user_id,
                data.sale_account_id,
                label="Destination account",
            )
            net_proceeds = holding.amount * data.sale_price - data.sale_fee
            if net_proceeds <= 0:
                raise ValidationError("Net proceeds after fees must be positive")
            net_cents = to_cents(net_proceeds)
            if net_cents <= 0:
                raise ValidationError("Net proceeds after fees must be positive")

            description = f"Sold {holding.amount} {holding.symbol} ({holding.name})"
            if data.sale_fee > 0:
                description += f" - Fee: {data.sale_fee:.2f}"
            txn = TransactionService(self.session, self.user_id).post(
                TransactionIn(
                    account_id=data.sale_account_id,
                    type=TransactionType.income,
                    amount_cents=net_cents,
                    description=description[:200],
                    category_id=data.category_id,
                    date=data.sale_date,
                )
            )
            self.session.flush()
            holding.status = CryptoHoldingStatus.sold
            holding.sale_price = data.sale_price
            holding.sale_date = data.sale_date
            holding.sale_fee = data.sale_fee
            holding.sale_account_id = data.sale_account_id
            holding.sale_transaction_id = txn.id
        logger.info(
            f"crypto_holding_sold: id={holding.id} proceeds_cents={net_cents} "
            f"user={self.user_id}"
        )
        return holding

    def portfolio(self) -> dict[str, object]:
        holdings = self.list_all(CryptoHoldingStatus.active)
        total_value = Decimal("0")
        total_cost = Decimal("0")
        items = []
        for holding in holdings:
            value = holding.amount * holding.current_price
            cost = holding.amount * holding.purchase_price
            profit = value - cost
            total_value += value
            total_cost += cost
            items.append(
                {
                    "holding": holding,
                    "current_value": value,
                    "profit": profit,
                    "profit_percentage": (profit / cost * 100) if cost else Decimal("0"),
                }
            )
        total_profit = total_value - total_cost
        return {
            "holdings": items,
            "total_value": total_value,
            "total_cost": total_cost,
            "total_profit_loss": total_profit,
            "profit_loss_percentage": (
                total_profit / total_cost * 100 if total_cost else Decimal("0")
            ),
        }


class CryptoPriceRefresher:
    """Pulls fresh quotes for every held symbol, across all owners."""

    def __init__(
        self, session: Session, client: Optional[CryptoPriceClient] = None
    ) -> None:
        self.session = session
        self.client = client or CryptoPriceClient()

    def held_symbols(self) -> list[str]:
        stmt = (
            select(CryptoHolding.symbol)
            .where(CryptoHolding.status == CryptoHoldingStatus.active)
            .distinct()
            .order_by(CryptoHolding.symbol)
        )
        return list(self.session.scalars(stmt).all())

    def refresh(self) -> int:
        symbols = self.held_symbols()
        if not symbols:
            logger.info("crypto_price_refresh: no holdings to update")
            return 0
        quotes = self.client.fetch_quotes(symbols)
        now = datetime.utcnow()
        with atomic(self.session):
            for quote in quotes:
                price = self.session.scalar(
                    select(CryptoPrice).where(CryptoPrice.symbol == quote.symbol)
                )
                if not price:
                    price = CryptoPrice(symbol=quote.symbol)
                    self.session.add(price)
                price.price = quote.price
                price.market_cap = quote.market_cap
                price.volume_24h = quote.volume_24h
                price.percent_change_24h = quote.percent_change_24h
                price.percent_change_7d = quote.percent_change_7d
                price.last_updated = quote.last_updated.replace(tzinfo=None)
                self.session.add(
                    CryptoPriceHistory(symbol=quote.symbol, price=quote.price, timestamp=now)
                )
                self.session.execute(
                    update(CryptoHolding)
                    .where(
                        CryptoHolding.symbol == quote.symbol,
                        CryptoHolding.status == CryptoHoldingStatus.active,
                    )
                    .values(current_price=quote.price, last_price_update=now)
                )
        logger.info(
            f"crypto_price_refresh: symbols={len(symbols)} updated={len(quotes)}"
        )
        return len(quotes)


class StatisticsService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def _totals(self, period: Period) -> dict[TransactionType, tuple[int, int]]:
        stmt = (
            select(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0),
                func.count(Transaction.id),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.type)
        )
        return {
            row[0]: (int(row[1] or 0), int(row[2] or 0))
            for row in self.session.execute(stmt).all()
        }

    def category_breakdown(
        self, period: Period, transaction_type: TransactionType
    ) -> list[dict[str, object]]:
        total_expr = func.sum(Transaction.amount_cents)
        stmt = (
            select(
                Category.name,
                Category.color,
                total_expr.label("total"),
                func.count(Transaction.id).label("count"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == transaction_type,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Category.id, Category.name, Category.color)
            .order_by(total_expr.desc(), Category.name)
            .limit(BREAKDOWN_LIMIT)
        )
        return [
            {
                "name": row.name,
                "amount_cents": int(row.total or 0),
                "count": int(row.count or 0),
                "color": row.color or DEFAULT_CATEGORY_COLOR,
            }
            for row in self.session.execute(stmt).all()
        ]

    def monthly_trends(self, today: date) -> list[dict[str, object]]:
        months = trailing_months(today, TREND_MONTHS)
        stmt = (
            select(
                Transaction.date,
                Transaction.type,
                func.sum(Transaction.amount_cents),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type.in_([TransactionType.income, TransactionType.expense]),
                Transaction.date.between(months[0].start, months[-1].end),
            )
            .group_by(Transaction.date, Transaction.type)
        )
        buckets = {m.start: {"income": 0, "expenses": 0} for m in months}
        for day, txn_type, total in self.session.execute(stmt).all():
            bucket = buckets[month_start(day)]
            key = "income" if txn_type == TransactionType.income else "expenses"
            bucket[key] += int(total or 0)
        return [
            {
                "month": m.slug,
                "income_cents": buckets[m.start]["income"],
                "expenses_cents": buckets[m.start]["expenses"],
                "net_cents": buckets[m.start]["income"] - buckets[m.start]["expenses"],
            }
            for m in months
        ]

    def daily_trend(self, today: date) -> list[dict[str, object]]:
        stmt = (
            select(Transaction.date, func.sum(Transaction.amount_cents))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(month_start(today), month_end(today)),
            )
            .group_by(Transaction.date)
            .order_by(Transaction.date)
        )
        return [
            {"date": day, "amount_cents": int(total or 0)}
            for day, total in self.session.execute(stmt).all()
        ]

    def top_spending(self, period: Period) -> list[dict[str, object]]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.amount_cents.desc(), Transaction.date.desc())
            .limit(TOP_SPENDING_LIMIT)
        )
        return [
            {
                "id": txn.id,
                "description": txn.description,
                "amount_cents": txn.amount_cents,
                "category": txn.category.name if txn.category else None,
                "date": txn.date,
            }
            for txn in self.session.scalars(stmt).all()
        ]

    def compute(
        self, period_keyword: Optional[str] = "month", *, today: Optional[date] = None
    ) -> dict[str, object]:
        today = today or local_today()
        period = resolve_period(period_keyword, today=today)

        totals = self._totals(period)
        income, income_count = totals.get(TransactionType.income, (0, 0))
        expenses, expense_count = totals.get(TransactionType.expense, (0, 0))
        transfer_count = totals.get(TransactionType.transfer, (0, 0))[1]
        net_income = income - expenses
        savings_rate = (net_income / income * 100) if income else 0.0

        accounts = AccountService(self.session, self.user_id).list_all()
        net_worth = sum(account.balance_cents for account in accounts)
        account_balances = sorted(
            (
                {
                    "name": account.name,
                    "balance_cents": account.balance_cents,
                    "type": account.type.value,
                }
                for account in accounts
            ),
            key=lambda item: item["balance_cents"],
            reverse=True,
        )

        return {
            "period": period.slug,
            "date_range": {"start": period.start, "end": period.end},
            "summary": {
                "total_income_cents": income,
                "total_expenses_cents": expenses,
                "net_income_cents": net_income,
                "savings_rate": savings_rate,
                "net_worth_cents": net_worth,
                "transaction_count": income_count + expense_count + transfer_count,
                "avg_expense_cents": expenses / expense_count if expense_count else 0,
                "avg_income_cents": income / income_count if income_count else 0,
            },
            "category_breakdown": self.category_breakdown(
                period, TransactionType.expense
            ),
            "income_category_breakdown": self.category_breakdown(
                period, TransactionType.income
            ),
            "monthly_trends": self.monthly_trends(today),
            "account_balances": account_balances,
            "daily_trend": self.daily_trend(today),
            "top_spending": self.top_spending(period),
        }
