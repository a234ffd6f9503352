import logging
from datetime import date, datetime, time
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import LedgerError, StoreError
from ledger import rebuild_account_balances
from models import (
    Account,
    Category,
    CategoryType,
    CryptoHolding,
    CryptoHoldingStatus,
    Debt,
    Subscription,
    SubscriptionStatus,
    Tag,
    Transaction,
    TransactionType,
)
from recurrence import SubscriptionBiller
from scheduler import SchedulerManager
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
from services import (
    AccountService,
    CategoryService,
    CryptoPriceRefresher,
    CryptoService,
    DebtService,
    StatisticsService,
    SubscriptionService,
    TagService,
    TransactionFilters,
    TransactionService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    user_id = (x_user_id or "").strip() or get_settings().default_user_id
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.kind},
    )


@app.exception_handler(RequestValidationError)
def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "detail": jsonable_encoder(exc.errors()),
            "error": "validation_error",
        },
    )


@app.exception_handler(StoreError)
def store_error_handler(request: Request, exc: StoreError):
    logger.error(f"store_error: path={request.url.path} error={exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": exc.kind, "retryable": exc.retryable},
    )


def account_out(account: Account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "balance_cents": account.balance_cents,
        "currency": account.currency,
        "description": account.description,
        "is_active": account.is_active,
        "created_at": account.created_at,
        "updated_at": account.updated_at,
    }


def category_out(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "description": category.description,
        "color": category.color,
        "icon": category.icon,
        "parent_id": category.parent_id,
    }


def tag_out(tag: Tag) -> dict:
    return {"id": tag.id, "name": tag.name, "color": tag.color}


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "to_account_id": txn.to_account_id,
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "description": txn.description,
        "reason": txn.reason,
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "date": txn.date,
        "tags": [tag_out(tag) for tag in txn.tags],
        "created_at": txn.created_at,
    }


def debt_out(debt: Debt) -> dict:
    return {
        "id": debt.id,
        "person_name": debt.person_name,
        "amount_cents": debt.amount_cents,
        "description": debt.description,
        "due_date": debt.due_date,
        "notes": debt.notes,
        "is_paid": debt.is_paid,
        "paid_date": debt.paid_date,
        "transaction_id": debt.transaction_id,
        "created_at": debt.created_at,
    }


def subscription_out(subscription: Subscription) -> dict:
    return {
        "id": subscription.id,
        "name": subscription.name,
        "amount_cents": subscription.amount_cents,
        "frequency": subscription.frequency.value,
        "next_billing_date": subscription.next_billing_date,
        "account_id": subscription.account_id,
        "category_id": subscription.category_id,
        "status": subscription.status.value,
        "notes": subscription.notes,
    }


def holding_out(holding: CryptoHolding) -> dict:
    return {
        "id": holding.id,
        "symbol": holding.symbol,
        "name": holding.name,
        "amount": holding.amount,
        "purchase_price": holding.purchase_price,
        "purchase_date": holding.purchase_date,
        "purchase_fee": holding.purchase_fee,
        "current_price": holding.current_price,
        "last_price_update": holding.last_price_update,
        "notes": holding.notes,
        "account_id": holding.account_id,
        "transaction_id": holding.transaction_id,
        "status": holding.status.value,
        "sale_price": holding.sale_price,
        "sale_date": holding.sale_date,
        "sale_fee": holding.sale_fee,
        "sale_account_id": holding.sale_account_id,
        "sale_transaction_id": holding.sale_transaction_id,
    }


@app.get("/health")
def health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/accounts")
def list_accounts(
    active_only: bool = False,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    accounts = AccountService(db, user_id).list_all(active_only=active_only)
    return [account_out(account) for account in accounts]


@app.get("/api/accounts/total-balance")
def total_balance(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    return {"total_balance_cents": AccountService(db, user_id).total_balance()}


@app.post("/api/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return account_out(AccountService(db, user_id).create(payload))


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return account_out(AccountService(db, user_id).get(account_id))


@app.put("/api/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return account_out(AccountService(db, user_id).update(account_id, payload))


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    AccountService(db, user_id).delete(account_id)
    return Response(status_code=204)


@app.get("/api/categories")
def list_categories(
    type: Optional[CategoryType] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return [category_out(c) for c in CategoryService(db, user_id).list_all(type)]


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return category_out(CategoryService(db, user_id).create(payload))


@app.get("/api/categories/{category_id}")
def get_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return category_out(CategoryService(db, user_id).get(category_id))


@app.put("/api/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return category_out(CategoryService(db, user_id).update(category_id, payload))


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    CategoryService(db, user_id).delete(category_id)
    return Response(status_code=204)


@app.get("/api/tags")
def list_tags(db: Session = Depends(get_db), user_id: str = Depends(current_user_id)):
    return [tag_out(tag) for tag in TagService(db, user_id).list_all()]


@app.post("/api/tags", status_code=201)
def create_tag(
    payload: TagIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return tag_out(TagService(db, user_id).create(payload))


@app.put("/api/tags/{tag_id}")
def update_tag(
    tag_id: int,
    payload: TagIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return tag_out(TagService(db, user_id).update(tag_id, payload))


@app.delete("/api/tags/{tag_id}", status_code=204)
def delete_tag(
    tag_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    TagService(db, user_id).delete(tag_id)
    return Response(status_code=204)


@app.get("/api/transactions")
def list_transactions(
    account_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    category_id: Optional[int] = None,
    tag_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    min_amount_cents: Optional[int] = None,
    max_amount_cents: Optional[int] = None,
    q: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    offset = (page - 1) * limit
    filters = TransactionFilters(
        account_id=account_id,
        type=type,
        category_id=category_id,
        tag_id=tag_id,
        start=start,
        end=end,
        min_amount_cents=min_amount_cents,
        max_amount_cents=max_amount_cents,
        query=q.strip() if q else None,
    )
    items = TransactionService(db, user_id).list(
        filters, limit=limit + 1, offset=offset
    )
    has_more = len(items) > limit
    items = items[:limit]
    return {
        "items": [transaction_out(txn) for txn in items],
        "page": page,
        "limit": limit,
        "has_more": has_more,
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return transaction_out(TransactionService(db, user_id).create(payload))


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return transaction_out(TransactionService(db, user_id).get(transaction_id))


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    txn = TransactionService(db, user_id).update(transaction_id, payload)
    return transaction_out(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    TransactionService(db, user_id).delete(transaction_id)
    return Response(status_code=204)


@app.post("/api/transfers", status_code=201)
def create_transfer(
    payload: TransferIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return transaction_out(TransactionService(db, user_id).create_transfer(payload))


@app.get("/api/debts")
def list_debts(
    is_paid: Optional[bool] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    min_amount_cents: Optional[int] = None,
    max_amount_cents: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    debts = DebtService(db, user_id).list(
        is_paid=is_paid,
        start=datetime.combine(start, time.min) if start else None,
        end=datetime.combine(end, time.max) if end else None,
        min_amount_cents=min_amount_cents,
        max_amount_cents=max_amount_cents,
    )
    return [debt_out(debt) for debt in debts]


@app.get("/api/debts/summary")
def debt_summary(db: Session = Depends(get_db), user_id: str = Depends(current_user_id)):
    return DebtService(db, user_id).summary()


@app.post("/api/debts", status_code=201)
def create_debt(
    payload: DebtIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return debt_out(DebtService(db, user_id).create(payload))


@app.get("/api/debts/{debt_id}")
def get_debt(
    debt_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return debt_out(DebtService(db, user_id).get(debt_id))


@app.put("/api/debts/{debt_id}")
def update_debt(
    debt_id: int,
    payload: DebtUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return debt_out(DebtService(db, user_id).update(debt_id, payload))


@app.delete("/api/debts/{debt_id}", status_code=204)
def delete_debt(
    debt_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    DebtService(db, user_id).delete(debt_id)
    return Response(status_code=204)


@app.post("/api/debts/{debt_id}/pay")
def pay_debt(
    debt_id: int,
    payload: DebtPaymentIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return debt_out(DebtService(db, user_id).settle(debt_id, payload))


@app.get("/api/subscriptions")
def list_subscriptions(
    status: Optional[SubscriptionStatus] = None,
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    subscriptions = SubscriptionService(db, user_id).list(
        status=status, account_id=account_id
    )
    return [subscription_out(s) for s in subscriptions]


@app.get("/api/subscriptions/summary")
def subscription_summary(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    return SubscriptionService(db, user_id).summary()


@app.post("/api/subscriptions/process-due")
def process_due_subscriptions(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    processed = SubscriptionBiller(db).process_due(user_id=user_id)
    return {
        "processed": len(processed),
        "items": [subscription_out(s) for s in processed],
    }


@app.post("/api/subscriptions", status_code=201)
def create_subscription(
    payload: SubscriptionIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return subscription_out(SubscriptionService(db, user_id).create(payload))


@app.get("/api/subscriptions/{subscription_id}")
def get_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return subscription_out(SubscriptionService(db, user_id).get(subscription_id))


@app.put("/api/subscriptions/{subscription_id}")
def update_subscription(
    subscription_id: int,
    payload: SubscriptionUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    subscription = SubscriptionService(db, user_id).update(subscription_id, payload)
    return subscription_out(subscription)


@app.delete("/api/subscriptions/{subscription_id}", status_code=204)
def delete_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    SubscriptionService(db, user_id).delete(subscription_id)
    return Response(status_code=204)


@app.post("/api/subscriptions/{subscription_id}/process")
def process_subscription(
    subscription_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return subscription_out(SubscriptionService(db, user_id).process(subscription_id))


@app.get("/api/crypto")
def list_crypto(
    status: Optional[CryptoHoldingStatus] = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return [holding_out(h) for h in CryptoService(db, user_id).list_all(status)]


@app.get("/api/crypto/portfolio")
def crypto_portfolio(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    portfolio = CryptoService(db, user_id).portfolio()
    portfolio["holdings"] = [
        {**holding_out(item.pop("holding")), **item}
        for item in portfolio["holdings"]
    ]
    return portfolio


@app.get("/api/crypto/symbol/{symbol}")
def crypto_by_symbol(
    symbol: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return [holding_out(h) for h in CryptoService(db, user_id).by_symbol(symbol)]


@app.post("/api/crypto/update-prices")
def update_crypto_prices(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    try:
        updated = CryptoPriceRefresher(db).refresh()
    except (RuntimeError, ValueError) as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"updated": updated}


@app.post("/api/crypto", status_code=201)
def create_crypto(
    payload: CryptoHoldingIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return holding_out(CryptoService(db, user_id).create(payload))


@app.get("/api/crypto/{holding_id}")
def get_crypto(
    holding_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return holding_out(CryptoService(db, user_id).get(holding_id))


@app.put("/api/crypto/{holding_id}")
def update_crypto(
    holding_id: int,
    payload: CryptoHoldingUpdate,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return holding_out(CryptoService(db, user_id).update(holding_id, payload))


@app.delete("/api/crypto/{holding_id}", status_code=204)
def delete_crypto(
    holding_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    CryptoService(db, user_id).delete(holding_id)
    return Response(status_code=204)


@app.post("/api/crypto/{holding_id}/sell")
def sell_crypto(
    holding_id: int,
    payload: CryptoSaleIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return holding_out(CryptoService(db, user_id).sell(holding_id, payload))


@app.get("/api/statistics")
def statistics(
    period: Optional[str] = "month",
    db: Session = Depends(get_db),
    user_id: str = Depends(current_user_id),
):
    return StatisticsService(db, user_id).compute(period)


@app.post("/admin/rebuild-balances")
def rebuild_balances(
    db: Session = Depends(get_db), user_id: str = Depends(current_user_id)
):
    corrected = rebuild_account_balances(db, user_id)
    logger.info(f"rebuild_balances: user={user_id} corrected={corrected}")
    return {"corrected": corrected}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
