import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from sqlalchemy.orm import Session

from auth import Unauthorized, resolve_owner
from database import SessionLocal
from models import Account, Budget, Category, Transaction, TransactionType, User
from notifications import DeliveryFailure, send_test_email
from periods import resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    CategoryPatch,
    TransactionIn,
    TransactionPatch,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    Conflict,
    DashboardService,
    LedgerService,
    NotFound,
    TransactionFilters,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_owner(authorization: Optional[str] = Header(None)) -> int:
    token = None
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer":
            token = credentials.strip()
    try:
        return resolve_owner(token)
    except Unauthorized as exc:
        raise HTTPException(
            status_code=401,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, Unauthorized):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, Conflict):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def account_json(account: Account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "currency_code": account.currency_code,
        "balance_cents": account.balance_cents,
        "initial_balance_cents": account.initial_balance_cents,
        "is_active": account.is_active,
        "color": account.color,
        "icon": account.icon,
        "description": account.description,
    }


def category_json(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "color": category.color,
        "icon": category.icon,
        "description": category.description,
    }


def transaction_json(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "account_id": txn.account_id,
        "category_id": txn.category_id,
        "category": txn.category.name if txn.category else None,
        "type": txn.type.value,
        "amount_cents": txn.amount_cents,
        "date": txn.date.isoformat(),
        "description": txn.description,
        "notes": txn.notes,
        "tags": list(txn.tags or []),
        "is_recurring": txn.is_recurring,
        "recurring_frequency": (
            txn.recurring_frequency.value if txn.recurring_frequency else None
        ),
        "transfer_from_account_id": txn.transfer_from_account_id,
        "transfer_to_account_id": txn.transfer_to_account_id,
    }


def budget_json(budget: Budget) -> dict:
    return {
        "id": budget.id,
        "name": budget.name,
        "category_id": budget.category_id,
        "amount_cents": budget.amount_cents,
        "period": budget.period.value,
        "start_date": budget.start_date.isoformat(),
        "end_date": budget.end_date.isoformat() if budget.end_date else None,
        "is_active": budget.is_active,
    }


# Accounts


@app.get("/api/accounts")
def list_accounts(
    include_inactive: bool = True,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    accounts = AccountService(db, owner).list_all(include_inactive=include_inactive)
    return [account_json(a) for a in accounts]


@app.post("/api/accounts", status_code=201)
def create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        account = AccountService(db, owner).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return account_json(account)


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        account = AccountService(db, owner).get(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return account_json(account)


@app.patch("/api/accounts/{account_id}")
def update_account(
    account_id: int,
    payload: AccountPatch,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        account = AccountService(db, owner).update(account_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return account_json(account)


@app.delete("/api/accounts/{account_id}", status_code=204)
def delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        AccountService(db, owner).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post("/api/accounts/{account_id}/rebuild")
def rebuild_account_balance(
    account_id: int,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        balance = LedgerService(db, owner).rebuild_balance(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"account_id": account_id, "balance_cents": balance}


# Categories


@app.get("/api/categories")
def list_categories(
    type: Optional[TransactionType] = None,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    return [category_json(c) for c in CategoryService(db, owner).list_all(type)]


@app.post("/api/categories", status_code=201)
def create_category(
    payload: CategoryIn,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        category = CategoryService(db, owner).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category_json(category)


@app.get("/api/categories/{category_id}")
def get_category(
    category_id: int,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        category = CategoryService(db, owner).get(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category_json(category)


@app.patch("/api/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryPatch,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        category = CategoryService(db, owner).update(category_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category_json(category)


@app.delete("/api/categories/{category_id}", status_code=204)
def delete_category(
    category_id: int,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        CategoryService(db, owner).delete(category_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Transactions


def filters_from_request(request: Request) -> TransactionFilters:
    params = request.query_params
    try:
        period = resolve_period(
            params.get("period"), params.get("start"), params.get("end")
        )
        txn_type = TransactionType(params["type"]) if params.get("type") else None
        account_id = int(params["account"]) if params.get("account") else None
        category_id = int(params["category"]) if params.get("category") else None
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return TransactionFilters(
        account_id=account_id,
        category_id=category_id,
        type=txn_type,
        period=period,
    )


@app.get("/api/transactions")
def list_transactions(
    request: Request,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    filters = filters_from_request(request)
    try:
        limit = int(request.query_params.get("limit", "100"))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid limit") from exc
    limit = min(max(limit, 1), 500)
    items = LedgerService(db, owner).list(filters, limit=limit)
    return {"items": [transaction_json(t) for t in items], "limit": limit}


@app.post("/api/transactions", status_code=201)
def post_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        txn = LedgerService(db, owner).post(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_json(txn)


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        txn = LedgerService(db, owner).get(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_json(txn)


@app.patch("/api/transactions/{transaction_id}")
def amend_transaction(
    transaction_id: int,
    payload: TransactionPatch,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        txn = LedgerService(db, owner).amend(transaction_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_json(txn)


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def retract_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        LedgerService(db, owner).retract(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Budgets


@app.get("/api/budgets")
def list_budgets(
    active_only: bool = False,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    budgets = BudgetService(db, owner).list_all(active_only=active_only)
    return [budget_json(b) for b in budgets]


@app.get("/api/budgets/alerts")
def budget_alerts(
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    return BudgetService(db, owner).alerts().as_dict()


@app.post("/api/budgets", status_code=201)
def create_budget(
    payload: BudgetIn,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        budget = BudgetService(db, owner).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget_json(budget)


@app.get("/api/budgets/{budget_id}")
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    service = BudgetService(db, owner)
    try:
        budget = service.get(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    data = budget_json(budget)
    data["status"] = service.evaluate(budget).as_dict()
    return data


@app.patch("/api/budgets/{budget_id}")
def update_budget(
    budget_id: int,
    payload: BudgetPatch,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        budget = BudgetService(db, owner).update(budget_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return budget_json(budget)


@app.delete("/api/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    try:
        BudgetService(db, owner).delete(budget_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# Dashboard and alerts


@app.get("/api/dashboard")
def dashboard(
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    summary = DashboardService(db, owner).summarize()
    period = summary["period"]
    summary["period"] = {
        "start": period.start.isoformat(),
        "end": period.end.isoformat(),
    }
    summary["recent_transactions"] = [
        transaction_json(t) for t in summary["recent_transactions"]
    ]
    return summary


@app.post("/api/budget-alerts/sweep")
def run_budget_alert_sweep(owner: int = Depends(current_owner)):
    logger.info(f"budget_sweep: manual trigger by user={owner}")
    result = scheduler_manager.run_now(f"api_user_{owner}", user_id=owner)
    return result.as_dict()


@app.post("/api/notifications/test")
def send_notification_test(
    db: Session = Depends(get_db),
    owner: int = Depends(current_owner),
):
    user = db.get(User, owner)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    if not user.email:
        raise HTTPException(status_code=400, detail="No e-mail address on file")
    try:
        result = send_test_email(
            scheduler_manager.notifier.sink, user.email, user_name=user.username
        )
    except DeliveryFailure as exc:
        logger.warning(f"notify_test: user={owner} failed: {exc}")
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {
        "delivered": result.delivered,
        "provider": result.provider,
        "message_id": result.message_id,
        "detail": result.detail,
    }


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
