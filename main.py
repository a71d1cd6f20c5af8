import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy.orm import Session

from database import SessionLocal, init_db
from models import BudgetCategory, BudgetPeriod, DirectExpense, ShoppingItem
from scheduler import SchedulerManager
from schemas import (
    BoughtToggleIn,
    BudgetCategoryIn,
    BudgetCategoryUpdate,
    BudgetPeriodIn,
    BudgetPeriodUpdate,
    DirectExpenseIn,
    ShoppingItemIn,
    ShoppingItemUpdate,
)
from services import (
    ArchivedPeriod,
    CategoryNotFound,
    CategoryService,
    DashboardService,
    ExpenseLedger,
    InvalidArgument,
    NotFound,
    PeriodService,
    ShoppingLedger,
    TransactionConflict,
)


app = FastAPI(title="Household Budget")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, CategoryNotFound):
        return HTTPException(
            status_code=404,
            detail={"message": str(exc), "suggestion": exc.suggestion},
        )
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TransactionConflict):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (InvalidArgument, ArchivedPeriod, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail="Unexpected error")


def period_out(period: BudgetPeriod) -> dict[str, object]:
    return {
        "id": period.id,
        "family_id": period.family_id,
        "name": period.name,
        "start_date": period.start_date.isoformat(),
        "end_date": period.end_date.isoformat(),
        "is_archived": period.is_archived,
        "created_at": period.created_at.isoformat() if period.created_at else None,
    }


def category_out(category: BudgetCategory) -> dict[str, object]:
    return {
        "id": category.id,
        "budget_period_id": category.budget_period_id,
        "name": category.name,
        "limit_cents": category.limit_cents,
        "spent_cents": category.spent_cents,
    }


def expense_out(expense: DirectExpense) -> dict[str, object]:
    return {
        "id": expense.id,
        "description": expense.description,
        "amount_cents": expense.amount_cents,
        "budget_category_name": expense.budget_category_name,
        "budget_category_id": expense.budget_category_id,
        "created_by": expense.created_by,
        "created_at": expense.created_at.isoformat(),
    }


def item_out(item: ShoppingItem) -> dict[str, object]:
    return {
        "id": item.id,
        "name": item.name,
        "quantity": item.quantity,
        "estimated_price_cents": item.estimated_price_cents,
        "is_bought": item.is_bought,
        "budget_category_name": item.budget_category_name,
        "budget_category_id": item.budget_category_id,
    }


@app.get("/api/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/families/{family_id}/periods")
def api_list_periods(
    family_id: str, include_archived: bool = True, db: Session = Depends(get_db)
):
    periods = PeriodService(db, family_id).list_all(include_archived=include_archived)
    return {"items": [period_out(p) for p in periods]}


@app.post("/api/families/{family_id}/periods", status_code=201)
def api_create_period(
    family_id: str, payload: BudgetPeriodIn, db: Session = Depends(get_db)
):
    period = PeriodService(db, family_id).create(payload)
    return period_out(period)


@app.get("/api/families/{family_id}/periods/active")
def api_active_period(
    family_id: str, today: Optional[date] = None, db: Session = Depends(get_db)
):
    period = PeriodService(db, family_id).active(today)
    return {"period": period_out(period) if period else None}


@app.patch("/api/families/{family_id}/periods/{period_id}")
def api_update_period(
    family_id: str,
    period_id: int,
    payload: BudgetPeriodUpdate,
    db: Session = Depends(get_db),
):
    try:
        period = PeriodService(db, family_id).update(period_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return period_out(period)


@app.post("/api/families/{family_id}/periods/{period_id}/archive")
def api_archive_period(family_id: str, period_id: int, db: Session = Depends(get_db)):
    try:
        period = PeriodService(db, family_id).archive(period_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return period_out(period)


@app.post("/api/families/{family_id}/periods/{period_id}/restore")
def api_restore_period(family_id: str, period_id: int, db: Session = Depends(get_db)):
    try:
        period = PeriodService(db, family_id).restore(period_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return period_out(period)


@app.delete("/api/families/{family_id}/periods/{period_id}", status_code=204)
def api_delete_period(family_id: str, period_id: int, db: Session = Depends(get_db)):
    try:
        PeriodService(db, family_id).delete(period_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.get("/api/families/{family_id}/periods/{period_id}/categories")
def api_list_categories(family_id: str, period_id: int, db: Session = Depends(get_db)):
    categories = CategoryService(db, family_id).list_for_period(period_id)
    return {"items": [category_out(c) for c in categories]}


@app.post("/api/families/{family_id}/periods/{period_id}/categories", status_code=201)
def api_create_category(
    family_id: str,
    period_id: int,
    payload: BudgetCategoryIn,
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, family_id).create(period_id, payload)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return category_out(category)


@app.post("/api/families/{family_id}/periods/{period_id}/categories/initialize")
def api_initialize_categories(
    family_id: str, period_id: int, db: Session = Depends(get_db)
):
    try:
        created = CategoryService(db, family_id).initialize_defaults(period_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"created": [category_out(c) for c in created]}


@app.patch("/api/families/{family_id}/categories/{category_id}")
def api_update_category(
    family_id: str,
    category_id: int,
    payload: BudgetCategoryUpdate,
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, family_id).update(category_id, payload)
    except (ValueError, TransactionConflict) as exc:
        raise _http_error(exc) from exc
    return category_out(category)


@app.delete("/api/families/{family_id}/categories/{category_id}", status_code=204)
def api_delete_category(
    family_id: str, category_id: int, db: Session = Depends(get_db)
):
    try:
        CategoryService(db, family_id).delete(category_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/families/{family_id}/expenses", status_code=201)
def api_record_expense(
    family_id: str, payload: DirectExpenseIn, db: Session = Depends(get_db)
):
    if payload.family_id != family_id:
        raise HTTPException(status_code=400, detail="Family ID mismatch")
    try:
        expense = ExpenseLedger(db).record_direct_expense(
            payload.family_id,
            payload.category_name,
            payload.amount_cents,
            payload.description,
            payload.actor_id,
        )
    except (ValueError, TransactionConflict) as exc:
        raise _http_error(exc) from exc
    return expense_out(expense)


@app.get("/api/families/{family_id}/expenses")
def api_list_expenses(
    family_id: str, category: Optional[str] = None, db: Session = Depends(get_db)
):
    expenses = ExpenseLedger(db).list_direct_expenses(family_id, category)
    return {"items": [expense_out(e) for e in expenses]}


@app.delete("/api/families/{family_id}/expenses/{expense_id}", status_code=204)
def api_delete_expense(family_id: str, expense_id: int, db: Session = Depends(get_db)):
    try:
        ExpenseLedger(db).delete_direct_expense(family_id, expense_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/api/families/{family_id}/shopping-items", status_code=201)
def api_add_item(family_id: str, payload: ShoppingItemIn, db: Session = Depends(get_db)):
    item = ShoppingLedger(db, family_id).add_item(payload)
    return item_out(item)


@app.post("/api/families/{family_id}/shopping-items/{item_id}/bought")
def api_toggle_bought(
    family_id: str,
    item_id: int,
    payload: BoughtToggleIn,
    db: Session = Depends(get_db),
):
    try:
        item = ShoppingLedger(db, family_id).set_bought(item_id, payload.is_bought)
    except (ValueError, TransactionConflict) as exc:
        raise _http_error(exc) from exc
    return item_out(item)


@app.patch("/api/families/{family_id}/shopping-items/{item_id}")
def api_update_item(
    family_id: str,
    item_id: int,
    payload: ShoppingItemUpdate,
    db: Session = Depends(get_db),
):
    try:
        item = ShoppingLedger(db, family_id).update_item(item_id, payload)
    except (ValueError, TransactionConflict) as exc:
        raise _http_error(exc) from exc
    return item_out(item)


@app.delete("/api/families/{family_id}/shopping-items/{item_id}", status_code=204)
def api_delete_item(family_id: str, item_id: int, db: Session = Depends(get_db)):
    try:
        ShoppingLedger(db, family_id).delete_item(item_id)
    except (ValueError, TransactionConflict) as exc:
        raise _http_error(exc) from exc


@app.get("/api/families/{family_id}/budget-stats")
def api_budget_stats(
    family_id: str,
    period_id: Optional[int] = None,
    today: Optional[date] = None,
    db: Session = Depends(get_db),
):
    try:
        stats = DashboardService(db, family_id).stats(period_id, today=today)
    except ValueError as exc:
        raise _http_error(exc) from exc
    if stats is None:
        return {"active": False, "stats": None}
    logging.info(
        f"budget_stats: family={family_id} spent={stats.total_spent_cents} "
        f"limit={stats.total_limit_cents}"
    )
    return {"active": True, "stats": stats.as_dict()}
