import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, UploadFile
from sqlalchemy.orm import Session

from database import SessionLocal
from errors import Conflict, DependencyFailure, InvalidInput, LedgerError, NotFound
from identity import IdentityError, resolve_user_id
from insights import ReceiptScanner
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    BudgetIn,
    BudgetOut,
    BulkDeleteIn,
    ScannedReceipt,
    TransactionIn,
    TransactionOut,
)
from services import AccountService, BudgetService, LedgerService


logger = logging.getLogger(__name__)

MAX_RECEIPT_BYTES = 5 * 1024 * 1024


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

app = FastAPI(title="Finance Tracker Ledger", version=APP_VERSION)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(authorization: Optional[str] = Header(default=None)) -> int:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    try:
        return resolve_user_id(authorization[7:].strip())
    except IdentityError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def get_receipt_scanner() -> ReceiptScanner:
    return ReceiptScanner()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, Conflict):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, DependencyFailure):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, (InvalidInput, LedgerError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail="Unexpected error")


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(
    user_id: int = Depends(current_user_id), db: Session = Depends(get_db)
):
    service = AccountService(db, user_id)
    counts = service.transaction_counts()
    return [
        AccountOut.model_validate(account).model_copy(
            update={"transaction_count": counts.get(account.id, 0)}
        )
        for account in service.list_all()
    ]


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def create_account(
    data: AccountIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user_id).create(data)
    except (LedgerError, DependencyFailure) as exc:
        raise _http_error(exc) from exc


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        account, transactions = AccountService(db, user_id).get_with_transactions(
            account_id
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {
        "account": AccountOut.model_validate(account).model_copy(
            update={"transaction_count": len(transactions)}
        ),
        "transactions": [TransactionOut.model_validate(t) for t in transactions],
    }


@app.post("/api/accounts/{account_id}/default", response_model=AccountOut)
def set_default_account(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db, user_id).set_default(account_id)
    except (LedgerError, DependencyFailure) as exc:
        raise _http_error(exc) from exc


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def create_transaction(
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return LedgerService(db, user_id).create(data)
    except (LedgerError, DependencyFailure) as exc:
        raise _http_error(exc) from exc


@app.get("/api/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return LedgerService(db, user_id).get(transaction_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.put("/api/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    data: TransactionIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return LedgerService(db, user_id).update(transaction_id, data)
    except (LedgerError, DependencyFailure) as exc:
        raise _http_error(exc) from exc


@app.post("/api/transactions/bulk-delete")
def bulk_delete_transactions(
    data: BulkDeleteIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        deleted = LedgerService(db, user_id).bulk_delete(data.ids)
    except (LedgerError, DependencyFailure) as exc:
        raise _http_error(exc) from exc
    return {"success": True, "deleted": deleted}


@app.get("/api/budget")
def get_budget(
    account_id: int,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        current = BudgetService(db, user_id).current(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    budget = current["budget"]
    return {
        "budget": BudgetOut.model_validate(budget) if budget else None,
        "current_expenses_cents": current["current_expenses_cents"],
    }


@app.put("/api/budget", response_model=BudgetOut)
def update_budget(
    data: BudgetIn,
    user_id: int = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return BudgetService(db, user_id).upsert(data)
    except (LedgerError, DependencyFailure) as exc:
        raise _http_error(exc) from exc


@app.get("/api/dashboard")
def dashboard(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    accounts = AccountService(db, user_id).list_all()
    transactions = LedgerService(db, user_id).recent(limit=50)
    return {
        "accounts": [AccountOut.model_validate(a) for a in accounts],
        "transactions": [TransactionOut.model_validate(t) for t in transactions],
    }


@app.post("/api/receipts/scan", response_model=ScannedReceipt)
async def scan_receipt(
    file: UploadFile = File(...),
    user_id: int = Depends(current_user_id),
    scanner: ReceiptScanner = Depends(get_receipt_scanner),
):
    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(content) > MAX_RECEIPT_BYTES:
        raise HTTPException(status_code=400, detail="Receipt too large (max 5MB)")
    logger.info(f"receipt_scan: user_id={user_id} bytes={len(content)}")
    return scanner.scan(content, file.content_type or "image/jpeg")


@app.post("/api/jobs/{job_name}/run")
def run_job(job_name: str, user_id: int = Depends(current_user_id)):
    runners = {
        "recurring-discovery": scheduler_manager.run_recurring,
        "budget-alerts": scheduler_manager.run_budget_alerts,
        "monthly-report": scheduler_manager.run_monthly_reports,
    }
    runner = runners.get(job_name)
    if runner is None:
        raise HTTPException(status_code=404, detail="Unknown job")
    try:
        result = runner(f"api:user={user_id}")
    except DependencyFailure as exc:
        raise _http_error(exc) from exc
    return {"job": job_name, "result": result}
