import logging
from datetime import date, datetime
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse
from sqlalchemy.orm import Session

from auth import current_user_id
from config import get_settings
from csv_utils import export_transactions, parse_csv
from database import SessionLocal
from errors import LedgerError, Unauthorized, ValidationError
from importer import ImportService
from ledger import LedgerService
from periods import resolve_window
from schemas import (
    AccountIn,
    AccountOut,
    BulkCategoryIn,
    CalendarEntryOut,
    CalendarEventIn,
    CalendarEventPatch,
    CalendarOverview,
    ClearIn,
    ImportIn,
    ImportResult,
    TransactionIn,
    TransactionOut,
    TransactionPatch,
)
from services import (
    AccountService,
    CalendarService,
    TransactionFilters,
    TransactionService,
    account_out,
    calendar_entry_out,
    transaction_out,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} detail={exc}")
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(authorization: Optional[str] = Header(None)) -> int:
    if not authorization:
        raise Unauthorized("Missing credentials")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Invalid authorization header")
    return current_user_id(token.strip())


def filters_from_query(
    account_id: Optional[int] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    search: Optional[str] = None,
) -> TransactionFilters:
    if start and end and start > end:
        raise ValidationError("Start date must be before end date")
    return TransactionFilters(account_id=account_id, start=start, end=end, search=search)


@app.get("/api/accounts", response_model=list[AccountOut])
def api_list_accounts(
    db: Session = Depends(get_db), user_id: int = Depends(current_user)
):
    return [account_out(account) for account in AccountService(db, user_id).list()]


@app.post("/api/accounts", response_model=AccountOut, status_code=201)
def api_create_account(
    data: AccountIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return account_out(AccountService(db, user_id).create(data))


@app.delete("/api/accounts/{account_id}", status_code=204)
def api_delete_account(
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    AccountService(db, user_id).delete(account_id)
    return Response(status_code=204)


@app.get("/api/transactions", response_model=list[TransactionOut])
def api_list_transactions(
    filters: TransactionFilters = Depends(filters_from_query),
    limit: int = Query(200, ge=1, le=2000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    items = TransactionService(db, user_id).list(filters, limit=limit, offset=offset)
    return [transaction_out(txn) for txn in items]


@app.post("/api/transactions", response_model=TransactionOut, status_code=201)
def api_create_transaction(
    data: TransactionIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return transaction_out(LedgerService(db, user_id).create(data))


@app.patch("/api/transactions/{transaction_id}", response_model=TransactionOut)
def api_update_transaction(
    transaction_id: int,
    patch: TransactionPatch,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return transaction_out(LedgerService(db, user_id).update(transaction_id, patch))


@app.delete("/api/transactions/{transaction_id}", status_code=204)
def api_delete_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    LedgerService(db, user_id).delete(transaction_id)
    return Response(status_code=204)


@app.post("/api/transactions/bulk-update")
def api_bulk_update(
    data: BulkCategoryIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    count = TransactionService(db, user_id).bulk_set_category(
        data.transaction_ids, data.category_id
    )
    return {"count": count}


@app.post("/api/transactions/clear")
def api_clear_transactions(
    data: ClearIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return {"count": LedgerService(db, user_id).clear(data.account_id)}


@app.post("/api/transactions/import", response_model=ImportResult)
def api_import_transactions(
    data: ImportIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return ImportService(db, user_id).import_rows(data.account_id, data.rows)


@app.post("/api/transactions/import/csv")
async def api_import_csv(
    account_id: int = Form(...),
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    try:
        content = (await file.read()).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValidationError("CSV must be UTF-8 encoded") from exc
    rows, errors = parse_csv(content)
    if not rows:
        raise ValidationError("; ".join(errors) or "No rows to import")
    result = ImportService(db, user_id).import_rows(account_id, rows)
    return {**result.model_dump(), "errors": errors}


@app.get("/api/transactions/export.csv")
def api_export_transactions(
    filters: TransactionFilters = Depends(filters_from_query),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    transactions = TransactionService(db, user_id).all_matching(filters)
    csv_text = export_transactions(transactions)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filename = f"transactions_{timestamp}.csv"
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/calendar", response_model=CalendarOverview)
def api_calendar(
    start: Optional[str] = None,
    end: Optional[str] = None,
    year: Optional[int] = None,
    month: Optional[int] = None,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    window = resolve_window(start, end, year, month)
    return CalendarService(db, user_id).overview(window.start, window.end)


@app.post("/api/calendar", response_model=CalendarEntryOut, status_code=201)
def api_create_event(
    data: CalendarEventIn,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return calendar_entry_out(CalendarService(db, user_id).create_event(data))


@app.patch("/api/calendar/{event_id}", response_model=CalendarEntryOut)
def api_update_event(
    event_id: int,
    patch: CalendarEventPatch,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    return calendar_entry_out(CalendarService(db, user_id).update_event(event_id, patch))


@app.delete("/api/calendar/{event_id}", status_code=204)
def api_delete_event(
    event_id: int,
    scope: str = "series",
    on: Optional[date] = Query(None, alias="date"),
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user),
):
    CalendarService(db, user_id).delete_event(event_id, scope=scope, on=on)
    return Response(status_code=204)
