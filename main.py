import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import Response
from sqlalchemy.orm import Session

import backups
import ledger
from config import get_settings
from csrf import generate_csrf_token, require_csrf
from database import SessionLocal, init_db
from recurrence import DetectionResult
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountOut,
    BalanceCheckpointIn,
    CheckpointOut,
    ImportSummary,
    InitialBalanceIn,
    MergeIn,
    ParseResult,
    RecalculationOut,
    RecurringOut,
    RecurringTransactionIn,
    RecurringTransactionUpdate,
    RestoreSummary,
    SnapshotPreview,
    SyncResult,
    TransactionOut,
    TypeChangeIn,
)
from services import (
    AccountService,
    BalanceCheckpointService,
    ImportService,
    RecurringService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger")


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


def http_error(exc: ValueError) -> HTTPException:
    message = str(exc)
    status = 404 if "not found" in message.lower() else 400
    return HTTPException(status_code=status, detail=message)


async def read_upload(file: UploadFile) -> bytes:
    limit = get_settings().max_upload_mb * 1024 * 1024
    content = await file.read()
    if len(content) > limit:
        raise HTTPException(status_code=413, detail="Uploaded file is too large")
    return content


def recalculation_out(result: ledger.RecalculationResult) -> RecalculationOut:
    return RecalculationOut(
        account_id=result.account_id,
        balance_cents=result.balance_cents,
        transactions=result.transactions,
        warnings=[w.message for w in result.warnings],
    )


def recurring_out(item) -> RecurringOut:
    return RecurringOut.model_validate(item, from_attributes=True)


@app.get("/api/csrf")
def csrf_token_endpoint():
    return {"csrf_token": generate_csrf_token()}


# -- accounts -------------------------------------------------------------------


@app.get("/api/accounts", response_model=list[AccountOut])
def list_accounts(active_only: bool = False, db: Session = Depends(get_db)):
    return AccountService(db).list(active_only=active_only)


@app.post(
    "/api/accounts",
    response_model=AccountOut,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_account(payload: AccountIn, db: Session = Depends(get_db)):
    return AccountService(db).create(payload)


@app.post(
    "/api/accounts/{account_id}/initial-balance",
    response_model=RecalculationOut,
    dependencies=[Depends(require_csrf)],
)
def set_initial_balance(
    account_id: int, payload: InitialBalanceIn, db: Session = Depends(get_db)
):
    try:
        result = AccountService(db).set_initial_balance(account_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return recalculation_out(result)


@app.get("/api/accounts/{account_id}/transactions", response_model=list[TransactionOut])
def list_transactions(
    account_id: int,
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: int = Query(default=200, ge=1, le=5000),
    db: Session = Depends(get_db),
):
    try:
        return AccountService(db).transactions(account_id, start, end, limit)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.get("/api/accounts/{account_id}/balance")
def account_balance(
    account_id: int, as_of: Optional[date] = None, db: Session = Depends(get_db)
):
    try:
        if as_of is None:
            account = AccountService(db).get(account_id)
            return {"account_id": account_id, "balance_cents": account.balance_cents}
        balance = ledger.balance_as_of(db, account_id, as_of)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"account_id": account_id, "as_of": as_of.isoformat(), "balance_cents": balance}


@app.post(
    "/api/accounts/{account_id}/recalculate",
    response_model=RecalculationOut,
    dependencies=[Depends(require_csrf)],
)
def recalculate_account(account_id: int, db: Session = Depends(get_db)):
    try:
        result = ledger.recalculate(db, account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return recalculation_out(result)


@app.post(
    "/api/recalculate",
    response_model=list[RecalculationOut],
    dependencies=[Depends(require_csrf)],
)
def recalculate_all_accounts(db: Session = Depends(get_db)):
    return [recalculation_out(r) for r in ledger.recalculate_all(db)]


# -- checkpoints ----------------------------------------------------------------


@app.get("/api/accounts/{account_id}/checkpoints", response_model=list[CheckpointOut])
def list_checkpoints(account_id: int, db: Session = Depends(get_db)):
    return BalanceCheckpointService(db).list(account_id)


@app.post(
    "/api/accounts/{account_id}/checkpoints",
    response_model=CheckpointOut,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_checkpoint(
    account_id: int, payload: BalanceCheckpointIn, db: Session = Depends(get_db)
):
    try:
        return BalanceCheckpointService(db).create(account_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put(
    "/api/checkpoints/{checkpoint_id}",
    response_model=CheckpointOut,
    dependencies=[Depends(require_csrf)],
)
def update_checkpoint(
    checkpoint_id: int, payload: BalanceCheckpointIn, db: Session = Depends(get_db)
):
    try:
        return BalanceCheckpointService(db).update(checkpoint_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete(
    "/api/checkpoints/{checkpoint_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def delete_checkpoint(checkpoint_id: int, db: Session = Depends(get_db)):
    try:
        BalanceCheckpointService(db).delete(checkpoint_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


# -- statement import -------------------------------------------------------------


@app.post(
    "/api/import/preview",
    response_model=ParseResult,
    dependencies=[Depends(require_csrf)],
)
async def import_preview(
    file: UploadFile = File(...),
    account_id: Optional[int] = Form(None),
    db: Session = Depends(get_db),
):
    content = await read_upload(file)
    try:
        return ImportService(db).preview(content, file.filename, account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


@app.post(
    "/api/import/commit",
    response_model=ImportSummary,
    dependencies=[Depends(require_csrf)],
)
async def import_commit(
    file: UploadFile = File(...),
    account_id: Optional[int] = Form(None),
    db: Session = Depends(get_db),
):
    content = await read_upload(file)
    try:
        return ImportService(db).commit(content, file.filename, account_id)
    except ValueError as exc:
        raise http_error(exc) from exc


# -- recurring ------------------------------------------------------------------


@app.get("/api/recurring", response_model=list[RecurringOut])
def list_recurring(
    account_id: Optional[int] = None,
    active_only: bool = False,
    db: Session = Depends(get_db),
):
    service = RecurringService(db)
    items = service.list_active(account_id) if active_only else service.list(account_id)
    return [recurring_out(item) for item in items]


@app.get("/api/recurring/statistics")
def recurring_statistics(account_id: Optional[int] = None, db: Session = Depends(get_db)):
    return RecurringService(db).get_statistics(account_id)


@app.post(
    "/api/recurring",
    response_model=RecurringOut,
    status_code=201,
    dependencies=[Depends(require_csrf)],
)
def create_recurring(payload: RecurringTransactionIn, db: Session = Depends(get_db)):
    try:
        return recurring_out(RecurringService(db).create(payload))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.patch(
    "/api/recurring/{recurring_id}",
    response_model=RecurringOut,
    dependencies=[Depends(require_csrf)],
)
def update_recurring(
    recurring_id: int, payload: RecurringTransactionUpdate, db: Session = Depends(get_db)
):
    try:
        return recurring_out(RecurringService(db).update(recurring_id, payload))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.delete(
    "/api/recurring/{recurring_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def delete_recurring(recurring_id: int, db: Session = Depends(get_db)):
    try:
        RecurringService(db).delete(recurring_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return Response(status_code=204)


@app.post("/api/accounts/{account_id}/recurring/detect", dependencies=[Depends(require_csrf)])
def detect_recurring(account_id: int, db: Session = Depends(get_db)):
    try:
        result: DetectionResult = RecurringService(db).detect(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "account_id": result.account_id,
        "created": result.created,
        "updated": result.updated,
        "linked": result.linked,
        "series_ids": result.series_ids,
    }


@app.post(
    "/api/recurring/sync",
    response_model=SyncResult,
    dependencies=[Depends(require_csrf)],
)
def sync_recurring(account_id: Optional[int] = None, db: Session = Depends(get_db)):
    return RecurringService(db).sync_and_repair(account_id)


@app.post(
    "/api/recurring/merge",
    response_model=RecurringOut,
    dependencies=[Depends(require_csrf)],
)
def merge_recurring(payload: MergeIn, db: Session = Depends(get_db)):
    try:
        return recurring_out(RecurringService(db).merge(payload.target_id, payload.source_id))
    except ValueError as exc:
        raise http_error(exc) from exc


_TRANSITIONS = {
    "pause": RecurringService.pause,
    "resume": RecurringService.resume,
    "toggle": RecurringService.toggle_pause,
    "cancel": RecurringService.cancel,
    "complete": RecurringService.complete,
    "exclude": RecurringService.exclude,
}


@app.post(
    "/api/recurring/{recurring_id}/{action}",
    response_model=RecurringOut,
    dependencies=[Depends(require_csrf)],
)
def transition_recurring(recurring_id: int, action: str, db: Session = Depends(get_db)):
    handler = _TRANSITIONS.get(action)
    if handler is None:
        raise HTTPException(status_code=404, detail=f"Unknown action: {action}")
    try:
        return recurring_out(handler(RecurringService(db), recurring_id))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put(
    "/api/recurring/{recurring_id}/type",
    response_model=RecurringOut,
    dependencies=[Depends(require_csrf)],
)
def change_recurring_type(
    recurring_id: int, payload: TypeChangeIn, db: Session = Depends(get_db)
):
    try:
        return recurring_out(RecurringService(db).change_type(recurring_id, payload.type))
    except ValueError as exc:
        raise http_error(exc) from exc


@app.put(
    "/api/recurring/{recurring_id}/transactions/{transaction_id}",
    response_model=RecurringOut,
    dependencies=[Depends(require_csrf)],
)
def link_recurring_transaction(
    recurring_id: int, transaction_id: int, db: Session = Depends(get_db)
):
    try:
        return recurring_out(RecurringService(db).link_transaction(recurring_id, transaction_id))
    except ValueError as exc:
        raise http_error(exc) from exc


# -- backups --------------------------------------------------------------------


@app.get("/api/backup/export")
def export_backup(compress: bool = True, db: Session = Depends(get_db)):
    snapshot = backups.build_snapshot_v1(db)
    filename = backups.backup_file_name(compress=compress)
    logger.info(
        f"snapshot_export: compress={compress} "
        f"transactions={snapshot['meta']['counts']['transactions']}"
    )
    return Response(
        content=backups.dump_snapshot(snapshot, compress=compress),
        media_type="application/gzip" if compress else "application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post(
    "/api/backup/validate",
    response_model=SnapshotPreview,
    dependencies=[Depends(require_csrf)],
)
async def validate_backup(file: UploadFile = File(...)):
    content = await read_upload(file)
    try:
        payload = backups.load_snapshot_bytes(content, file.filename)
    except backups.SnapshotInvalid as exc:
        return SnapshotPreview(issues=exc.issues)
    return backups.validate_snapshot_v1(payload).preview


@app.post(
    "/api/backup/restore",
    response_model=RestoreSummary,
    dependencies=[Depends(require_csrf)],
)
async def restore_backup(file: UploadFile = File(...), db: Session = Depends(get_db)):
    content = await read_upload(file)
    try:
        payload = backups.load_snapshot_bytes(content, file.filename)
        return backups.restore_replace_snapshot_v1(db, payload)
    except backups.RestoreFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except ValueError as exc:
        raise http_error(exc) from exc
