import json
import logging
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from categorization import CategorizationEngine
from config import get_settings
from database import SessionLocal, session_scope
from models import Transaction
from registry import UnsupportedFormat
from schemas import (
    AccountIn,
    AssignmentOut,
    CategorizationRunIn,
    CategorizeIn,
    ImportBatchOut,
    ProcessIn,
    ReprocessIn,
    RuleIn,
    RuleOut,
)
from seed import seed_defaults
from services import (
    AccountService,
    CategorizationService,
    CategoryService,
    ImportConflict,
    ImportOutcome,
    ImportParseFailed,
    ImportService,
    ReprocessPreview,
    RuleService,
    StalePreview,
)
from storage import FileStorage, LocalFileStorage, StorageUnavailable

settings = get_settings()
logging.basicConfig(level=settings.log_level)

app = FastAPI(title="Bank Import Ledger")

rule_engine = CategorizationEngine()
file_storage: FileStorage = LocalFileStorage(settings.storage_dir)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_storage() -> FileStorage:
    return file_storage


def get_engine() -> CategorizationEngine:
    return rule_engine


@app.on_event("startup")
def startup_event():
    with session_scope() as session:
        seed_defaults(session)


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (ImportConflict, StalePreview)):
        status_code = 409
    elif isinstance(exc, UnsupportedFormat):
        status_code = 415
    elif isinstance(exc, ImportParseFailed):
        status_code = 422
    elif isinstance(exc, StorageUnavailable):
        status_code = 503
    elif "not found" in str(exc).lower():
        status_code = 404
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=str(exc))


def _outcome_payload(outcome: ImportOutcome) -> dict[str, object]:
    return {
        "import_id": outcome.import_id,
        "status": outcome.status.value,
        "success": outcome.success,
        "inserted": outcome.inserted,
        "skipped": outcome.skipped,
        "deleted": outcome.deleted,
        "errors": outcome.errors,
        "warnings": outcome.warnings,
        "message": outcome.message,
    }


def _import_service(
    db: Session, storage: FileStorage, engine: CategorizationEngine
) -> ImportService:
    return ImportService(db, storage, engine=engine, settings=settings)


@app.post("/accounts", status_code=201)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "id": account.id,
        "name": account.name,
        "owner_id": account.owner_id,
        "source_key": account.source_key,
        "balance_cents": account.balance_cents,
    }


@app.get("/accounts/{account_id}")
def get_account(account_id: int, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).get(account_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        "id": account.id,
        "name": account.name,
        "owner_id": account.owner_id,
        "source_key": account.source_key,
        "balance_cents": account.balance_cents,
        "balance_updated_at": account.balance_updated_at,
    }


@app.get("/categories")
def list_categories(db: Session = Depends(get_db)):
    return [
        {"id": c.id, "slug": c.slug, "name": c.name, "kind": c.kind.value}
        for c in CategoryService(db).list_all()
    ]


@app.post("/imports", status_code=201, response_model=ImportBatchOut)
async def upload_import(
    file: UploadFile = File(...),
    source_key: str = Form(...),
    account_id: Optional[int] = Form(None),
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
    engine: CategorizationEngine = Depends(get_engine),
):
    content = await file.read()
    try:
        batch = _import_service(db, storage, engine).upload(
            content,
            file.filename or "import",
            source_key,
            mime_type=file.content_type,
            account_id=account_id,
        )
    except (ValueError, StorageUnavailable) as exc:
        raise _http_error(exc) from exc
    return batch


@app.get("/imports/{import_id}")
def get_import(
    import_id: int,
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
    engine: CategorizationEngine = Depends(get_engine),
):
    try:
        batch = _import_service(db, storage, engine).get(import_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    payload = ImportBatchOut.model_validate(batch).model_dump(mode="json")
    payload["warnings"] = json.loads(batch.warnings_json) if batch.warnings_json else []
    return payload


@app.post("/imports/{import_id}/process")
def process_import(
    import_id: int,
    data: Optional[ProcessIn] = None,
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
    engine: CategorizationEngine = Depends(get_engine),
):
    account_id = data.account_id if data else None
    try:
        outcome = _import_service(db, storage, engine).process(import_id, account_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _outcome_payload(outcome)


@app.get("/imports/{import_id}/reprocess-preview")
def reprocess_preview(
    import_id: int,
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
    engine: CategorizationEngine = Depends(get_engine),
):
    try:
        preview = _import_service(db, storage, engine).preview_reprocess(import_id)
    except (ValueError, StorageUnavailable) as exc:
        raise _http_error(exc) from exc
    return {
        "import_id": preview.import_id,
        "account_id": preview.account_id,
        "affected_count": preview.affected_count,
        "new_count": preview.new_count,
        "min_date": preview.min_date.isoformat(),
        "max_date": preview.max_date.isoformat(),
    }


@app.post("/imports/{import_id}/reprocess")
def reprocess_import(
    import_id: int,
    data: ReprocessIn,
    db: Session = Depends(get_db),
    storage: FileStorage = Depends(get_storage),
    engine: CategorizationEngine = Depends(get_engine),
):
    preview = ReprocessPreview(
        import_id=import_id,
        account_id=data.account_id,
        affected_count=data.affected_count,
        new_count=data.new_count,
        min_date=data.min_date,
        max_date=data.max_date,
    )
    try:
        outcome = _import_service(db, storage, engine).reprocess(import_id, preview)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return _outcome_payload(outcome)


@app.post("/transactions/{transaction_id}/categorize")
def categorize_transaction(
    transaction_id: int,
    data: CategorizeIn,
    db: Session = Depends(get_db),
    engine: CategorizationEngine = Depends(get_engine),
):
    service = CategorizationService(db, engine)
    try:
        result = service.recategorize(
            transaction_id, data.category_id, create_rule=data.create_rule
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    assignment = db.get(Transaction, result.transaction_id).assignment
    return {
        "assignment": AssignmentOut.model_validate(assignment).model_dump(mode="json")
        if assignment
        else None,
        "rule_id": result.rule_id,
        "rule_error": result.rule_error,
    }


@app.post("/categorization/run")
def run_categorization(
    data: CategorizationRunIn,
    db: Session = Depends(get_db),
    engine: CategorizationEngine = Depends(get_engine),
):
    try:
        stats = CategorizationService(db, engine).categorize_transactions(
            account_id=data.account_id, include_auto=data.include_auto
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        "examined": stats.examined,
        "auto": stats.auto,
        "bank": stats.bank,
        "uncategorized": stats.uncategorized,
        "transfers": stats.transfers,
    }


@app.get("/rules", response_model=list[RuleOut])
def list_rules(
    db: Session = Depends(get_db),
    engine: CategorizationEngine = Depends(get_engine),
):
    return RuleService(db, engine).list_all()


@app.post("/rules", status_code=201, response_model=RuleOut)
def create_rule(
    data: RuleIn,
    db: Session = Depends(get_db),
    engine: CategorizationEngine = Depends(get_engine),
):
    try:
        return RuleService(db, engine).create(data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.put("/rules/{rule_id}", response_model=RuleOut)
def update_rule(
    rule_id: int,
    data: RuleIn,
    db: Session = Depends(get_db),
    engine: CategorizationEngine = Depends(get_engine),
):
    try:
        return RuleService(db, engine).update(rule_id, data)
    except ValueError as exc:
        raise _http_error(exc) from exc


@app.post("/rules/{rule_id}/toggle")
def toggle_rule(
    rule_id: int,
    is_active: bool,
    db: Session = Depends(get_db),
    engine: CategorizationEngine = Depends(get_engine),
):
    try:
        RuleService(db, engine).toggle(rule_id, is_active)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"id": rule_id, "is_active": is_active}


@app.delete("/rules/{rule_id}", status_code=204)
def delete_rule(
    rule_id: int,
    db: Session = Depends(get_db),
    engine: CategorizationEngine = Depends(get_engine),
):
    try:
        RuleService(db, engine).delete(rule_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
