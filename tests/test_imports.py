from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import func, select

from config import Settings
from models import CategorySource, ImportStatus, Transaction
from registry import UnsupportedFormat
from parsers import XLSX_MIME_TYPE
from services import (
    AccountService,
    ImportConflict,
    ImportParseFailed,
    ImportService,
    LedgerWriter,
    ReprocessPreview,
    StalePreview,
)

STATEMENT = (
    "Date;Date de valeur;Débit;Crédit;Libellé;Solde\n"
    "01/03/2024;01/03/2024;-23,40;;CB CARREFOUR 01/03 X4521;976,60\n"
    "02/03/2024;02/03/2024;;1 500,00;VIR SALAIRE MARS;2 476,60\n"
    "03/03/2024;03/03/2024;-9,99;;CB KIOSQUE GARE;2 466,61\n"
).encode("utf-8")


def _settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        storage_dir=Path("unused"),
        log_level="INFO",
        max_upload_bytes=1024 * 1024,
        categorize_on_import=True,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def imports(seeded, storage, rule_engine) -> ImportService:
    return ImportService(seeded, storage, engine=rule_engine, settings=_settings())


def _count(session) -> int:
    return session.scalar(select(func.count(Transaction.id)))


def test_upload_creates_a_pending_batch(imports, make_account) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "Crédit Mutuel", account_id=account.id)

    assert batch.status == ImportStatus.pending
    assert batch.source_key == "credit_mutuel"
    assert batch.mime_type == "text/csv"
    assert batch.file_size == len(STATEMENT)
    assert imports.storage.download(batch.storage_path) == STATEMENT
    assert [b.id for b in imports.list_for_account(account.id)] == [batch.id]


def test_upload_rejections(imports, make_account) -> None:
    with pytest.raises(UnsupportedFormat):
        imports.upload(STATEMENT, "releve.csv", "societe_generale")
    with pytest.raises(UnsupportedFormat):
        imports.upload(STATEMENT, "releve.xlsx", "boursorama", mime_type=XLSX_MIME_TYPE)
    with pytest.raises(ValueError, match="empty"):
        imports.upload(b"", "releve.csv", "generic")
    with pytest.raises(ValueError, match="Account not found"):
        imports.upload(STATEMENT, "releve.csv", "generic", account_id=404)

    small = ImportService(
        imports.session, imports.storage, settings=_settings(max_upload_bytes=10)
    )
    with pytest.raises(ValueError, match="maximum upload size"):
        small.upload(STATEMENT, "releve.csv", "generic")


def test_process_inserts_categorizes_and_reports(imports, make_account) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel", account_id=account.id)

    outcome = imports.process(batch.id)

    assert outcome.success
    assert outcome.message == "Imported 3 transactions, 0 duplicates skipped"
    assert (batch.status, batch.inserted_count, batch.skipped_count) == (
        ImportStatus.processed,
        3,
        0,
    )
    assert batch.processed_at is not None
    assert AccountService(imports.session).get(account.id).balance_cents == 146661
    carrefour = imports.session.scalar(
        select(Transaction).where(Transaction.description.like("CB CARREFOUR%"))
    )
    assert carrefour.import_id == batch.id
    assert carrefour.source_key == "credit_mutuel"
    assert carrefour.assignment.source == CategorySource.auto


def test_processing_twice_only_skips(imports, make_account) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel", account_id=account.id)
    imports.process(batch.id)

    again = imports.process(batch.id)

    assert again.success
    assert again.message == "Imported 0 transactions, 3 duplicates skipped"
    assert _count(imports.session) == 3


def test_process_with_account_given_at_process_time(imports, make_account) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel")

    outcome = imports.process(batch.id, account_id=account.id)

    assert outcome.inserted == 3
    assert batch.account_id == account.id


def test_concurrent_process_is_a_conflict(imports, make_account) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel", account_id=account.id)
    batch.status = ImportStatus.processing
    imports.session.commit()

    with pytest.raises(ImportConflict):
        imports.process(batch.id)
    assert _count(imports.session) == 0


def test_missing_file_fails_the_batch(imports, make_account) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel", account_id=account.id)
    imports.storage.remove(batch.storage_path)

    outcome = imports.process(batch.id)

    assert not outcome.success
    assert outcome.message.startswith("Download failed")
    assert batch.status == ImportStatus.failed
    assert batch.error_message == outcome.message


def test_unparseable_file_fails_the_batch(imports, make_account) -> None:
    account = make_account()
    batch = imports.upload(b"hello world", "notes.csv", "generic", account_id=account.id)

    outcome = imports.process(batch.id)

    assert outcome.status == ImportStatus.failed
    assert "header" in batch.error_message


def test_batch_without_account_fails(imports) -> None:
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel")

    outcome = imports.process(batch.id)

    assert outcome.message == "No target account for this import"
    assert batch.status == ImportStatus.failed


def test_partial_parse_keeps_warnings(imports, make_account) -> None:
    account = make_account()
    content = STATEMENT + b"31/02/2024;31/02/2024;-1,00;;BAD DATE;0\n"
    batch = imports.upload(content, "releve.csv", "credit_mutuel", account_id=account.id)

    outcome = imports.process(batch.id)

    assert outcome.success
    assert outcome.inserted == 3
    assert len(outcome.warnings) == 1
    assert outcome.warnings[0].startswith("Row 5: ")
    assert batch.warnings_json is not None


def test_unexpected_error_marks_failed_and_propagates(
    imports, make_account, monkeypatch
) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel", account_id=account.id)

    def _explode(self, *args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(LedgerWriter, "insert_deduped", _explode)
    with pytest.raises(RuntimeError):
        imports.process(batch.id)

    refreshed = imports.get(batch.id)
    assert refreshed.status == ImportStatus.failed
    assert refreshed.error_message == "Unexpected error: disk on fire"


def test_categorization_can_be_disabled(seeded, storage, rule_engine, make_account) -> None:
    service = ImportService(
        seeded, storage, engine=rule_engine, settings=_settings(categorize_on_import=False)
    )
    account = make_account()
    batch = service.upload(STATEMENT, "releve.csv", "credit_mutuel", account_id=account.id)

    service.process(batch.id)

    rows = seeded.scalars(select(Transaction)).all()
    assert rows and all(row.assignment is None for row in rows)


def test_preview_reads_without_writing(imports, make_account, txn) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel", account_id=account.id)
    imports.process(batch.id)
    LedgerWriter(imports.session).insert_deduped(
        account.id, [txn(date(2024, 3, 2), "SAISIE MANUELLE", -500)]
    )

    preview = imports.preview_reprocess(batch.id)

    assert preview == ReprocessPreview(
        import_id=batch.id,
        account_id=account.id,
        affected_count=4,
        new_count=3,
        min_date=date(2024, 3, 1),
        max_date=date(2024, 3, 3),
    )
    assert _count(imports.session) == 4
    assert imports.get(batch.id).status == ImportStatus.processed


def test_preview_failures(imports, make_account) -> None:
    orphan = imports.upload(STATEMENT, "releve.csv", "credit_mutuel")
    with pytest.raises(ValueError, match="no target account"):
        imports.preview_reprocess(orphan.id)

    account = make_account()
    junk = imports.upload(b"hello world", "notes.csv", "generic", account_id=account.id)
    with pytest.raises(ImportParseFailed):
        imports.preview_reprocess(junk.id)


def test_reprocess_replaces_the_date_range(imports, make_account, txn) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel", account_id=account.id)
    imports.process(batch.id)
    LedgerWriter(imports.session).insert_deduped(
        account.id,
        [
            txn(date(2024, 3, 2), "SAISIE MANUELLE", -500),
            txn(date(2024, 4, 15), "HORS PERIODE", -700),
        ],
    )
    preview = imports.preview_reprocess(batch.id)

    outcome = imports.reprocess(batch.id, preview)

    assert outcome.success
    assert outcome.message == "Reprocessed: deleted 4 old transactions, imported 3 new transactions"
    assert (outcome.deleted, outcome.inserted) == (4, 3)
    assert batch.deleted_count == 4
    assert _count(imports.session) == 4
    assert AccountService(imports.session).get(account.id).balance_cents == 146661 - 700


def test_stale_preview_is_refused(imports, make_account, txn) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel", account_id=account.id)
    imports.process(batch.id)
    preview = imports.preview_reprocess(batch.id)
    LedgerWriter(imports.session).insert_deduped(
        account.id, [txn(date(2024, 3, 2), "ARRIVEE ENTRE TEMPS", -500)]
    )

    with pytest.raises(StalePreview):
        imports.reprocess(batch.id, preview)

    assert imports.get(batch.id).status == ImportStatus.processed
    assert _count(imports.session) == 4


def test_reprocess_refuses_pending_and_running_batches(imports, make_account) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel", account_id=account.id)
    preview = ReprocessPreview(
        import_id=batch.id,
        account_id=account.id,
        affected_count=0,
        new_count=3,
        min_date=date(2024, 3, 1),
        max_date=date(2024, 3, 3),
    )

    with pytest.raises(ValueError, match="Only processed or failed"):
        imports.reprocess(batch.id, preview)

    batch.status = ImportStatus.processing
    imports.session.commit()
    with pytest.raises(ImportConflict):
        imports.reprocess(batch.id, preview)


def test_reprocess_refuses_a_preview_for_another_import(imports, make_account) -> None:
    account = make_account()
    batch = imports.upload(STATEMENT, "releve.csv", "credit_mutuel", account_id=account.id)
    imports.process(batch.id)
    preview = imports.preview_reprocess(batch.id)
    other = imports.upload(STATEMENT, "copie.csv", "credit_mutuel", account_id=account.id)
    imports.process(other.id)

    with pytest.raises(StalePreview):
        imports.reprocess(other.id, preview)
