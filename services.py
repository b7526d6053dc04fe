from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import PurePath
from typing import Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from categorization import (
    AUTHORITATIVE_CONFIDENCE,
    TRANSFER_CONFIDENCE,
    CategorizationEngine,
    map_bank_category,
)
from config import Settings, get_settings
from descriptions import compute_fingerprint, matching_key
from models import (
    Account,
    Category,
    CategoryRule,
    CategorySource,
    ImportBatch,
    ImportStatus,
    RuleMatchType,
    Transaction,
    TransactionCategory,
)
from parsers import XLSX_MIME_TYPE
from registry import (
    PARSERS,
    UnsupportedFormat,
    parse_import,
    resolve_source_key,
)
from schemas import AccountIn, CanonicalTransaction, CategoryIn, RuleIn
from seed import INTERNAL_TRANSFER_SLUG
from storage import FileStorage, StorageUnavailable

logger = logging.getLogger(__name__)

LEARNED_RULE_PRIORITY = 200
MIN_TRANSFER_CENTS = 100
FINGERPRINT_CHUNK = 500
AUTHORITATIVE_SOURCES = (CategorySource.manual, CategorySource.bank)

_EXTENSION_MIME_TYPES = {
    ".csv": "text/csv",
    ".txt": "text/plain",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": XLSX_MIME_TYPE,
}


def guess_mime_type(filename: str) -> str:
    return _EXTENSION_MIME_TYPES.get(
        PurePath(filename or "").suffix.lower(), "application/octet-stream"
    )


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, owner_id: Optional[int] = None) -> list[Account]:
        stmt = select(Account).order_by(Account.name, Account.id)
        if owner_id is not None:
            stmt = stmt.where(Account.owner_id == owner_id)
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account:
            raise ValueError("Account not found")
        return account

    def create(self, data: AccountIn) -> Account:
        source_key = resolve_source_key(data.source_key).value if data.source_key else None
        account = Account(
            owner_id=data.owner_id,
            name=data.name.strip(),
            source_key=source_key,
            balance_cents=0,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def recompute_balance(self, account_id: int) -> int:
        """Rebuild the cached balance from every transaction of the account."""
        account = self.get(account_id)
        total = self.session.scalar(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.account_id == account_id
            )
        )
        account.balance_cents = int(total or 0)
        account.balance_updated_at = datetime.utcnow()
        self.session.commit()
        logger.info(
            f"balance_recomputed: account_id={account_id} balance_cents={account.balance_cents}"
        )
        return account.balance_cents


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        return self.session.scalars(
            select(Category).order_by(Category.kind, Category.name)
        ).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise ValueError("Category not found")
        return category

    def get_by_slug(self, slug: str) -> Category:
        category = self.session.scalar(select(Category).where(Category.slug == slug))
        if not category:
            raise ValueError(f"Category '{slug}' not found")
        return category

    def create(self, data: CategoryIn) -> Category:
        existing = self.session.scalar(select(Category).where(Category.slug == data.slug))
        if existing:
            raise ValueError("Category with this slug already exists")
        category = Category(slug=data.slug, name=data.name.strip(), kind=data.kind)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category


class RuleService:
    """Rule CRUD. Every change clears the engine's rule cache after commit."""

    def __init__(self, session: Session, engine: CategorizationEngine) -> None:
        self.session = session
        self.engine = engine

    def list_all(self) -> list[CategoryRule]:
        stmt = select(CategoryRule).order_by(
            CategoryRule.priority.desc(), CategoryRule.created_at, CategoryRule.id
        )
        return self.session.scalars(stmt).all()

    def get(self, rule_id: int) -> CategoryRule:
        rule = self.session.get(CategoryRule, rule_id)
        if not rule:
            raise ValueError("Rule not found")
        return rule

    def _validated(self, data: RuleIn) -> tuple[str, Optional[str]]:
        if not self.session.get(Category, data.category_id):
            raise ValueError("Category not found")
        pattern = data.pattern.strip()
        if data.match_type == RuleMatchType.regex:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid regular expression: {exc}") from exc
        elif not matching_key(pattern):
            raise ValueError("Pattern is empty after normalization")
        source_filter = None
        if data.source_filter:
            source_filter = resolve_source_key(data.source_filter).value
        return pattern, source_filter

    def create(self, data: RuleIn) -> CategoryRule:
        pattern, source_filter = self._validated(data)
        rule = CategoryRule(
            pattern=pattern,
            match_type=data.match_type,
            category_id=data.category_id,
            priority=data.priority,
            source_filter=source_filter,
            is_active=data.is_active,
        )
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        self.engine.clear_rule_cache()
        return rule

    def update(self, rule_id: int, data: RuleIn) -> CategoryRule:
        rule = self.get(rule_id)
        pattern, source_filter = self._validated(data)
        rule.pattern = pattern
        rule.match_type = data.match_type
        rule.category_id = data.category_id
        rule.priority = data.priority
        rule.source_filter = source_filter
        rule.is_active = data.is_active
        self.session.commit()
        self.session.refresh(rule)
        self.engine.clear_rule_cache()
        return rule

    def toggle(self, rule_id: int, is_active: bool) -> None:
        rule = self.get(rule_id)
        rule.is_active = is_active
        self.session.commit()
        self.engine.clear_rule_cache()

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.delete(rule)
        self.session.commit()
        self.engine.clear_rule_cache()

    def upsert_by_pattern(
        self,
        description: str,
        category_id: int,
        priority: int = LEARNED_RULE_PRIORITY,
    ) -> CategoryRule:
        """
        Point the EXACT rule keyed by the normalized description at a category.

        An existing rule keeps a higher priority the user gave it.
        """
        key = matching_key(description)
        if not key:
            raise ValueError("Pattern is empty after normalization")
        if not self.session.get(Category, category_id):
            raise ValueError("Category not found")
        rule = self.session.scalar(
            select(CategoryRule)
            .where(
                CategoryRule.pattern == key,
                CategoryRule.match_type == RuleMatchType.exact,
                CategoryRule.source_filter.is_(None),
            )
            .order_by(CategoryRule.is_active.desc(), CategoryRule.id)
            .limit(1)
        )
        if rule:
            rule.category_id = category_id
            rule.priority = max(rule.priority, priority)
            rule.is_active = True
        else:
            rule = CategoryRule(
                pattern=key,
                match_type=RuleMatchType.exact,
                category_id=category_id,
                priority=priority,
                is_active=True,
            )
            self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        self.engine.clear_rule_cache()
        logger.info(f"rule_learned: rule_id={rule.id} category_id={category_id}")
        return rule


@dataclass
class InsertResult:
    inserted: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    inserted_ids: list[int] = field(default_factory=list)


class LedgerWriter:
    """
    Inserts canonical transactions into an account, skipping rows already present.

    Each row goes in under its own savepoint, so one rejected row never
    discards the rest of the batch. The (account, fingerprint) unique
    constraint settles races with a concurrent import of the same file.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def _existing_fingerprints(self, account_id: int, fingerprints: set[str]) -> set[str]:
        found: set[str] = set()
        pending = sorted(fingerprints)
        for start in range(0, len(pending), FINGERPRINT_CHUNK):
            chunk = pending[start : start + FINGERPRINT_CHUNK]
            found.update(
                self.session.scalars(
                    select(Transaction.fingerprint).where(
                        Transaction.account_id == account_id,
                        Transaction.fingerprint.in_(chunk),
                    )
                )
            )
        return found

    def _is_duplicate(self, account_id: int, fingerprint: str, exc: IntegrityError) -> bool:
        if "fingerprint" in str(exc.orig).lower():
            return True
        return (
            self.session.scalar(
                select(Transaction.id).where(
                    Transaction.account_id == account_id,
                    Transaction.fingerprint == fingerprint,
                )
            )
            is not None
        )

    def insert_deduped(
        self,
        account_id: int,
        transactions: Sequence[CanonicalTransaction],
        *,
        import_id: Optional[int] = None,
        source_key: Optional[str] = None,
        recompute_balance: bool = True,
    ) -> InsertResult:
        AccountService(self.session).get(account_id)
        prepared = [
            (
                row_number,
                txn,
                compute_fingerprint(account_id, txn.date, txn.amount_cents, txn.description),
            )
            for row_number, txn in enumerate(transactions, start=1)
        ]
        seen = self._existing_fingerprints(account_id, {fp for _, _, fp in prepared})

        result = InsertResult()
        for row_number, txn, fingerprint in prepared:
            if fingerprint in seen:
                result.skipped += 1
                continue
            row = Transaction(
                account_id=account_id,
                date=txn.date,
                description=txn.description,
                amount_cents=txn.amount_cents,
                raw_type=txn.raw_type,
                external_ref=txn.external_ref,
                bank_category=txn.bank_category,
                source_key=source_key,
                fingerprint=fingerprint,
                import_id=import_id,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(row)
                    self.session.flush()
            except IntegrityError as exc:
                if self._is_duplicate(account_id, fingerprint, exc):
                    seen.add(fingerprint)
                    result.skipped += 1
                else:
                    logger.warning(
                        f"ledger_row_rejected: account_id={account_id} row={row_number} error={exc.orig}"
                    )
                    result.errors.append(f"Row {row_number}: {exc.orig}")
                continue
            seen.add(fingerprint)
            result.inserted += 1
            result.inserted_ids.append(row.id)

        self.session.commit()
        logger.info(
            f"ledger_insert: account_id={account_id} import_id={import_id} "
            f"inserted={result.inserted} skipped={result.skipped} errors={len(result.errors)}"
        )
        if recompute_balance:
            AccountService(self.session).recompute_balance(account_id)
        return result


@dataclass
class CategorizationStats:
    examined: int = 0
    auto: int = 0
    bank: int = 0
    uncategorized: int = 0
    transfers: int = 0


@dataclass
class RecategorizeResult:
    transaction_id: int
    category_id: int
    rule_id: Optional[int] = None
    rule_error: Optional[str] = None


class CategorizationService:
    def __init__(self, session: Session, engine: CategorizationEngine) -> None:
        self.session = session
        self.engine = engine

    def _category_ids_by_slug(self) -> dict[str, int]:
        return {
            row.slug: row.id
            for row in self.session.execute(select(Category.slug, Category.id))
        }

    @staticmethod
    def _assign(
        txn: Transaction,
        category_id: int,
        source: CategorySource,
        confidence: float,
        rule_id: Optional[int] = None,
    ) -> None:
        if txn.assignment is None:
            txn.assignment = TransactionCategory(
                category_id=category_id,
                source=source,
                confidence=confidence,
                rule_id=rule_id,
            )
            return
        txn.assignment.category_id = category_id
        txn.assignment.source = source
        txn.assignment.confidence = confidence
        txn.assignment.rule_id = rule_id

    def categorize_transactions(
        self,
        *,
        account_id: Optional[int] = None,
        transaction_ids: Optional[Sequence[int]] = None,
        include_auto: bool = False,
    ) -> CategorizationStats:
        """
        Categorize uncategorized transactions, and AUTO ones when ``include_auto``.

        Rules are read once for the whole batch. MANUAL and BANK assignments
        are never touched.
        """
        stats = CategorizationStats()
        if transaction_ids is not None and not transaction_ids:
            return stats

        rules = self.engine.snapshot(self.session)
        slugs = self._category_ids_by_slug()

        stmt = (
            select(Transaction)
            .outerjoin(TransactionCategory)
            .options(joinedload(Transaction.assignment))
            .order_by(Transaction.id)
        )
        if include_auto:
            stmt = stmt.where(
                (TransactionCategory.id.is_(None))
                | (TransactionCategory.source == CategorySource.auto)
            )
        else:
            stmt = stmt.where(TransactionCategory.id.is_(None))
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        if transaction_ids is not None:
            stmt = stmt.where(Transaction.id.in_(list(transaction_ids)))

        account_ids: set[int] = set()
        for txn in self.session.scalars(stmt).unique():
            stats.examined += 1
            account_ids.add(txn.account_id)
            match = self.engine.categorize(
                self.session, txn.description, txn.source_key, rules=rules
            )
            if match:
                self._assign(
                    txn, match.category_id, CategorySource.auto, match.confidence, match.rule_id
                )
                stats.auto += 1
                continue
            slug = map_bank_category(txn.bank_category)
            if slug and slug in slugs:
                self._assign(
                    txn, slugs[slug], CategorySource.bank, AUTHORITATIVE_CONFIDENCE
                )
                stats.bank += 1
                continue
            stats.uncategorized += 1
        self.session.commit()

        if account_ids:
            stats.transfers = self.detect_internal_transfers(account_ids=sorted(account_ids))
        logger.info(
            f"categorize_run: examined={stats.examined} auto={stats.auto} bank={stats.bank} "
            f"uncategorized={stats.uncategorized} transfers={stats.transfers}"
        )
        return stats

    def recategorize(
        self, transaction_id: int, category_id: int, *, create_rule: bool = True
    ) -> RecategorizeResult:
        """
        Manually assign a category, then learn an EXACT rule from the description.

        The assignment is committed before the rule is written; a failure while
        learning the rule is reported on the result and leaves the assignment in place.
        """
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise ValueError("Transaction not found")
        CategoryService(self.session).get(category_id)

        self._assign(txn, category_id, CategorySource.manual, AUTHORITATIVE_CONFIDENCE)
        self.session.commit()
        result = RecategorizeResult(transaction_id=txn.id, category_id=category_id)
        if not create_rule:
            return result

        try:
            rule = RuleService(self.session, self.engine).upsert_by_pattern(
                txn.description, category_id
            )
        except (ValueError, SQLAlchemyError) as exc:
            self.session.rollback()
            logger.warning(
                f"rule_learning_failed: transaction_id={transaction_id} error={exc}"
            )
            result.rule_error = str(exc)
            return result
        result.rule_id = rule.id
        return result

    def detect_internal_transfers(
        self, account_ids: Optional[Sequence[int]] = None
    ) -> int:
        """
        Pair same-day opposite movements between two accounts of one owner.

        Pairing is one-to-one in id order. Both members are flagged as
        internal; each member not held by a MANUAL or BANK assignment gets the
        internal-transfer category. Already paired rows are not paired again.
        """
        slugs = self._category_ids_by_slug()
        transfer_id = slugs.get(INTERNAL_TRANSFER_SLUG)
        if transfer_id is None:
            logger.warning("transfer_detection_skipped: reason=missing_category")
            return 0

        owners_stmt = select(Account.owner_id).distinct()
        if account_ids is not None:
            owners_stmt = owners_stmt.where(Account.id.in_(list(account_ids)))
        owners = list(self.session.scalars(owners_stmt))
        if not owners:
            return 0
        account_owner = {
            row.id: row.owner_id
            for row in self.session.execute(
                select(Account.id, Account.owner_id).where(Account.owner_id.in_(owners))
            )
        }

        candidates = self.session.scalars(
            select(Transaction)
            .options(joinedload(Transaction.assignment))
            .where(
                Transaction.account_id.in_(list(account_owner)),
                Transaction.is_internal.is_(False),
                func.abs(Transaction.amount_cents) >= MIN_TRANSFER_CENTS,
            )
            .order_by(Transaction.id)
        ).unique()

        groups: dict[tuple[int, date, int], dict[str, list[Transaction]]] = defaultdict(
            lambda: {"in": [], "out": []}
        )
        for txn in candidates:
            key = (account_owner[txn.account_id], txn.date, abs(txn.amount_cents))
            groups[key]["in" if txn.amount_cents > 0 else "out"].append(txn)

        pairs = 0
        for group in groups.values():
            outgoing = list(group["out"])
            for incoming in group["in"]:
                partner = next(
                    (txn for txn in outgoing if txn.account_id != incoming.account_id),
                    None,
                )
                if partner is None:
                    continue
                outgoing.remove(partner)
                pairs += 1
                for member in (incoming, partner):
                    member.is_internal = True
                    if (
                        member.assignment is not None
                        and member.assignment.source in AUTHORITATIVE_SOURCES
                    ):
                        continue
                    self._assign(member, transfer_id, CategorySource.auto, TRANSFER_CONFIDENCE)
        self.session.commit()
        if pairs:
            logger.info(f"transfers_detected: pairs={pairs}")
        return pairs


class ImportConflict(ValueError):
    pass


class ImportParseFailed(ValueError):
    pass


class StalePreview(ValueError):
    pass


@dataclass(frozen=True)
class ReprocessPreview:
    import_id: int
    account_id: int
    affected_count: int
    new_count: int
    min_date: date
    max_date: date


@dataclass
class ImportOutcome:
    import_id: int
    status: ImportStatus
    inserted: int = 0
    skipped: int = 0
    deleted: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status == ImportStatus.processed


class ImportService:
    """
    Drives an uploaded export through PENDING, PROCESSING and then PROCESSED or FAILED.
    """

    def __init__(
        self,
        session: Session,
        storage: FileStorage,
        engine: Optional[CategorizationEngine] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.storage = storage
        self.engine = engine or CategorizationEngine()
        self.settings = settings or get_settings()

    def get(self, import_id: int) -> ImportBatch:
        batch = self.session.get(ImportBatch, import_id)
        if not batch:
            raise ValueError("Import not found")
        return batch

    def list_for_account(self, account_id: int) -> list[ImportBatch]:
        stmt = (
            select(ImportBatch)
            .where(ImportBatch.account_id == account_id)
            .order_by(ImportBatch.created_at.desc(), ImportBatch.id.desc())
        )
        return self.session.scalars(stmt).all()

    def upload(
        self,
        content: bytes,
        filename: str,
        source_key: str,
        *,
        mime_type: Optional[str] = None,
        account_id: Optional[int] = None,
    ) -> ImportBatch:
        key = resolve_source_key(source_key)
        parser = PARSERS[key]
        mime = mime_type or guess_mime_type(filename)
        if not parser.accepts(mime):
            raise UnsupportedFormat(f"File type '{mime}' is not accepted for {parser.label}")
        if not content:
            raise ValueError("File is empty")
        if len(content) > self.settings.max_upload_bytes:
            raise ValueError("File exceeds the maximum upload size")
        if account_id is not None:
            AccountService(self.session).get(account_id)

        path = self.storage.upload(content, filename)
        batch = ImportBatch(
            source_key=key.value,
            account_id=account_id,
            filename=PurePath(filename or "import").name,
            storage_path=path,
            mime_type=mime,
            file_size=len(content),
            status=ImportStatus.pending,
        )
        self.session.add(batch)
        self.session.commit()
        self.session.refresh(batch)
        logger.info(
            f"import_uploaded: id={batch.id} source_key={key.value} size={len(content)}"
        )
        return batch

    def _claim(self, import_id: int) -> None:
        claimed = self.session.execute(
            update(ImportBatch)
            .where(
                ImportBatch.id == import_id,
                ImportBatch.status != ImportStatus.processing,
            )
            .values(status=ImportStatus.processing, error_message=None)
        ).rowcount
        self.session.commit()
        if not claimed:
            logger.info(f"import_conflict: id={import_id}")
            raise ImportConflict("Import is already being processed")

    def _finish(self, batch: ImportBatch, outcome: ImportOutcome) -> ImportOutcome:
        batch.status = outcome.status
        batch.inserted_count = outcome.inserted
        batch.skipped_count = outcome.skipped
        batch.deleted_count = outcome.deleted
        batch.warnings_json = json.dumps(outcome.warnings) if outcome.warnings else None
        if outcome.status == ImportStatus.failed:
            batch.error_message = outcome.message
        else:
            batch.error_message = "; ".join(outcome.errors) or None
            batch.processed_at = datetime.utcnow()
        self.session.commit()
        log = logger.info if outcome.success else logger.warning
        log(
            f"import_{outcome.status.value}: id={batch.id} inserted={outcome.inserted} "
            f"skipped={outcome.skipped} deleted={outcome.deleted} message={outcome.message!r}"
        )
        return outcome

    def _fail(
        self, batch: ImportBatch, reason: str, warnings: Optional[list[str]] = None
    ) -> ImportOutcome:
        return self._finish(
            batch,
            ImportOutcome(
                import_id=batch.id,
                status=ImportStatus.failed,
                warnings=list(warnings or []),
                message=reason,
            ),
        )

    def _mark_failed_after_error(self, import_id: int, exc: Exception) -> None:
        self.session.rollback()
        batch = self.get(import_id)
        batch.status = ImportStatus.failed
        batch.error_message = f"Unexpected error: {exc}"
        self.session.commit()

    def _categorize_new(self, transaction_ids: list[int]) -> None:
        if not self.settings.categorize_on_import or not transaction_ids:
            return
        try:
            CategorizationService(self.session, self.engine).categorize_transactions(
                transaction_ids=transaction_ids
            )
        except (SQLAlchemyError, ValueError):
            self.session.rollback()
            logger.exception(f"import_categorization_failed: transactions={len(transaction_ids)}")

    def _download_and_parse(self, batch: ImportBatch):
        try:
            content = self.storage.download(batch.storage_path)
        except StorageUnavailable as exc:
            return None, f"Download failed: {exc}"
        result = parse_import(batch.source_key, content, batch.mime_type)
        if not result.success:
            return result, "; ".join(result.errors) or "Parse failed"
        return result, None

    def process(self, import_id: int, account_id: Optional[int] = None) -> ImportOutcome:
        self.get(import_id)
        self._claim(import_id)
        try:
            return self._process(self.get(import_id), account_id)
        except Exception as exc:
            logger.exception(f"import_crashed: id={import_id}")
            self._mark_failed_after_error(import_id, exc)
            raise

    def _process(self, batch: ImportBatch, account_id: Optional[int]) -> ImportOutcome:
        result, error = self._download_and_parse(batch)
        if error:
            return self._fail(batch, error, result.warnings if result else None)

        target_id = account_id if account_id is not None else batch.account_id
        if target_id is None:
            return self._fail(batch, "No target account for this import", result.warnings)
        if not self.session.get(Account, target_id):
            return self._fail(batch, f"Account {target_id} not found", result.warnings)
        batch.account_id = target_id

        written = LedgerWriter(self.session).insert_deduped(
            target_id,
            result.transactions,
            import_id=batch.id,
            source_key=batch.source_key,
        )
        message = (
            f"Imported {_plural(written.inserted, 'transaction')}, "
            f"{_plural(written.skipped, 'duplicate')} skipped"
        )
        if written.errors:
            message += f", {_plural(len(written.errors), 'row')} rejected"
        outcome = self._finish(
            batch,
            ImportOutcome(
                import_id=batch.id,
                status=ImportStatus.processed,
                inserted=written.inserted,
                skipped=written.skipped,
                errors=written.errors,
                warnings=result.warnings,
                message=message,
            ),
        )
        self._categorize_new(written.inserted_ids)
        return outcome

    def _affected_count(self, account_id: int, min_date: date, max_date: date) -> int:
        return int(
            self.session.scalar(
                select(func.count(Transaction.id)).where(
                    Transaction.account_id == account_id,
                    Transaction.date >= min_date,
                    Transaction.date <= max_date,
                )
            )
            or 0
        )

    def preview_reprocess(self, import_id: int) -> ReprocessPreview:
        """Blast radius of a reprocess. Reads only."""
        batch = self.get(import_id)
        if batch.account_id is None:
            raise ValueError("Import has no target account")
        content = self.storage.download(batch.storage_path)
        result = parse_import(batch.source_key, content, batch.mime_type)
        if not result.success:
            raise ImportParseFailed("; ".join(result.errors) or "Parse failed")
        min_date, max_date = result.date_range
        return ReprocessPreview(
            import_id=batch.id,
            account_id=batch.account_id,
            affected_count=self._affected_count(batch.account_id, min_date, max_date),
            new_count=len(result.transactions),
            min_date=min_date,
            max_date=max_date,
        )

    def reprocess(self, import_id: int, preview: ReprocessPreview) -> ImportOutcome:
        """
        Replace the account's rows inside the re-parsed date range.

        Needs the preview the caller confirmed; refuses when the file, the
        ledger or the batch no longer match it.
        """
        batch = self.get(import_id)
        if preview.import_id != batch.id:
            raise StalePreview("Preview belongs to another import")
        if batch.account_id != preview.account_id:
            raise StalePreview("Import target account changed since the preview")

        previous = batch.status
        reset = self.session.execute(
            update(ImportBatch)
            .where(
                ImportBatch.id == import_id,
                ImportBatch.status.in_([ImportStatus.processed, ImportStatus.failed]),
            )
            .values(status=ImportStatus.pending)
        ).rowcount
        self.session.commit()
        if not reset:
            self.session.refresh(batch)
            if batch.status == ImportStatus.processing:
                raise ImportConflict("Import is already being processed")
            raise ValueError("Only processed or failed imports can be reprocessed")

        self._claim(import_id)
        try:
            return self._reprocess(self.get(import_id), preview, previous)
        except StalePreview:
            raise
        except Exception as exc:
            logger.exception(f"reprocess_crashed: id={import_id}")
            self._mark_failed_after_error(import_id, exc)
            raise

    def _reprocess(
        self, batch: ImportBatch, preview: ReprocessPreview, previous: ImportStatus
    ) -> ImportOutcome:
        result, error = self._download_and_parse(batch)
        if error:
            return self._fail(batch, error, result.warnings if result else None)

        min_date, max_date = result.date_range
        current = (
            min_date,
            max_date,
            len(result.transactions),
            self._affected_count(preview.account_id, min_date, max_date),
        )
        expected = (
            preview.min_date,
            preview.max_date,
            preview.new_count,
            preview.affected_count,
        )
        if current != expected:
            batch.status = previous
            self.session.commit()
            logger.info(f"reprocess_refused: id={batch.id} reason=stale_preview")
            raise StalePreview("Reprocess preview is out of date; preview again")

        in_range = select(Transaction.id).where(
            Transaction.account_id == preview.account_id,
            Transaction.date >= min_date,
            Transaction.date <= max_date,
        )
        self.session.execute(
            delete(TransactionCategory)
            .where(TransactionCategory.transaction_id.in_(in_range))
            .execution_options(synchronize_session="fetch")
        )
        deleted = self.session.execute(
            delete(Transaction)
            .where(
                Transaction.account_id == preview.account_id,
                Transaction.date >= min_date,
                Transaction.date <= max_date,
            )
            .execution_options(synchronize_session="fetch")
        ).rowcount

        written = LedgerWriter(self.session).insert_deduped(
            preview.account_id,
            result.transactions,
            import_id=batch.id,
            source_key=batch.source_key,
        )
        outcome = self._finish(
            batch,
            ImportOutcome(
                import_id=batch.id,
                status=ImportStatus.processed,
                inserted=written.inserted,
                skipped=written.skipped,
                deleted=deleted,
                errors=written.errors,
                warnings=result.warnings,
                message=(
                    f"Reprocessed: deleted {deleted} old transactions, "
                    f"imported {written.inserted} new transactions"
                ),
            ),
        )
        self._categorize_new(written.inserted_ids)
        return outcome
