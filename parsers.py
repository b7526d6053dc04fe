import logging
from dataclasses import dataclass, field
from datetime import date
from io import BytesIO
from typing import Optional
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from pydantic import ValidationError

from csv_utils import (
    coerce_date,
    decode_bytes,
    find_column,
    normalize_header,
    parse_amount,
    read_rows,
    sniff_delimiter,
)
from schemas import CanonicalTransaction

logger = logging.getLogger(__name__)

CSV_MIME_TYPES = (
    "text/csv",
    "text/plain",
    "application/csv",
    "application/vnd.ms-excel",
)
XLSX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
UNTYPED_MIME_TYPES = ("", "application/octet-stream")
XLSX_MAGIC = b"PK\x03\x04"
HEADER_SCAN_ROWS = 15
NO_TRANSACTIONS = "No valid transactions found"


@dataclass
class ParseResult:
    success: bool
    transactions: list[CanonicalTransaction] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def failure(
        cls, *errors: str, warnings: Optional[list[str]] = None
    ) -> "ParseResult":
        return cls(success=False, errors=list(errors), warnings=list(warnings or []))

    @property
    def date_range(self) -> Optional[tuple[date, date]]:
        if not self.transactions:
            return None
        dates = [txn.date for txn in self.transactions]
        return min(dates), max(dates)


@dataclass(frozen=True)
class ColumnMap:
    date: int
    description: int
    amount: Optional[int] = None
    debit: Optional[int] = None
    credit: Optional[int] = None
    date_fallback: Optional[int] = None
    description_fallback: Optional[int] = None
    raw_type: Optional[int] = None
    external_ref: Optional[int] = None
    category: Optional[int] = None
    category_parent: Optional[int] = None

    @property
    def width(self) -> int:
        required = [self.date, self.description]
        required.extend(
            idx for idx in (self.amount, self.debit, self.credit) if idx is not None
        )
        return max(required) + 1


def _blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return " ".join(str(value).split())


def _cents(value: object) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return parse_amount(repr(float(value)))
    return parse_amount(str(value))


def _cell(cells: list, idx: Optional[int]) -> object:
    if idx is None or idx >= len(cells):
        return None
    return cells[idx]


def _row_error(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        return "; ".join(error["msg"] for error in exc.errors())
    return str(exc)


class Parser:
    """
    Base adapter for one institution's export.

    Subclasses declare header aliases for each column they understand and,
    where the institution ships header-less exports, a positional layout.
    """

    name = "generic"
    label = "Generic CSV"
    mime_types: tuple[str, ...] = CSV_MIME_TYPES
    delimiter: Optional[str] = None
    header_aliases: dict[str, tuple[str, ...]] = {}
    header_excludes: dict[str, tuple[str, ...]] = {}
    positional: Optional[ColumnMap] = None
    workbook_positional: Optional[ColumnMap] = None

    def accepts(self, mime_type: Optional[str]) -> bool:
        normalized = (mime_type or "").split(";")[0].strip().lower()
        return normalized in UNTYPED_MIME_TYPES or normalized in self.mime_types

    def parse(self, content: bytes, mime_type: Optional[str] = None) -> ParseResult:
        if not self.accepts(mime_type):
            return ParseResult.failure(
                f"Unsupported file type '{mime_type}' for {self.label}"
            )
        if not content or not content.strip():
            return ParseResult.failure("File is empty")
        if content.startswith(XLSX_MAGIC):
            if XLSX_MIME_TYPE not in self.mime_types:
                return ParseResult.failure(
                    f"Spreadsheet exports are not supported for {self.label}"
                )
            return self.parse_workbook(content)
        return self.parse_text(content)

    def parse_text(self, content: bytes) -> ParseResult:
        text, encoding = decode_bytes(content)
        delimiter = self.delimiter or sniff_delimiter(text)
        logger.debug(
            f"parse_decoded: parser={self.name} encoding={encoding} delimiter={delimiter!r}"
        )
        rows, rejected = read_rows(text, delimiter)
        skipped = [f"Row {line}: {reason}" for line, reason in rejected]
        if not rows:
            return ParseResult.failure("File is empty", warnings=skipped)
        transactions, warnings, error = self.parse_rows(rows, self.positional)
        warnings = skipped + warnings
        if error:
            return ParseResult.failure(error, warnings=warnings)
        if not transactions:
            return ParseResult.failure(NO_TRANSACTIONS, warnings=warnings)
        return ParseResult(success=True, transactions=transactions, warnings=warnings)

    def parse_workbook(self, content: bytes) -> ParseResult:
        try:
            workbook = load_workbook(BytesIO(content), read_only=True, data_only=True)
        except (InvalidFileException, BadZipFile, KeyError, OSError) as exc:
            return ParseResult.failure(f"Unreadable spreadsheet: {exc}")
        transactions: list[CanonicalTransaction] = []
        warnings: list[str] = []
        errors: list[str] = []
        try:
            for sheet in self.select_sheets(workbook):
                rows = [
                    (idx, list(values))
                    for idx, values in enumerate(sheet.iter_rows(values_only=True), start=1)
                    if any(not _blank(value) for value in values)
                ]
                if not rows:
                    continue
                found, sheet_warnings, error = self.parse_rows(
                    rows, self.workbook_positional or self.positional
                )
                transactions.extend(found)
                warnings.extend(f"{sheet.title}: {warning}" for warning in sheet_warnings)
                if error:
                    errors.append(f"{sheet.title}: {error}")
        finally:
            workbook.close()
        if not transactions:
            return ParseResult.failure(*(errors or [NO_TRANSACTIONS]), warnings=warnings)
        return ParseResult(success=True, transactions=transactions, warnings=warnings)

    def select_sheets(self, workbook) -> list:
        return list(workbook.worksheets)

    def parse_rows(
        self, rows: list[tuple[int, list]], positional: Optional[ColumnMap]
    ) -> tuple[list[CanonicalTransaction], list[str], Optional[str]]:
        located = self.locate_columns(rows, positional)
        if located is None:
            return [], [], f"No recognizable {self.label} header"
        start, columns = located

        transactions: list[CanonicalTransaction] = []
        warnings: list[str] = []
        for line, cells in rows[start:]:
            try:
                transactions.append(self.convert_row(cells, columns))
            except (ValueError, OverflowError) as exc:
                warnings.append(f"Row {line}: {_row_error(exc)}")
        return transactions, warnings, None

    def locate_columns(
        self, rows: list[tuple[int, list]], positional: Optional[ColumnMap]
    ) -> Optional[tuple[int, ColumnMap]]:
        """Header row when one is found, else the first row that reads as data."""
        for position, (_, cells) in enumerate(rows[:HEADER_SCAN_ROWS]):
            columns = self.map_header(cells)
            if columns is not None:
                return position + 1, columns
            if positional is not None and self._starts_with_data(cells, positional):
                return position, positional
        return None

    def _starts_with_data(self, cells: list, positional: ColumnMap) -> bool:
        try:
            self._row_date(cells, positional)
        except (ValueError, OverflowError):
            return False
        return True

    def map_header(self, cells: list) -> Optional[ColumnMap]:
        headers = [normalize_header(_text(cell)) for cell in cells]
        found: dict[str, int] = {}
        for name, aliases in self.header_aliases.items():
            idx = find_column(
                headers,
                aliases,
                exclude=self.header_excludes.get(name, ()),
                taken=found.values(),
            )
            if idx is not None:
                found[name] = idx
        if "date" not in found or "description" not in found:
            return None
        if not {"amount", "debit", "credit"} & found.keys():
            return None
        return ColumnMap(**found)

    def convert_row(self, cells: list, columns: ColumnMap) -> CanonicalTransaction:
        if len(cells) < columns.width:
            raise ValueError(
                f"Expected at least {columns.width} columns, got {len(cells)}"
            )
        txn_date = self._row_date(cells, columns)
        description = self.clean_description(_text(_cell(cells, columns.description)))
        if not description and columns.description_fallback is not None:
            description = self.clean_description(
                _text(_cell(cells, columns.description_fallback))
            )
        if not description:
            raise ValueError("Missing description")
        amount_cents = self._row_amount(cells, columns)
        if amount_cents == 0:
            raise ValueError("Amount is zero")
        return CanonicalTransaction(
            date=txn_date,
            description=description[:500],
            amount_cents=amount_cents,
            raw_type=_text(_cell(cells, columns.raw_type))[:80] or None,
            external_ref=_text(_cell(cells, columns.external_ref))[:120] or None,
            bank_category=self._bank_category(cells, columns),
        )

    def clean_description(self, value: str) -> str:
        return value

    def _row_date(self, cells: list, columns: ColumnMap) -> date:
        value = _cell(cells, columns.date)
        if _blank(value) and columns.date_fallback is not None:
            value = _cell(cells, columns.date_fallback)
        return coerce_date(value)

    def _row_amount(self, cells: list, columns: ColumnMap) -> int:
        amount = _cell(cells, columns.amount)
        if not _blank(amount):
            return _cents(amount)
        debit = _cell(cells, columns.debit)
        credit = _cell(cells, columns.credit)
        if _blank(debit) and _blank(credit):
            raise ValueError("Missing amount")
        total = 0
        if not _blank(debit):
            total -= abs(_cents(debit))
        if not _blank(credit):
            total += abs(_cents(credit))
        return total

    def _bank_category(self, cells: list, columns: ColumnMap) -> Optional[str]:
        child = _text(_cell(cells, columns.category))
        parent = _text(_cell(cells, columns.category_parent))
        if parent and child:
            label = f"{parent} > {child}"
        else:
            label = parent or child
        return label[:200] or None


class CreditMutuelParser(Parser):
    """Crédit Mutuel and CIC: ``Date;Date de valeur;Débit;Crédit;Libellé;Solde``."""

    name = "credit_mutuel"
    label = "Crédit Mutuel"
    mime_types = CSV_MIME_TYPES + (XLSX_MIME_TYPE,)
    delimiter = ";"
    header_aliases = {
        "date": ("date", "date operation"),
        "description": ("libelle", "libelle operation", "description"),
        "amount": ("montant",),
        "debit": ("debit",),
        "credit": ("credit",),
    }
    header_excludes = {"date": ("valeur",)}
    positional = ColumnMap(date=0, debit=2, credit=3, description=4)
    workbook_positional = ColumnMap(date=0, description=2, debit=3, credit=4)

    def select_sheets(self, workbook) -> list:
        accounts = [ws for ws in workbook.worksheets if ws.title.startswith("Cpt ")]
        return accounts or list(workbook.worksheets)


class CaisseEpargneParser(Parser):
    name = "caisse_epargne"
    label = "Caisse d'Épargne"
    delimiter = ";"
    header_aliases = {
        "date": (
            "date operation",
            "date de comptabilisation",
            "date comptable",
            "date",
        ),
        "date_fallback": ("date de comptabilisation", "date comptable"),
        "description": ("libelle operation", "libelle simplifie", "libelle"),
        "description_fallback": ("libelle simplifie",),
        "external_ref": ("reference",),
        "raw_type": ("type operation",),
        "category_parent": ("categorie",),
        "category": ("sous categorie",),
        "debit": ("debit",),
        "credit": ("credit",),
        "amount": ("montant",),
    }
    header_excludes = {
        "date": ("valeur",),
        "date_fallback": ("valeur",),
        "category_parent": ("sous",),
    }
    positional = ColumnMap(
        date=10,
        date_fallback=0,
        description=2,
        description_fallback=1,
        external_ref=3,
        raw_type=5,
        category_parent=6,
        category=7,
        debit=8,
        credit=9,
    )


class CaisseEpargneEntrepriseParser(CaisseEpargneParser):
    name = "caisse_epargne_entreprise"
    label = "Caisse d'Épargne Pro"
    positional = ColumnMap(
        date=7,
        date_fallback=0,
        description=1,
        external_ref=2,
        raw_type=4,
        debit=5,
        credit=6,
    )


class BoursoramaParser(Parser):
    """Signed ``amount`` column, ISO dates, labels printed as ``Court | Long``."""

    name = "boursorama"
    label = "Boursorama"
    delimiter = ";"
    header_aliases = {
        "date": ("dateop", "date operation", "date"),
        "description": ("label", "libelle"),
        "category_parent": ("categoryparent", "category parent"),
        "category": ("category", "categorie"),
        "amount": ("amount", "montant"),
    }
    header_excludes = {"date": ("dateval",), "category": ("categoryparent",)}
    positional = ColumnMap(date=0, description=2, category=3, category_parent=4, amount=6)

    def clean_description(self, value: str) -> str:
        short, _, _ = value.partition(" | ")
        return short.strip()


class GenericCSVParser(Parser):
    name = "generic"
    label = "generic CSV"
    header_aliases = {
        "date": (
            "date",
            "date operation",
            "transaction date",
            "posting date",
            "booking date",
            "datum",
            "buchungstag",
            "fecha",
        ),
        "description": (
            "description",
            "libelle",
            "label",
            "memo",
            "payee",
            "details",
            "narrative",
            "wording",
            "verwendungszweck",
            "beschreibung",
            "concepto",
        ),
        "amount": ("amount", "montant", "betrag", "importe"),
        "debit": ("debit", "withdrawal", "paid out", "sortie"),
        "credit": ("credit", "deposit", "paid in", "entree"),
        "raw_type": ("transaction type", "type"),
        "external_ref": ("reference", "transaction id"),
        "category": ("category", "categorie", "kategorie"),
    }
    header_excludes = {
        "date": ("valeur", "value", "valuta"),
        "amount": ("balance", "solde"),
    }
