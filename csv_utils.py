import codecs
import csv
import re
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional

from rapidfuzz.distance import Levenshtein

from descriptions import fold_accents

DELIMITERS = (";", ",", "\t", "|")
FALLBACK_ENCODINGS = ("utf-8", "cp1252")

_MONTHS = {
    "janvier": 1,
    "janv": 1,
    "jan": 1,
    "january": 1,
    "fevrier": 2,
    "fevr": 2,
    "fev": 2,
    "february": 2,
    "feb": 2,
    "mars": 3,
    "march": 3,
    "mar": 3,
    "avril": 4,
    "avr": 4,
    "april": 4,
    "apr": 4,
    "mai": 5,
    "may": 5,
    "juin": 6,
    "june": 6,
    "jun": 6,
    "juillet": 7,
    "juil": 7,
    "july": 7,
    "jul": 7,
    "aout": 8,
    "august": 8,
    "aug": 8,
    "septembre": 9,
    "september": 9,
    "sept": 9,
    "sep": 9,
    "octobre": 10,
    "october": 10,
    "oct": 10,
    "novembre": 11,
    "november": 11,
    "nov": 11,
    "decembre": 12,
    "december": 12,
    "dec": 12,
}

_ISO_DATE = re.compile(r"(\d{4})[-/](\d{1,2})[-/](\d{1,2})")
_DAY_FIRST_DATE = re.compile(r"(\d{1,2})[/.\-](\d{1,2})[/.\-](\d{4}|\d{2})")
_NAMED_MONTH_DATE = re.compile(r"(\d{1,2})(?:er)?[\s\-]+([a-z]+)\.?[\s\-]+(\d{4}|\d{2})")
_TIME_SUFFIX = re.compile(r"[T ]\d{1,2}:\d{2}(:\d{2})?.*$")
_EXCEL_EPOCH = date(1899, 12, 30)
# Serial of 9999-12-31, the last day a spreadsheet can hold.
_EXCEL_MAX_SERIAL = 2958465
_AMOUNT_NOISE = re.compile(r"[\s  '€$£]|eur", re.IGNORECASE)
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


def decode_bytes(content: bytes) -> tuple[str, str]:
    """
    Decode an export whose encoding is not declared.

    A UTF-8 byte order mark wins, then strict UTF-8, then Windows-1252.
    ISO-8859-1 maps every byte and closes the chain.
    """
    if content.startswith(codecs.BOM_UTF8):
        return content[len(codecs.BOM_UTF8) :].decode("utf-8", errors="replace"), "utf-8-sig"
    for encoding in FALLBACK_ENCODINGS:
        try:
            return content.decode(encoding), encoding
        except UnicodeDecodeError:
            continue
    return content.decode("latin-1"), "latin-1"


def sniff_delimiter(text: str) -> str:
    header = next((line for line in text.splitlines() if line.strip()), "")
    counts = {delimiter: header.count(delimiter) for delimiter in DELIMITERS}
    best = max(DELIMITERS, key=lambda delimiter: counts[delimiter])
    return best if counts[best] else ","


def read_rows(
    text: str, delimiter: str
) -> tuple[list[tuple[int, list[str]]], list[tuple[int, str]]]:
    """
    Rows as ``(line_number, cells)``, blank lines dropped, plus rejected lines.

    Each physical line is its own record. A stray quote then costs one row
    instead of swallowing the rest of the file into a single field.
    """
    rows: list[tuple[int, list[str]]] = []
    rejected: list[tuple[int, str]] = []
    for line_number, line in enumerate(_LINE_BREAK.split(text), start=1):
        if not line.strip():
            continue
        try:
            cells = next(csv.reader([line], delimiter=delimiter, strict=True), [])
        except csv.Error as exc:
            rejected.append((line_number, f"Malformed quoting: {exc}"))
            continue
        stripped = [cell.strip() for cell in cells]
        if any(stripped):
            rows.append((line_number, stripped))
    return rows, rejected



def _year(value: str) -> int:
    year = int(value)
    if len(value) == 2:
        year += 2000 if year < 70 else 1900
    return year


def parse_date(value: str) -> date:
    raw = (value or "").strip()
    if not raw:
        raise ValueError("Missing date")
    clean = _TIME_SUFFIX.sub("", raw)
    try:
        match = _ISO_DATE.fullmatch(clean)
        if match:
            return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        match = _DAY_FIRST_DATE.fullmatch(clean)
        if match:
            return date(_year(match.group(3)), int(match.group(2)), int(match.group(1)))
        match = _NAMED_MONTH_DATE.fullmatch(fold_accents(clean).lower())
        if match and match.group(2) in _MONTHS:
            return date(_year(match.group(3)), _MONTHS[match.group(2)], int(match.group(1)))
    except ValueError as exc:
        raise ValueError(f"Invalid date '{raw}'") from exc
    raise ValueError(f"Invalid date '{raw}'")


def excel_serial_to_date(serial: float) -> date:
    if not 0 < serial <= _EXCEL_MAX_SERIAL:
        raise ValueError(f"Invalid date '{serial}'")
    return _EXCEL_EPOCH + timedelta(days=int(serial))


def coerce_date(value: object) -> date:
    """Accept the cell types a spreadsheet reader hands back."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return excel_serial_to_date(value)
    return parse_date(str(value or ""))


def parse_amount(value: str) -> int:
    """
    Signed amount in cents.

    Understands French (``1 234,56``) and English (``1,234.56``) grouping,
    explicit ``+``, trailing minus, accounting parentheses and currency marks.
    """
    clean = _AMOUNT_NOISE.sub("", (value or "").strip())
    if not clean:
        raise ValueError("Missing amount")

    negative = False
    if clean.startswith("(") and clean.endswith(")"):
        negative = True
        clean = clean[1:-1]
    if clean.endswith("-"):
        negative = True
        clean = clean[:-1]
    if clean[:1] in "+-":
        negative = negative or clean[0] == "-"
        clean = clean[1:]

    if "," in clean and "." in clean:
        if clean.rfind(",") > clean.rfind("."):
            clean = clean.replace(".", "").replace(",", ".")
        else:
            clean = clean.replace(",", "")
    elif "," in clean:
        head, _, tail = clean.rpartition(",")
        if clean.count(",") > 1 or (len(tail) == 3 and head.isdigit() and len(head) <= 3):
            clean = clean.replace(",", "")
        else:
            clean = f"{head}.{tail}"
    elif clean.count(".") > 1:
        parts = clean.split(".")
        if len(parts[-1]) == 3:
            clean = "".join(parts)
        else:
            clean = "".join(parts[:-1]) + "." + parts[-1]

    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount '{value.strip()}'") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount '{value.strip()}'")
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return -cents if negative else cents


def normalize_header(value: str) -> str:
    folded = fold_accents(value or "").lower()
    return " ".join(re.sub(r"[^a-z0-9]+", " ", folded).split())


def find_column(
    headers: list[str],
    aliases: Iterable[str],
    *,
    exclude: Iterable[str] = (),
    taken: Iterable[int] = (),
) -> Optional[int]:
    """
    Index of the header best matching one of ``aliases``.

    Exact names win over substrings, substrings over a one-edit typo.
    Headers containing an ``exclude`` word are never returned.
    """
    aliases = [normalize_header(alias) for alias in aliases]
    excluded = [normalize_header(word) for word in exclude]
    taken = set(taken)
    candidates = [
        (idx, header)
        for idx, header in enumerate(headers)
        if header
        and idx not in taken
        and not any(word in header.split() for word in excluded)
    ]
    for alias in aliases:
        for idx, header in candidates:
            if header == alias:
                return idx
    for alias in aliases:
        for idx, header in candidates:
            if alias in header:
                return idx
    for alias in aliases:
        if len(alias) < 5:
            continue
        for idx, header in candidates:
            if Levenshtein.distance(header, alias) <= 1:
                return idx
    return None
