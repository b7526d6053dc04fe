import hashlib
import json
import re
import unicodedata
from datetime import date

_DATE_IN_TEXT = re.compile(
    r"\b(?:\d{4}-\d{1,2}-\d{1,2}|\d{1,2}[/.\-]\d{1,2}(?:[/.\-]\d{2,4})?)\b"
)
_MIN_VOLATILE_DIGITS = 4


def fold_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _is_volatile(token: str) -> bool:
    if sum(ch.isdigit() for ch in token) >= _MIN_VOLATILE_DIGITS:
        return True
    return not any(ch.isalnum() for ch in token)


def normalize_description(value: str) -> str:
    """
    Reduce a raw bank label to its matching key.

    Accents and case are folded, dates written inside the label are removed,
    tokens carrying four or more digits (references, card numbers, terminal
    codes such as ``X4521``) and punctuation-only tokens are dropped, and
    whitespace is collapsed. Two prints of the same recurring merchant end up
    with the same key.
    """
    text = fold_accents(value or "").lower()
    text = _DATE_IN_TEXT.sub(" ", text)
    tokens = [token for token in text.split() if not _is_volatile(token)]
    return " ".join(tokens)


def matching_key(value: str) -> str:
    """Normalized key, or the collapsed lowercase label when nothing survives."""
    key = normalize_description(value)
    if key:
        return key
    return " ".join(fold_accents(value or "").lower().split())


def compute_fingerprint(
    account_id: int, txn_date: date, amount_cents: int, description: str
) -> str:
    payload = {
        "account": int(account_id),
        "amount_cents": int(amount_cents),
        "date": txn_date.isoformat(),
        "description": matching_key(description),
    }
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()
