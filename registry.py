import logging
from enum import Enum
from typing import Optional, Union

from csv_utils import normalize_header
from parsers import (
    BoursoramaParser,
    CaisseEpargneEntrepriseParser,
    CaisseEpargneParser,
    CreditMutuelParser,
    GenericCSVParser,
    Parser,
    ParseResult,
)

logger = logging.getLogger(__name__)

UNSUPPORTED_SOURCE = "unsupported source"


class SourceKey(str, Enum):
    credit_mutuel = "credit_mutuel"
    cic = "cic"
    caisse_epargne = "caisse_epargne"
    caisse_epargne_entreprise = "caisse_epargne_entreprise"
    boursorama = "boursorama"
    generic = "generic"


class UnsupportedFormat(ValueError):
    pass


_credit_mutuel = CreditMutuelParser()

PARSERS: dict[SourceKey, Parser] = {
    SourceKey.credit_mutuel: _credit_mutuel,
    SourceKey.cic: _credit_mutuel,
    SourceKey.caisse_epargne: CaisseEpargneParser(),
    SourceKey.caisse_epargne_entreprise: CaisseEpargneEntrepriseParser(),
    SourceKey.boursorama: BoursoramaParser(),
    SourceKey.generic: GenericCSVParser(),
}

# Institution names as shown to users, after header-style folding.
_DISPLAY_NAMES = {
    "credit mutuel": SourceKey.credit_mutuel,
    "cic": SourceKey.cic,
    "caisse d epargne": SourceKey.caisse_epargne,
    "caisse epargne": SourceKey.caisse_epargne,
    "caisse d epargne pro": SourceKey.caisse_epargne_entreprise,
    "caisse d epargne entreprise": SourceKey.caisse_epargne_entreprise,
    "boursorama": SourceKey.boursorama,
    "boursorama banque": SourceKey.boursorama,
    "other": SourceKey.generic,
    "autre": SourceKey.generic,
}


def resolve_source_key(value: Union[str, SourceKey, None]) -> SourceKey:
    if isinstance(value, SourceKey):
        return value
    raw = (value or "").strip()
    try:
        return SourceKey(raw.lower())
    except ValueError:
        pass
    folded = normalize_header(raw)
    if folded in _DISPLAY_NAMES:
        return _DISPLAY_NAMES[folded]
    try:
        return SourceKey(folded.replace(" ", "_"))
    except ValueError as exc:
        raise UnsupportedFormat(f"Unsupported source '{raw}'") from exc


def get_parser(source_key: Union[str, SourceKey, None]) -> Parser:
    return PARSERS[resolve_source_key(source_key)]


def supported_mime_types(source_key: Union[str, SourceKey, None]) -> tuple[str, ...]:
    return get_parser(source_key).mime_types


def parse_import(
    source_key: Union[str, SourceKey, None],
    content: bytes,
    mime_type: Optional[str] = None,
) -> ParseResult:
    try:
        parser = get_parser(source_key)
    except UnsupportedFormat:
        logger.warning(f"parse_rejected: source_key={source_key!r}")
        return ParseResult.failure(UNSUPPORTED_SOURCE)
    result = parser.parse(content, mime_type)
    logger.info(
        f"parse_done: parser={parser.name} success={result.success} "
        f"transactions={len(result.transactions)} warnings={len(result.warnings)}"
    )
    return result
