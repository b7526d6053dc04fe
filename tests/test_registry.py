import pytest

from parsers import XLSX_MIME_TYPE
from registry import (
    PARSERS,
    SourceKey,
    UnsupportedFormat,
    get_parser,
    parse_import,
    resolve_source_key,
    supported_mime_types,
)


def test_every_source_key_has_a_parser() -> None:
    assert set(PARSERS) == set(SourceKey)


def test_cic_shares_the_credit_mutuel_parser() -> None:
    assert get_parser("cic") is get_parser(SourceKey.credit_mutuel)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("credit_mutuel", SourceKey.credit_mutuel),
        ("BOURSORAMA", SourceKey.boursorama),
        ("Crédit Mutuel", SourceKey.credit_mutuel),
        ("Caisse d'Épargne", SourceKey.caisse_epargne),
        ("Caisse d'Épargne Pro", SourceKey.caisse_epargne_entreprise),
        ("other", SourceKey.generic),
    ],
)
def test_resolve_source_key_accepts_display_names(raw: str, expected: SourceKey) -> None:
    assert resolve_source_key(raw) is expected


def test_unknown_source_raises_on_lookup() -> None:
    with pytest.raises(UnsupportedFormat):
        get_parser("societe_generale")


def test_parse_import_reports_unknown_source() -> None:
    result = parse_import("societe_generale", b"Date;Montant\n")
    assert not result.success
    assert result.errors == ["unsupported source"]


def test_supported_mime_types() -> None:
    assert XLSX_MIME_TYPE in supported_mime_types("credit_mutuel")
    assert XLSX_MIME_TYPE not in supported_mime_types("boursorama")
    assert "text/csv" in supported_mime_types("generic")


def test_parse_import_dispatches_to_the_adapter() -> None:
    result = parse_import(
        "generic", b"Date,Description,Amount\n2024-05-01,Coffee,-3.20\n", "text/csv"
    )
    assert result.success
    assert result.transactions[0].amount_cents == -320
