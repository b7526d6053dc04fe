from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from models import Transaction
from schemas import CanonicalTransaction
from services import AccountService, LedgerWriter


def _statement(count: int) -> list[CanonicalTransaction]:
    start = date(2024, 1, 1)
    return [
        CanonicalTransaction(
            date=start + timedelta(days=idx % 30),
            description=f"CB MAGASIN {idx % 7}",
            amount_cents=-(100 + idx),
        )
        for idx in range(count)
    ]


def test_insert_is_idempotent_and_balance_stays_put(session, make_account) -> None:
    account = make_account()
    writer = LedgerWriter(session)
    rows = _statement(50)

    first = writer.insert_deduped(account.id, rows)
    balance = AccountService(session).get(account.id).balance_cents
    second = writer.insert_deduped(account.id, rows)

    assert (first.inserted, first.skipped, first.errors) == (50, 0, [])
    assert (second.inserted, second.skipped, second.errors) == (0, 50, [])
    assert balance == -sum(100 + idx for idx in range(50))
    assert AccountService(session).get(account.id).balance_cents == balance
    assert session.scalar(select(func.count(Transaction.id))) == 50


def test_duplicates_inside_one_batch_are_skipped(session, make_account, txn) -> None:
    account = make_account()
    row = txn(date(2024, 2, 1), "PRLV NETFLIX 01/02", -1399)
    noisy = txn(date(2024, 2, 1), "Prlv Netflix 01.02 X1234", -1399)

    result = LedgerWriter(session).insert_deduped(account.id, [row, noisy])

    assert (result.inserted, result.skipped) == (1, 1)


def test_same_row_on_two_accounts_is_not_a_duplicate(session, make_account, txn) -> None:
    first, second = make_account("A"), make_account("B")
    row = txn(date(2024, 2, 1), "RETRAIT DAB", -2000)

    writer = LedgerWriter(session)
    assert writer.insert_deduped(first.id, [row]).inserted == 1
    assert writer.insert_deduped(second.id, [row]).inserted == 1


def test_row_written_by_a_concurrent_import_counts_as_skipped(
    session, make_account, txn, monkeypatch
) -> None:
    account = make_account()
    rows = [
        txn(date(2024, 2, 1), "CB BOULANGERIE", -450),
        txn(date(2024, 2, 2), "CB PRIMEUR", -820),
    ]
    writer = LedgerWriter(session)
    writer.insert_deduped(account.id, rows[:1])

    # the other writer committed after our fingerprint lookup
    monkeypatch.setattr(
        LedgerWriter, "_existing_fingerprints", lambda self, account_id, fps: set()
    )
    result = writer.insert_deduped(account.id, rows)

    assert (result.inserted, result.skipped, result.errors) == (1, 1, [])
    assert session.scalar(select(func.count(Transaction.id))) == 2


def test_constraint_failure_is_a_row_error_and_batch_continues(
    session, make_account, txn
) -> None:
    account = make_account()
    bad = CanonicalTransaction.model_construct(
        date=date(2024, 2, 3),
        description="MOUVEMENT NUL",
        amount_cents=0,
        raw_type=None,
        external_ref=None,
        bank_category=None,
    )
    rows = [txn(date(2024, 2, 1), "CB BOULANGERIE", -450), bad, txn(date(2024, 2, 4), "VIR RECU", 1000)]

    result = LedgerWriter(session).insert_deduped(account.id, rows)

    assert result.inserted == 2
    assert result.skipped == 0
    assert len(result.errors) == 1
    assert result.errors[0].startswith("Row 2: ")
    assert AccountService(session).get(account.id).balance_cents == 550


def test_insert_into_unknown_account_raises(session, txn) -> None:
    with pytest.raises(ValueError, match="Account not found"):
        LedgerWriter(session).insert_deduped(999, [txn(date(2024, 1, 1), "X", -1)])


def test_recompute_balance_matches_ledger(session, make_account, txn) -> None:
    account = make_account()
    LedgerWriter(session).insert_deduped(
        account.id,
        [txn(date(2024, 1, 1), "VIR SALAIRE", 250000), txn(date(2024, 1, 2), "LOYER", -90000)],
        recompute_balance=False,
    )
    assert AccountService(session).get(account.id).balance_cents == 0

    assert AccountService(session).recompute_balance(account.id) == 160000
    assert AccountService(session).get(account.id).balance_updated_at is not None
