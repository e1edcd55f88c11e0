from __future__ import annotations

from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from payment_alerts import ledger as ledger_module
from payment_alerts.ledger import DedupLedger, InMemoryDedupLedger, LedgerKey, SqlAlchemyDedupLedger


@pytest.fixture(params=["inmemory", "sqlite"])
def ledger(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[DedupLedger]:
    if request.param == "inmemory":
        yield InMemoryDedupLedger()
    else:
        yield SqlAlchemyDedupLedger(f"sqlite:///{tmp_path / 'ledger.db'}")


def _claim(ledger: DedupLedger, key: LedgerKey, *, stale_after: timedelta | None = None):
    return ledger.claim(
        key,
        agency_id="agency-a",
        recipient_type="student",
        installment_id="inst-1",
        template_id=None,
        email_subject="Overdue payment",
        stale_after=stale_after,
    )


def test_claim_succeeds_once_per_key(ledger: DedupLedger) -> None:
    key = LedgerKey.build("inst-1:overdue:1", "Sam@Example.com", "overdue")

    first = _claim(ledger, key)
    second = _claim(ledger, LedgerKey.build("inst-1:overdue:1", "sam@example.com ", "overdue"))

    assert first is not None
    assert first.status == "pending"
    assert first.recipient_address == "sam@example.com"
    assert second is None


def test_different_event_type_or_instance_is_a_new_key(ledger: DedupLedger) -> None:
    assert _claim(ledger, LedgerKey.build("inst-1:overdue:1", "sam@example.com", "overdue")) is not None
    assert _claim(ledger, LedgerKey.build("inst-1:overdue:2", "sam@example.com", "overdue")) is not None
    assert _claim(ledger, LedgerKey.build("inst-1:overdue:1", "sam@example.com", "due_soon")) is not None
    assert len(ledger.list_entries()) == 3
    assert len(ledger.list_entries(event_instance_id="inst-1:overdue:1")) == 2


def test_finalize_records_outcome_once(ledger: DedupLedger) -> None:
    key = LedgerKey.build("inst-1:overdue:1", "sam@example.com", "overdue")
    entry = _claim(ledger, key)
    assert entry is not None

    ledger.finalize(entry.entry_id, status="sent", attempts=2, provider_message_id="msg-1", error_message=None)
    ledger.finalize(entry.entry_id, status="failed", attempts=3, provider_message_id=None, error_message="late")

    stored = ledger.get(key)
    assert stored is not None
    assert stored.status == "sent"
    assert stored.attempts == 2
    assert stored.provider_message_id == "msg-1"
    assert stored.finalized_at is not None
    assert stored.finalized_at.tzinfo is not None


def test_concurrent_claims_have_a_single_winner(ledger: DedupLedger) -> None:
    key = LedgerKey.build("inst-1:overdue:1", "sam@example.com", "overdue")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: _claim(ledger, key), range(8)))

    assert sum(1 for result in results if result is not None) == 1
    assert len(ledger.list_entries()) == 1


def test_reset_clears_entries(ledger: DedupLedger) -> None:
    _claim(ledger, LedgerKey.build("inst-1:overdue:1", "sam@example.com", "overdue"))
    ledger.reset()
    assert ledger.list_entries() == []


def test_stale_pending_claim_is_handed_over_once(ledger: DedupLedger, monkeypatch: pytest.MonkeyPatch) -> None:
    key = LedgerKey.build("inst-1:overdue:1", "sam@example.com", "overdue")
    claimed_at = datetime(2025, 5, 15, 7, 30, tzinfo=timezone.utc)
    monkeypatch.setattr(ledger_module, "_now_utc", lambda: claimed_at)
    original = _claim(ledger, key)
    assert original is not None

    monkeypatch.setattr(ledger_module, "_now_utc", lambda: claimed_at + timedelta(minutes=10))
    too_early = _claim(ledger, key, stale_after=timedelta(minutes=30))
    assert too_early is None

    monkeypatch.setattr(ledger_module, "_now_utc", lambda: claimed_at + timedelta(minutes=45))
    takeover = _claim(ledger, key, stale_after=timedelta(minutes=30))
    again = _claim(ledger, key, stale_after=timedelta(minutes=30))

    assert takeover is not None
    assert takeover.entry_id == original.entry_id
    assert takeover.status == "pending"
    assert takeover.created_at == claimed_at + timedelta(minutes=45)
    assert again is None
    assert len(ledger.list_entries()) == 1


def test_finalized_entries_are_never_reclaimed(ledger: DedupLedger, monkeypatch: pytest.MonkeyPatch) -> None:
    key = LedgerKey.build("inst-1:overdue:1", "sam@example.com", "overdue")
    claimed_at = datetime(2025, 5, 15, 7, 30, tzinfo=timezone.utc)
    monkeypatch.setattr(ledger_module, "_now_utc", lambda: claimed_at)
    entry = _claim(ledger, key)
    assert entry is not None
    ledger.finalize(entry.entry_id, status="failed", attempts=4, provider_message_id=None, error_message="timeout")

    monkeypatch.setattr(ledger_module, "_now_utc", lambda: claimed_at + timedelta(days=2))
    reclaimed = _claim(ledger, key, stale_after=timedelta(minutes=30))

    assert reclaimed is None
    assert ledger.get(key).status == "failed"
