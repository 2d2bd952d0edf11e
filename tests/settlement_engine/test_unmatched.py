"""
Unmatched-Event Ledger Tests.
"""

from decimal import Decimal

import pytest

from settlement_engine import CanonicalStatus, UnmatchedEventEntry, UnmatchedEventLedger


@pytest.fixture
def ledger(store, clock):
    return UnmatchedEventLedger(store, clock)


class TestUnmatchedEventLedger:
    """Tests for the append-only unmatched ledger."""

    @pytest.mark.asyncio
    async def test_record_keeps_event_and_diagnostics(self, ledger, make_event, clock):
        event = make_event(CanonicalStatus.COMPLETED, reference="0xlost", amount=Decimal("42.50"))
        event.raw_payload = {"data": {"baseCurrencyAmount": Decimal("42.50")}}

        entry = await ledger.record(event, {"reason": "no heuristic candidate", "exact_matches": 0})

        assert entry.entry_id == 1
        assert entry.source_event_id == event.source_event_id
        assert entry.candidate_reference == "0xlost"
        assert entry.amount == "42.50"
        assert entry.canonical_status == "completed"
        assert entry.diagnostics["reason"] == "no heuristic candidate"
        assert entry.raw_payload == {"data": {"baseCurrencyAmount": "42.50"}}
        assert entry.recorded_at == clock.now()

    @pytest.mark.asyncio
    async def test_redelivery_returns_existing_entry(self, ledger, make_event, clock):
        event = make_event(event_id="moonpay:o1:transaction_updated:completed")

        first = await ledger.record(event, {"reason": "ambiguous heuristic match"})
        clock.advance(minutes=5)
        second = await ledger.record(event, {"reason": "changed"})

        assert second.entry_id == first.entry_id
        assert second.diagnostics["reason"] == "ambiguous heuristic match"
        assert len(await ledger.list_entries()) == 1

    @pytest.mark.asyncio
    async def test_list_entries_newest_first(self, ledger, make_event):
        await ledger.record(make_event(), {})
        await ledger.record(make_event(source="ledger"), {})
        await ledger.record(make_event(), {})

        entries = await ledger.list_entries()
        ledger_only = await ledger.list_entries(source="ledger")

        assert [e.entry_id for e in entries] == [3, 2, 1]
        assert [e.entry_id for e in ledger_only] == [2]
        assert len(await ledger.list_entries(limit=2)) == 2

    def test_entry_to_dict(self, make_event):
        entry = UnmatchedEventEntry.from_event(make_event(owner="user-7"), {"reason": "x"})

        data = entry.to_dict()

        assert data["owner"] == "user-7"
        assert data["amount"] == "100.00"
        assert data["diagnostics"] == {"reason": "x"}
