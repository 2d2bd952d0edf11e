"""
Ledger Confirmation Poller Tests.

============================================================
PURPOSE
============================================================
Tests for feeding ledger status into the reconciler.

TEST CATEGORIES:
- Polling records awaiting confirmation
- Watched hashes
- Client failures
- Run loop

============================================================
"""

import asyncio

import pytest

from settlement_engine import (
    DatabaseConfig,
    LedgerClientError,
    LedgerConfirmationPoller,
    LedgerPollingConfig,
    LedgerStatusClient,
    LedgerTransactionStatus,
    SettlementKind,
    SettlementNetwork,
    SettlementReconciler,
    SettlementStatus,
    SqlAlchemySettlementStore,
    StoreError,
    load_ledger_client,
)


class FakeLedgerClient(LedgerStatusClient):
    """Answers from a dict keyed by transaction hash."""

    def __init__(self, answers=None, failing=None):
        self.answers = answers or {}
        self.failing = set(failing or [])
        self.calls = []

    async def get_status(self, network, transaction_hash):
        self.calls.append((network, transaction_hash))
        if transaction_hash in self.failing:
            raise LedgerClientError("rpc timeout")
        return self.answers.get(transaction_hash)


@pytest.fixture
def reconciler(store, config, clock):
    return SettlementReconciler.build(store, config, clock, notifiers=[])


def make_poller(store, client, reconciler, **kwargs):
    return LedgerConfirmationPoller(
        store, client, reconciler, LedgerPollingConfig(interval_seconds=0.01), **kwargs
    )


# ============================================================
# POLL TESTS
# ============================================================

class TestPollOnce:
    """Tests for a single polling pass."""

    @pytest.mark.asyncio
    async def test_confirmation_completes_record(self, store, reconciler, make_record):
        record = await make_record(external_reference="0xaaa", status=SettlementStatus.PROCESSING)
        client = FakeLedgerClient({"0xaaa": LedgerTransactionStatus("confirmed", 1200)})
        poller = make_poller(store, client, reconciler)

        result = await poller.poll_once()

        assert result.run_id == "POLL_000001"
        assert result.checked == 1
        assert result.applied == 1
        assert result.completed_at is not None
        assert (await store.get_record(record.record_id)).status == SettlementStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_pending_answer_moves_to_processing(self, store, reconciler, make_record):
        record = await make_record(external_reference="0xbbb")
        client = FakeLedgerClient({"0xbbb": LedgerTransactionStatus("submitted")})
        poller = make_poller(store, client, reconciler)

        await poller.poll_once()
        second = await poller.poll_once()

        assert (await store.get_record(record.record_id)).status == SettlementStatus.PROCESSING
        assert second.run_id == "POLL_000002"
        assert second.applied == 0

    @pytest.mark.asyncio
    async def test_unknown_hash_skipped(self, store, reconciler, make_record):
        await make_record(external_reference="0xccc")
        poller = make_poller(store, FakeLedgerClient(), reconciler)

        result = await poller.poll_once()

        assert result.checked == 1
        assert result.reports == []

    @pytest.mark.asyncio
    async def test_client_error_skips_hash(self, store, reconciler, make_record):
        await make_record(external_reference="0xbad")
        good = await make_record(external_reference="0xgood")
        client = FakeLedgerClient(
            {"0xgood": LedgerTransactionStatus("reverted")}, failing=["0xbad"]
        )
        poller = make_poller(store, client, reconciler)

        result = await poller.poll_once()

        assert len(result.errors) == 1
        assert "rpc timeout" in result.errors[0]
        assert (await store.get_record(good.record_id)).status == SettlementStatus.FAILED

    @pytest.mark.asyncio
    async def test_terminal_records_not_polled(self, store, reconciler, make_record):
        await make_record(external_reference="0xdone", status=SettlementStatus.COMPLETED)
        client = FakeLedgerClient()
        poller = make_poller(store, client, reconciler)

        result = await poller.poll_once()

        assert result.checked == 0
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_network_filter(self, store, reconciler, make_record):
        await make_record(external_reference="0xpriv", network=SettlementNetwork.PRIVATE_LEDGER)
        client = FakeLedgerClient()
        poller = make_poller(store, client, reconciler, networks=[SettlementNetwork.EVM_PUBLIC])

        await poller.poll_once()

        assert client.calls == []


# ============================================================
# WATCH LIST TESTS
# ============================================================

class TestWatchList:
    """Hashes watched before any record carries them."""

    @pytest.mark.asyncio
    async def test_watched_hash_unmatched_then_kept(self, store, reconciler):
        client = FakeLedgerClient({"0xnew": LedgerTransactionStatus("confirmed", 5)})
        poller = make_poller(store, client, reconciler)
        poller.watch("0xnew", SettlementNetwork.SECOND_CHAIN, SettlementKind.GIFT)

        result = await poller.poll_once()

        assert result.reports[0].acknowledgment.body["outcome"] == "UNMATCHED"
        assert poller.watched == [(SettlementNetwork.SECOND_CHAIN, "0xnew")]
        entries = await store.list_unmatched(source="ledger")
        assert entries[0].source_event_id == "second-chain:0xnew:confirmed"

    @pytest.mark.asyncio
    async def test_settled_hash_unwatched(self, store, reconciler, make_record):
        await make_record(external_reference="0xw", status=SettlementStatus.PROCESSING)
        client = FakeLedgerClient({"0xw": LedgerTransactionStatus("confirmed")})
        poller = make_poller(store, client, reconciler)
        poller.watch("0xw", SettlementNetwork.EVM_PUBLIC)

        result = await poller.poll_once()

        assert result.checked == 1
        assert poller.watched == []

    def test_unwatch_unknown_is_harmless(self, store, reconciler):
        poller = make_poller(store, FakeLedgerClient(), reconciler)

        poller.unwatch("0xnone", SettlementNetwork.EVM_PUBLIC)

        assert poller.watched == []


# ============================================================
# RUN LOOP TESTS
# ============================================================

class TestRunLoop:
    """Tests for the periodic loop."""

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, store, reconciler, make_record):
        record = await make_record(external_reference="0xloop", status=SettlementStatus.PROCESSING)
        client = FakeLedgerClient({"0xloop": LedgerTransactionStatus("finalized")})
        poller = make_poller(store, client, reconciler)
        stop = asyncio.Event()

        task = asyncio.create_task(poller.run(stop))
        await asyncio.sleep(0.05)
        assert poller.is_running
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert poller.is_running is False
        assert (await store.get_record(record.record_id)).status == SettlementStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_store_outage_does_not_stop_loop(self, store, reconciler, make_record, monkeypatch):
        record = await make_record(external_reference="0xlater", status=SettlementStatus.PROCESSING)
        listing = store.list_awaiting_confirmation
        failures = [StoreError("database is down"), StoreError("database is down")]

        async def flaky_listing(*args, **kwargs):
            if failures:
                raise failures.pop()
            return await listing(*args, **kwargs)

        monkeypatch.setattr(store, "list_awaiting_confirmation", flaky_listing)
        client = FakeLedgerClient({"0xlater": LedgerTransactionStatus("confirmed", 9)})
        poller = make_poller(store, client, reconciler)
        stop = asyncio.Event()

        task = asyncio.create_task(poller.run(stop))
        await asyncio.sleep(0.1)
        assert not task.done()
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert failures == []
        assert (await store.get_record(record.record_id)).status == SettlementStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_database_without_schema_does_not_stop_loop(self, config, clock):
        store = SqlAlchemySettlementStore(DatabaseConfig(url="sqlite+aiosqlite:///:memory:"))
        reconciler = SettlementReconciler.build(store, config, clock, notifiers=[])
        poller = make_poller(store, FakeLedgerClient(), reconciler)
        stop = asyncio.Event()

        task = asyncio.create_task(poller.run(stop))
        await asyncio.sleep(0.05)
        assert not task.done()
        assert poller.is_running
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        await store.close()


# ============================================================
# CLIENT LOADING TESTS
# ============================================================

def build_status_client():
    return FakeLedgerClient({"0x1": LedgerTransactionStatus("confirmed")})


def build_something_else():
    return object()


class TestLoadLedgerClient:
    """Tests for building the client from an import string."""

    def test_loads_factory(self):
        client = load_ledger_client(f"{__name__}:build_status_client")

        assert isinstance(client, FakeLedgerClient)

    def test_path_without_callable(self):
        with pytest.raises(ValueError, match="module:callable"):
            load_ledger_client(__name__)

    def test_factory_must_build_a_client(self):
        with pytest.raises(ValueError, match="did not build"):
            load_ledger_client(f"{__name__}:build_something_else")
