"""
Settlement Engine - Ledger Confirmation Poller.

============================================================
PURPOSE
============================================================
Feeds ledger transaction status into the reconciler.

FLOW:
1. List non-terminal records that carry a transaction hash
2. Add hashes watched explicitly (not yet on any record)
3. Ask the ledger status client for (status, block_or_slot)
4. Hand each answer to the reconciler as a "ledger" payload

RULES:
- The ledger client is a black box; errors skip that hash
- No backoff or self-scheduled retry; the next pass retries
- Repeat answers dedup to no-ops (same source event id)

============================================================
"""

import asyncio
import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .config import LedgerPollingConfig
from .reconciler import ReconciliationReport, SettlementReconciler
from .store.base import SettlementStore
from .types import (
    OutcomeCode,
    SettlementEngineError,
    SettlementKind,
    SettlementNetwork,
    utc_now,
)


logger = logging.getLogger(__name__)


# ============================================================
# LEDGER STATUS CLIENT
# ============================================================

@dataclass
class LedgerTransactionStatus:
    """What the ledger says about one transaction."""

    status: str
    """Native ledger status (e.g. "pending", "confirmed", "reverted")."""

    block_or_slot: Optional[int] = None


class LedgerClientError(Exception):
    """Ledger status lookup failed."""


class LedgerStatusClient(ABC):
    """
    Black-box ledger status lookup.

    One implementation per deployment (RPC node, indexer, ...).
    """

    @abstractmethod
    async def get_status(
        self,
        network: SettlementNetwork,
        transaction_hash: str,
    ) -> Optional[LedgerTransactionStatus]:
        """
        Current status of a transaction.

        Returns:
            None when the ledger does not know the hash yet

        Raises:
            LedgerClientError: lookup failed
        """
        pass


def load_ledger_client(import_path: str) -> LedgerStatusClient:
    """
    Build a ledger client from a "module:callable" import string.

    Raises:
        ValueError: malformed path or the callable built something else
    """
    module_name, _, attribute = import_path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f'Ledger client path must be "module:callable": {import_path}')

    factory = getattr(importlib.import_module(module_name), attribute)
    client = factory()
    if not isinstance(client, LedgerStatusClient):
        raise ValueError(f"{import_path} did not build a LedgerStatusClient")

    logger.info(f"Loaded ledger status client from {import_path}")
    return client


# ============================================================
# POLL RESULT
# ============================================================

@dataclass
class PollResult:
    """Result of one polling pass."""

    run_id: str
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    checked: int = 0
    """Hashes looked up."""

    reports: List[ReconciliationReport] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def applied(self) -> int:
        return sum(
            1 for r in self.reports
            if r.outcome is not None and r.outcome.is_applied
        )


# ============================================================
# POLLER
# ============================================================

WatchKey = Tuple[SettlementNetwork, str]


class LedgerConfirmationPoller:
    """
    Periodic ledger confirmation feed.
    """

    def __init__(
        self,
        store: SettlementStore,
        client: LedgerStatusClient,
        reconciler: SettlementReconciler,
        config: Optional[LedgerPollingConfig] = None,
        networks: Optional[Sequence[SettlementNetwork]] = None,
    ):
        """
        Initialize poller.

        Args:
            store: Settlement store
            client: Ledger status client
            reconciler: Pipeline to feed
            config: Polling configuration
            networks: Networks to poll (defaults to all)
        """
        self._store = store
        self._client = client
        self._reconciler = reconciler
        self._config = config or LedgerPollingConfig()
        self._networks = list(networks) if networks is not None else list(SettlementNetwork)

        self._watched: Dict[WatchKey, Optional[SettlementKind]] = {}
        self._run_counter = 0
        self._running = False

    # --------------------------------------------------------
    # WATCH LIST
    # --------------------------------------------------------

    def watch(
        self,
        transaction_hash: str,
        network: SettlementNetwork,
        kind: Optional[SettlementKind] = None,
    ) -> None:
        """Watch a hash not yet attached to a record."""
        self._watched[(network, transaction_hash)] = kind
        logger.debug(f"Watching {network.value}:{transaction_hash}")

    def unwatch(self, transaction_hash: str, network: SettlementNetwork) -> None:
        self._watched.pop((network, transaction_hash), None)

    @property
    def watched(self) -> List[WatchKey]:
        return list(self._watched)

    # --------------------------------------------------------
    # POLLING
    # --------------------------------------------------------

    async def poll_once(self) -> PollResult:
        """
        Run one polling pass.

        Returns:
            PollResult
        """
        self._run_counter += 1
        result = PollResult(run_id=f"POLL_{self._run_counter:06d}")

        records = await self._store.list_awaiting_confirmation(
            networks=self._networks, limit=self._config.batch_size
        )
        targets: Dict[WatchKey, Optional[SettlementKind]] = {
            (r.network, r.external_reference): r.kind for r in records
        }
        for key, kind in self._watched.items():
            targets.setdefault(key, kind)

        for (network, tx_hash), kind in targets.items():
            result.checked += 1
            try:
                status = await self._client.get_status(network, tx_hash)
            except LedgerClientError as e:
                result.errors.append(f"{network.value}:{tx_hash}: {e}")
                logger.warning(f"Ledger lookup failed for {network.value}:{tx_hash}: {e}")
                continue

            if status is None:
                continue

            payload = {
                "transaction_hash": tx_hash,
                "status": status.status,
                "block_or_slot": status.block_or_slot,
                "network": network.value,
            }
            if kind is not None:
                payload["kind"] = kind.value

            report = await self._reconciler.handle("ledger", payload)
            result.reports.append(report)

            if self._settled(report):
                self.unwatch(tx_hash, network)

        result.completed_at = utc_now()
        logger.debug(
            f"Ledger poll {result.run_id}: checked={result.checked} "
            f"applied={result.applied} errors={len(result.errors)}"
        )
        return result

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Poll until stopped.

        Args:
            stop_event: Set to stop the loop
        """
        stop_event = stop_event or asyncio.Event()
        self._running = True
        logger.info(f"Ledger confirmation poller started (every {self._config.interval_seconds}s)")

        try:
            while not stop_event.is_set():
                try:
                    await self.poll_once()
                except SettlementEngineError as e:
                    logger.error(f"Ledger poll failed: {e}")

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self._config.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("Ledger confirmation poller stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @staticmethod
    def _settled(report: ReconciliationReport) -> bool:
        outcome = report.outcome
        if outcome is None:
            return False
        if outcome.code == OutcomeCode.NOOP_ALREADY_TERMINAL:
            return True
        return outcome.is_applied and outcome.new_status is not None and outcome.new_status.is_terminal()
