"""
Settlement Engine - Reconciliation Engine.

============================================================
PURPOSE
============================================================
Applies a correlated SettlementEvent to its SettlementRecord
under optimistic concurrency.

CHECK ORDER (apply):
1. Load record
2. Source-level dedup            -> NOOP_DUPLICATE_SOURCE_EVENT
3. Reference conflict            -> REJECTED(reference mismatch)
4. Terminal record               -> NOOP_ALREADY_TERMINAL
5. Transition table lookup       -> REJECTED(invalid transition)
6. Conditional write on version  -> APPLIED
   (lost race: retry from 1, then REJECTED(contention))

CRITICAL RULES:
- No locks; correctness rests on the store's conditional write
- external_reference is written once, never overwritten
- No self-scheduled retries beyond the bounded CAS loop

============================================================
"""

import dataclasses
import logging
from decimal import Decimal
from typing import Optional

from .clock import ClockProtocol, SystemClock
from .config import SettlementEngineConfig
from .state_machine import TransitionGuard
from .store.base import RecordUpdate, SettlementStore
from .types import (
    DuplicateReferenceError,
    MetalAsset,
    RecordNotFoundError,
    RejectionReason,
    SettlementEvent,
    SettlementKind,
    SettlementNetwork,
    SettlementRecord,
    SettlementStatus,
    StoreError,
    TransitionOutcome,
)


logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """
    Advances settlement records from canonical events.

    Stateless; any number of instances may run against one store.
    """

    def __init__(
        self,
        store: SettlementStore,
        config: Optional[SettlementEngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize engine.

        Args:
            store: Settlement store
            config: Engine configuration
            clock: Time source for new records
        """
        self._store = store
        self._config = config or SettlementEngineConfig()
        self._clock = clock or SystemClock()

    @property
    def max_attempts(self) -> int:
        return max(1, self._config.concurrency.max_attempts)

    # --------------------------------------------------------
    # RECORD CREATION
    # --------------------------------------------------------

    async def create_record(
        self,
        owner: str,
        kind: SettlementKind,
        asset: MetalAsset,
        network: SettlementNetwork,
        quantity: Decimal,
        monetary_value: Decimal,
        fee_value: Decimal = Decimal("0"),
        wallet_address: Optional[str] = None,
    ) -> SettlementRecord:
        """
        Create a pending record with no external reference.

        Raises:
            ValueError: non-positive quantity or negative value
        """
        if quantity <= 0:
            raise ValueError(f"Quantity must be positive, got {quantity}")
        if monetary_value < 0 or fee_value < 0:
            raise ValueError("Monetary value and fee must not be negative")

        now = self._clock.now()
        record = SettlementRecord(
            owner=owner,
            kind=kind,
            asset=asset,
            network=network,
            quantity=quantity,
            monetary_value=monetary_value,
            fee_value=fee_value,
            wallet_address=wallet_address,
            created_at=now,
            updated_at=now,
        )
        created = await self._store.create_record(record)
        logger.info(
            f"Created {kind.value} record {created.record_id} for {owner}: "
            f"{quantity} {asset.value} on {network.value}"
        )
        return created

    # --------------------------------------------------------
    # APPLY
    # --------------------------------------------------------

    async def apply(self, record_id: str, event: SettlementEvent) -> TransitionOutcome:
        """
        Apply an event to a record.

        Args:
            record_id: Resolved record id
            event: Normalized event

        Returns:
            TransitionOutcome

        Raises:
            RecordNotFoundError: record does not exist
            StoreError: store unavailable
        """
        record = None
        for attempt in range(1, self.max_attempts + 1):
            record = await self._load(record_id)

            if record.has_seen(event.source_event_id):
                logger.info(
                    f"Duplicate source event {event.source_event_id} for record {record_id}"
                )
                return TransitionOutcome.duplicate(record)

            if (
                record.external_reference
                and event.candidate_reference
                and record.external_reference != event.candidate_reference
            ):
                logger.error(
                    f"Reference mismatch on record {record_id}: stored "
                    f"{record.external_reference}, event {event.source_event_id} "
                    f"claims {event.candidate_reference}. Manual review required."
                )
                return TransitionOutcome.rejected(
                    record,
                    RejectionReason.REFERENCE_MISMATCH,
                    f"Record holds {record.external_reference}, event claims {event.candidate_reference}",
                )

            if record.is_terminal:
                await self._mark_seen(record, event)
                logger.info(
                    f"Record {record_id} already {record.status.value}; "
                    f"event {event.source_event_id} acknowledged"
                )
                return TransitionOutcome.already_terminal(record)

            target = TransitionGuard.target_for_event(record.status, event.canonical_status)
            if target is None:
                message = (
                    f"Invalid transition: {record.status.value} on "
                    f"{event.canonical_status.value} event"
                )
                logger.warning(f"{message} (record {record_id}, event {event.source_event_id})")
                return TransitionOutcome.rejected(
                    record, RejectionReason.INVALID_TRANSITION, message
                )

            update = RecordUpdate(
                status=target,
                external_reference=(
                    event.candidate_reference if record.external_reference is None else None
                ),
                failure_reason=(
                    event.failure_reason or event.reported_status
                    if target == SettlementStatus.FAILED else None
                ),
                append_seen_event=event.source_event_id,
                max_seen=self._config.dedup.max_seen_per_record,
            )

            try:
                written = await self._store.conditional_update(
                    record.record_id, record.status_version, update
                )
            except DuplicateReferenceError as e:
                logger.error(
                    f"Reference {e.reference} already held by another {e.kind.value}; "
                    f"record {record_id} untouched. Manual review required."
                )
                return TransitionOutcome.rejected(
                    record, RejectionReason.REFERENCE_MISMATCH, str(e)
                )

            if written:
                applied = dataclasses.replace(
                    record,
                    status=target,
                    status_version=record.status_version + 1,
                    external_reference=record.external_reference or event.candidate_reference,
                )
                logger.info(
                    f"Record {record_id}: {record.status.value} -> {target.value} "
                    f"(v{applied.status_version}, {event.source} {event.source_event_id})"
                )
                return TransitionOutcome.applied(applied)

            logger.debug(
                f"Version conflict on record {record_id} "
                f"(attempt {attempt}/{self.max_attempts})"
            )

        logger.warning(
            f"Contention on record {record_id} after {self.max_attempts} attempts; "
            f"relying on source redelivery of {event.source_event_id}"
        )
        return TransitionOutcome.rejected(record, RejectionReason.CONTENTION)

    # --------------------------------------------------------
    # CANCEL
    # --------------------------------------------------------

    async def cancel(
        self,
        record_id: str,
        owner: str,
        reason: Optional[str] = None,
    ) -> TransitionOutcome:
        """
        User-initiated cancellation of a pending redemption.

        Args:
            record_id: Record to cancel
            owner: Requesting user
            reason: Free-text reason

        Returns:
            TransitionOutcome

        Raises:
            RecordNotFoundError: record does not exist
        """
        record = None
        for attempt in range(1, self.max_attempts + 1):
            record = await self._load(record_id)

            if record.owner != owner:
                logger.warning(f"Cancel of record {record_id} refused: caller is not the owner")
                return TransitionOutcome.rejected(record, RejectionReason.NOT_OWNER)

            allowed, why = TransitionGuard.can_cancel(record)
            if not allowed:
                logger.info(f"Cancel of record {record_id} refused: {why}")
                return TransitionOutcome.rejected(record, RejectionReason.NOT_CANCELLABLE, why)

            written = await self._store.conditional_update(
                record.record_id,
                record.status_version,
                RecordUpdate(
                    status=SettlementStatus.CANCELLED,
                    cancellation_reason=reason or "Cancelled by user",
                ),
            )
            if written:
                cancelled = dataclasses.replace(
                    record,
                    status=SettlementStatus.CANCELLED,
                    status_version=record.status_version + 1,
                )
                logger.info(f"Record {record_id} cancelled by owner")
                return TransitionOutcome.applied(cancelled)

            logger.debug(
                f"Version conflict cancelling record {record_id} "
                f"(attempt {attempt}/{self.max_attempts})"
            )

        logger.warning(f"Contention cancelling record {record_id}")
        return TransitionOutcome.rejected(record, RejectionReason.CONTENTION)

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    async def _load(self, record_id: str) -> SettlementRecord:
        record = await self._store.get_record(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    async def _mark_seen(self, record: SettlementRecord, event: SettlementEvent) -> None:
        """Best-effort seen mark on a terminal record; no version bump."""
        try:
            await self._store.conditional_update(
                record.record_id,
                record.status_version,
                RecordUpdate(
                    append_seen_event=event.source_event_id,
                    max_seen=self._config.dedup.max_seen_per_record,
                    increment_version=False,
                ),
            )
        except StoreError as e:
            logger.warning(f"Could not mark {event.source_event_id} seen on {record.record_id}: {e}")
