"""
Settlement Engine - SQLAlchemy Store.

============================================================
PURPOSE
============================================================
Durable settlement store on SQLAlchemy's async engine.

DRIVERS:
- PostgreSQL via asyncpg (production)
- SQLite via aiosqlite (tests, local runs)

CRITICAL REQUIREMENTS:
- Every mutation is a single conditional UPDATE
- Uniqueness enforced by the database, not by reads
- Hard failures on persistence errors

============================================================
"""

import logging
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import desc, select, text
from sqlalchemy import update as sql_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from ..clock import ensure_utc
from ..config import DatabaseConfig
from ..types import (
    DuplicateReferenceError,
    MetalAsset,
    SettlementKind,
    SettlementNetwork,
    SettlementRecord,
    SettlementStatus,
    StoreError,
    TERMINAL_STATUSES,
    utc_now,
)
from .base import RecordUpdate, SettlementStore, UnmatchedEventEntry, append_seen
from .models import Base, SettlementRecordModel, UnmatchedEventModel


logger = logging.getLogger(__name__)


def create_store_engine(config: DatabaseConfig) -> AsyncEngine:
    """
    Create the async engine for a database config.

    SQLite shares one connection so in-memory databases survive
    across sessions.
    """
    logger.info(f"Creating settlement store engine for: {config.url.split('@')[-1]}")

    if config.url.startswith("sqlite"):
        return create_async_engine(
            config.url,
            echo=config.echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )

    return create_async_engine(
        config.url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_pre_ping=True,
    )


class SqlAlchemySettlementStore(SettlementStore):
    """
    Settlement store backed by a relational database.

    Each operation runs in its own short transaction.
    """

    def __init__(
        self,
        config: Optional[DatabaseConfig] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        """
        Initialize store.

        Args:
            config: Database configuration
            engine: Pre-built engine (overrides config.url)
        """
        self._config = config or DatabaseConfig()
        self._engine = engine or create_store_engine(self._config)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def initialize(self) -> None:
        """Create tables when configured to."""
        if self._config.create_tables:
            await self.create_tables()

    async def create_tables(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Settlement tables created")

    async def close(self) -> None:
        await self._engine.dispose()

    async def health_check(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Settlement store health check failed: {e}")
            return False

    # --------------------------------------------------------
    # RECORDS
    # --------------------------------------------------------

    async def create_record(self, record: SettlementRecord) -> SettlementRecord:
        model = self._record_to_model(record)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(model)
        except IntegrityError as e:
            if record.external_reference:
                raise DuplicateReferenceError(record.kind, record.external_reference)
            raise StoreError(f"Failed to create record {record.record_id}: {e}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create record {record.record_id}: {e}")
            raise StoreError(str(e))

        logger.debug(f"Created {record.kind.value} record {record.record_id}")
        return self._model_to_record(model)

    async def get_record(self, record_id: str) -> Optional[SettlementRecord]:
        models = await self._fetch(
            select(SettlementRecordModel).where(SettlementRecordModel.record_id == record_id),
            f"load record {record_id}",
        )
        return self._model_to_record(models[0]) if models else None

    async def find_by_reference(
        self,
        reference: str,
        kind: Optional[SettlementKind] = None,
    ) -> List[SettlementRecord]:
        query = select(SettlementRecordModel).where(
            SettlementRecordModel.external_reference == reference
        )
        if kind is not None:
            query = query.where(SettlementRecordModel.kind == kind.value)

        models = await self._fetch(query, f"look up reference {reference}")
        return [self._model_to_record(m) for m in models]

    async def find_heuristic_candidates(
        self,
        owner: str,
        statuses: Sequence[SettlementStatus],
        created_after: datetime,
        kind: Optional[SettlementKind] = None,
    ) -> List[SettlementRecord]:
        query = select(SettlementRecordModel).where(
            SettlementRecordModel.owner == owner,
            SettlementRecordModel.external_reference.is_(None),
            SettlementRecordModel.status.in_([s.value for s in statuses]),
            SettlementRecordModel.created_at >= created_after,
        )
        if kind is not None:
            query = query.where(SettlementRecordModel.kind == kind.value)

        models = await self._fetch(query, f"find candidates for owner {owner}")
        return [self._model_to_record(m) for m in models]

    async def conditional_update(
        self,
        record_id: str,
        expected_version: int,
        update: RecordUpdate,
        expect_notified: Optional[bool] = None,
    ) -> bool:
        conditions = [
            SettlementRecordModel.record_id == record_id,
            SettlementRecordModel.status_version == expected_version,
        ]
        if expect_notified is not None:
            conditions.append(SettlementRecordModel.notified == expect_notified)

        values = {"updated_at": utc_now()}
        if update.status is not None:
            values["status"] = update.status.value
        if update.external_reference is not None:
            values["external_reference"] = update.external_reference
        if update.failure_reason is not None:
            values["failure_reason"] = update.failure_reason
        if update.cancellation_reason is not None:
            values["cancellation_reason"] = update.cancellation_reason
        if update.notified is not None:
            values["notified"] = update.notified
        if update.increment_version:
            values["status_version"] = SettlementRecordModel.status_version + 1

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if update.append_seen_event is not None:
                        # Row lock until commit: appends without a version bump
                        # must not overwrite each other.
                        current = await session.execute(
                            select(SettlementRecordModel.seen_source_events)
                            .where(*conditions)
                            .with_for_update()
                        )
                        seen = current.scalar_one_or_none()
                        if seen is None:
                            return False
                        values["seen_source_events"] = append_seen(
                            seen, update.append_seen_event, update.max_seen
                        )

                    result = await session.execute(
                        sql_update(SettlementRecordModel)
                        .where(*conditions)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    return result.rowcount == 1
        except IntegrityError:
            record = await self.get_record(record_id)
            kind = record.kind if record else SettlementKind.PURCHASE
            raise DuplicateReferenceError(kind, update.external_reference or "")
        except SQLAlchemyError as e:
            logger.error(f"Conditional update failed for record {record_id}: {e}")
            raise StoreError(str(e))

    async def list_records(
        self,
        owner: Optional[str] = None,
        kind: Optional[SettlementKind] = None,
        status: Optional[SettlementStatus] = None,
        limit: int = 100,
    ) -> List[SettlementRecord]:
        query = select(SettlementRecordModel)
        if owner is not None:
            query = query.where(SettlementRecordModel.owner == owner)
        if kind is not None:
            query = query.where(SettlementRecordModel.kind == kind.value)
        if status is not None:
            query = query.where(SettlementRecordModel.status == status.value)
        query = query.order_by(desc(SettlementRecordModel.created_at)).limit(limit)

        models = await self._fetch(query, "list records")
        return [self._model_to_record(m) for m in models]

    async def list_awaiting_confirmation(
        self,
        networks: Optional[Sequence[SettlementNetwork]] = None,
        limit: int = 100,
    ) -> List[SettlementRecord]:
        query = select(SettlementRecordModel).where(
            SettlementRecordModel.external_reference.is_not(None),
            SettlementRecordModel.status.not_in([s.value for s in TERMINAL_STATUSES]),
        )
        if networks is not None:
            query = query.where(SettlementRecordModel.network.in_([n.value for n in networks]))
        query = query.order_by(SettlementRecordModel.created_at).limit(limit)

        models = await self._fetch(query, "list records awaiting confirmation")
        return [self._model_to_record(m) for m in models]

    # --------------------------------------------------------
    # UNMATCHED EVENTS
    # --------------------------------------------------------

    async def append_unmatched(self, entry: UnmatchedEventEntry) -> bool:
        model = UnmatchedEventModel(
            source=entry.source,
            source_event_id=entry.source_event_id,
            reported_status=entry.reported_status,
            canonical_status=entry.canonical_status,
            candidate_reference=entry.candidate_reference,
            owner=entry.owner,
            amount=entry.amount,
            diagnostics=entry.diagnostics,
            raw_payload=entry.raw_payload,
            recorded_at=entry.recorded_at,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(model)
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            logger.error(f"Failed to record unmatched event {entry.source_event_id}: {e}")
            raise StoreError(str(e))

        entry.entry_id = model.id
        return True

    async def get_unmatched_by_event_id(
        self, source_event_id: str
    ) -> Optional[UnmatchedEventEntry]:
        models = await self._fetch(
            select(UnmatchedEventModel).where(
                UnmatchedEventModel.source_event_id == source_event_id
            ),
            f"load unmatched event {source_event_id}",
        )
        return self._model_to_unmatched(models[0]) if models else None

    async def list_unmatched(
        self,
        source: Optional[str] = None,
        limit: int = 100,
    ) -> List[UnmatchedEventEntry]:
        query = select(UnmatchedEventModel)
        if source is not None:
            query = query.where(UnmatchedEventModel.source == source)
        query = query.order_by(desc(UnmatchedEventModel.id)).limit(limit)

        models = await self._fetch(query, "list unmatched events")
        return [self._model_to_unmatched(m) for m in models]

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    async def _fetch(self, query, action: str) -> list:
        """Run a read query; database failures surface as StoreError."""
        try:
            async with self._session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars())
        except SQLAlchemyError as e:
            logger.error(f"Failed to {action}: {e}")
            raise StoreError(str(e))

    def _record_to_model(self, record: SettlementRecord) -> SettlementRecordModel:
        return SettlementRecordModel(
            record_id=record.record_id,
            owner=record.owner,
            external_reference=record.external_reference,
            kind=record.kind.value,
            asset=record.asset.value,
            network=record.network.value,
            quantity=record.quantity,
            monetary_value=record.monetary_value,
            fee_value=record.fee_value,
            status=record.status.value,
            status_version=record.status_version,
            notified=record.notified,
            seen_source_events=list(record.seen_source_events),
            failure_reason=record.failure_reason,
            cancellation_reason=record.cancellation_reason,
            wallet_address=record.wallet_address,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def _model_to_record(self, model: SettlementRecordModel) -> SettlementRecord:
        """Convert model to SettlementRecord."""
        return SettlementRecord(
            record_id=model.record_id,
            owner=model.owner,
            kind=SettlementKind(model.kind),
            asset=MetalAsset(model.asset),
            network=SettlementNetwork(model.network),
            quantity=model.quantity,
            monetary_value=model.monetary_value,
            fee_value=model.fee_value,
            external_reference=model.external_reference,
            status=SettlementStatus(model.status),
            status_version=model.status_version,
            notified=model.notified,
            seen_source_events=list(model.seen_source_events or []),
            failure_reason=model.failure_reason,
            cancellation_reason=model.cancellation_reason,
            wallet_address=model.wallet_address,
            created_at=ensure_utc(model.created_at),
            updated_at=ensure_utc(model.updated_at),
        )

    def _model_to_unmatched(self, model: UnmatchedEventModel) -> UnmatchedEventEntry:
        return UnmatchedEventEntry(
            entry_id=model.id,
            source=model.source,
            source_event_id=model.source_event_id,
            reported_status=model.reported_status,
            canonical_status=model.canonical_status,
            candidate_reference=model.candidate_reference,
            owner=model.owner,
            amount=model.amount,
            diagnostics=dict(model.diagnostics or {}),
            raw_payload=dict(model.raw_payload or {}),
            recorded_at=ensure_utc(model.recorded_at),
        )
