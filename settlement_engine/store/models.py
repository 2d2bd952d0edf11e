"""
Settlement Engine - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for settlement persistence.

TABLES:
- settlement_records: Settlement intents and their status
- unmatched_settlement_events: Events with no unique record

CONSTRAINTS:
- (kind, external_reference) unique where reference is set
- source_event_id unique in the unmatched ledger
- Amounts stored as Numeric, never float

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..types import utc_now


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """Declarative base for settlement models."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


# ============================================================
# SETTLEMENT RECORD MODEL
# ============================================================

class SettlementRecordModel(Base):
    """
    Persisted settlement record.

    status_version is the optimistic-concurrency token.
    """

    __tablename__ = "settlement_records"

    # Primary key
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Identifiers
    record_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    owner: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    external_reference: Mapped[Optional[str]] = mapped_column(String(128))

    # Classification
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    asset: Mapped[str] = mapped_column(String(16), nullable=False)
    network: Mapped[str] = mapped_column(String(32), nullable=False)

    # Amounts
    quantity: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    monetary_value: Mapped[Decimal] = mapped_column(Numeric(24, 8), nullable=False)
    fee_value: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))

    # Status
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    status_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seen_source_events: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Reasons
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)
    wallet_address: Mapped[Optional[str]] = mapped_column(String(128))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        Index(
            "uq_settlement_kind_reference",
            "kind",
            "external_reference",
            unique=True,
            postgresql_where=text("external_reference IS NOT NULL"),
            sqlite_where=text("external_reference IS NOT NULL"),
        ),
        Index("ix_settlement_owner_status", "owner", "status"),
    )


# ============================================================
# UNMATCHED EVENT MODEL
# ============================================================

class UnmatchedEventModel(Base):
    """
    Persisted unmatched event.

    Append-only; an operator resolves entries by hand.
    """

    __tablename__ = "unmatched_settlement_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    source: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    source_event_id: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    reported_status: Mapped[str] = mapped_column(String(64), nullable=False)
    canonical_status: Mapped[str] = mapped_column(String(16), nullable=False)

    candidate_reference: Mapped[Optional[str]] = mapped_column(String(128))
    owner: Mapped[Optional[str]] = mapped_column(String(128))
    amount: Mapped[Optional[str]] = mapped_column(String(64))

    diagnostics: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    raw_payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
