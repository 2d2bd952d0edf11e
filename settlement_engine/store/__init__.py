"""
Settlement Engine - Stores.

Settlement record persistence behind one interface.
"""

from .base import (
    SettlementStore,
    RecordUpdate,
    UnmatchedEventEntry,
    append_seen,
)
from .memory import InMemorySettlementStore
from .sqlalchemy_store import SqlAlchemySettlementStore, create_store_engine
from .models import Base, SettlementRecordModel, UnmatchedEventModel


def create_store(config) -> SettlementStore:
    """
    Create the store a configuration asks for.

    Args:
        config: SettlementEngineConfig

    Returns:
        SettlementStore
    """
    if config.use_memory_store:
        return InMemorySettlementStore()
    return SqlAlchemySettlementStore(config.database)


__all__ = [
    "SettlementStore",
    "RecordUpdate",
    "UnmatchedEventEntry",
    "append_seen",
    "InMemorySettlementStore",
    "SqlAlchemySettlementStore",
    "create_store_engine",
    "Base",
    "SettlementRecordModel",
    "UnmatchedEventModel",
    "create_store",
]
