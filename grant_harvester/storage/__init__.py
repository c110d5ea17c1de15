"""Persistence layer exports."""

from .repository import (
    AuditEntry,
    GrantRepository,
    SourceRecord,
    SourceRepository,
    StoredGrant,
    TransactionContext,
)
from .source_repository import SQLiteSourceRepository
from .sqlite_manager import SQLiteManager, SQLiteTransaction
from .sqlite_repository import SQLiteGrantRepository

__all__ = [
    "AuditEntry",
    "GrantRepository",
    "SQLiteGrantRepository",
    "SQLiteManager",
    "SQLiteSourceRepository",
    "SQLiteTransaction",
    "SourceRecord",
    "SourceRepository",
    "StoredGrant",
    "TransactionContext",
]
