"""Write path: hashing, deduplication, auditing and batched persistence."""

from .audit_logger import AuditAction, AuditLogger, EntityType
from .content_hasher import FIELD_SEVERITY, ContentHasher
from .deduplication import (
    MERGE_STRATEGIES,
    BatchDeduplicationResult,
    DeduplicationEngine,
    MergeStrategy,
    merge_records,
)
from .writer import DatabaseWriter

__all__ = [
    "AuditAction",
    "AuditLogger",
    "BatchDeduplicationResult",
    "ContentHasher",
    "DatabaseWriter",
    "DeduplicationEngine",
    "EntityType",
    "FIELD_SEVERITY",
    "MERGE_STRATEGIES",
    "MergeStrategy",
    "merge_records",
]
