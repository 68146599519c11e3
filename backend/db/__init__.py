from .index_store import (
    ChunkHit,
    ChunkRecord,
    FileRecord,
    IndexMetaRecord,
    IndexStore,
    StoredFile,
)
from .migration_runner import MigrationRunner, apply_pending_migrations

__all__ = [
    "ChunkHit",
    "ChunkRecord",
    "FileRecord",
    "IndexMetaRecord",
    "IndexStore",
    "StoredFile",
    "MigrationRunner",
    "apply_pending_migrations",
]
