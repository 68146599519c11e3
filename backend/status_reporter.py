"""Read-only status snapshot and availability probes for one memory index."""

from pathlib import Path
from typing import Any, Dict, Optional

from change_tracker import ChangeTracker
from db.index_store import IndexStore
from embeddings.pipeline import EmbeddingPipeline
from embeddings.providers import ProviderSelection
from hybrid_search import HybridSearcher
from index_config import MemorySearchSettings


class StatusReporter:
    def __init__(
        self,
        store: IndexStore,
        pipeline: EmbeddingPipeline,
        tracker: ChangeTracker,
        searcher: HybridSearcher,
        selection: ProviderSelection,
        settings: MemorySearchSettings,
        workspace_dir: Path,
    ):
        self._store = store
        self._pipeline = pipeline
        self._tracker = tracker
        self._searcher = searcher
        self._selection = selection
        self._settings = settings
        self._workspace_dir = workspace_dir

    def _fallback_info(self) -> Optional[Dict[str, Any]]:
        if self._pipeline.switched:
            return {
                "from": self._pipeline.status().get("lastProvider"),
                "reason": self._pipeline.unavailable_reason,
            }
        if self._selection.fallback_from:
            return {"from": self._selection.fallback_from, "reason": self._selection.unavailable_reason}
        return None

    async def snapshot(self) -> Dict[str, Any]:
        source_counts = await self._store.count_by_source()
        meta = await self._store.get_meta()
        cache_entries = await self._store.cache_count() if self._settings.cache.enabled else 0
        provider = self._pipeline.provider
        return {
            "files": sum(item["files"] for item in source_counts),
            "chunks": sum(item["chunks"] for item in source_counts),
            "sourceCounts": source_counts,
            "dirty": self._tracker.is_dirty(),
            "lastSyncAt": await self._store.get_runtime_meta("last_sync_at"),
            "lastSyncReason": await self._store.get_runtime_meta("last_sync_reason"),
            "workspaceDir": str(self._workspace_dir),
            "dbPath": str(self._store.db_path),
            "provider": provider.id if provider is not None else None,
            "model": provider.model if provider is not None else None,
            "requestedProvider": self._selection.requested,
            "fallback": self._fallback_info(),
            "sources": list(self._settings.sources),
            "extraPaths": list(self._settings.extra_paths),
            "cache": {
                "enabled": self._settings.cache.enabled,
                "entries": cache_entries,
                "maxEntries": self._settings.cache.max_entries,
            },
            "fts": {
                "enabled": True,
                "available": self._store.fts_available,
                "error": self._store.fts_error,
            },
            "vector": {
                "enabled": self._store.vector_enabled,
                "available": self._store.vector_available,
                "error": self._store.vector_error,
                "dims": meta.vector_dims if meta is not None else None,
            },
            "batch": self._pipeline.status(),
            "custom": {
                "searchMode": self._searcher.search_mode,
                "providerUnavailableReason": self._pipeline.unavailable_reason,
            },
        }

    async def probe_vector_availability(self) -> bool:
        if not self._store.vector_enabled:
            return False
        return await self._store.probe_vector_table()

    async def probe_embedding_availability(self) -> Dict[str, Any]:
        return await self._pipeline.probe()
