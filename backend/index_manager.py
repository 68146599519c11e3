"""
Memory index manager and the process-wide registry of managers.

A manager owns one store, one embedding pipeline, one change tracker and one
sync engine for an `(agent_id, workspace_dir, settings)` combination. The
registry hands out shared managers by that key and closes a manager when its
last holder releases it.
"""

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

import httpx
from loguru import logger

from change_tracker import ChangeTracker
from db.index_store import IndexStore
from embeddings.pipeline import EmbeddingPipeline
from embeddings.providers import EmbeddingProvider, ProviderSelection, create_provider, select_provider
from hybrid_search import HybridSearcher
from index_config import (
    MemorySearchSettings,
    build_settings,
    resolve_sessions_dir,
    resolve_store_path,
    settings_hash,
)
from index_errors import ManagerClosedError
from path_policy import read_text_range, resolve_extra_path, resolve_read_path
from status_reporter import StatusReporter
from sync_engine import ProgressCallback, SyncEngine, SyncReport

ManagerKey = Tuple[str, str, str]
SettingsInput = Union[MemorySearchSettings, Dict[str, Any], None]


def _coerce_settings(settings: SettingsInput) -> MemorySearchSettings:
    if isinstance(settings, MemorySearchSettings):
        return settings
    return build_settings(settings)


def manager_key(agent_id: str, workspace_dir: Path, settings: MemorySearchSettings) -> ManagerKey:
    return (agent_id, str(Path(workspace_dir).expanduser().resolve()), settings_hash(settings))


class MemoryIndexManager:
    def __init__(
        self,
        agent_id: str,
        workspace_dir: Path,
        settings: MemorySearchSettings,
        store: IndexStore,
        selection: ProviderSelection,
        *,
        provider_factory: Optional[Callable[[str], EmbeddingProvider]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.agent_id = agent_id
        self.workspace_dir = workspace_dir
        self.settings = settings
        self.key = manager_key(agent_id, workspace_dir, settings)

        self._store = store
        self._selection = selection
        self._closed = False
        self._close_lock = asyncio.Lock()
        self._background: Set[asyncio.Task] = set()
        self._interval_task: Optional[asyncio.Task] = None
        self._warmed_sessions: Set[str] = set()
        self._on_close: Optional[Callable[["MemoryIndexManager"], None]] = None

        sessions_dir: Optional[Path] = None
        if "sessions" in settings.sources:
            sessions_dir = resolve_sessions_dir(settings, workspace_dir, agent_id)
        extra_roots = [resolve_extra_path(extra, workspace_dir) for extra in settings.extra_paths]

        self.pipeline = EmbeddingPipeline(
            store,
            selection,
            settings,
            provider_factory=provider_factory,
            on_provider_change=self._on_provider_change,
            sleep=sleep,
        )
        self.tracker = ChangeTracker(
            settings,
            workspace_dir,
            sessions_dir,
            extra_roots,
            on_dirty=self._on_dirty,
        )
        self.engine = SyncEngine(store, self.pipeline, self.tracker, settings, workspace_dir, sessions_dir)
        self.searcher = HybridSearcher(store, self.pipeline, settings)
        self.reporter = StatusReporter(
            store, self.pipeline, self.tracker, self.searcher, selection, settings, workspace_dir
        )

    @classmethod
    async def create(
        cls,
        agent_id: str,
        workspace_dir: Union[str, Path],
        settings: SettingsInput = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> "MemoryIndexManager":
        """
        Build and start a manager. Invalid settings raise ConfigurationError
        before anything touches the filesystem.
        """
        resolved = _coerce_settings(settings)
        workspace = Path(workspace_dir).expanduser().resolve()
        selection = select_provider(resolved, transport=transport)
        store = await IndexStore.open_or_create(
            resolve_store_path(resolved, agent_id, workspace),
            vector_enabled=resolved.store.vector_enabled,
        )
        try:
            manager = cls(
                agent_id,
                workspace,
                resolved,
                store,
                selection,
                provider_factory=lambda name: create_provider(name, resolved, explicit=False, transport=transport),
                sleep=sleep,
            )
            await manager._start()
        except Exception:
            await store.close()
            raise
        return manager

    async def _start(self) -> None:
        # Nothing is known about the workspace yet; the first sync walks it all.
        self.tracker.mark_full_dirty("startup", notify=False)
        await self.tracker.start(watch=self.settings.sync.watch)
        if self.settings.sync.interval_minutes > 0:
            self._interval_task = asyncio.create_task(self._interval_loop(), name="memory-index-interval")
        logger.info(
            "memory index manager started",
            agent=self.agent_id,
            workspace=str(self.workspace_dir),
            provider=self.pipeline.provider.id if self.pipeline.provider else None,
            db=str(self._store.db_path),
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise ManagerClosedError(f"memory index manager for agent '{self.agent_id}' is closed")

    # ------------------------------------------------------------------
    # Background sync triggers
    # ------------------------------------------------------------------

    async def _sync_quietly(self, reason: str) -> None:
        try:
            await self.engine.sync(reason=reason)
        except Exception as exc:
            logger.warning(f"memory sync ({reason}) failed: {exc}")

    def _spawn_sync(self, reason: str) -> None:
        if self._closed:
            return
        task = asyncio.create_task(self._sync_quietly(reason), name=f"memory-index-sync-{reason}")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_dirty(self, reason: str) -> None:
        self._spawn_sync(reason)

    def _on_provider_change(self, provider: Optional[EmbeddingProvider], reason: str) -> None:
        # Stored vectors belong to the previous provider; the next sync rebuilds.
        self.tracker.mark_full_dirty("provider-switch", notify=False)

    async def _interval_loop(self) -> None:
        period = self.settings.sync.interval_minutes * 60.0
        while True:
            await asyncio.sleep(period)
            await self._sync_quietly("interval")

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def warm_session(self, session_key: Optional[str]) -> None:
        """Start one background sync the first time a session is seen."""
        if self._closed or not session_key or not self.settings.sync.on_session_start:
            return
        if session_key in self._warmed_sessions:
            return
        self._warmed_sessions.add(session_key)
        self._spawn_sync("session-start")

    async def search(
        self,
        query: str,
        max_results: Optional[int] = None,
        min_score: Optional[float] = None,
        session_key: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        self._ensure_open()
        self.warm_session(session_key)
        if self.settings.sync.on_search and self.tracker.is_dirty():
            self._spawn_sync("search")
        results = await self.searcher.search(query, max_results=max_results, min_score=min_score)
        return [result.as_dict() for result in results]

    async def read_file(
        self,
        rel_path: str,
        from_line: Optional[int] = None,
        lines: Optional[int] = None,
    ) -> Dict[str, Any]:
        self._ensure_open()
        resolved = resolve_read_path(self.workspace_dir, self.settings.extra_paths, rel_path)
        content = await asyncio.to_thread(read_text_range, resolved, from_line, lines)
        return {"text": content, "path": rel_path}

    async def sync(
        self,
        reason: str = "manual",
        force: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> SyncReport:
        self._ensure_open()
        await self.tracker.flush()
        return await self.engine.sync(reason=reason, force=force, progress=progress)

    async def status(self) -> Dict[str, Any]:
        self._ensure_open()
        snapshot = await self.reporter.snapshot()
        snapshot["syncState"] = self.engine.state
        report = self.engine.last_report
        snapshot["lastSync"] = report.as_dict() if report is not None else None
        return snapshot

    async def probe_vector_availability(self) -> bool:
        if self._closed:
            return False
        return await self.reporter.probe_vector_availability()

    async def probe_embedding_availability(self) -> Dict[str, Any]:
        self._ensure_open()
        return await self.reporter.probe_embedding_availability()

    async def close(self) -> None:
        """Stop background work and release the store. Safe to call repeatedly."""
        async with self._close_lock:
            if self._closed:
                return
            self._closed = True

            if self._interval_task is not None:
                self._interval_task.cancel()
                try:
                    await self._interval_task
                except asyncio.CancelledError:
                    pass
                except Exception as exc:
                    logger.warning(f"interval sync task ended with error: {exc}")
                self._interval_task = None

            try:
                await self.tracker.stop()
            except Exception as exc:
                logger.warning(f"failed to stop change tracker: {exc}")

            await self.engine.wait_idle()
            for task in list(self._background):
                task.cancel()
            if self._background:
                await asyncio.gather(*self._background, return_exceptions=True)

            try:
                await self._store.close()
            except Exception as exc:
                logger.warning(f"failed to close index store: {exc}")

            if self._on_close is not None:
                self._on_close(self)
            logger.info("memory index manager closed", agent=self.agent_id)


class ManagerRegistry:
    """Shared managers keyed by `(agent_id, workspace_dir, settings_hash)`, reference counted."""

    def __init__(self) -> None:
        self._guard = asyncio.Lock()
        self._managers: Dict[ManagerKey, MemoryIndexManager] = {}
        self._refcounts: Dict[ManagerKey, int] = {}

    def _forget(self, manager: MemoryIndexManager) -> None:
        if self._managers.get(manager.key) is manager:
            del self._managers[manager.key]
            self._refcounts.pop(manager.key, None)

    async def acquire(
        self,
        agent_id: str,
        workspace_dir: Union[str, Path],
        settings: SettingsInput = None,
        **kwargs: Any,
    ) -> MemoryIndexManager:
        resolved = _coerce_settings(settings)
        key = manager_key(agent_id, Path(workspace_dir), resolved)
        async with self._guard:
            manager = self._managers.get(key)
            if manager is None or manager.closed:
                manager = await MemoryIndexManager.create(agent_id, workspace_dir, resolved, **kwargs)
                manager._on_close = self._forget
                self._managers[key] = manager
                self._refcounts[key] = 0
            self._refcounts[key] += 1
            return manager

    async def release(self, manager: MemoryIndexManager) -> None:
        async with self._guard:
            if self._managers.get(manager.key) is not manager:
                return
            remaining = self._refcounts.get(manager.key, 0) - 1
            if remaining > 0:
                self._refcounts[manager.key] = remaining
                return
            self._refcounts[manager.key] = 0
        await manager.close()

    def refcount(self, manager: MemoryIndexManager) -> int:
        if self._managers.get(manager.key) is not manager:
            return 0
        return self._refcounts.get(manager.key, 0)

    def __len__(self) -> int:
        return len(self._managers)

    async def close_all(self) -> None:
        async with self._guard:
            managers = list(self._managers.values())
        for manager in managers:
            await manager.close()


manager_registry = ManagerRegistry()
