"""
Incremental sync of memory files and session logs into the index store.

One physical sync runs at a time per manager. A `sync()` call that arrives
while one is running attaches to the same task instead of starting another.

Memory files are fingerprinted with sha256 and only re-chunked when the hash
changes. Session logs are append-only: each sync reads only the bytes past the
offset recorded on the file row, up to the last complete line, and appends
chunks whose line numbers continue from the previous ones.
"""

import asyncio
import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from change_tracker import ChangeTracker, DirtySnapshot
from chunker import chunk_text, hash_text
from db.index_store import INDEX_SCHEMA_VERSION, FileRecord, IndexMetaRecord, IndexStore
from embeddings.pipeline import EmbeddingPipeline
from index_config import MemorySearchSettings
from index_errors import EmbeddingBatchError
from path_policy import (
    MemoryFileEntry,
    list_memory_files,
    list_session_files,
    session_path_for,
    stored_path_for,
)

SOURCE_MEMORY = "memory"
SOURCE_SESSIONS = "sessions"


@dataclass(frozen=True)
class SyncProgress:
    completed: int
    total: int
    label: str


ProgressCallback = Callable[[SyncProgress], None]


@dataclass
class SyncReport:
    reason: str
    full: bool = False
    reset: bool = False
    indexed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    started_at: str = ""
    finished_at: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "full": self.full,
            "reset": self.reset,
            "indexed": list(self.indexed),
            "skipped": list(self.skipped),
            "removed": list(self.removed),
            "failed": dict(self.failed),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Session transcripts
# ---------------------------------------------------------------------------


def normalize_session_text(value: str) -> str:
    value = re.sub(r"\s*\n+\s*", " ", value)
    value = re.sub(r"\s+", " ", value)
    return value.strip()


def extract_session_text(content: Any) -> Optional[str]:
    if isinstance(content, str):
        normalized = normalize_session_text(content)
        return normalized or None
    if not isinstance(content, list):
        return None
    parts: List[str] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        block_text = block.get("text")
        if isinstance(block_text, str):
            normalized = normalize_session_text(block_text)
            if normalized:
                parts.append(normalized)
    return " ".join(parts) if parts else None


def parse_session_lines(raw: str) -> List[str]:
    """Turn JSONL records into `User: ...` / `Assistant: ...` transcript lines."""
    collected: List[str] = []
    for line in raw.split("\n"):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(record, dict) or record.get("type") != "message":
            continue
        message = record.get("message")
        if not isinstance(message, dict):
            continue
        role = message.get("role")
        if role not in ("user", "assistant"):
            continue
        message_text = extract_session_text(message.get("content"))
        if not message_text:
            continue
        label = "User" if role == "user" else "Assistant"
        collected.append(f"{label}: {message_text}")
    return collected


def _read_memory_file(path: Path) -> Tuple[str, float, int]:
    stat = path.stat()
    return path.read_text(encoding="utf-8"), stat.st_mtime, stat.st_size


def _read_byte_range(path: Path, start: int, end: int) -> bytes:
    with open(path, "rb") as handle:
        handle.seek(start)
        return handle.read(max(0, end - start))


class SyncEngine:
    def __init__(
        self,
        store: IndexStore,
        pipeline: EmbeddingPipeline,
        tracker: ChangeTracker,
        settings: MemorySearchSettings,
        workspace_dir: Path,
        sessions_dir: Optional[Path],
    ):
        self._store = store
        self._pipeline = pipeline
        self._tracker = tracker
        self._settings = settings
        self._workspace_dir = workspace_dir
        self._sessions_dir = sessions_dir
        self._running: Optional[asyncio.Task] = None
        self._last_report: Optional[SyncReport] = None

    @property
    def state(self) -> str:
        return "running" if self._running is not None and not self._running.done() else "idle"

    @property
    def last_report(self) -> Optional[SyncReport]:
        return self._last_report

    async def sync(
        self,
        reason: str = "manual",
        force: bool = False,
        progress: Optional[ProgressCallback] = None,
    ) -> SyncReport:
        """
        Run a sync, or join the one already running.

        A caller that joins keeps the running sync's reason and force flag.
        Cancelling the caller does not cancel the shared sync.
        """
        task = self._running
        if task is None or task.done():
            task = asyncio.create_task(self._run(reason, force, progress), name="memory-index-sync")
            task.add_done_callback(self._on_done)
            self._running = task
        return await asyncio.shield(task)

    def _on_done(self, task: asyncio.Task) -> None:
        if self._running is task:
            self._running = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug("memory sync task finished with error", error=str(task.exception()))

    async def wait_idle(self) -> None:
        """Wait for an in-flight sync; its error is logged, not raised."""
        task = self._running
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except Exception as exc:
            logger.warning(f"memory sync failed while closing: {exc}")

    def _emit(self, progress: Optional[ProgressCallback], completed: int, total: int, label: str) -> None:
        if progress is None:
            return
        try:
            progress(SyncProgress(completed=completed, total=total, label=label))
        except Exception:
            logger.exception("sync progress callback failed")

    async def _run(self, reason: str, force: bool, progress: Optional[ProgressCallback]) -> SyncReport:
        report = SyncReport(reason=reason, started_at=_utc_iso_now())
        snapshot = self._tracker.snapshot()
        provider_key = self._pipeline.provider_key or ""

        meta = await self._store.get_meta()
        fresh = meta is None
        identity_changed = meta is not None and (
            meta.schema_version != INDEX_SCHEMA_VERSION or (meta.provider_key or "") != provider_key
        )
        if identity_changed:
            logger.info(
                "index identity changed, rebuilding",
                previous=meta.provider_key if meta else None,
                current=provider_key,
            )
            await self._store.reset_index()
            report.reset = True
        if meta is None or identity_changed:
            meta = IndexMetaRecord(schema_version=INDEX_SCHEMA_VERSION, vector_dims=None, provider_key=provider_key)
            await self._store.set_meta(meta)

        full = force or fresh or report.reset or snapshot.full
        report.full = full
        observed_dims: List[int] = []

        sources = self._settings.sources
        if SOURCE_MEMORY in sources and (full or snapshot.files):
            await self._sync_memory(full, snapshot, report, progress, observed_dims)
        if SOURCE_SESSIONS in sources and self._sessions_dir is not None and (full or snapshot.sessions):
            await self._sync_sessions(full, snapshot, report, progress, observed_dims)

        if full:
            self._tracker.clear_full(snapshot)

        await self._reconcile_dims(meta, observed_dims)

        report.finished_at = _utc_iso_now()
        await self._store.set_runtime_meta("last_sync_at", report.finished_at)
        await self._store.set_runtime_meta("last_sync_reason", reason)
        self._last_report = report
        logger.info(
            "memory sync finished",
            reason=reason,
            full=full,
            indexed=len(report.indexed),
            skipped=len(report.skipped),
            removed=len(report.removed),
            failed=len(report.failed),
        )
        return report

    async def _reconcile_dims(self, meta: IndexMetaRecord, observed_dims: Sequence[int]) -> None:
        if not observed_dims:
            return
        dims = observed_dims[0]
        if meta.vector_dims is None:
            await self._store.set_meta(
                IndexMetaRecord(schema_version=meta.schema_version, vector_dims=dims, provider_key=meta.provider_key)
            )
            return
        if any(value != meta.vector_dims for value in observed_dims):
            # Vectors of different widths cannot share an index.
            logger.warning("embedding dimensions changed, scheduling full rebuild", stored=meta.vector_dims, seen=dims)
            await self._store.reset_index()
            await self._store.set_meta(
                IndexMetaRecord(schema_version=meta.schema_version, vector_dims=None, provider_key=meta.provider_key)
            )
            self._tracker.mark_full_dirty("dims-changed")

    async def _embed_and_write(
        self,
        record: FileRecord,
        chunks,
        observed_dims: List[int],
        *,
        append: bool,
    ) -> None:
        result = await self._pipeline.embed_batch([chunk.text for chunk in chunks])
        if result.provider_key is not None and any(vector is None for vector in result.vectors):
            # A unit with missing vectors is not committed and stays dirty.
            raise EmbeddingBatchError(f"embedding failed for {record.path}", provider=result.provider_key)
        for vector in result.vectors:
            if vector:
                observed_dims.append(len(vector))
                break
        await self._store.write_file_index(
            record,
            chunks,
            result.vectors if chunks else [],
            model=result.provider_key or "",
            append=append,
        )

    # ------------------------------------------------------------------
    # Memory files
    # ------------------------------------------------------------------

    async def _sync_memory(
        self,
        full: bool,
        snapshot: DirtySnapshot,
        report: SyncReport,
        progress: Optional[ProgressCallback],
        observed_dims: List[int],
    ) -> None:
        entries = await asyncio.to_thread(list_memory_files, self._workspace_dir, self._settings.extra_paths)
        by_abs = {str(entry.abs_path): entry for entry in entries}

        targets: List[Tuple[Optional[str], MemoryFileEntry]] = []
        if full:
            dirty_by_abs = {str(Path(key).resolve()): key for key in snapshot.files}
            targets = [(dirty_by_abs.get(str(entry.abs_path)), entry) for entry in entries]
        else:
            for key in snapshot.files:
                entry = by_abs.get(str(Path(key).resolve()))
                if entry is not None:
                    targets.append((key, entry))
                    continue
                stored = stored_path_for(Path(key), self._workspace_dir)
                try:
                    if await self._store.delete_file(stored, SOURCE_MEMORY):
                        report.removed.append(stored)
                    self._tracker.clear_file(key, snapshot)
                except Exception as exc:
                    report.failed[stored] = str(exc)
                    logger.warning(f"failed to remove memory file {stored}: {exc}")

        total = len(targets)
        completed = 0
        semaphore = asyncio.Semaphore(self._settings.sync.index_concurrency)

        async def run(dirty_key: Optional[str], entry: MemoryFileEntry) -> None:
            nonlocal completed
            async with semaphore:
                try:
                    changed = await self._index_memory_file(entry, observed_dims)
                except Exception as exc:
                    report.failed[entry.path] = str(exc)
                    logger.warning(f"failed to index memory file {entry.path}: {exc}")
                    if dirty_key is None:
                        self._tracker.mark_file_dirty(str(entry.abs_path))
                else:
                    (report.indexed if changed else report.skipped).append(entry.path)
                    if dirty_key is not None:
                        self._tracker.clear_file(dirty_key, snapshot)
                completed += 1
                self._emit(progress, completed, total, f"memory: {entry.path}")

        await asyncio.gather(*(run(key, entry) for key, entry in targets))

        if full:
            present = {entry.path for entry in entries}
            for stale in await self._store.list_file_paths(SOURCE_MEMORY):
                if stale in present:
                    continue
                await self._store.delete_file(stale, SOURCE_MEMORY)
                report.removed.append(stale)

    async def _index_memory_file(self, entry: MemoryFileEntry, observed_dims: List[int]) -> bool:
        """Index one memory file. Returns False when its content was unchanged."""
        content, mtime, size = await asyncio.to_thread(_read_memory_file, entry.abs_path)
        record = FileRecord(path=entry.path, source=SOURCE_MEMORY, hash=hash_text(content), mtime=mtime, size=size)
        stored = await self._store.get_file(entry.path, SOURCE_MEMORY)
        if stored is not None and stored.hash == record.hash:
            if stored.mtime != record.mtime or stored.size != record.size:
                await self._store.touch_file(record)
            return False

        chunks = chunk_text(content, self._settings.chunking.tokens, self._settings.chunking.overlap)
        await self._embed_and_write(record, chunks, observed_dims, append=False)
        return True

    # ------------------------------------------------------------------
    # Session logs
    # ------------------------------------------------------------------

    async def _sync_sessions(
        self,
        full: bool,
        snapshot: DirtySnapshot,
        report: SyncReport,
        progress: Optional[ProgressCallback],
        observed_dims: List[int],
    ) -> None:
        assert self._sessions_dir is not None
        present = await asyncio.to_thread(list_session_files, self._sessions_dir)
        if full:
            targets = [(str(path) if str(path) in snapshot.sessions else None, path) for path in present]
        else:
            targets = [(key, Path(key)) for key in snapshot.sessions]

        total = len(targets)
        for completed, (dirty_key, path) in enumerate(targets, start=1):
            stored_path = session_path_for(path)
            try:
                outcome = await self._index_session_file(path, observed_dims)
            except Exception as exc:
                report.failed[stored_path] = str(exc)
                logger.warning(f"failed to index session log {stored_path}: {exc}")
                if dirty_key is None:
                    self._tracker.mark_session_dirty(str(path))
            else:
                {"indexed": report.indexed, "skipped": report.skipped, "removed": report.removed}[outcome].append(
                    stored_path
                )
                if dirty_key is not None:
                    self._tracker.clear_session(dirty_key, snapshot)
            self._emit(progress, completed, total, f"sessions: {stored_path}")

        if full:
            names = {session_path_for(path) for path in present}
            for stale in await self._store.list_file_paths(SOURCE_SESSIONS):
                if stale in names:
                    continue
                await self._store.delete_file(stale, SOURCE_SESSIONS)
                report.removed.append(stale)

    async def _index_session_file(self, path: Path, observed_dims: List[int]) -> str:
        stored_path = session_path_for(path)
        try:
            stat = await asyncio.to_thread(path.stat)
        except FileNotFoundError:
            await self._store.delete_file(stored_path, SOURCE_SESSIONS)
            self._tracker.reset_session_delta(str(path), 0)
            return "removed"

        size = stat.st_size
        stored = await self._store.get_file(stored_path, SOURCE_SESSIONS)
        offset = stored.size if stored is not None else 0
        rolling = stored.hash if stored is not None else ""
        truncated = stored is not None and size < offset
        if truncated:
            logger.info("session log truncated, reindexing from start", path=stored_path)
            offset = 0
            rolling = ""

        if size == offset:
            self._tracker.reset_session_delta(str(path), size)
            return "skipped"

        raw = await asyncio.to_thread(_read_byte_range, path, offset, size)
        cut = raw.rfind(b"\n")
        if cut < 0:
            # No complete line yet.
            return "skipped"
        consumed = raw[: cut + 1]
        new_offset = offset + cut + 1
        new_hash = hashlib.sha256((rolling + hash_text(consumed.decode("utf-8", errors="replace"))).encode("utf-8")).hexdigest()

        append = stored is not None and not truncated
        line_offset = await self._store.max_end_line(stored.id) if append else 0
        lines = parse_session_lines(consumed.decode("utf-8", errors="replace"))
        chunks = (
            chunk_text(
                "\n".join(lines),
                self._settings.chunking.tokens,
                self._settings.chunking.overlap,
                line_offset=line_offset,
            )
            if lines
            else []
        )
        record = FileRecord(path=stored_path, source=SOURCE_SESSIONS, hash=new_hash, mtime=stat.st_mtime, size=new_offset)
        await self._embed_and_write(record, chunks, observed_dims, append=append)
        self._tracker.reset_session_delta(str(path), size)
        return "indexed"
