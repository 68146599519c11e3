"""
In-memory dirty tracking for the memory index.

Change notifications (from the `watchfiles` watcher or from callers) go into a
bounded queue. One debounce task drains it, coalesces events by key within
the debounce window, then applies them as dirty marks. The tracker never
touches the store; after a flush it calls `on_dirty(reason)` and the manager
decides whether to sync.

Every mark carries a generation number. The sync engine takes a snapshot
before it starts and clears a mark only if its generation is unchanged, so a
change that lands mid-sync stays dirty for the next run.
Mark state is only mutated in code paths with no `await` in between.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Literal, Optional, Sequence, Union

from loguru import logger
from watchfiles import Change, awatch

from index_config import MemorySearchSettings
from path_policy import SESSION_SUFFIX, is_memory_path

SESSION_DELTA_READ_CHUNK_BYTES = 64 * 1024
DEFAULT_QUEUE_SIZE = 1024

ChangeKind = Literal["created", "modified", "deleted"]

_CHANGE_KINDS = {
    Change.added: "created",
    Change.modified: "modified",
    Change.deleted: "deleted",
}


@dataclass(frozen=True)
class FileChangeEvent:
    path: str
    kind: ChangeKind = "modified"


@dataclass(frozen=True)
class SessionGrowthEvent:
    session_key: str
    new_size: int


TrackerEvent = Union[FileChangeEvent, SessionGrowthEvent]


@dataclass
class SessionDelta:
    last_size: int = 0
    pending_bytes: int = 0
    pending_messages: int = 0


@dataclass(frozen=True)
class DirtySnapshot:
    full_generation: Optional[int]
    files: Dict[str, int] = field(default_factory=dict)
    sessions: Dict[str, int] = field(default_factory=dict)

    @property
    def full(self) -> bool:
        return self.full_generation is not None


def count_newlines(path: Path, start: int, end: int) -> int:
    if end <= start:
        return 0
    count = 0
    with open(path, "rb") as handle:
        handle.seek(start)
        remaining = end - start
        while remaining > 0:
            chunk = handle.read(min(SESSION_DELTA_READ_CHUNK_BYTES, remaining))
            if not chunk:
                break
            count += chunk.count(b"\n")
            remaining -= len(chunk)
    return count


def _event_key(event: TrackerEvent) -> str:
    if isinstance(event, FileChangeEvent):
        return f"file:{event.path}"
    return f"session:{event.session_key}"


class ChangeTracker:
    def __init__(
        self,
        settings: MemorySearchSettings,
        workspace_dir: Path,
        sessions_dir: Optional[Path],
        extra_roots: Sequence[Path] = (),
        *,
        on_dirty: Optional[Callable[[str], None]] = None,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._settings = settings
        self._workspace_dir = workspace_dir.resolve()
        self._sessions_dir = sessions_dir.resolve() if sessions_dir is not None else None
        self._extra_roots = [root.resolve() for root in extra_roots]
        self._on_dirty = on_dirty
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_size))

        self._generation = 0
        self._full_generation: Optional[int] = None
        self._dirty_files: Dict[str, int] = {}
        self._dirty_sessions: Dict[str, int] = {}
        self._session_deltas: Dict[str, SessionDelta] = {}

        self._debounce_task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Dirty state
    # ------------------------------------------------------------------

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _notify(self, reason: str) -> None:
        if self._on_dirty is not None:
            self._on_dirty(reason)

    def is_dirty(self) -> bool:
        return self.full_dirty or self.files_dirty or self.sessions_dirty

    @property
    def full_dirty(self) -> bool:
        return self._full_generation is not None

    @property
    def files_dirty(self) -> bool:
        return bool(self._dirty_files)

    @property
    def sessions_dirty(self) -> bool:
        return bool(self._dirty_sessions)

    def mark_full_dirty(self, reason: str = "full", *, notify: bool = True) -> None:
        self._full_generation = self._next_generation()
        logger.debug("memory index marked fully dirty", reason=reason)
        if notify:
            self._notify(reason)

    def mark_file_dirty(self, path: str) -> None:
        self._dirty_files[path] = self._next_generation()

    def mark_session_dirty(self, session_key: str) -> None:
        self._dirty_sessions[session_key] = self._next_generation()

    def snapshot(self) -> DirtySnapshot:
        return DirtySnapshot(
            full_generation=self._full_generation,
            files=dict(self._dirty_files),
            sessions=dict(self._dirty_sessions),
        )

    def clear_full(self, snapshot: DirtySnapshot) -> None:
        if snapshot.full and self._full_generation == snapshot.full_generation:
            self._full_generation = None

    def clear_file(self, path: str, snapshot: DirtySnapshot) -> None:
        generation = snapshot.files.get(path)
        if generation is not None and self._dirty_files.get(path) == generation:
            del self._dirty_files[path]

    def clear_session(self, session_key: str, snapshot: DirtySnapshot) -> None:
        generation = snapshot.sessions.get(session_key)
        if generation is not None and self._dirty_sessions.get(session_key) == generation:
            del self._dirty_sessions[session_key]

    def session_delta(self, session_key: str) -> SessionDelta:
        return self._session_deltas.setdefault(session_key, SessionDelta())

    def reset_session_delta(self, session_key: str, size: int) -> None:
        state = self.session_delta(session_key)
        state.last_size = size
        state.pending_bytes = 0
        state.pending_messages = 0

    def _session_threshold_hit(self, state: SessionDelta) -> bool:
        thresholds = self._settings.sync.sessions
        bytes_hit = state.pending_bytes > 0 if thresholds.delta_bytes <= 0 else state.pending_bytes >= thresholds.delta_bytes
        messages_hit = (
            state.pending_messages > 0
            if thresholds.delta_messages <= 0
            else state.pending_messages >= thresholds.delta_messages
        )
        return bytes_hit or messages_hit

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    def submit(self, event: TrackerEvent) -> bool:
        """Queue an event. A full queue degrades to a full-dirty mark."""
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            logger.warning("change queue overflow, falling back to full rescan")
            self.mark_full_dirty("overflow")
            return False

    async def _apply_events(self, events: Iterable[TrackerEvent]) -> None:
        reasons: List[str] = []
        for event in events:
            if isinstance(event, FileChangeEvent):
                self.mark_file_dirty(event.path)
                if "watch" not in reasons:
                    reasons.append("watch")
                continue
            if await self._apply_session_growth(event) and "session-delta" not in reasons:
                reasons.append("session-delta")
        for reason in reasons:
            self._notify(reason)

    async def _apply_session_growth(self, event: SessionGrowthEvent) -> bool:
        path = Path(event.session_key)
        wants_messages = self._settings.sync.sessions.delta_messages > 0
        start = self.session_delta(event.session_key).last_size
        truncated = event.new_size < start
        counted = 0
        if wants_messages:
            try:
                counted = await asyncio.to_thread(
                    count_newlines, path, 0 if truncated else start, event.new_size
                )
            except OSError:
                counted = 0

        state = self.session_delta(event.session_key)
        if truncated:
            state.last_size = event.new_size
            state.pending_bytes += event.new_size
            state.pending_messages += counted
        else:
            state.pending_bytes += max(0, event.new_size - state.last_size)
            if state.last_size == start:
                state.pending_messages += counted
            state.last_size = max(state.last_size, event.new_size)

        if not self._session_threshold_hit(state):
            return False
        self.mark_session_dirty(event.session_key)
        state.pending_bytes = 0
        state.pending_messages = 0
        return True

    async def _debounce_loop(self) -> None:
        loop = asyncio.get_running_loop()
        window = self._settings.sync.watch_debounce_ms / 1000.0
        while True:
            first = await self._queue.get()
            pending: Dict[str, TrackerEvent] = {_event_key(first): first}
            deadline = loop.time() + window
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    break
                pending[_event_key(event)] = event
            try:
                await self._apply_events(list(pending.values()))
            except Exception:
                logger.exception("failed to apply change events")

    async def flush(self) -> None:
        """Apply everything queued right now, skipping the debounce window."""
        pending: Dict[str, TrackerEvent] = {}
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            pending[_event_key(event)] = event
        if pending:
            await self._apply_events(list(pending.values()))

    # ------------------------------------------------------------------
    # Watcher
    # ------------------------------------------------------------------

    def classify(self, raw_path: str, kind: ChangeKind) -> Optional[TrackerEvent]:
        path = Path(raw_path)
        if self._sessions_dir is not None and path.name.endswith(SESSION_SUFFIX) and path.parent == self._sessions_dir:
            try:
                size = path.stat().st_size
            except OSError:
                size = 0
            return SessionGrowthEvent(session_key=str(path), new_size=size)
        if path.suffix.lower() != ".md":
            return None
        try:
            rel = path.relative_to(self._workspace_dir).as_posix()
            if is_memory_path(rel):
                return FileChangeEvent(path=str(path), kind=kind)
        except ValueError:
            pass
        for root in self._extra_roots:
            if path == root or root in path.parents:
                return FileChangeEvent(path=str(path), kind=kind)
        return None

    def _watch_roots(self) -> List[Path]:
        roots: List[Path] = []
        if "memory" in self._settings.sources:
            roots.append(self._workspace_dir)
            roots.extend(self._extra_roots)
        if "sessions" in self._settings.sources and self._sessions_dir is not None:
            roots.append(self._sessions_dir)
        unique: List[Path] = []
        for root in roots:
            if not root.exists():
                continue
            if any(root == kept or kept in root.parents for kept in unique):
                continue
            unique = [kept for kept in unique if root not in kept.parents]
            unique.append(root)
        return unique

    async def _watch_loop(self, roots: List[Path]) -> None:
        assert self._stop_event is not None
        async for changes in awatch(*roots, stop_event=self._stop_event):
            for change, raw_path in changes:
                event = self.classify(raw_path, _CHANGE_KINDS.get(change, "modified"))
                if event is not None:
                    self.submit(event)

    async def start(self, *, watch: bool = True) -> None:
        if self._debounce_task is None:
            self._debounce_task = asyncio.create_task(self._debounce_loop(), name="memory-index-debounce")
        if watch and self._watch_task is None:
            roots = self._watch_roots()
            if roots:
                self._stop_event = asyncio.Event()
                self._watch_task = asyncio.create_task(self._watch_loop(roots), name="memory-index-watch")
                logger.debug("watching memory paths", roots=[str(root) for root in roots])

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        for task in (self._watch_task, self._debounce_task):
            if task is None or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._watch_task = None
        self._debounce_task = None
