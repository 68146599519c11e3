import asyncio
import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, List, Optional

import pytest

from change_tracker import ChangeTracker
from db.index_store import IndexStore
from embeddings.pipeline import EmbeddingPipeline
from embeddings.providers import LocalHashEmbeddingProvider, ProviderSelection
from index_config import build_settings
from sync_engine import SyncEngine, parse_session_lines


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _message(role: str, text: Any) -> str:
    return json.dumps({"type": "message", "message": {"role": role, "content": text}}) + "\n"


async def _no_sleep(_: float) -> None:
    return None


class _FlakyProvider(LocalHashEmbeddingProvider):
    """Local embedder that crashes on texts containing `broken_marker`."""

    def __init__(self, dims: int = 16):
        super().__init__(dims=dims)
        self.broken_marker: Optional[str] = None
        self.calls = 0

    async def embed(self, texts):
        self.calls += 1
        if self.broken_marker and any(self.broken_marker in text for text in texts):
            raise RuntimeError("local model crashed")
        return await super().embed(texts)


@asynccontextmanager
async def _engine(
    tmp_path: Path,
    *,
    dims: int = 16,
    store: Optional[IndexStore] = None,
    provider: Optional[LocalHashEmbeddingProvider] = None,
    **raw: Any,
):
    raw.setdefault("provider", "local")
    settings = build_settings(raw)
    own_store = store is None
    if store is None:
        store = await IndexStore.open_or_create(tmp_path / "index.sqlite")
    provider = provider or LocalHashEmbeddingProvider(dims=dims)
    pipeline = EmbeddingPipeline(
        store, ProviderSelection(requested="local", provider=provider), settings, sleep=_no_sleep
    )
    workspace = tmp_path / "ws"
    workspace.mkdir(exist_ok=True)
    sessions_dir = tmp_path / "sessions" if "sessions" in settings.sources else None
    tracker = ChangeTracker(settings, workspace, sessions_dir)
    engine = SyncEngine(store, pipeline, tracker, settings, workspace, sessions_dir)
    try:
        yield engine, tracker, store, workspace
    finally:
        if own_store:
            await store.close()


@pytest.mark.asyncio
async def test_first_sync_is_full_and_records_dims(tmp_path: Path) -> None:
    async with _engine(tmp_path) as (engine, tracker, store, workspace):
        _write(workspace / "memory" / "notes.md", "first paragraph\n\nsecond paragraph")
        _write(workspace / "MEMORY.md", "root memory")

        report = await engine.sync(reason="test")

        assert report.full is True
        assert sorted(report.indexed) == ["MEMORY.md", "memory/notes.md"]
        meta = await store.get_meta()
        assert meta.vector_dims == 16
        assert meta.provider_key == LocalHashEmbeddingProvider(dims=16).key
        rows = await store.list_chunks("memory/notes.md", "memory")
        assert [(row["start_line"], row["end_line"]) for row in rows] == [(1, 1), (3, 3)]
        assert engine.last_report is report
        assert await store.get_runtime_meta("last_sync_reason") == "test"


@pytest.mark.asyncio
async def test_unchanged_files_are_skipped(tmp_path: Path) -> None:
    async with _engine(tmp_path) as (engine, tracker, store, workspace):
        _write(workspace / "memory" / "notes.md", "stable content")
        await engine.sync()

        idle = await engine.sync()
        assert idle.full is False
        assert idle.indexed == [] and idle.skipped == []

        forced = await engine.sync(force=True)
        assert forced.full is True
        assert forced.indexed == []
        assert forced.skipped == ["memory/notes.md"]


@pytest.mark.asyncio
async def test_dirty_file_is_reindexed_and_deleted_file_removed(tmp_path: Path) -> None:
    async with _engine(tmp_path) as (engine, tracker, store, workspace):
        notes = _write(workspace / "memory" / "notes.md", "old text")
        other = _write(workspace / "memory" / "other.md", "keep me")
        await engine.sync()

        _write(notes, "new text")
        tracker.mark_file_dirty(str(notes))
        report = await engine.sync(reason="watch")
        assert report.indexed == ["memory/notes.md"]
        assert [row["text"] for row in await store.list_chunks("memory/notes.md", "memory")] == ["new text"]
        assert tracker.files_dirty is False

        other.unlink()
        tracker.mark_file_dirty(str(other))
        report = await engine.sync(reason="watch")
        assert report.removed == ["memory/other.md"]
        assert await store.get_file("memory/other.md", "memory") is None


@pytest.mark.asyncio
async def test_full_sync_prunes_files_that_disappeared(tmp_path: Path) -> None:
    async with _engine(tmp_path) as (engine, tracker, store, workspace):
        gone = _write(workspace / "memory" / "gone.md", "temporary")
        await engine.sync()
        gone.unlink()

        report = await engine.sync(force=True)
        assert report.removed == ["memory/gone.md"]
        assert await store.list_file_paths("memory") == []


@pytest.mark.asyncio
async def test_session_log_is_appended_and_reindexed_on_truncation(tmp_path: Path) -> None:
    async with _engine(tmp_path, sources=["memory", "sessions"]) as (engine, tracker, store, workspace):
        log = _write(
            tmp_path / "sessions" / "s1.jsonl",
            _message("user", "hello there") + _message("assistant", [{"type": "text", "text": "hi\n  friend"}]),
        )
        report = await engine.sync()
        assert report.indexed == ["sessions/s1.jsonl"]
        rows = await store.list_chunks("sessions/s1.jsonl", "sessions")
        assert [(r["start_line"], r["end_line"], r["text"]) for r in rows] == [
            (1, 2, "User: hello there\nAssistant: hi friend")
        ]

        with open(log, "a", encoding="utf-8") as handle:
            handle.write(_message("user", "one more question"))
            handle.write('{"type": "message", "message": {"role": "user"')
        tracker.mark_session_dirty(str(log))
        await engine.sync(reason="session-delta")
        rows = await store.list_chunks("sessions/s1.jsonl", "sessions")
        assert [(r["start_line"], r["end_line"]) for r in rows] == [(1, 2), (3, 3)]
        stored = await store.get_file("sessions/s1.jsonl", "sessions")
        assert stored.size < log.stat().st_size

        _write(log, _message("user", "fresh start"))
        tracker.mark_session_dirty(str(log))
        await engine.sync(reason="session-delta")
        rows = await store.list_chunks("sessions/s1.jsonl", "sessions")
        assert [(r["start_line"], r["text"]) for r in rows] == [(1, "User: fresh start")]


@pytest.mark.asyncio
async def test_provider_change_resets_index(tmp_path: Path) -> None:
    store = await IndexStore.open_or_create(tmp_path / "index.sqlite")
    try:
        async with _engine(tmp_path, dims=16, store=store) as (engine, tracker, _, workspace):
            _write(workspace / "memory" / "notes.md", "alpha\n\nbeta")
            first = await engine.sync()
            assert first.reset is False

        async with _engine(tmp_path, dims=32, store=store) as (engine, tracker, _, workspace):
            second = await engine.sync()
            assert second.reset is True
            assert second.indexed == ["memory/notes.md"]
            assert (await store.get_meta()).vector_dims == 32
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_concurrent_syncs_share_one_run(tmp_path: Path) -> None:
    async with _engine(tmp_path) as (engine, tracker, store, workspace):
        _write(workspace / "memory" / "notes.md", "content")
        first, second = await asyncio.gather(engine.sync(reason="a"), engine.sync(reason="b"))
        assert first is second
        assert first.reason == "a"
        assert engine.state == "idle"


@pytest.mark.asyncio
async def test_progress_reports_each_file(tmp_path: Path) -> None:
    async with _engine(tmp_path) as (engine, tracker, store, workspace):
        _write(workspace / "memory" / "a.md", "a")
        _write(workspace / "memory" / "b.md", "b")
        seen: List[Any] = []

        def progress(update) -> None:
            seen.append(update)
            raise RuntimeError("callback errors are ignored")

        report = await engine.sync(progress=progress)

        assert len(report.indexed) == 2
        assert [update.completed for update in seen] == [1, 2]
        assert all(update.total == 2 for update in seen)


@pytest.mark.asyncio
async def test_failed_embedding_keeps_file_dirty_while_others_commit(tmp_path: Path) -> None:
    provider = _FlakyProvider()
    provider.broken_marker = "poison"
    async with _engine(tmp_path, provider=provider) as (engine, tracker, store, workspace):
        _write(workspace / "memory" / "a.md", "healthy notes about deploys")
        _write(workspace / "memory" / "b.md", "poison pill paragraph")

        first = await engine.sync()

        assert first.indexed == ["memory/a.md"]
        assert "local model crashed" in first.failed["memory/b.md"]
        assert await store.get_file("memory/b.md", "memory") is None
        assert await store.list_chunks("memory/b.md", "memory") == []
        assert tracker.files_dirty is True

        provider.broken_marker = None
        second = await engine.sync(reason="retry")

        assert second.indexed == ["memory/b.md"]
        assert second.failed == {}
        assert tracker.is_dirty() is False
        rows = await store.list_chunks("memory/b.md", "memory")
        assert [row["model"] for row in rows] == [provider.key]
        query = (await provider.embed(["poison pill paragraph"]))[0]
        hits = await store.search_vector(query, 5, ["memory"], model=provider.key)
        assert hits[0].path == "memory/b.md"


@pytest.mark.asyncio
async def test_failed_session_embedding_is_retried_from_same_offset(tmp_path: Path) -> None:
    provider = _FlakyProvider()
    provider.broken_marker = "poison"
    async with _engine(tmp_path, provider=provider, sources=["memory", "sessions"]) as (
        engine,
        tracker,
        store,
        workspace,
    ):
        _write(tmp_path / "sessions" / "s1.jsonl", _message("user", "poison question"))

        first = await engine.sync()
        assert "sessions/s1.jsonl" in first.failed
        assert await store.get_file("sessions/s1.jsonl", "sessions") is None
        assert tracker.sessions_dirty is True

        provider.broken_marker = None
        second = await engine.sync(reason="retry")
        assert second.indexed == ["sessions/s1.jsonl"]
        rows = await store.list_chunks("sessions/s1.jsonl", "sessions")
        assert [(r["start_line"], r["text"]) for r in rows] == [(1, "User: poison question")]


@pytest.mark.asyncio
async def test_mtime_only_touch_does_not_rechunk_or_embed(tmp_path: Path) -> None:
    provider = _FlakyProvider()
    async with _engine(tmp_path, provider=provider, cache={"enabled": False}) as (engine, tracker, store, workspace):
        notes = _write(workspace / "memory" / "notes.md", "unchanged body")
        await engine.sync()
        before = await store.list_chunks("memory/notes.md", "memory")
        calls = provider.calls

        stat = notes.stat()
        os.utime(notes, (stat.st_atime, stat.st_mtime + 120))
        tracker.mark_file_dirty(str(notes))
        report = await engine.sync(reason="touch")

        assert report.indexed == []
        assert report.skipped == ["memory/notes.md"]
        assert provider.calls == calls
        assert await store.list_chunks("memory/notes.md", "memory") == before
        stored = await store.get_file("memory/notes.md", "memory")
        assert stored.mtime == pytest.approx(stat.st_mtime + 120)


def test_parse_session_lines_skips_noise() -> None:
    raw = "\n".join(
        [
            "not json",
            json.dumps({"type": "event"}),
            json.dumps({"type": "message", "message": {"role": "system", "content": "x"}}),
            json.dumps({"type": "message", "message": {"role": "user", "content": "  spaced\n\nout  "}}),
            json.dumps({"type": "message", "message": {"role": "assistant", "content": [{"type": "image"}]}}),
        ]
    )
    assert parse_session_lines(raw) == ["User: spaced out"]
