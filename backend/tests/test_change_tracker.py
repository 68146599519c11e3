import asyncio
from pathlib import Path
from typing import List

import pytest

from change_tracker import (
    ChangeTracker,
    FileChangeEvent,
    SessionGrowthEvent,
    count_newlines,
)
from index_config import build_settings


def _tracker(tmp_path: Path, reasons: List[str], **sync_overrides) -> ChangeTracker:
    sync = {"watch_debounce_ms": 10, "sessions": {"delta_bytes": 10, "delta_messages": 0}}
    sync.update(sync_overrides)
    settings = build_settings({"sources": ["memory", "sessions"], "sync": sync})
    sessions_dir = tmp_path / "sessions"
    sessions_dir.mkdir(exist_ok=True)
    return ChangeTracker(settings, tmp_path, sessions_dir, on_dirty=reasons.append)


def test_clear_keeps_marks_that_changed_after_snapshot(tmp_path: Path) -> None:
    tracker = _tracker(tmp_path, [])
    tracker.mark_file_dirty("memory/a.md")
    tracker.mark_full_dirty("startup", notify=False)
    snapshot = tracker.snapshot()

    tracker.mark_file_dirty("memory/a.md")
    tracker.clear_file("memory/a.md", snapshot)
    tracker.clear_full(snapshot)

    assert tracker.files_dirty is True
    assert tracker.full_dirty is False

    tracker.clear_file("memory/a.md", tracker.snapshot())
    assert tracker.is_dirty() is False


def test_mark_full_dirty_notifies_unless_suppressed(tmp_path: Path) -> None:
    reasons: List[str] = []
    tracker = _tracker(tmp_path, reasons)
    tracker.mark_full_dirty("startup", notify=False)
    tracker.mark_full_dirty("provider-switch")
    assert reasons == ["provider-switch"]


@pytest.mark.asyncio
async def test_flush_coalesces_events_per_path(tmp_path: Path) -> None:
    reasons: List[str] = []
    tracker = _tracker(tmp_path, reasons)
    path = str(tmp_path / "memory" / "a.md")

    tracker.submit(FileChangeEvent(path=path, kind="created"))
    tracker.submit(FileChangeEvent(path=path, kind="modified"))
    await tracker.flush()

    assert tracker.snapshot().files.keys() == {path}
    assert reasons == ["watch"]


def test_queue_overflow_degrades_to_full_dirty(tmp_path: Path) -> None:
    reasons: List[str] = []
    settings = build_settings()
    tracker = ChangeTracker(settings, tmp_path, None, on_dirty=reasons.append, queue_size=1)

    assert tracker.submit(FileChangeEvent(path="a")) is True
    assert tracker.submit(FileChangeEvent(path="b")) is False
    assert tracker.full_dirty is True
    assert reasons == ["overflow"]


@pytest.mark.asyncio
async def test_session_growth_marks_dirty_only_past_threshold(tmp_path: Path) -> None:
    reasons: List[str] = []
    tracker = _tracker(tmp_path, reasons)
    log = tmp_path / "sessions" / "s1.jsonl"
    key = str(log)

    log.write_bytes(b"12345")
    tracker.submit(SessionGrowthEvent(session_key=key, new_size=5))
    await tracker.flush()
    assert tracker.sessions_dirty is False
    assert tracker.session_delta(key).pending_bytes == 5

    log.write_bytes(b"123456789012")
    tracker.submit(SessionGrowthEvent(session_key=key, new_size=12))
    await tracker.flush()
    assert tracker.sessions_dirty is True
    assert reasons == ["session-delta"]
    assert tracker.session_delta(key).pending_bytes == 0
    assert tracker.session_delta(key).last_size == 12


@pytest.mark.asyncio
async def test_session_message_threshold_counts_new_lines(tmp_path: Path) -> None:
    reasons: List[str] = []
    tracker = _tracker(tmp_path, reasons, sessions={"delta_bytes": 1_000_000, "delta_messages": 2})
    log = tmp_path / "sessions" / "s1.jsonl"
    key = str(log)

    log.write_bytes(b'{"a":1}\n')
    tracker.submit(SessionGrowthEvent(session_key=key, new_size=log.stat().st_size))
    await tracker.flush()
    assert tracker.sessions_dirty is False

    log.write_bytes(b'{"a":1}\n{"b":2}\n')
    tracker.submit(SessionGrowthEvent(session_key=key, new_size=log.stat().st_size))
    await tracker.flush()
    assert tracker.sessions_dirty is True


def test_count_newlines_reads_only_the_range(tmp_path: Path) -> None:
    path = tmp_path / "log.jsonl"
    path.write_bytes(b"a\nb\nc\n")
    assert count_newlines(path, 0, 6) == 3
    assert count_newlines(path, 2, 6) == 2
    assert count_newlines(path, 4, 4) == 0


def test_classify_routes_memory_and_session_paths(tmp_path: Path) -> None:
    root = tmp_path.resolve()
    tracker = _tracker(root, [])
    (root / "sessions" / "s.jsonl").write_text("{}\n", encoding="utf-8")

    memory_event = tracker.classify(str(root / "memory" / "a.md"), "created")
    assert memory_event == FileChangeEvent(path=str(root / "memory" / "a.md"), kind="created")
    assert tracker.classify(str(root / "MEMORY.md"), "modified") is not None
    assert tracker.classify(str(root / "docs" / "a.md"), "modified") is None
    assert tracker.classify(str(root / "memory" / "a.txt"), "modified") is None

    session_event = tracker.classify(str(root / "sessions" / "s.jsonl"), "modified")
    assert isinstance(session_event, SessionGrowthEvent)
    assert session_event.new_size == 3


@pytest.mark.asyncio
async def test_debounce_loop_applies_events_after_window(tmp_path: Path) -> None:
    fired = asyncio.Event()
    reasons: List[str] = []

    def on_dirty(reason: str) -> None:
        reasons.append(reason)
        fired.set()

    settings = build_settings({"sync": {"watch_debounce_ms": 20}})
    tracker = ChangeTracker(settings, tmp_path, None, on_dirty=on_dirty)
    await tracker.start(watch=False)
    try:
        tracker.submit(FileChangeEvent(path=str(tmp_path / "memory" / "a.md")))
        tracker.submit(FileChangeEvent(path=str(tmp_path / "memory" / "b.md")))
        await asyncio.wait_for(fired.wait(), timeout=2.0)
    finally:
        await tracker.stop()

    assert reasons == ["watch"]
    assert len(tracker.snapshot().files) == 2
