from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from chunker import chunk_text, hash_text
from db.index_store import (
    INDEX_SCHEMA_VERSION,
    ChunkRecord,
    FileRecord,
    IndexMetaRecord,
    IndexStore,
    cosine_similarity,
)


def _record(path: str, content: str, *, source: str = "memory", size: int = 0) -> FileRecord:
    return FileRecord(
        path=path,
        source=source,
        hash=hash_text(content),
        mtime=1_700_000_000.0,
        size=size or len(content),
    )


@asynccontextmanager
async def _opened_store(tmp_path: Path, **kwargs):
    store = await IndexStore.open_or_create(tmp_path / "index.sqlite", **kwargs)
    try:
        yield store
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_fresh_store_has_no_meta_and_reports_capabilities(tmp_path: Path) -> None:
    async with _opened_store(tmp_path) as store:
        assert await store.get_meta() is None
        assert store.vector_available is True
        assert await store.get_runtime_meta("vector_available") == "1"
        assert await store.get_runtime_meta("fts_available") == ("1" if store.fts_available else "0")


@pytest.mark.asyncio
async def test_meta_round_trip_keeps_missing_dims_as_none(tmp_path: Path) -> None:
    async with _opened_store(tmp_path) as store:
        await store.set_meta(
            IndexMetaRecord(schema_version=INDEX_SCHEMA_VERSION, vector_dims=None, provider_key="local:x")
        )
        assert await store.get_meta() == IndexMetaRecord(
            schema_version=INDEX_SCHEMA_VERSION, vector_dims=None, provider_key="local:x"
        )

        await store.set_meta(IndexMetaRecord(schema_version=INDEX_SCHEMA_VERSION, vector_dims=8, provider_key="local:x"))
        assert (await store.get_meta()).vector_dims == 8


@pytest.mark.asyncio
async def test_write_file_index_replaces_chunks(tmp_path: Path) -> None:
    async with _opened_store(tmp_path) as store:
        first = "alpha line\n\nbeta line"
        file_id = await store.write_file_index(
            _record("memory/a.md", first), chunk_text(first), [[1.0, 0.0], [0.0, 1.0]], model="m"
        )
        rows = await store.list_chunks("memory/a.md", "memory")
        assert [row["text"] for row in rows] == ["alpha line", "beta line"]

        second = "gamma line"
        same_id = await store.write_file_index(
            _record("memory/a.md", second), chunk_text(second), [[1.0, 1.0]], model="m"
        )
        assert same_id == file_id
        rows = await store.list_chunks("memory/a.md", "memory")
        assert [row["text"] for row in rows] == ["gamma line"]
        stored = await store.get_file("memory/a.md", "memory")
        assert stored is not None and stored.hash == hash_text(second)

        hits = await store.search_vector([1.0, 1.0], 10, ["memory"])
        assert [hit.snippet for hit in hits] == ["gamma line"]


@pytest.mark.asyncio
async def test_write_file_index_rejects_misaligned_vectors(tmp_path: Path) -> None:
    async with _opened_store(tmp_path) as store:
        content = "one\n\ntwo"
        with pytest.raises(ValueError):
            await store.write_file_index(_record("memory/b.md", content), chunk_text(content), [[1.0]], model="m")
        assert await store.get_file("memory/b.md", "memory") is None


@pytest.mark.asyncio
async def test_append_keeps_existing_chunks_and_tracks_last_line(tmp_path: Path) -> None:
    async with _opened_store(tmp_path) as store:
        record = _record("sessions/s.jsonl", "x", source="sessions", size=10)
        file_id = await store.write_file_index(
            record,
            [ChunkRecord(start_line=1, end_line=2, text="User: hi\nAssistant: hello", hash="h1")],
            [],
            model="",
        )
        assert await store.max_end_line(file_id) == 2

        grown = FileRecord(path=record.path, source="sessions", hash="h2", mtime=record.mtime, size=20)
        await store.write_file_index(
            grown,
            [ChunkRecord(start_line=3, end_line=3, text="User: more", hash="h3")],
            [],
            model="",
            append=True,
        )
        rows = await store.list_chunks(record.path, "sessions")
        assert [row["start_line"] for row in rows] == [1, 3]
        assert await store.max_end_line(file_id) == 3
        assert (await store.get_file(record.path, "sessions")).size == 20


@pytest.mark.asyncio
async def test_delete_file_and_count_by_source(tmp_path: Path) -> None:
    async with _opened_store(tmp_path) as store:
        await store.write_file_index(_record("memory/a.md", "a"), chunk_text("a"), [], model="")
        await store.write_file_index(_record("MEMORY.md", "b\n\nc"), chunk_text("b\n\nc"), [], model="")

        assert await store.count_by_source() == [{"source": "memory", "files": 2, "chunks": 3}]

        assert await store.delete_file("memory/a.md", "memory") is True
        assert await store.delete_file("memory/a.md", "memory") is False
        assert await store.list_file_paths("memory") == ["MEMORY.md"]


@pytest.mark.asyncio
async def test_reset_index_keeps_embedding_cache(tmp_path: Path) -> None:
    async with _opened_store(tmp_path) as store:
        await store.write_file_index(_record("memory/a.md", "a"), chunk_text("a"), [[0.5, 0.5]], model="m")
        await store.cache_put("p", [("hash-a", [0.5, 0.5])])

        await store.reset_index()

        assert await store.count_by_source() == []
        assert await store.cache_get("p", ["hash-a"]) == {"hash-a": [0.5, 0.5]}


@pytest.mark.asyncio
async def test_cache_is_scoped_by_provider_and_evicts_down_to_bound(tmp_path: Path) -> None:
    async with _opened_store(tmp_path) as store:
        await store.cache_put("p1", [("h1", [1.0]), ("h2", [2.0])])
        await store.cache_put("p2", [("h1", [9.0])])

        assert await store.cache_get("p1", ["h1", "h2", "missing"]) == {"h1": [1.0], "h2": [2.0]}
        assert await store.cache_get("p2", ["h1"]) == {"h1": [9.0]}
        assert await store.cache_count() == 3

        assert await store.cache_evict(2) == 1
        assert await store.cache_count() == 2
        assert await store.cache_evict(None) == 0


@pytest.mark.asyncio
async def test_keyword_search_scores_best_match_highest(tmp_path: Path) -> None:
    async with _opened_store(tmp_path) as store:
        if not store.fts_available:
            pytest.skip("SQLite build without FTS5")
        content = "deploy the database on friday\n\ndatabase database database tuning notes\n\nunrelated grocery list"
        await store.write_file_index(_record("memory/a.md", content), chunk_text(content), [], model="")

        hits = await store.search_keyword('"database"', 10, ["memory"])
        assert len(hits) == 2
        assert hits[0].score == pytest.approx(1.0)
        assert all(0.0 < hit.score <= 1.0 for hit in hits)
        assert hits[0].start_line == 3

        assert await store.search_keyword('"database"', 10, ["sessions"]) == []


@pytest.mark.asyncio
async def test_vector_search_filters_by_model_and_clamps_scores(tmp_path: Path) -> None:
    async with _opened_store(tmp_path) as store:
        content = "north\n\nsouth"
        await store.write_file_index(
            _record("memory/a.md", content), chunk_text(content), [[1.0, 0.0], [-1.0, 0.0]], model="m1"
        )

        hits = await store.search_vector([1.0, 0.0], 10, ["memory"], model="m1")
        assert [hit.snippet for hit in hits] == ["north", "south"]
        assert hits[0].score == pytest.approx(1.0)
        assert hits[1].score == 0.0

        assert await store.search_vector([1.0, 0.0], 10, ["memory"], model="other") == []


@pytest.mark.asyncio
async def test_disabled_vector_store_degrades_to_noop(tmp_path: Path) -> None:
    async with _opened_store(tmp_path, vector_enabled=False) as store:
        assert store.vector_available is False
        assert store.vector_error == "vector store disabled"
        await store.write_file_index(_record("memory/a.md", "a"), chunk_text("a"), [[1.0]], model="m")
        assert await store.search_vector([1.0], 5, ["memory"]) == []
        assert await store.probe_vector_table() is False


@pytest.mark.asyncio
async def test_probe_vector_table_is_read_only(tmp_path: Path) -> None:
    async with _opened_store(tmp_path) as store:
        assert await store.probe_vector_table() is True
        assert store.vector_error is None
        await store.close()
        assert await store.probe_vector_table() is False


def test_cosine_similarity_handles_zero_vectors() -> None:
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
