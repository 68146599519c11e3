"""
SQLite store for the memory index.

Holds the durable rows of the index:
- files: one row per indexed memory file or session log
- chunks: line-ranged slices of a file, replaced or appended per sync
- chunks_vec: JSON vectors keyed by chunk id (plain table, no extension)
- chunks_fts: FTS5 keyword table, probed at startup and optional
- embedding_cache: vectors keyed by provider key + content hash
- index_meta: key/value rows (schema version, provider key, dims, runtime keys)

Every mutation for one file happens in a single transaction behind the store
write lock, so a reader never sees a file whose chunks belong to another hash.
"""

import asyncio
import json
import math
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from loguru import logger
from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    bindparam,
    delete,
    func,
    select,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .migration_runner import apply_pending_migrations

Base = declarative_base()

INDEX_SCHEMA_VERSION = "1"
SNIPPET_MAX_CHARS = 700

META_SCHEMA_VERSION = "schema_version"
META_VECTOR_DIMS = "vector_dims"
META_PROVIDER_KEY = "provider_key"

_IN_CLAUSE_CHUNK = 400


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime, matching how SQLite stores DateTime columns."""
    return _utc_now().replace(tzinfo=None)


# =============================================================================
# ORM Models
# =============================================================================


class IndexedFile(Base):
    """A memory file or session log known to the index."""

    __tablename__ = "files"
    __table_args__ = (UniqueConstraint("path", "source", name="uq_files_path_source"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    path = Column(String(1024), nullable=False)
    source = Column(String(16), nullable=False)
    hash = Column(String(64), nullable=False)
    mtime = Column(Float, nullable=False, default=0.0)
    # For session logs this is the byte offset consumed so far.
    size = Column(Integer, nullable=False, default=0)


class Chunk(Base):
    __tablename__ = "chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    file_id = Column(Integer, ForeignKey("files.id"), nullable=False)
    path = Column(String(1024), nullable=False)
    source = Column(String(16), nullable=False)
    start_line = Column(Integer, nullable=False)
    end_line = Column(Integer, nullable=False)
    hash = Column(String(64), nullable=False)
    model = Column(String(128), nullable=False, default="")
    text = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class ChunkVector(Base):
    __tablename__ = "chunks_vec"

    chunk_id = Column(Integer, ForeignKey("chunks.id"), primary_key=True)
    file_id = Column(Integer, ForeignKey("files.id"), nullable=False)
    vector = Column(Text, nullable=False)
    model = Column(String(128), nullable=False)
    dims = Column(Integer, nullable=False)


class EmbeddingCacheEntry(Base):
    """Embedding vectors keyed by `<provider key>:<sha256 of text>`."""

    __tablename__ = "embedding_cache"

    cache_key = Column(String(256), primary_key=True)
    content_hash = Column(String(64), nullable=False)
    provider_key = Column(String(160), nullable=False)
    embedding = Column(Text, nullable=False)
    dims = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_utc_now_naive)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


class IndexMeta(Base):
    __tablename__ = "index_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


# =============================================================================
# Value types
# =============================================================================


@dataclass(frozen=True)
class FileRecord:
    path: str
    source: str
    hash: str
    mtime: float
    size: int


@dataclass(frozen=True)
class StoredFile:
    id: int
    path: str
    source: str
    hash: str
    mtime: float
    size: int


@dataclass(frozen=True)
class ChunkRecord:
    start_line: int
    end_line: int
    text: str
    hash: str


@dataclass
class ChunkHit:
    chunk_id: int
    path: str
    source: str
    start_line: int
    end_line: int
    snippet: str
    score: float
    mtime: float


@dataclass(frozen=True)
class IndexMetaRecord:
    schema_version: Optional[str]
    vector_dims: Optional[int]
    provider_key: Optional[str]


def cache_key_for(provider_key: str, content_hash: str) -> str:
    return f"{provider_key}:{content_hash}"


def truncate_snippet(value: str, limit: int = SNIPPET_MAX_CHARS) -> str:
    if len(value) <= limit:
        return value
    return value[:limit]


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    length = min(len(v1), len(v2))
    if length == 0:
        return 0.0
    dot = 0.0
    norm1 = 0.0
    norm2 = 0.0
    for i in range(length):
        a = float(v1[i])
        b = float(v2[i])
        dot += a * b
        norm1 += a * a
        norm2 += b * b
    if norm1 <= 0 or norm2 <= 0:
        return 0.0
    return dot / (math.sqrt(norm1) * math.sqrt(norm2))


def _chunked(values: Sequence[Any], size: int = _IN_CLAUSE_CHUNK) -> Iterable[Sequence[Any]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


# =============================================================================
# Index Store
# =============================================================================


class IndexStore:
    """
    Async SQLite store behind one memory index manager.

    Vector and keyword capabilities are independent: when one is unavailable
    its write operations become no-ops and its search returns no rows.
    """

    def __init__(self, db_path: Path, *, vector_enabled: bool = True):
        self.db_path = Path(db_path).expanduser()
        self.database_url = f"sqlite+aiosqlite:///{self.db_path}"
        self.engine = create_async_engine(self.database_url, echo=False)
        self.async_session = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self._write_lock = asyncio.Lock()
        self._closed = False

        self.fts_available = False
        self.fts_error: Optional[str] = None
        self.vector_enabled = vector_enabled
        self.vector_available = False
        self.vector_error: Optional[str] = None

    @classmethod
    async def open_or_create(cls, db_path: Path, *, vector_enabled: bool = True) -> "IndexStore":
        store = cls(db_path, vector_enabled=vector_enabled)
        await store.ensure_schema()
        return store

    @property
    def closed(self) -> bool:
        return self._closed

    async def ensure_schema(self) -> None:
        """Apply migrations and probe optional capabilities. Safe to call repeatedly."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        await apply_pending_migrations(self.db_path)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            capabilities = await conn.run_sync(self._setup_index_infra)
        self.fts_available = capabilities["fts_available"]
        self.fts_error = capabilities["fts_error"]
        self.vector_available = capabilities["vector_available"]
        self.vector_error = capabilities["vector_error"]
        if self.fts_error:
            logger.warning("keyword index unavailable", error=self.fts_error, db=str(self.db_path))
        if self.vector_error and self.vector_enabled:
            logger.warning("vector index unavailable", error=self.vector_error, db=str(self.db_path))

    def _setup_index_infra(self, connection) -> Dict[str, Any]:
        fts_available = False
        fts_error: Optional[str] = None
        try:
            connection.execute(
                text(
                    "CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts "
                    "USING fts5("
                    "text, "
                    "chunk_id UNINDEXED, "
                    "file_id UNINDEXED"
                    ")"
                )
            )
            fts_available = True
        except Exception as exc:
            # SQLite builds without FTS5 keep running vector-only.
            fts_error = str(exc)

        vector_available = False
        vector_error: Optional[str] = None
        if not self.vector_enabled:
            vector_error = "vector store disabled"
        else:
            try:
                connection.execute(text("SELECT chunk_id FROM chunks_vec LIMIT 1"))
                vector_available = True
            except Exception as exc:
                vector_error = str(exc)

        now = _utc_now_naive().isoformat()
        self._sync_set_index_meta(connection, "fts_available", "1" if fts_available else "0", now)
        self._sync_set_index_meta(connection, "vector_available", "1" if vector_available else "0", now)
        return {
            "fts_available": fts_available,
            "fts_error": fts_error,
            "vector_available": vector_available,
            "vector_error": vector_error,
        }

    @staticmethod
    def _sync_set_index_meta(connection, key: str, value: str, updated_at: str) -> None:
        connection.execute(
            text(
                "INSERT INTO index_meta(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, "
                "updated_at = excluded.updated_at"
            ),
            {"key": key, "value": value, "updated_at": updated_at},
        )

    @asynccontextmanager
    async def session(self):
        """Session that commits on success and rolls back on any error."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.engine.dispose()

    # -------------------------------------------------------------------------
    # Meta
    # -------------------------------------------------------------------------

    async def _set_index_meta(self, session: AsyncSession, key: str, value: str) -> None:
        await session.execute(
            text(
                "INSERT INTO index_meta(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, "
                "updated_at = excluded.updated_at"
            ),
            {"key": key, "value": value, "updated_at": _utc_now_naive().isoformat()},
        )

    async def get_runtime_meta(self, key: str) -> Optional[str]:
        key_value = (key or "").strip()
        if not key_value:
            return None
        async with self.session() as session:
            result = await session.execute(select(IndexMeta.value).where(IndexMeta.key == key_value))
            value = result.scalar_one_or_none()
            return str(value) if value is not None else None

    async def set_runtime_meta(self, key: str, value: str) -> None:
        key_value = (key or "").strip()
        if not key_value:
            raise ValueError("key must not be empty")
        async with self._write_lock:
            async with self.session() as session:
                await self._set_index_meta(session, key_value, value)

    async def get_meta(self) -> Optional[IndexMetaRecord]:
        """The index identity record, or None for a store that was never synced."""
        async with self.session() as session:
            result = await session.execute(
                select(IndexMeta.key, IndexMeta.value).where(
                    IndexMeta.key.in_([META_SCHEMA_VERSION, META_VECTOR_DIMS, META_PROVIDER_KEY])
                )
            )
            values = {str(key): str(value) for key, value in result.all()}
        if META_SCHEMA_VERSION not in values:
            return None
        dims_raw = values.get(META_VECTOR_DIMS, "")
        try:
            dims = int(dims_raw) if dims_raw else None
        except ValueError:
            dims = None
        return IndexMetaRecord(
            schema_version=values.get(META_SCHEMA_VERSION),
            vector_dims=dims,
            provider_key=values.get(META_PROVIDER_KEY) or None,
        )

    async def set_meta(self, record: IndexMetaRecord) -> None:
        async with self._write_lock:
            async with self.session() as session:
                await self._set_index_meta(session, META_SCHEMA_VERSION, record.schema_version or INDEX_SCHEMA_VERSION)
                await self._set_index_meta(
                    session, META_VECTOR_DIMS, str(record.vector_dims) if record.vector_dims else ""
                )
                await self._set_index_meta(session, META_PROVIDER_KEY, record.provider_key or "")

    # -------------------------------------------------------------------------
    # Files and chunks
    # -------------------------------------------------------------------------

    @staticmethod
    def _to_stored(row: IndexedFile) -> StoredFile:
        return StoredFile(
            id=int(row.id),
            path=str(row.path),
            source=str(row.source),
            hash=str(row.hash),
            mtime=float(row.mtime or 0.0),
            size=int(row.size or 0),
        )

    async def get_file(self, path: str, source: str) -> Optional[StoredFile]:
        async with self.session() as session:
            result = await session.execute(
                select(IndexedFile).where(IndexedFile.path == path, IndexedFile.source == source)
            )
            row = result.scalar_one_or_none()
            return self._to_stored(row) if row is not None else None

    async def list_file_paths(self, source: str) -> List[str]:
        async with self.session() as session:
            result = await session.execute(
                select(IndexedFile.path).where(IndexedFile.source == source).order_by(IndexedFile.path)
            )
            return [str(path) for path in result.scalars().all()]

    async def max_end_line(self, file_id: int) -> int:
        async with self.session() as session:
            result = await session.execute(select(func.max(Chunk.end_line)).where(Chunk.file_id == file_id))
            value = result.scalar_one_or_none()
            return int(value or 0)

    async def list_chunks(self, path: str, source: str) -> List[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(
                select(Chunk)
                .where(Chunk.path == path, Chunk.source == source)
                .order_by(Chunk.start_line, Chunk.id)
            )
            return [
                {
                    "id": int(row.id),
                    "start_line": int(row.start_line),
                    "end_line": int(row.end_line),
                    "hash": str(row.hash),
                    "model": str(row.model),
                    "text": str(row.text),
                }
                for row in result.scalars().all()
            ]

    async def upsert_file(self, session: AsyncSession, record: FileRecord) -> int:
        result = await session.execute(
            select(IndexedFile).where(IndexedFile.path == record.path, IndexedFile.source == record.source)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = IndexedFile(
                path=record.path,
                source=record.source,
                hash=record.hash,
                mtime=record.mtime,
                size=record.size,
            )
            session.add(row)
            await session.flush()
        else:
            row.hash = record.hash
            row.mtime = record.mtime
            row.size = record.size
        return int(row.id)

    async def _clear_file_chunks(self, session: AsyncSession, file_id: int) -> None:
        if self.fts_available:
            try:
                await session.execute(
                    text("DELETE FROM chunks_fts WHERE file_id = :file_id"),
                    {"file_id": file_id},
                )
            except Exception as exc:
                self._mark_fts_unavailable(exc)
        await session.execute(delete(ChunkVector).where(ChunkVector.file_id == file_id))
        await session.execute(delete(Chunk).where(Chunk.file_id == file_id))

    async def _insert_chunks(
        self,
        session: AsyncSession,
        file_id: int,
        record: FileRecord,
        chunks: Sequence[ChunkRecord],
        model: str,
    ) -> List[Chunk]:
        rows = [
            Chunk(
                file_id=file_id,
                path=record.path,
                source=record.source,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                hash=chunk.hash,
                model=model,
                text=chunk.text,
            )
            for chunk in chunks
        ]
        if rows:
            session.add_all(rows)
            await session.flush()
        return rows

    async def replace_chunks(
        self,
        session: AsyncSession,
        file_id: int,
        record: FileRecord,
        chunks: Sequence[ChunkRecord],
        model: str = "",
    ) -> List[Chunk]:
        """Drop every chunk (and its vector/keyword rows) of a file, then insert `chunks`."""
        await self._clear_file_chunks(session, file_id)
        return await self._insert_chunks(session, file_id, record, chunks, model)

    async def append_chunks(
        self,
        session: AsyncSession,
        file_id: int,
        record: FileRecord,
        chunks: Sequence[ChunkRecord],
        model: str = "",
    ) -> List[Chunk]:
        return await self._insert_chunks(session, file_id, record, chunks, model)

    async def upsert_vector(
        self,
        session: AsyncSession,
        chunk_id: int,
        file_id: int,
        vector: Sequence[float],
        model: str,
    ) -> None:
        if not self.vector_available or not vector:
            return
        payload = json.dumps([float(v) for v in vector], separators=(",", ":"))
        existing = await session.get(ChunkVector, chunk_id)
        if existing is None:
            session.add(
                ChunkVector(chunk_id=chunk_id, file_id=file_id, vector=payload, model=model, dims=len(vector))
            )
        else:
            existing.vector = payload
            existing.model = model
            existing.dims = len(vector)

    async def upsert_keyword(self, session: AsyncSession, chunk_id: int, file_id: int, chunk_text: str) -> None:
        if not self.fts_available:
            return
        try:
            await session.execute(text("DELETE FROM chunks_fts WHERE rowid = :rowid"), {"rowid": chunk_id})
            await session.execute(
                text(
                    "INSERT INTO chunks_fts(rowid, text, chunk_id, file_id) "
                    "VALUES (:rowid, :text, :chunk_id, :file_id)"
                ),
                {"rowid": chunk_id, "text": chunk_text, "chunk_id": chunk_id, "file_id": file_id},
            )
        except Exception as exc:
            self._mark_fts_unavailable(exc)

    def _mark_fts_unavailable(self, exc: Exception) -> None:
        # FTS5 can disappear at runtime (e.g. a store copied to a build without it).
        self.fts_available = False
        self.fts_error = str(exc)
        logger.warning("keyword index disabled after error", error=str(exc))

    async def write_file_index(
        self,
        record: FileRecord,
        chunks: Sequence[ChunkRecord],
        vectors: Sequence[Optional[Sequence[float]]],
        *,
        model: str,
        append: bool = False,
    ) -> int:
        """
        Atomically write one file's rows: the file record, its chunks, and the
        vector and keyword entries for each chunk.

        `append=False` replaces every existing chunk of the file; `append=True`
        keeps them (session logs grow append-only). Returns the file id.
        """
        if len(vectors) not in (0, len(chunks)):
            raise ValueError("vectors must be empty or match chunks one to one")
        async with self._write_lock:
            async with self.session() as session:
                file_id = await self.upsert_file(session, record)
                if append:
                    rows = await self.append_chunks(session, file_id, record, chunks, model)
                else:
                    rows = await self.replace_chunks(session, file_id, record, chunks, model)
                for index, row in enumerate(rows):
                    vector = vectors[index] if vectors else None
                    if vector:
                        await self.upsert_vector(session, int(row.id), file_id, vector, model)
                    await self.upsert_keyword(session, int(row.id), file_id, row.text)
                return file_id

    async def touch_file(self, record: FileRecord) -> None:
        """Update a file row without touching its chunks (mtime-only change)."""
        async with self._write_lock:
            async with self.session() as session:
                await self.upsert_file(session, record)

    async def delete_file(self, path: str, source: str) -> bool:
        async with self._write_lock:
            async with self.session() as session:
                result = await session.execute(
                    select(IndexedFile).where(IndexedFile.path == path, IndexedFile.source == source)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return False
                await self._clear_file_chunks(session, int(row.id))
                await session.delete(row)
                return True

    async def reset_index(self) -> None:
        """Drop all files, chunks, vectors and keyword rows. The embedding cache survives."""
        async with self._write_lock:
            async with self.session() as session:
                if self.fts_available:
                    try:
                        await session.execute(text("DELETE FROM chunks_fts"))
                    except Exception as exc:
                        self._mark_fts_unavailable(exc)
                await session.execute(delete(ChunkVector))
                await session.execute(delete(Chunk))
                await session.execute(delete(IndexedFile))
        logger.info("index reset", db=str(self.db_path))

    async def count_by_source(self) -> List[Dict[str, Any]]:
        async with self.session() as session:
            file_rows = await session.execute(
                select(IndexedFile.source, func.count(IndexedFile.id)).group_by(IndexedFile.source)
            )
            chunk_rows = await session.execute(select(Chunk.source, func.count(Chunk.id)).group_by(Chunk.source))
            files = {str(source): int(count) for source, count in file_rows.all()}
            chunks = {str(source): int(count) for source, count in chunk_rows.all()}
        return [
            {"source": source, "files": files.get(source, 0), "chunks": chunks.get(source, 0)}
            for source in sorted(set(files) | set(chunks))
        ]

    # -------------------------------------------------------------------------
    # Embedding cache
    # -------------------------------------------------------------------------

    async def cache_get(self, provider_key: str, content_hashes: Sequence[str]) -> Dict[str, List[float]]:
        if not content_hashes:
            return {}
        keys = [cache_key_for(provider_key, value) for value in dict.fromkeys(content_hashes)]
        found: Dict[str, List[float]] = {}
        async with self.session() as session:
            for batch in _chunked(keys):
                result = await session.execute(
                    select(EmbeddingCacheEntry.content_hash, EmbeddingCacheEntry.embedding).where(
                        EmbeddingCacheEntry.cache_key.in_(list(batch))
                    )
                )
                for content_hash, payload in result.all():
                    try:
                        vector = json.loads(payload)
                    except (TypeError, ValueError):
                        continue
                    if isinstance(vector, list):
                        found[str(content_hash)] = [float(v) for v in vector]
        return found

    async def cache_put(self, provider_key: str, entries: Sequence[Tuple[str, Sequence[float]]]) -> None:
        if not entries:
            return
        now = _utc_now_naive().isoformat()
        async with self._write_lock:
            async with self.session() as session:
                for content_hash, vector in entries:
                    await session.execute(
                        text(
                            "INSERT INTO embedding_cache("
                            "cache_key, content_hash, provider_key, embedding, dims, created_at, updated_at"
                            ") VALUES ("
                            ":cache_key, :content_hash, :provider_key, :embedding, :dims, :now, :now"
                            ") ON CONFLICT(cache_key) DO UPDATE SET "
                            "embedding = excluded.embedding, "
                            "dims = excluded.dims, "
                            "updated_at = excluded.updated_at"
                        ),
                        {
                            "cache_key": cache_key_for(provider_key, content_hash),
                            "content_hash": content_hash,
                            "provider_key": provider_key,
                            "embedding": json.dumps([float(v) for v in vector], separators=(",", ":")),
                            "dims": len(vector),
                            "now": now,
                        },
                    )

    async def cache_count(self) -> int:
        async with self.session() as session:
            result = await session.execute(select(func.count()).select_from(EmbeddingCacheEntry))
            return int(result.scalar_one() or 0)

    async def cache_evict(self, max_entries: Optional[int]) -> int:
        """Trim the cache to `max_entries`, least recently updated first."""
        if max_entries is None or max_entries <= 0:
            return 0
        async with self._write_lock:
            async with self.session() as session:
                total = int(
                    (await session.execute(select(func.count()).select_from(EmbeddingCacheEntry))).scalar_one() or 0
                )
                excess = total - max_entries
                if excess <= 0:
                    return 0
                victims = (
                    select(EmbeddingCacheEntry.cache_key)
                    .order_by(EmbeddingCacheEntry.updated_at.asc(), EmbeddingCacheEntry.cache_key.asc())
                    .limit(excess)
                )
                await session.execute(delete(EmbeddingCacheEntry).where(EmbeddingCacheEntry.cache_key.in_(victims)))
        logger.debug("embedding cache evicted", removed=excess, max_entries=max_entries)
        return excess

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    async def search_vector(
        self,
        query_vector: Sequence[float],
        limit: int,
        sources: Sequence[str],
        model: Optional[str] = None,
    ) -> List[ChunkHit]:
        if not self.vector_available or not query_vector or limit <= 0 or not sources:
            return []
        sql = (
            "SELECT c.id AS chunk_id, c.path AS path, c.source AS source, "
            "c.start_line AS start_line, c.end_line AS end_line, c.text AS text, "
            "f.mtime AS mtime, v.vector AS vector_json "
            "FROM chunks_vec v "
            "JOIN chunks c ON c.id = v.chunk_id "
            "JOIN files f ON f.id = c.file_id "
            "WHERE c.source IN :sources"
        )
        params: Dict[str, Any] = {"sources": list(sources)}
        if model:
            sql += " AND v.model = :model"
            params["model"] = model
        statement = text(sql).bindparams(bindparam("sources", expanding=True))
        async with self.session() as session:
            result = await session.execute(statement, params)
            rows = result.mappings().all()

        scored: List[ChunkHit] = []
        for row in rows:
            try:
                vector = [float(v) for v in json.loads(row["vector_json"])]
            except (TypeError, ValueError):
                continue
            similarity = max(0.0, min(1.0, cosine_similarity(query_vector, vector)))
            scored.append(self._hit_from_row(row, similarity))
        scored.sort(key=lambda hit: hit.score, reverse=True)
        return scored[:limit]

    async def search_keyword(self, fts_query: str, limit: int, sources: Sequence[str]) -> List[ChunkHit]:
        if not self.fts_available or not fts_query or limit <= 0 or not sources:
            return []
        statement = text(
            "SELECT c.id AS chunk_id, c.path AS path, c.source AS source, "
            "c.start_line AS start_line, c.end_line AS end_line, c.text AS text, "
            "f.mtime AS mtime, bm25(chunks_fts) AS text_rank "
            "FROM chunks_fts "
            "JOIN chunks c ON c.id = chunks_fts.rowid "
            "JOIN files f ON f.id = c.file_id "
            "WHERE chunks_fts MATCH :fts_query "
            "AND c.source IN :sources "
            "ORDER BY text_rank ASC "
            "LIMIT :limit"
        ).bindparams(bindparam("sources", expanding=True))
        try:
            async with self.session() as session:
                result = await session.execute(
                    statement, {"fts_query": fts_query, "sources": list(sources), "limit": limit}
                )
                rows = result.mappings().all()
        except Exception as exc:
            logger.warning("keyword search failed", error=str(exc), query=fts_query)
            return []

        magnitudes = [abs(float(row["text_rank"] or 0.0)) for row in rows]
        best = max(magnitudes) if magnitudes else 0.0
        hits: List[ChunkHit] = []
        for row, magnitude in zip(rows, magnitudes):
            score = magnitude / best if best > 0 else 1.0
            hits.append(self._hit_from_row(row, score))
        return hits

    @staticmethod
    def _hit_from_row(row: Any, score: float) -> ChunkHit:
        return ChunkHit(
            chunk_id=int(row["chunk_id"]),
            path=str(row["path"]),
            source=str(row["source"]),
            start_line=int(row["start_line"]),
            end_line=int(row["end_line"]),
            snippet=truncate_snippet(str(row["text"] or "")),
            score=float(score),
            mtime=float(row["mtime"] or 0.0),
        )

    async def probe_vector_table(self) -> bool:
        """Read-only check that vector rows can be queried."""
        if not self.vector_enabled or self._closed:
            return False
        try:
            async with self.async_session() as session:
                await session.execute(text("SELECT chunk_id FROM chunks_vec LIMIT 1"))
            return True
        except Exception as exc:
            logger.debug("vector probe failed", error=str(exc))
            return False
