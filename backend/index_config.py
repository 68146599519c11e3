"""
Settings for the memory index.

Settings are a validated pydantic model. Anything that does not validate raises
ConfigurationError when the manager is built, never later.
Environment loading mirrors the rest of the backend: a `.env` file is honoured
and every knob has a `MEMORY_INDEX_*` variable.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from index_errors import ConfigurationError

MemorySource = Literal["memory", "sessions"]
ProviderName = Literal["openai", "local", "gemini", "voyage", "mistral", "auto", "none"]
FallbackName = Literal["openai", "local", "gemini", "voyage", "mistral", "none"]

DEFAULT_STATE_DIR = Path.home() / ".memory-index"
DEFAULT_STORE_FILENAME = "{agent_id}-{store_key}.sqlite"


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RemoteSettings(_Section):
    base_url: str = ""
    api_key: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)


class LocalSettings(_Section):
    dims: int = Field(default=256, ge=16, le=4096)


class StoreSettings(_Section):
    path: str = ""
    vector_enabled: bool = True


class ChunkingSettings(_Section):
    tokens: int = Field(default=400, ge=16)
    overlap: int = Field(default=80, ge=0)

    @model_validator(mode="after")
    def _overlap_below_size(self) -> "ChunkingSettings":
        if self.overlap >= self.tokens:
            raise ValueError("chunking.overlap must be smaller than chunking.tokens")
        return self


class SessionSyncSettings(_Section):
    delta_bytes: int = Field(default=100_000, ge=0)
    delta_messages: int = Field(default=50, ge=0)


class SyncSettings(_Section):
    on_session_start: bool = True
    on_search: bool = True
    watch: bool = True
    watch_debounce_ms: int = Field(default=1500, ge=0)
    interval_minutes: float = Field(default=0.0, ge=0.0)
    index_concurrency: int = Field(default=4, ge=1, le=64)
    sessions: SessionSyncSettings = Field(default_factory=SessionSyncSettings)


class HybridSettings(_Section):
    enabled: bool = True
    vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    text_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    candidate_multiplier: float = Field(default=4.0, gt=0.0, le=50.0)


class MmrSettings(_Section):
    enabled: bool = False
    lambda_value: float = Field(default=0.7, ge=0.0, le=1.0)


class TemporalDecaySettings(_Section):
    enabled: bool = False
    half_life_days: float = Field(default=30.0, gt=0.0)


class QuerySettings(_Section):
    max_results: int = Field(default=6, ge=1, le=200)
    min_score: float = Field(default=0.35, ge=0.0, le=1.0)
    hybrid: HybridSettings = Field(default_factory=HybridSettings)
    mmr: MmrSettings = Field(default_factory=MmrSettings)
    temporal_decay: TemporalDecaySettings = Field(default_factory=TemporalDecaySettings)


class CacheSettings(_Section):
    enabled: bool = True
    max_entries: Optional[int] = Field(default=50_000, ge=1)


class BatchSettings(_Section):
    enabled: bool = True
    size: int = Field(default=32, ge=1, le=2048)
    concurrency: int = Field(default=2, ge=1, le=32)
    timeout_seconds: Optional[float] = Field(default=None, gt=0.0)
    query_timeout_seconds: Optional[float] = Field(default=None, gt=0.0)


class MemorySearchSettings(_Section):
    """Resolved settings for one memory index manager."""

    provider: ProviderName = "auto"
    fallback: FallbackName = "none"
    model: str = ""
    sources: List[MemorySource] = Field(default_factory=lambda: ["memory"])
    extra_paths: List[str] = Field(default_factory=list)
    sessions_dir: str = ""
    remote: RemoteSettings = Field(default_factory=RemoteSettings)
    local: LocalSettings = Field(default_factory=LocalSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    chunking: ChunkingSettings = Field(default_factory=ChunkingSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)

    @field_validator("sources")
    @classmethod
    def _dedupe_sources(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("at least one source is required")
        seen: List[str] = []
        for item in value:
            if item not in seen:
                seen.append(item)
        return seen

    @field_validator("extra_paths")
    @classmethod
    def _clean_extra_paths(cls, value: List[str]) -> List[str]:
        return [item.strip() for item in value if item and item.strip()]

    @model_validator(mode="after")
    def _fallback_differs(self) -> "MemorySearchSettings":
        if self.fallback != "none" and self.fallback == self.provider:
            raise ValueError("fallback provider must differ from the primary provider")
        return self


def build_settings(raw: Optional[Dict[str, Any]] = None) -> MemorySearchSettings:
    """Validate a raw (possibly nested) mapping into settings."""
    try:
        return MemorySearchSettings.model_validate(raw or {})
    except ValidationError as exc:
        raise ConfigurationError(f"invalid memory index settings: {exc}") from exc


def settings_hash(settings: MemorySearchSettings) -> str:
    payload = settings.model_dump_json()
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def store_key(workspace_dir: Path, settings: MemorySearchSettings) -> str:
    """Short digest of the workspace and settings; one store file per key."""
    workspace = str(Path(workspace_dir).expanduser().resolve())
    payload = f"{workspace}\n{settings_hash(settings)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:12]


def resolve_store_path(settings: MemorySearchSettings, agent_id: str, workspace_dir: Path) -> Path:
    """
    Store file for one manager. `{agent_id}` and `{store_key}` are substituted
    in a configured path; the default location always carries both.
    """
    key = store_key(workspace_dir, settings)
    raw = settings.store.path.strip()
    if not raw:
        return DEFAULT_STATE_DIR / DEFAULT_STORE_FILENAME.format(agent_id=agent_id, store_key=key)
    return Path(raw.replace("{agent_id}", agent_id).replace("{store_key}", key)).expanduser()


def resolve_sessions_dir(settings: MemorySearchSettings, workspace_dir: Path, agent_id: str) -> Path:
    raw = settings.sessions_dir.strip()
    if raw:
        return Path(raw.replace("{agent_id}", agent_id)).expanduser()
    return workspace_dir / "sessions" / agent_id


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.replace(os.pathsep, ",").split(",") if item.strip()]


_ENV_FIELDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("MEMORY_INDEX_PROVIDER", ("provider",)),
    ("MEMORY_INDEX_FALLBACK", ("fallback",)),
    ("MEMORY_INDEX_MODEL", ("model",)),
    ("MEMORY_INDEX_SESSIONS_DIR", ("sessions_dir",)),
    ("MEMORY_INDEX_REMOTE_BASE_URL", ("remote", "base_url")),
    ("MEMORY_INDEX_REMOTE_API_KEY", ("remote", "api_key")),
    ("MEMORY_INDEX_LOCAL_DIMS", ("local", "dims")),
    ("MEMORY_INDEX_STORE_PATH", ("store", "path")),
    ("MEMORY_INDEX_VECTOR_ENABLED", ("store", "vector_enabled")),
    ("MEMORY_INDEX_CHUNK_TOKENS", ("chunking", "tokens")),
    ("MEMORY_INDEX_CHUNK_OVERLAP", ("chunking", "overlap")),
    ("MEMORY_INDEX_SYNC_ON_SESSION_START", ("sync", "on_session_start")),
    ("MEMORY_INDEX_SYNC_ON_SEARCH", ("sync", "on_search")),
    ("MEMORY_INDEX_WATCH", ("sync", "watch")),
    ("MEMORY_INDEX_WATCH_DEBOUNCE_MS", ("sync", "watch_debounce_ms")),
    ("MEMORY_INDEX_INTERVAL_MINUTES", ("sync", "interval_minutes")),
    ("MEMORY_INDEX_INDEX_CONCURRENCY", ("sync", "index_concurrency")),
    ("MEMORY_INDEX_SESSION_DELTA_BYTES", ("sync", "sessions", "delta_bytes")),
    ("MEMORY_INDEX_SESSION_DELTA_MESSAGES", ("sync", "sessions", "delta_messages")),
    ("MEMORY_INDEX_MAX_RESULTS", ("query", "max_results")),
    ("MEMORY_INDEX_MIN_SCORE", ("query", "min_score")),
    ("MEMORY_INDEX_HYBRID_ENABLED", ("query", "hybrid", "enabled")),
    ("MEMORY_INDEX_VECTOR_WEIGHT", ("query", "hybrid", "vector_weight")),
    ("MEMORY_INDEX_TEXT_WEIGHT", ("query", "hybrid", "text_weight")),
    ("MEMORY_INDEX_CANDIDATE_MULTIPLIER", ("query", "hybrid", "candidate_multiplier")),
    ("MEMORY_INDEX_MMR_ENABLED", ("query", "mmr", "enabled")),
    ("MEMORY_INDEX_MMR_LAMBDA", ("query", "mmr", "lambda_value")),
    ("MEMORY_INDEX_TEMPORAL_DECAY_ENABLED", ("query", "temporal_decay", "enabled")),
    ("MEMORY_INDEX_HALF_LIFE_DAYS", ("query", "temporal_decay", "half_life_days")),
    ("MEMORY_INDEX_CACHE_ENABLED", ("cache", "enabled")),
    ("MEMORY_INDEX_CACHE_MAX_ENTRIES", ("cache", "max_entries")),
    ("MEMORY_INDEX_BATCH_ENABLED", ("batch", "enabled")),
    ("MEMORY_INDEX_BATCH_SIZE", ("batch", "size")),
    ("MEMORY_INDEX_BATCH_CONCURRENCY", ("batch", "concurrency")),
    ("MEMORY_INDEX_BATCH_TIMEOUT_SEC", ("batch", "timeout_seconds")),
    ("MEMORY_INDEX_QUERY_TIMEOUT_SEC", ("batch", "query_timeout_seconds")),
)

_ENV_LIST_FIELDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("MEMORY_INDEX_SOURCES", ("sources",)),
    ("MEMORY_INDEX_EXTRA_PATHS", ("extra_paths",)),
)


def _assign(data: Dict[str, Any], path: Tuple[str, ...], value: Any) -> None:
    cursor = data
    for key in path[:-1]:
        cursor = cursor.setdefault(key, {})
    cursor[path[-1]] = value


def load_settings_from_env(overrides: Optional[Dict[str, Any]] = None) -> MemorySearchSettings:
    """
    Build settings from `MEMORY_INDEX_*` environment variables.

    Values are handed to pydantic as strings so that coercion and range checks
    happen in one place; a malformed value raises ConfigurationError.
    """
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path)

    data: Dict[str, Any] = {}
    for env_name, path in _ENV_FIELDS:
        raw = os.getenv(env_name)
        if raw is None or not raw.strip():
            continue
        _assign(data, path, raw.strip())
    for env_name, path in _ENV_LIST_FIELDS:
        raw = os.getenv(env_name)
        if raw is None:
            continue
        _assign(data, path, _split_list(raw))

    for key, value in (overrides or {}).items():
        data[key] = value
    return build_settings(data)


DEFAULT_AGENT_ID = "main"


def load_agent_context() -> Tuple[str, Path]:
    """Agent id and workspace directory the HTTP and MCP surfaces serve."""
    agent_id = _first_env(["MEMORY_INDEX_AGENT_ID"], DEFAULT_AGENT_ID)
    workspace = _first_env(["MEMORY_INDEX_WORKSPACE_DIR"], "")
    workspace_dir = Path(workspace).expanduser() if workspace else Path.cwd()
    return agent_id, workspace_dir.resolve()
