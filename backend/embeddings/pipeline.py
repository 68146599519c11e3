"""
Embedding cache and batch pipeline.

Texts are deduplicated by content hash and looked up in the store's embedding
cache. Only misses go to the provider, in batches, with bounded concurrency,
a per-call timeout and retry with exponential backoff.

A batch that still fails after its retries counts as one failure. Reaching
BATCH_FAILURE_LIMIT consecutive failures switches the pipeline, for the rest
of its lifetime, to the configured fallback provider or to keyword-only mode.
The failure counter, the active provider and cache writes share one lock.
"""

import asyncio
import hashlib
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from db.index_store import IndexStore
from index_config import MemorySearchSettings
from index_errors import ConfigurationError, EmbeddingBatchError, EmbeddingProviderError

from .providers import EmbeddingProvider, ProviderSelection, create_provider

BATCH_FAILURE_LIMIT = 2
EMBEDDING_RETRY_MAX_ATTEMPTS = 3
EMBEDDING_RETRY_BASE_DELAY_MS = 500
EMBEDDING_RETRY_MAX_DELAY_MS = 8000

REMOTE_BATCH_TIMEOUT_SECONDS = 120.0
LOCAL_BATCH_TIMEOUT_SECONDS = 600.0
REMOTE_QUERY_TIMEOUT_SECONDS = 60.0
LOCAL_QUERY_TIMEOUT_SECONDS = 300.0


def content_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


@dataclass
class EmbeddingBatchResult:
    """Vectors aligned with the input texts; all of them come from `provider_key`."""

    vectors: List[Optional[List[float]]]
    provider_key: Optional[str]


ProviderChangeCallback = Callable[[Optional[EmbeddingProvider], str], None]
Sleep = Callable[[float], Awaitable[Any]]


class EmbeddingPipeline:
    def __init__(
        self,
        store: IndexStore,
        selection: ProviderSelection,
        settings: MemorySearchSettings,
        *,
        provider_factory: Optional[Callable[[str], EmbeddingProvider]] = None,
        on_provider_change: Optional[ProviderChangeCallback] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._store = store
        self._settings = settings
        self._provider: Optional[EmbeddingProvider] = selection.provider
        self._fallback_name = selection.fallback
        self._provider_factory = provider_factory or (
            lambda name: create_provider(name, settings, explicit=False)
        )
        self._on_provider_change = on_provider_change
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._failures = 0
        self._switched = False
        self._last_error: Optional[str] = None
        self._last_provider: Optional[str] = selection.provider.id if selection.provider else None
        self._unavailable_reason = selection.unavailable_reason
        self._last_dims: Optional[int] = None

    # ------------------------------------------------------------------
    # Provider state
    # ------------------------------------------------------------------

    @property
    def provider(self) -> Optional[EmbeddingProvider]:
        return self._provider

    @property
    def provider_key(self) -> Optional[str]:
        return self._provider.key if self._provider is not None else None

    @property
    def failures(self) -> int:
        return self._failures

    @property
    def unavailable_reason(self) -> Optional[str]:
        return self._unavailable_reason

    @property
    def switched(self) -> bool:
        return self._switched

    def batch_timeout_seconds(self, provider: Optional[EmbeddingProvider] = None) -> float:
        provider = provider or self._provider
        if self._settings.batch.timeout_seconds:
            return self._settings.batch.timeout_seconds
        if provider is not None and provider.id == "local":
            return LOCAL_BATCH_TIMEOUT_SECONDS
        return REMOTE_BATCH_TIMEOUT_SECONDS

    def query_timeout_seconds(self, provider: Optional[EmbeddingProvider] = None) -> float:
        provider = provider or self._provider
        if self._settings.batch.query_timeout_seconds:
            return self._settings.batch.query_timeout_seconds
        if provider is not None and provider.id == "local":
            return LOCAL_QUERY_TIMEOUT_SECONDS
        return REMOTE_QUERY_TIMEOUT_SECONDS

    @property
    def _batch_size(self) -> int:
        return self._settings.batch.size if self._settings.batch.enabled else 1

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self._provider is not None,
            "failures": self._failures,
            "limit": BATCH_FAILURE_LIMIT,
            "concurrency": self._settings.batch.concurrency,
            "size": self._batch_size,
            "timeoutSeconds": self.batch_timeout_seconds(),
            "lastError": self._last_error,
            "lastProvider": self._last_provider,
        }

    def _switch_provider_locked(self, failed: EmbeddingProvider) -> None:
        """Demote `failed`. Caller holds the lock."""
        replacement: Optional[EmbeddingProvider] = None
        if not self._switched and self._fallback_name and self._fallback_name != failed.id:
            try:
                replacement = self._provider_factory(self._fallback_name)
            except ConfigurationError as exc:
                logger.warning(
                    "embedding fallback unavailable", fallback=self._fallback_name, error=str(exc)
                )
        self._switched = True
        self._provider = replacement
        if replacement is None:
            reason = f"embedding provider '{failed.id}' disabled after {BATCH_FAILURE_LIMIT} failed batches"
        else:
            reason = f"embedding provider '{failed.id}' replaced by fallback '{replacement.id}'"
        self._unavailable_reason = reason
        logger.warning(reason, last_error=self._last_error)
        if self._on_provider_change is not None:
            self._on_provider_change(replacement, reason)

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _embed_guarded(
        self, provider: EmbeddingProvider, texts: Sequence[str], timeout: float
    ) -> List[List[float]]:
        """One provider call; every failure surfaces as EmbeddingProviderError."""
        try:
            vectors = await asyncio.wait_for(provider.embed(list(texts)), timeout=timeout)
        except EmbeddingProviderError:
            raise
        except asyncio.TimeoutError as exc:
            raise EmbeddingProviderError(
                f"{provider.id} embedding timed out after {timeout:g}s", provider=provider.id
            ) from exc
        except Exception as exc:
            raise EmbeddingProviderError(
                f"{provider.id} embedding failed: {str(exc) or type(exc).__name__}", provider=provider.id
            ) from exc
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"{provider.id} returned {len(vectors)} vectors for {len(texts)} texts",
                provider=provider.id,
            )
        return vectors

    async def _call_with_retry(
        self, provider: EmbeddingProvider, texts: Sequence[str], timeout: float
    ) -> List[List[float]]:
        last_error: Optional[BaseException] = None
        for attempt in range(1, EMBEDDING_RETRY_MAX_ATTEMPTS + 1):
            try:
                return await self._embed_guarded(provider, texts, timeout)
            except EmbeddingProviderError as exc:
                last_error = exc
                if attempt >= EMBEDDING_RETRY_MAX_ATTEMPTS:
                    break
                delay_ms = min(
                    EMBEDDING_RETRY_MAX_DELAY_MS,
                    EMBEDDING_RETRY_BASE_DELAY_MS * (2 ** (attempt - 1)),
                )
                logger.debug(
                    "embedding batch retry",
                    provider=provider.id,
                    attempt=attempt,
                    delay_ms=delay_ms,
                    error=str(exc) or type(exc).__name__,
                )
                await self._sleep(delay_ms / 1000.0)
        message = str(last_error) or type(last_error).__name__
        raise EmbeddingBatchError(
            f"{provider.id} batch failed after {EMBEDDING_RETRY_MAX_ATTEMPTS} attempts: {message}",
            provider=provider.id,
            attempts=EMBEDDING_RETRY_MAX_ATTEMPTS,
        ) from last_error

    async def _cache_vectors(self, provider: EmbeddingProvider, texts: Sequence[str], vectors: List[List[float]]) -> None:
        # Caller holds the lock.
        if not self._settings.cache.enabled:
            return
        await self._store.cache_put(provider.key, [(content_hash(t), v) for t, v in zip(texts, vectors)])
        await self._store.cache_evict(self._settings.cache.max_entries)

    async def _embed_one_batch(self, texts: Sequence[str]) -> Tuple[Optional[str], List[Optional[List[float]]]]:
        provider = self._provider
        if provider is None:
            return None, [None] * len(texts)
        try:
            vectors = await self._call_with_retry(provider, texts, self.batch_timeout_seconds(provider))
        except EmbeddingBatchError as exc:
            rerun_on: Optional[EmbeddingProvider] = None
            async with self._lock:
                if provider is self._provider:
                    self._last_error = str(exc)
                    self._last_provider = provider.id
                    self._failures = min(self._failures + 1, BATCH_FAILURE_LIMIT)
                    logger.warning(
                        "embedding batch failed",
                        provider=provider.id,
                        failures=self._failures,
                        limit=BATCH_FAILURE_LIMIT,
                    )
                    if self._switched or self._failures >= BATCH_FAILURE_LIMIT:
                        self._switch_provider_locked(provider)
                        rerun_on = self._provider
                else:
                    # Provider was already demoted by a concurrent batch.
                    rerun_on = self._provider
            if rerun_on is None:
                return None, [None] * len(texts)
            return await self._rerun_on_fallback(rerun_on, texts)

        async with self._lock:
            if provider is not self._provider:
                return provider.key, list(vectors)
            if not self._switched:
                self._failures = 0
            self._last_provider = provider.id
            self._last_dims = len(vectors[0]) if vectors else self._last_dims
            await self._cache_vectors(provider, texts, vectors)
        return provider.key, list(vectors)

    async def _rerun_on_fallback(
        self, provider: EmbeddingProvider, texts: Sequence[str]
    ) -> Tuple[Optional[str], List[Optional[List[float]]]]:
        try:
            vectors = await self._call_with_retry(provider, texts, self.batch_timeout_seconds(provider))
        except EmbeddingBatchError as exc:
            async with self._lock:
                if provider is self._provider:
                    self._last_error = str(exc)
                    self._last_provider = provider.id
                    self._switch_provider_locked(provider)
            return None, [None] * len(texts)
        async with self._lock:
            self._last_provider = provider.id
            self._last_dims = len(vectors[0]) if vectors else self._last_dims
            await self._cache_vectors(provider, texts, vectors)
        return provider.key, list(vectors)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed_batch(self, texts: Sequence[str]) -> EmbeddingBatchResult:
        """
        Embed `texts`, reusing cached vectors. Provider failures never raise
        here; texts that could not be embedded get None.
        """
        if not texts:
            return EmbeddingBatchResult(vectors=[], provider_key=self.provider_key)
        provider = self._provider
        if provider is None:
            return EmbeddingBatchResult(vectors=[None] * len(texts), provider_key=None)

        hashes = [content_hash(t) for t in texts]
        unique: Dict[str, str] = {}
        for text_hash, text in zip(hashes, texts):
            unique.setdefault(text_hash, text)

        resolved: Dict[str, Tuple[str, List[float]]] = {}
        if self._settings.cache.enabled:
            cached = await self._store.cache_get(provider.key, list(unique))
            for text_hash, vector in cached.items():
                resolved[text_hash] = (provider.key, vector)

        missing = [h for h in unique if h not in resolved]
        if missing:
            size = self._batch_size
            batches = [missing[i : i + size] for i in range(0, len(missing), size)]
            semaphore = asyncio.Semaphore(self._settings.batch.concurrency)

            async def run(batch_hashes: List[str]) -> None:
                async with semaphore:
                    key, vectors = await self._embed_one_batch([unique[h] for h in batch_hashes])
                for text_hash, vector in zip(batch_hashes, vectors):
                    if key is not None and vector is not None:
                        resolved[text_hash] = (key, vector)

            await asyncio.gather(*(run(batch) for batch in batches))

        active_key = self.provider_key
        vectors: List[Optional[List[float]]] = []
        for text_hash in hashes:
            entry = resolved.get(text_hash)
            vectors.append(entry[1] if entry is not None and entry[0] == active_key else None)
        return EmbeddingBatchResult(vectors=vectors, provider_key=active_key)

    async def embed_query(self, text: str) -> List[float]:
        """
        Embed a search query. On timeout or provider failure the result is a
        zero vector, which disables the vector branch for that search.
        """
        provider = self._provider
        if provider is None:
            return []
        try:
            vectors = await self._embed_guarded(provider, [text], self.query_timeout_seconds(provider))
            if vectors and vectors[0]:
                self._last_dims = len(vectors[0])
                return list(vectors[0])
        except EmbeddingProviderError as exc:
            self._last_error = str(exc)
            logger.warning("query embedding failed", provider=provider.id, error=self._last_error)
        return [0.0] * (self._last_dims or 0)

    async def probe(self) -> Dict[str, Any]:
        """Embed a trivial text with retry, bypassing the cache and the failure counter."""
        provider = self._provider
        if provider is None:
            return {"ok": False, "error": self._unavailable_reason or "no embedding provider"}
        try:
            await self._call_with_retry(provider, ["ping"], self.batch_timeout_seconds(provider))
            return {"ok": True}
        except EmbeddingBatchError as exc:
            return {"ok": False, "error": str(exc)}
