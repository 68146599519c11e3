"""
Embedding providers.

A provider is anything with `id`, `model`, `key` and `async embed(texts)`.
The HTTP adapters are thin: they post one request per batch and raise
EmbeddingProviderError on any transport or payload problem. Retry, timeouts
and demotion are the pipeline's job.
"""

import hashlib
import json
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from index_config import MemorySearchSettings, _first_env
from index_errors import ConfigurationError, EmbeddingProviderError

REMOTE_PROVIDER_ORDER = ("openai", "gemini", "voyage", "mistral")

DEFAULT_MODELS = {
    "openai": "text-embedding-3-small",
    "gemini": "gemini-embedding-001",
    "voyage": "voyage-3-large",
    "mistral": "mistral-embed",
    "local": "hash-v1",
}

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
    "voyage": "https://api.voyageai.com/v1",
    "mistral": "https://api.mistral.ai/v1",
}

API_KEY_ENV = {
    "openai": ["OPENAI_API_KEY"],
    "gemini": ["GEMINI_API_KEY", "GOOGLE_API_KEY"],
    "voyage": ["VOYAGE_API_KEY"],
    "mistral": ["MISTRAL_API_KEY"],
}


class EmbeddingProvider(Protocol):
    id: str
    model: str

    @property
    def key(self) -> str: ...

    async def embed(self, texts: Sequence[str]) -> List[List[float]]: ...


def compute_provider_key(provider_id: str, model: str, base_url: str = "", extra: str = "") -> str:
    """Stable identity of (provider, model, endpoint); vectors are only comparable within one key."""
    digest = hashlib.sha256(
        json.dumps({"provider": provider_id, "model": model, "base_url": base_url, "extra": extra}, sort_keys=True).encode(
            "utf-8"
        )
    ).hexdigest()[:12]
    return f"{provider_id}:{model}:{digest}"


def _join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


def _normalize_embedding_api_base(base: str) -> str:
    normalized = (base or "").strip().rstrip("/")
    if normalized.lower().endswith("/embeddings"):
        return normalized[: -len("/embeddings")]
    return normalized


def _as_vector(candidate: Any) -> Optional[List[float]]:
    if not isinstance(candidate, list) or not candidate:
        return None
    try:
        vector = [float(v) for v in candidate]
    except (TypeError, ValueError):
        return None
    if any(math.isnan(v) or math.isinf(v) for v in vector):
        return None
    return vector


class LocalHashEmbeddingProvider:
    """
    Deterministic offline embedder: sha256 token hashing into a fixed number of
    buckets, L2-normalized. No network, no model weights.
    """

    id = "local"

    def __init__(self, dims: int = 256):
        self.dims = dims
        self.model = f"{DEFAULT_MODELS['local']}-{dims}"

    @property
    def key(self) -> str:
        return compute_provider_key(self.id, self.model)

    def _hash_embedding(self, content: str) -> List[float]:
        vector = [0.0] * self.dims
        normalized = re.sub(r"\s+", " ", content.strip().lower())
        tokens = re.findall(r"\w+", normalized)
        if not tokens and normalized:
            tokens = list(normalized)

        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            for i in range(0, 8, 2):
                idx = digest[i] % self.dims
                sign = -1.0 if (digest[i + 1] & 1) else 1.0
                weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
                vector[idx] += sign * weight

        norm = math.sqrt(sum(v * v for v in vector))
        if norm <= 0:
            return [0.0] * self.dims
        return [v / norm for v in vector]

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        return [self._hash_embedding(text) for text in texts]


class _HttpEmbeddingProvider:
    id = ""

    def __init__(
        self,
        model: str,
        base_url: str,
        api_key: str,
        headers: Optional[Dict[str, str]] = None,
        timeout_seconds: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.model = model
        self.base_url = _normalize_embedding_api_base(base_url)
        self.api_key = api_key
        self.headers = dict(headers or {})
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def key(self) -> str:
        return compute_provider_key(self.id, self.model, self.base_url, ",".join(sorted(self.headers)))

    def _request_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        headers.update(self.headers)
        return headers

    async def _post_json(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Any:
        try:
            timeout = httpx.Timeout(self.timeout_seconds)
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as exc:
            raise EmbeddingProviderError(
                f"{self.id} embeddings failed with HTTP {exc.response.status_code}", provider=self.id
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError) as exc:
            raise EmbeddingProviderError(f"{self.id} embeddings request failed: {exc}", provider=self.id) from exc


class OpenAICompatibleEmbeddingProvider(_HttpEmbeddingProvider):
    """`POST {base}/embeddings` with `{"model", "input": [...]}` (OpenAI, Voyage, Mistral)."""

    def __init__(self, provider_id: str, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.id = provider_id

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        headers = self._request_headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = await self._post_json(
            _join_api_url(self.base_url, "/embeddings"),
            {"model": self.model, "input": list(texts)},
            headers,
        )
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list) or len(data) != len(texts):
            raise EmbeddingProviderError(f"{self.id} returned a malformed embeddings payload", provider=self.id)

        ordered = sorted(
            data,
            key=lambda item: item.get("index", 0) if isinstance(item, dict) else 0,
        )
        vectors: List[List[float]] = []
        for item in ordered:
            vector = _as_vector(item.get("embedding") if isinstance(item, dict) else item)
            if vector is None:
                raise EmbeddingProviderError(f"{self.id} returned an invalid vector", provider=self.id)
            vectors.append(vector)
        return vectors


class GeminiEmbeddingProvider(_HttpEmbeddingProvider):
    """`models/{model}:batchEmbedContents` on the Generative Language API."""

    id = "gemini"

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        model_path = self.model if self.model.startswith("models/") else f"models/{self.model}"
        headers = self._request_headers()
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key
        payload = await self._post_json(
            _join_api_url(self.base_url, f"/{model_path}:batchEmbedContents"),
            {
                "requests": [
                    {"model": model_path, "content": {"parts": [{"text": text}]}} for text in texts
                ]
            },
            headers,
        )
        embeddings = payload.get("embeddings") if isinstance(payload, dict) else None
        if not isinstance(embeddings, list) or len(embeddings) != len(texts):
            raise EmbeddingProviderError("gemini returned a malformed embeddings payload", provider=self.id)
        vectors: List[List[float]] = []
        for item in embeddings:
            vector = _as_vector(item.get("values") if isinstance(item, dict) else None)
            if vector is None:
                raise EmbeddingProviderError("gemini returned an invalid vector", provider=self.id)
            vectors.append(vector)
        return vectors


@dataclass(frozen=True)
class ProviderSelection:
    """
    Outcome of provider selection. Only the active provider is held; the
    configured fallback is kept by name and built on demand.
    """

    requested: str
    provider: Optional[EmbeddingProvider]
    fallback: Optional[str] = None
    fallback_from: Optional[str] = None
    unavailable_reason: Optional[str] = None


def _resolve_api_key(name: str, settings: MemorySearchSettings, explicit: bool) -> str:
    if explicit and settings.remote.api_key:
        return settings.remote.api_key
    return _first_env(API_KEY_ENV.get(name, []))


def create_provider(
    name: str,
    settings: MemorySearchSettings,
    *,
    explicit: bool = True,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> EmbeddingProvider:
    """
    Build one provider by name. `explicit` means it was named in settings, so
    the `remote` section (base url, key, headers, model) applies to it.
    Raises ConfigurationError when a remote provider has no API key.
    """
    if name == "local":
        return LocalHashEmbeddingProvider(dims=settings.local.dims)
    if name not in DEFAULT_BASE_URLS:
        raise ConfigurationError(f"unknown embedding provider: {name}")

    api_key = _resolve_api_key(name, settings, explicit)
    if not api_key:
        raise ConfigurationError(f"no API key found for embedding provider '{name}'")
    model = (settings.model if explicit and settings.model else "") or DEFAULT_MODELS[name]
    base_url = (settings.remote.base_url if explicit and settings.remote.base_url else "") or DEFAULT_BASE_URLS[name]
    headers = settings.remote.headers if explicit else {}
    timeout = settings.batch.timeout_seconds or 120.0

    if name == "gemini":
        return GeminiEmbeddingProvider(model, base_url, api_key, headers, timeout, transport)
    return OpenAICompatibleEmbeddingProvider(name, model, base_url, api_key, headers, timeout, transport)


def select_provider(
    settings: MemorySearchSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProviderSelection:
    requested = settings.provider
    fallback = settings.fallback if settings.fallback != "none" else None

    if requested == "none":
        return ProviderSelection(requested=requested, provider=None, unavailable_reason="embedding provider disabled")

    if requested == "auto":
        for name in REMOTE_PROVIDER_ORDER:
            if not _first_env(API_KEY_ENV[name]) and not settings.remote.api_key:
                continue
            try:
                return ProviderSelection(
                    requested=requested,
                    provider=create_provider(name, settings, explicit=True, transport=transport),
                    fallback=fallback,
                )
            except ConfigurationError:
                continue
        if fallback:
            try:
                return ProviderSelection(
                    requested=requested,
                    provider=create_provider(fallback, settings, explicit=False, transport=transport),
                    fallback_from="auto",
                )
            except ConfigurationError:
                pass
        return ProviderSelection(
            requested=requested,
            provider=None,
            unavailable_reason="no embedding provider API key configured",
        )

    try:
        provider = create_provider(requested, settings, explicit=True, transport=transport)
        return ProviderSelection(requested=requested, provider=provider, fallback=fallback)
    except ConfigurationError as exc:
        if not fallback:
            raise
        provider = create_provider(fallback, settings, explicit=False, transport=transport)
        return ProviderSelection(
            requested=requested,
            provider=provider,
            fallback_from=requested,
            unavailable_reason=str(exc),
        )
