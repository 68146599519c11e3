import json

import httpx
import pytest

from embeddings.providers import (
    GeminiEmbeddingProvider,
    LocalHashEmbeddingProvider,
    OpenAICompatibleEmbeddingProvider,
    create_provider,
    select_provider,
)
from index_config import build_settings
from index_errors import ConfigurationError, EmbeddingProviderError

_KEY_ENVS = ("OPENAI_API_KEY", "GEMINI_API_KEY", "GOOGLE_API_KEY", "VOYAGE_API_KEY", "MISTRAL_API_KEY")


def _clear_keys(monkeypatch) -> None:
    for name in _KEY_ENVS:
        monkeypatch.delenv(name, raising=False)


@pytest.mark.asyncio
async def test_local_provider_is_deterministic_and_normalized() -> None:
    provider = LocalHashEmbeddingProvider(dims=32)
    first, again, empty = await provider.embed(["Deploy on Friday", "deploy  on friday", ""])
    assert first == again
    assert len(first) == 32
    assert sum(v * v for v in first) == pytest.approx(1.0)
    assert empty == [0.0] * 32
    assert provider.key != LocalHashEmbeddingProvider(dims=64).key


@pytest.mark.asyncio
async def test_openai_compatible_provider_orders_by_index() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
        )

    provider = OpenAICompatibleEmbeddingProvider(
        "openai",
        "text-embedding-3-small",
        "https://example.test/v1/embeddings",
        "sk-test",
        transport=httpx.MockTransport(handler),
    )
    vectors = await provider.embed(["a", "b"])

    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    assert seen["url"] == "https://example.test/v1/embeddings"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"] == {"model": "text-embedding-3-small", "input": ["a", "b"]}


@pytest.mark.asyncio
async def test_http_errors_and_bad_payloads_raise_provider_error() -> None:
    statuses = iter([httpx.Response(500, json={}), httpx.Response(200, json={"data": [{"embedding": ["x"]}]})])
    provider = OpenAICompatibleEmbeddingProvider(
        "voyage",
        "voyage-3-large",
        "https://example.test/v1",
        "key",
        transport=httpx.MockTransport(lambda request: next(statuses)),
    )

    with pytest.raises(EmbeddingProviderError, match="HTTP 500"):
        await provider.embed(["a"])
    with pytest.raises(EmbeddingProviderError, match="invalid vector"):
        await provider.embed(["a"])


@pytest.mark.asyncio
async def test_gemini_provider_uses_batch_endpoint() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["key"] = request.headers.get("x-goog-api-key")
        return httpx.Response(200, json={"embeddings": [{"values": [0.5, 0.5]}]})

    provider = GeminiEmbeddingProvider(
        "gemini-embedding-001",
        "https://example.test/v1beta",
        "g-key",
        transport=httpx.MockTransport(handler),
    )
    assert await provider.embed(["a"]) == [[0.5, 0.5]]
    assert seen["path"] == "/v1beta/models/gemini-embedding-001:batchEmbedContents"
    assert seen["key"] == "g-key"


def test_explicit_remote_provider_without_key_is_a_configuration_error(monkeypatch) -> None:
    _clear_keys(monkeypatch)
    with pytest.raises(ConfigurationError):
        select_provider(build_settings({"provider": "openai"}))


def test_missing_key_falls_back_when_configured(monkeypatch) -> None:
    _clear_keys(monkeypatch)
    selection = select_provider(build_settings({"provider": "openai", "fallback": "local"}))
    assert selection.provider.id == "local"
    assert selection.fallback_from == "openai"
    assert "openai" in selection.unavailable_reason


def test_auto_picks_first_remote_with_key(monkeypatch) -> None:
    _clear_keys(monkeypatch)
    monkeypatch.setenv("VOYAGE_API_KEY", "v-key")
    selection = select_provider(build_settings({"provider": "auto"}))
    assert selection.provider.id == "voyage"

    _clear_keys(monkeypatch)
    unavailable = select_provider(build_settings({"provider": "auto"}))
    assert unavailable.provider is None
    assert unavailable.unavailable_reason == "no embedding provider API key configured"


def test_remote_settings_apply_only_to_explicit_provider(monkeypatch) -> None:
    _clear_keys(monkeypatch)
    monkeypatch.setenv("MISTRAL_API_KEY", "m-key")
    settings = build_settings(
        {"provider": "openai", "model": "custom-model", "remote": {"api_key": "sk", "base_url": "https://proxy.test/v1"}}
    )
    explicit = create_provider("openai", settings)
    implicit = create_provider("mistral", settings, explicit=False)

    assert explicit.model == "custom-model"
    assert explicit.base_url == "https://proxy.test/v1"
    assert implicit.model == "mistral-embed"
    assert implicit.base_url == "https://api.mistral.ai/v1"
    assert explicit.key != create_provider("openai", build_settings({"remote": {"api_key": "sk"}})).key
