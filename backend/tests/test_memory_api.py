from typing import Any, Dict, List, Optional

from fastapi import FastAPI
from fastapi.testclient import TestClient

from api import memory as memory_api
from api.auth import AuthPolicy, check_access, presented_key
from index_errors import ManagerClosedError, PathNotPermittedError
from sync_engine import SyncReport

_HEADERS = {"X-Memory-Index-API-Key": "memory-secret"}


class _FakeManager:
    def __init__(self) -> None:
        self.closed = False
        self.search_calls: List[Dict[str, Any]] = []
        self.sync_calls: List[Dict[str, Any]] = []
        self.fail_sync: Optional[Exception] = None

    async def search(self, query, max_results=None, min_score=None, session_key=None):
        self.search_calls.append(
            {"query": query, "max_results": max_results, "min_score": min_score, "session_key": session_key}
        )
        return [
            {
                "path": "memory/notes.md",
                "startLine": 3,
                "endLine": 3,
                "score": 0.9,
                "snippet": "deploy on friday",
                "source": "memory",
            }
        ]

    async def read_file(self, rel_path, from_line=None, lines=None):
        if ".." in rel_path:
            raise PathNotPermittedError()
        return {"text": "line", "path": rel_path}

    async def sync(self, reason="manual", force=False, progress=None):
        self.sync_calls.append({"reason": reason, "force": force})
        if self.fail_sync is not None:
            raise self.fail_sync
        return SyncReport(reason=reason, full=force, indexed=["memory/notes.md"])

    async def status(self):
        return {"files": 1, "chunks": 2, "syncState": "idle"}

    async def probe_vector_availability(self):
        return True

    async def probe_embedding_availability(self):
        return {"ok": False, "error": "embedding provider disabled"}


def _build_client(manager: _FakeManager) -> TestClient:
    app = FastAPI()
    app.include_router(memory_api.router)
    app.dependency_overrides[memory_api.get_memory_manager] = lambda: manager
    return TestClient(app)


def _secure(monkeypatch) -> None:
    monkeypatch.setenv("MEMORY_INDEX_API_KEY", "memory-secret")
    monkeypatch.delenv("MEMORY_INDEX_ALLOW_INSECURE_LOCAL", raising=False)


def test_memory_routes_require_api_key(monkeypatch) -> None:
    _secure(monkeypatch)
    with _build_client(_FakeManager()) as client:
        response = client.post("/memory/search", json={"query": "deploy"})
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "invalid_or_missing_api_key"


def test_memory_routes_reject_when_key_not_configured(monkeypatch) -> None:
    monkeypatch.delenv("MEMORY_INDEX_API_KEY", raising=False)
    monkeypatch.delenv("MEMORY_INDEX_ALLOW_INSECURE_LOCAL", raising=False)
    with _build_client(_FakeManager()) as client:
        response = client.get("/memory/status")
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "api_key_not_configured"


def test_insecure_local_override_still_requires_loopback(monkeypatch) -> None:
    monkeypatch.delenv("MEMORY_INDEX_API_KEY", raising=False)
    monkeypatch.setenv("MEMORY_INDEX_ALLOW_INSECURE_LOCAL", "true")
    with _build_client(_FakeManager()) as client:
        response = client.get("/memory/status")
    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "insecure_local_override_requires_loopback"


def test_search_accepts_bearer_token(monkeypatch) -> None:
    _secure(monkeypatch)
    manager = _FakeManager()
    with _build_client(manager) as client:
        response = client.post(
            "/memory/search",
            json={"query": "deploy", "max_results": 1, "session_key": "s1"},
            headers={"Authorization": "Bearer memory-secret"},
        )
    assert response.status_code == 200
    payload = response.json()
    assert payload["count"] == 1
    assert payload["results"][0]["startLine"] == 3
    assert manager.search_calls == [{"query": "deploy", "max_results": 1, "min_score": None, "session_key": "s1"}]


def test_search_validates_request_body(monkeypatch) -> None:
    _secure(monkeypatch)
    with _build_client(_FakeManager()) as client:
        assert client.post("/memory/search", json={"query": ""}, headers=_HEADERS).status_code == 422
        assert client.post("/memory/search", json={"query": "x", "min_score": 2}, headers=_HEADERS).status_code == 422


def test_read_maps_disallowed_path_to_403(monkeypatch) -> None:
    _secure(monkeypatch)
    with _build_client(_FakeManager()) as client:
        denied = client.post("/memory/read", json={"path": "../secrets.md"}, headers=_HEADERS)
        allowed = client.post("/memory/read", json={"path": "memory/notes.md", "from_line": 2}, headers=_HEADERS)
    assert denied.status_code == 403
    assert denied.json()["detail"] == "path not permitted"
    assert allowed.json() == {"text": "line", "path": "memory/notes.md"}


def test_sync_returns_report_and_maps_errors(monkeypatch) -> None:
    _secure(monkeypatch)
    manager = _FakeManager()
    with _build_client(manager) as client:
        ok = client.post("/memory/sync", json={"force": True}, headers=_HEADERS)
        assert ok.status_code == 200
        assert ok.json()["ok"] is True
        assert ok.json()["report"]["indexed"] == ["memory/notes.md"]
        assert manager.sync_calls[-1] == {"reason": "api", "force": True}

        manager.fail_sync = ManagerClosedError("closed")
        assert client.post("/memory/sync", headers=_HEADERS).status_code == 503

        manager.fail_sync = RuntimeError("disk full")
        failed = client.post("/memory/sync", headers=_HEADERS)
        assert failed.status_code == 500
        assert "disk full" in failed.json()["detail"]


def test_status_and_probes(monkeypatch) -> None:
    _secure(monkeypatch)
    with _build_client(_FakeManager()) as client:
        assert client.get("/memory/status", headers=_HEADERS).json()["syncState"] == "idle"
        assert client.get("/memory/probe/vector", headers=_HEADERS).json() == {"available": True}
        assert client.get("/memory/probe/embedding", headers=_HEADERS).json()["ok"] is False


def test_closed_manager_is_service_unavailable(monkeypatch) -> None:
    _secure(monkeypatch)
    app = FastAPI()
    app.include_router(memory_api.router)
    with TestClient(app) as client:
        response = client.get("/memory/status", headers=_HEADERS)
    assert response.status_code == 503


def test_check_access_decisions() -> None:
    keyed = AuthPolicy(api_key="memory-secret")
    assert check_access(keyed, "10.0.0.5", "memory-secret") is None
    assert check_access(keyed, "127.0.0.1", "") == "invalid_or_missing_api_key"
    assert check_access(keyed, "127.0.0.1", "memory-secreT") == "invalid_or_missing_api_key"

    open_local = AuthPolicy(allow_insecure_local=True)
    assert check_access(open_local, "::1", "") is None
    assert check_access(open_local, "192.168.1.2", "") == "insecure_local_override_requires_loopback"
    assert check_access(AuthPolicy(), "127.0.0.1", "anything") == "api_key_not_configured"


def test_presented_key_prefers_header_over_bearer() -> None:
    assert presented_key(" header-key ", "Bearer bearer-key") == "header-key"
    assert presented_key(None, "bearer  bearer-key ") == "bearer-key"
    assert presented_key(None, "Basic abc") == ""
    assert presented_key(None, None) == ""
