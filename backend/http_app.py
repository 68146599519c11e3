from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from api import memory_router
from index_config import load_agent_context, load_settings_from_env
from index_manager import manager_registry
from logging_setup import configure_logging


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Acquire the agent's memory index on startup, release it on shutdown."""
    configure_logging()
    logger.info("Memory index API starting...")
    agent_id, workspace_dir = load_agent_context()
    try:
        settings = load_settings_from_env()
        manager = await manager_registry.acquire(agent_id, workspace_dir, settings)
    except Exception as exc:
        logger.error(f"Failed to open memory index: {exc}")
        raise RuntimeError("Failed to initialize memory index during startup") from exc
    app.state.memory_manager = manager

    yield

    logger.info("Closing memory index...")
    app.state.memory_manager = None
    await manager_registry.release(manager)
    await manager_registry.close_all()


app = FastAPI(
    title="Memory Index API",
    description="Local memory indexing and hybrid retrieval for agents",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(memory_router)


@app.get("/")
async def root():
    return {
        "message": "Memory Index API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": _utc_iso_now(),
    }
    manager = getattr(app.state, "memory_manager", None)
    if manager is None or manager.closed:
        payload["status"] = "degraded"
        payload["index"] = None
        return payload
    try:
        payload["index"] = {
            "syncState": manager.engine.state,
            "dirty": manager.tracker.is_dirty(),
            "searchMode": manager.searcher.search_mode,
            "vectorAvailable": await manager.probe_vector_availability(),
        }
    except Exception as exc:
        payload["status"] = "degraded"
        payload["index"] = {"error": str(exc)}
    return payload


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
