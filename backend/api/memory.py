"""
Memory API - search, read, sync and status for the agent's memory index.

Every route resolves the shared manager through `get_memory_manager`, which
the app wires to the registry at startup. Tests override that dependency.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from loguru import logger
from pydantic import BaseModel, Field

from index_errors import ManagerClosedError, PathNotPermittedError
from index_manager import MemoryIndexManager

from .auth import require_api_key

router = APIRouter(
    prefix="/memory",
    tags=["memory"],
    dependencies=[Depends(require_api_key)],
)


class SearchRequest(BaseModel):
    query: str = Field(min_length=1)
    max_results: Optional[int] = Field(default=None, ge=1, le=200)
    min_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    session_key: Optional[str] = None


class ReadRequest(BaseModel):
    path: str = Field(min_length=1)
    from_line: Optional[int] = Field(default=None, ge=1)
    lines: Optional[int] = Field(default=None, ge=1)


class SyncRequest(BaseModel):
    reason: str = Field(default="api", min_length=1, max_length=120)
    force: bool = False


def get_memory_manager(request: Request) -> MemoryIndexManager:
    manager = getattr(request.app.state, "memory_manager", None)
    if manager is None or manager.closed:
        raise HTTPException(status_code=503, detail="memory index not ready")
    return manager


@router.post("/search")
async def search_memory(payload: SearchRequest, manager: MemoryIndexManager = Depends(get_memory_manager)):
    try:
        results = await manager.search(
            payload.query,
            max_results=payload.max_results,
            min_score=payload.min_score,
            session_key=payload.session_key,
        )
    except ManagerClosedError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"query": payload.query, "results": results, "count": len(results)}


@router.post("/read")
async def read_memory(payload: ReadRequest, manager: MemoryIndexManager = Depends(get_memory_manager)):
    try:
        return await manager.read_file(payload.path, from_line=payload.from_line, lines=payload.lines)
    except PathNotPermittedError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/sync")
async def sync_memory(payload: Optional[SyncRequest] = None, manager: MemoryIndexManager = Depends(get_memory_manager)):
    request = payload or SyncRequest()
    try:
        report = await manager.sync(reason=request.reason, force=request.force)
    except ManagerClosedError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except Exception as exc:
        logger.exception("memory sync via api failed")
        raise HTTPException(status_code=500, detail=f"sync failed: {exc}")
    return {"ok": not report.failed, "report": report.as_dict()}


@router.get("/status")
async def get_memory_status(manager: MemoryIndexManager = Depends(get_memory_manager)) -> Dict[str, Any]:
    return await manager.status()


@router.get("/probe/vector")
async def probe_vector(manager: MemoryIndexManager = Depends(get_memory_manager)):
    return {"available": await manager.probe_vector_availability()}


@router.get("/probe/embedding")
async def probe_embedding(manager: MemoryIndexManager = Depends(get_memory_manager)):
    return await manager.probe_embedding_availability()
