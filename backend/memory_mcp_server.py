"""
MCP server exposing the agent's memory index.

Tools:
- memory_search : hybrid search over memory notes and session transcripts
- memory_get    : read a memory file, optionally a line range
- memory_status : index status snapshot
- memory_sync   : run (or join) an index sync

The manager is acquired lazily from the process registry on first use, inside
the server's event loop.
"""

import asyncio
import json
import os
import sys
from typing import Any, Dict, Optional

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from loguru import logger
from mcp.server.fastmcp import FastMCP

from index_config import load_agent_context, load_settings_from_env
from index_errors import ConfigurationError, PathNotPermittedError
from index_manager import MemoryIndexManager, manager_registry
from logging_setup import configure_logging

mcp = FastMCP("Memory Index")

_manager: Optional[MemoryIndexManager] = None
_manager_guard = asyncio.Lock()


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False)


async def _get_manager() -> MemoryIndexManager:
    global _manager
    async with _manager_guard:
        if _manager is None or _manager.closed:
            agent_id, workspace_dir = load_agent_context()
            _manager = await manager_registry.acquire(agent_id, workspace_dir, load_settings_from_env())
        return _manager


@mcp.tool()
async def memory_search(
    query: str,
    max_results: Optional[int] = None,
    min_score: Optional[float] = None,
    session_key: Optional[str] = None,
) -> str:
    """
    Search memory notes and past conversations.

    Args:
        query: What to look for, in natural language.
        max_results: Number of results to return (default from settings).
        min_score: Drop results scoring below this value (0..1).
        session_key: Current session id; the first call per session warms the index.

    Returns:
        JSON string with `results`, each `{path, startLine, endLine, score, snippet, source}`.

    Examples:
        memory_search("what did we decide about the release date")
        memory_search("postgres migration", max_results=3)
    """
    if not isinstance(query, str) or not query.strip():
        return _to_json({"ok": False, "error": "query must not be empty."})
    try:
        max_results = int(max_results) if max_results is not None else None
        min_score = float(min_score) if min_score is not None else None
    except (TypeError, ValueError):
        return _to_json({"ok": False, "error": "max_results must be an integer and min_score a number."})
    if max_results is not None and max_results <= 0:
        return _to_json({"ok": False, "error": "max_results must be > 0."})
    try:
        manager = await _get_manager()
        results = await manager.search(
            query,
            max_results=max_results,
            min_score=min_score,
            session_key=session_key,
        )
    except ConfigurationError as e:
        return f"Error: {str(e)}"
    except Exception as e:
        logger.exception("memory_search failed")
        return f"Error: {str(e)}"
    return _to_json({"ok": True, "query": query.strip(), "count": len(results), "results": results})


@mcp.tool()
async def memory_get(path: str, from_line: Optional[int] = None, lines: Optional[int] = None) -> str:
    """
    Read a memory file by its workspace-relative path (e.g. "memory/2024-05-01.md").

    Args:
        path: Path as returned by memory_search.
        from_line: Optional 1-based first line.
        lines: Optional number of lines to return.

    Returns:
        JSON string `{path, text}`. A permitted file that does not exist yields empty text.
    """
    try:
        manager = await _get_manager()
        payload = await manager.read_file(path, from_line=from_line, lines=lines)
    except PathNotPermittedError as e:
        return _to_json({"ok": False, "error": str(e)})
    except Exception as e:
        return f"Error: {str(e)}"
    return _to_json(payload)


@mcp.tool()
async def memory_status() -> str:
    """Report index counts, provider, capability availability and sync state as JSON."""
    try:
        manager = await _get_manager()
        return _to_json(await manager.status())
    except Exception as e:
        return f"Error: {str(e)}"


@mcp.tool()
async def memory_sync(force: bool = False, reason: str = "mcp") -> str:
    """
    Bring the index up to date with the workspace.

    Args:
        force: Re-examine every file instead of only the ones marked dirty.
        reason: Free-form label recorded with the sync.
    """
    try:
        manager = await _get_manager()
        report = await manager.sync(reason=reason, force=bool(force))
    except Exception as e:
        logger.exception("memory_sync failed")
        return f"Error: {str(e)}"
    return _to_json({"ok": not report.failed, "report": report.as_dict()})


if __name__ == "__main__":
    configure_logging()
    mcp.run()
