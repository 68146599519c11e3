"""
Which files belong to the memory index, and which files a caller may read.

Stored paths are workspace-relative POSIX strings (`memory/2024-05-01.md`).
Files pulled in through extra paths that live outside the workspace are
stored by absolute POSIX path. Session logs are stored as `sessions/<name>`.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from index_errors import PathNotPermittedError

MEMORY_ROOT_FILES = ("MEMORY.md", "memory.md")
MEMORY_DIR = "memory"
SESSION_SUFFIX = ".jsonl"


@dataclass(frozen=True)
class MemoryFileEntry:
    path: str
    abs_path: Path


def _is_markdown(path: Path) -> bool:
    return path.suffix.lower() == ".md"


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def stored_path_for(abs_path: Path, workspace_dir: Path) -> str:
    resolved = abs_path.resolve()
    workspace = workspace_dir.resolve()
    if _is_within(resolved, workspace):
        return resolved.relative_to(workspace).as_posix()
    return resolved.as_posix()


def session_path_for(abs_path: Path) -> str:
    return f"sessions/{abs_path.name}"


def is_memory_path(rel_path: str) -> bool:
    normalized = rel_path.replace("\\", "/")
    if normalized in MEMORY_ROOT_FILES:
        return True
    return normalized.startswith(f"{MEMORY_DIR}/") and normalized.lower().endswith(".md")


def _walk_markdown(root: Path) -> List[Path]:
    found: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for filename in sorted(filenames):
            candidate = Path(dirpath) / filename
            if _is_markdown(candidate) and candidate.is_file():
                found.append(candidate)
    return found


def memory_watch_roots(workspace_dir: Path, extra_paths: Sequence[str]) -> List[Path]:
    roots = [workspace_dir / name for name in MEMORY_ROOT_FILES]
    roots.append(workspace_dir / MEMORY_DIR)
    roots.extend(resolve_extra_path(extra, workspace_dir) for extra in extra_paths)
    return roots


def resolve_extra_path(extra: str, workspace_dir: Path) -> Path:
    candidate = Path(extra).expanduser()
    if not candidate.is_absolute():
        candidate = workspace_dir / candidate
    return candidate


def list_memory_files(workspace_dir: Path, extra_paths: Sequence[str]) -> List[MemoryFileEntry]:
    """Every markdown file the memory source covers, deduplicated by stored path."""
    entries: Dict[str, MemoryFileEntry] = {}
    for root in memory_watch_roots(workspace_dir, extra_paths):
        if root.is_file() and _is_markdown(root):
            candidates = [root]
        elif root.is_dir():
            candidates = _walk_markdown(root)
        else:
            continue
        for candidate in candidates:
            stored = stored_path_for(candidate, workspace_dir)
            entries.setdefault(stored, MemoryFileEntry(path=stored, abs_path=candidate.resolve()))
    return [entries[key] for key in sorted(entries)]


def list_session_files(sessions_dir: Path) -> List[Path]:
    if not sessions_dir.is_dir():
        return []
    return sorted(p for p in sessions_dir.iterdir() if p.is_file() and p.name.endswith(SESSION_SUFFIX))


def resolve_read_path(workspace_dir: Path, extra_paths: Sequence[str], rel_path: str) -> Path:
    """
    Resolve a caller-supplied path for reading.

    Only markdown files under the workspace root or an extra path are allowed.
    Every rejection raises the same PathNotPermittedError.
    """
    raw = (rel_path or "").strip()
    if not raw or "\x00" in raw:
        raise PathNotPermittedError()
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = workspace_dir / candidate
    resolved = candidate.resolve()

    if not _is_markdown(resolved):
        raise PathNotPermittedError()

    roots = [workspace_dir.resolve()]
    roots.extend(resolve_extra_path(extra, workspace_dir).resolve() for extra in extra_paths)
    for root in roots:
        if resolved == root or _is_within(resolved, root):
            return resolved
    raise PathNotPermittedError()


def read_text_range(path: Path, from_line: Optional[int] = None, lines: Optional[int] = None) -> str:
    """Read a file, optionally sliced to `lines` lines starting at 1-based `from_line`."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""
    if from_line is None and lines is None:
        return content
    all_lines = content.split("\n")
    start = max(1, from_line or 1)
    count = max(1, lines) if lines is not None else len(all_lines)
    return "\n".join(all_lines[start - 1 : start - 1 + count])
