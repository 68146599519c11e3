"""
SQL migration runner for the memory index store.

Migrations live next to this module as `NNNN_description.sql`. Applied versions
are recorded in `schema_migrations` together with a checksum, so an edited
migration is refused instead of silently diverging.
Several processes may open the same store file; a `filelock` next to the
database serializes them while migrations run.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from filelock import FileLock, Timeout
from loguru import logger

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

_MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>\d{4,})_.*\.sql$")
_ADD_COLUMN_PATTERN = re.compile(
    r"^ALTER\s+TABLE\s+.+\s+ADD\s+COLUMN\s+.+$",
    re.IGNORECASE | re.DOTALL,
)


@dataclass(frozen=True)
class MigrationFile:
    version: str
    path: Path
    checksum: str


class MigrationError(RuntimeError):
    """A migration could not be applied (lock timeout or checksum drift)."""


class MigrationRunner:
    """Discover and apply SQL migrations against one store file."""

    def __init__(
        self,
        database_file: Path,
        migrations_dir: Optional[Path] = None,
        lock_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.database_file = Path(database_file)
        self.migrations_dir = Path(migrations_dir) if migrations_dir is not None else MIGRATIONS_DIR
        self.lock_file_path = self.database_file.with_name(self.database_file.name + ".migrate.lock")
        if lock_timeout_seconds is None:
            raw_timeout = os.getenv("MEMORY_INDEX_MIGRATION_LOCK_TIMEOUT_SEC", "").strip()
            try:
                lock_timeout_seconds = float(raw_timeout) if raw_timeout else 10.0
            except ValueError:
                lock_timeout_seconds = 10.0
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    async def apply_pending(self) -> List[str]:
        """Apply all pending migrations and return the applied versions."""
        return await asyncio.to_thread(self._apply_pending_sync)

    def current_version(self) -> Optional[str]:
        if not self.database_file.exists():
            return None
        with sqlite3.connect(self.database_file) as conn:
            self._ensure_schema_table(conn)
            row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
        return str(row[0]) if row and row[0] is not None else None

    def _apply_pending_sync(self) -> List[str]:
        migration_files = self.discover()
        if not migration_files:
            return []
        self.database_file.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(self.lock_file_path), timeout=self.lock_timeout_seconds)
        try:
            with lock:
                return self._apply_unlocked(migration_files)
        except Timeout as exc:
            raise MigrationError(
                f"timed out waiting for migration lock: {self.lock_file_path} "
                f"({self.lock_timeout_seconds}s)"
            ) from exc

    def _apply_unlocked(self, migration_files: List[MigrationFile]) -> List[str]:
        with sqlite3.connect(self.database_file) as conn:
            self._ensure_schema_table(conn)
            recorded = self._load_applied_checksums(conn)
            applied: List[str] = []

            for migration in migration_files:
                checksum = recorded.get(migration.version)
                if checksum is not None:
                    if checksum != migration.checksum:
                        raise MigrationError(
                            f"checksum mismatch for migration {migration.version}: "
                            f"recorded={checksum} current={migration.checksum}"
                        )
                    continue

                self._execute_script(conn, migration.path.read_text(encoding="utf-8"))
                conn.execute(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) VALUES (?, ?, ?)",
                    (migration.version, datetime.now(timezone.utc).isoformat(), migration.checksum),
                )
                conn.commit()
                applied.append(migration.version)

        if applied:
            logger.info("applied store migrations", versions=applied, db=str(self.database_file))
        return applied

    def discover(self) -> List[MigrationFile]:
        if not self.migrations_dir.exists():
            return []
        found: List[MigrationFile] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            match = _MIGRATION_FILE_PATTERN.match(path.name)
            if not match:
                continue
            found.append(
                MigrationFile(
                    version=match.group("version"),
                    path=path,
                    checksum=self._normalized_checksum(path.read_bytes()),
                )
            )
        return found

    @staticmethod
    def _normalized_checksum(content: bytes) -> str:
        """Line endings are normalized so CRLF checkouts keep the same checksum."""
        try:
            payload = content.decode("utf-8").replace("\r\n", "\n").replace("\r", "\n").encode("utf-8")
        except UnicodeDecodeError:
            payload = content
        return hashlib.sha256(payload).hexdigest()

    @staticmethod
    def _ensure_schema_table(conn: sqlite3.Connection) -> None:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL,
                checksum TEXT NOT NULL
            )
            """
        )
        conn.commit()

    @staticmethod
    def _load_applied_checksums(conn: sqlite3.Connection) -> Dict[str, str]:
        cursor = conn.execute("SELECT version, checksum FROM schema_migrations")
        return {str(version): str(checksum) for version, checksum in cursor.fetchall()}

    @staticmethod
    def _execute_script(conn: sqlite3.Connection, script: str) -> None:
        for statement in split_sql_statements(script):
            try:
                conn.execute(statement)
            except sqlite3.OperationalError as exc:
                if _ADD_COLUMN_PATTERN.match(statement) and "duplicate column name" in str(exc).lower():
                    continue
                raise


def split_sql_statements(script: str) -> List[str]:
    """Split a script on `;` outside quotes, dropping comment-only pieces."""
    statements: List[str] = []
    buffer: List[str] = []
    in_single = False
    in_double = False

    for char in script:
        if char == "'" and not in_double:
            in_single = not in_single
        elif char == '"' and not in_single:
            in_double = not in_double

        if char == ";" and not in_single and not in_double:
            statements.append("".join(buffer))
            buffer = []
        else:
            buffer.append(char)
    statements.append("".join(buffer))

    result: List[str] = []
    for statement in statements:
        lines = [line for line in statement.splitlines() if line.strip() and not line.strip().startswith("--")]
        if lines:
            result.append("\n".join(lines).strip())
    return result


async def apply_pending_migrations(database_file: Path, migrations_dir: Optional[Path] = None) -> List[str]:
    runner = MigrationRunner(database_file, migrations_dir=migrations_dir)
    return await runner.apply_pending()
