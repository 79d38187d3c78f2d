"""
Append-only error record store.

Every error-handler decision is written here and never updated or
deleted. Records are keyed by job and, when known, by project so
operators can inspect failures after the job itself has been archived.

Storage:
- SQLite, one thread-local connection per thread
- WAL mode so readers (HTTP) never block the writer (worker)
- No UPDATE, no DELETE
"""

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .catalog import ErrorCategory, RecoveryAction, Stage


class ErrorStoreError(Exception):
    """Base exception for error store failures."""
    pass


class ErrorRecord(BaseModel):
    """One immutable error-handler decision."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: f"err_{uuid.uuid4().hex[:12]}")
    job_id: str
    project_id: Optional[str] = None
    stage: Stage
    category: ErrorCategory
    error_code: str
    message: str  # user-facing
    technical_message: str
    stderr_tail: Optional[str] = None
    action: RecoveryAction
    attempt: int = 0
    retry_delay_ms: Optional[int] = None
    user_action: Optional[str] = None
    admin_action: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_api(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jobId": self.job_id,
            "projectId": self.project_id,
            "stage": self.stage.value,
            "category": self.category.value,
            "errorCode": self.error_code,
            "message": self.message,
            "technicalMessage": self.technical_message,
            "stderrTail": self.stderr_tail,
            "action": self.action.value,
            "attempt": self.attempt,
            "retryDelayMs": self.retry_delay_ms,
            "userAction": self.user_action,
            "adminAction": self.admin_action,
            "createdAt": self.created_at.isoformat(),
        }


class ErrorStore:
    """
    SQLite-backed, append-only store of ErrorRecords.

    Args:
        db_path: SQLite file. A file (not ':memory:') is required because
            the worker and HTTP threads each open their own connection.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        # Every thread's connection, so close() can reach them all
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._init_schema()

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "connection", None)
        with self._connections_lock:
            # close() may have closed this thread's connection
            if conn is not None and conn not in self._connections:
                conn = None
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            self._local.connection = conn
            with self._connections_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _cursor(self) -> Generator[sqlite3.Cursor, None, None]:
        conn = self._get_connection()
        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise ErrorStoreError(f"Error store operation failed: {e}") from e
        finally:
            cursor.close()

    def _init_schema(self) -> None:
        with self._cursor() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS error_records (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    project_id TEXT,
                    stage TEXT NOT NULL,
                    category TEXT NOT NULL,
                    error_code TEXT NOT NULL,
                    message TEXT NOT NULL,
                    technical_message TEXT NOT NULL,
                    stderr_tail TEXT,
                    action TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    retry_delay_ms INTEGER,
                    user_action TEXT,
                    admin_action TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_errors_job ON error_records(job_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_errors_project ON error_records(project_id)")

    # =========================================================================
    # Writes (append-only)
    # =========================================================================

    def append(self, record: ErrorRecord) -> None:
        """
        Persist a record. Re-inserting an existing id is a violation.

        Raises:
            ErrorStoreError: On duplicate id or database failure
        """
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT INTO error_records (
                    id, job_id, project_id, stage, category, error_code, message,
                    technical_message, stderr_tail, action, attempt, retry_delay_ms,
                    user_action, admin_action, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.job_id,
                record.project_id,
                record.stage.value,
                record.category.value,
                record.error_code,
                record.message,
                record.technical_message,
                record.stderr_tail,
                record.action.value,
                record.attempt,
                record.retry_delay_ms,
                record.user_action,
                record.admin_action,
                record.created_at.isoformat(),
            ))

    # =========================================================================
    # Reads
    # =========================================================================

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ErrorRecord:
        return ErrorRecord(
            id=row["id"],
            job_id=row["job_id"],
            project_id=row["project_id"],
            stage=Stage(row["stage"]),
            category=ErrorCategory(row["category"]),
            error_code=row["error_code"],
            message=row["message"],
            technical_message=row["technical_message"],
            stderr_tail=row["stderr_tail"],
            action=RecoveryAction(row["action"]),
            attempt=row["attempt"],
            retry_delay_ms=row["retry_delay_ms"],
            user_action=row["user_action"],
            admin_action=row["admin_action"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def for_job(self, job_id: str) -> List[ErrorRecord]:
        """Records for a job, oldest first."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM error_records WHERE job_id = ? ORDER BY created_at ASC, rowid ASC",
                (job_id,),
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def for_project(self, project_id: str, limit: int = 100) -> List[ErrorRecord]:
        """Most recent records for a project, newest first."""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM error_records WHERE project_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (project_id, limit),
            )
            return [self._row_to_record(row) for row in cursor.fetchall()]

    def stats(self, project_id: str) -> Dict[str, Any]:
        """Counts by category, code and stage for a project."""
        result: Dict[str, Any] = {"total": 0, "byCategory": {}, "byCode": {}, "byStage": {}}
        with self._cursor() as cursor:
            for column, key in (("category", "byCategory"), ("error_code", "byCode"), ("stage", "byStage")):
                cursor.execute(
                    f"SELECT {column} AS k, COUNT(*) AS n FROM error_records "
                    f"WHERE project_id = ? GROUP BY {column} ORDER BY n DESC",
                    (project_id,),
                )
                result[key] = {row["k"]: row["n"] for row in cursor.fetchall()}
        result["total"] = sum(result["byCategory"].values())
        return result

    def export_json(self, job_id: str) -> str:
        return json.dumps([r.to_api() for r in self.for_job(job_id)], indent=2)

    def close(self) -> None:
        """Close the connections opened by every thread."""
        with self._connections_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local.connection = None
