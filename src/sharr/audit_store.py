"""
SQLite-based audit store for runbook executions.

Every ExecutionResult is stored as an audit record together with the
finding's account and region and the ticket raised for it, if any. The
store answers "what happened to this resource" questions for the CLI and
keeps per-status counts.

For persistent history across container restarts, mount the database
path on a volume.

Usage:
    from sharr.audit_store import AuditStore

    with AuditStore(db_path="./sharr.db") as store:
        store.initialize_schema()
        store.record(result, finding, ticket_reference="SEC-42")
        history = store.get_history("sg-123")
"""

import json
import sqlite3
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from sharr.errors import AuditStoreError
from sharr.logging_config import get_logger, log_with_context
from sharr.models import ExecutionResult, Finding

logger = get_logger(__name__)

_COLUMNS = (
    "execution_id",
    "standard_id",
    "control_id",
    "resource_id",
    "account_id",
    "region",
    "overall_status",
    "cancelled",
    "ticket_reference",
    "error",
    "started_at",
    "completed_at",
    "recorded_at",
    "result_json",
)


class AuditStore:
    """
    SQLite-backed audit log of execution results.

    One connection is shared by the dispatch worker threads; statements are
    serialized with a lock.

    Attributes:
        db_path: Path to SQLite database file
        conn: SQLite connection (one per store)
    """

    def __init__(self, db_path: str = "./sharr.db") -> None:
        """
        Initialize audit store.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
        """
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

        log_with_context(
            logger,
            "info",
            "Initialized audit store",
            db_path=self.db_path,
        )

    def initialize_schema(self) -> None:
        """
        Create the execution_records table and its indexes.

        Safe to call multiple times.

        Raises:
            AuditStoreError: If schema creation fails
        """
        conn = self._ensure_connection()

        try:
            with self._lock:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS execution_records (
                        execution_id TEXT PRIMARY KEY,
                        standard_id TEXT NOT NULL,
                        control_id TEXT NOT NULL,
                        resource_id TEXT NOT NULL,
                        account_id TEXT NOT NULL,
                        region TEXT,
                        overall_status TEXT NOT NULL,
                        cancelled INTEGER NOT NULL DEFAULT 0,
                        ticket_reference TEXT,
                        error TEXT,
                        started_at TEXT NOT NULL,
                        completed_at TEXT NOT NULL,
                        recorded_at TEXT NOT NULL,
                        result_json TEXT NOT NULL
                    )
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_resource
                    ON execution_records(resource_id, recorded_at)
                """)
                conn.execute("""
                    CREATE INDEX IF NOT EXISTS idx_recorded_at
                    ON execution_records(recorded_at)
                """)
                conn.commit()

            log_with_context(logger, "info", "Initialized audit schema")

        except sqlite3.Error as e:
            raise self._failure("initialize_schema", e) from e

    def record(
        self,
        result: ExecutionResult,
        finding: Finding,
        ticket_reference: str | None = None,
    ) -> None:
        """
        Store an execution result.

        Re-recording the same execution id replaces the earlier row.

        Args:
            result: Completed execution result
            finding: Finding the execution ran for
            ticket_reference: Ticket raised for the execution, if any

        Raises:
            AuditStoreError: If the insert fails
        """
        conn = self._ensure_connection()
        row = (
            result.execution_id,
            result.standard_id,
            result.control_id,
            result.resource_id,
            finding.account_id,
            finding.region,
            result.overall_status.value,
            int(result.cancelled),
            ticket_reference,
            result.error[:1000] if result.error else None,
            result.started_at,
            result.completed_at,
            datetime.now(UTC).isoformat(),
            json.dumps(result.to_dict(), default=str),
        )

        try:
            with self._lock:
                conn.execute(
                    f"""
                    INSERT OR REPLACE INTO execution_records ({", ".join(_COLUMNS)})
                    VALUES ({", ".join("?" for _ in _COLUMNS)})
                    """,
                    row,
                )
                conn.commit()

            log_with_context(
                logger,
                "info",
                "Recorded execution result",
                resource_id=result.resource_id,
                control_id=result.control_id,
                overall_status=result.overall_status.value,
            )

        except sqlite3.Error as e:
            raise self._failure("record", e) from e

    def get_history(self, resource_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """
        Return the most recent records for a resource, newest first.

        Raises:
            AuditStoreError: If the query fails
        """
        return self._select(
            "get_history",
            """
            SELECT * FROM execution_records
            WHERE resource_id = ?
            ORDER BY recorded_at DESC, rowid DESC
            LIMIT ?
            """,
            (resource_id, limit),
        )

    def get_latest(self, resource_id: str, control_id: str) -> dict[str, Any] | None:
        """
        Return the latest record for a resource and control.

        Raises:
            AuditStoreError: If the query fails
        """
        rows = self._select(
            "get_latest",
            """
            SELECT * FROM execution_records
            WHERE resource_id = ? AND control_id = ?
            ORDER BY recorded_at DESC, rowid DESC
            LIMIT 1
            """,
            (resource_id, control_id),
        )
        return rows[0] if rows else None

    def get_statistics(self) -> dict[str, int]:
        """
        Count records by overall status.

        Returns:
            Dict mapping overall status to count, plus ``total``

        Raises:
            AuditStoreError: If the query fails
        """
        conn = self._ensure_connection()

        try:
            with self._lock:
                cursor = conn.execute(
                    """
                    SELECT overall_status, COUNT(*) FROM execution_records
                    GROUP BY overall_status
                    """
                )
                stats: dict[str, int] = {row[0]: row[1] for row in cursor.fetchall()}

            stats["total"] = sum(stats.values())
            log_with_context(logger, "debug", "Retrieved statistics", stats=stats)
            return stats

        except sqlite3.Error as e:
            raise self._failure("get_statistics", e) from e

    def cleanup_old_records(self, retention_days: int = 30) -> int:
        """
        Delete records older than the retention period.

        Returns:
            Number of records deleted

        Raises:
            AuditStoreError: If cleanup fails
        """
        conn = self._ensure_connection()
        cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).isoformat()

        try:
            with self._lock:
                cursor = conn.execute(
                    "DELETE FROM execution_records WHERE recorded_at < ?",
                    (cutoff,),
                )
                deleted_count = cursor.rowcount
                conn.commit()

            log_with_context(
                logger,
                "info",
                "Cleaned up old audit records",
                deleted_count=deleted_count,
                retention_days=retention_days,
            )
            return deleted_count

        except sqlite3.Error as e:
            raise self._failure("cleanup_old_records", e) from e

    def _select(self, operation: str, query: str, params: tuple[Any, ...]) -> list[dict[str, Any]]:
        conn = self._ensure_connection()

        try:
            with self._lock:
                cursor = conn.execute(query, params)
                names = [description[0] for description in cursor.description]
                rows = [dict(zip(names, values)) for values in cursor.fetchall()]
        except sqlite3.Error as e:
            raise self._failure(operation, e) from e

        for row in rows:
            row["cancelled"] = bool(row["cancelled"])
            row["result"] = json.loads(row.pop("result_json"))
        return rows

    def _failure(self, operation: str, error: sqlite3.Error) -> AuditStoreError:
        log_with_context(
            logger,
            "error",
            "Audit store operation failed",
            operation=operation,
            error=str(error),
        )
        return AuditStoreError(
            f"Audit store {operation} failed: {error}",
            operation=operation,
            sqlite_error=str(error),
        )

    def _ensure_connection(self) -> sqlite3.Connection:
        """
        Open the database connection on first use.

        Raises:
            AuditStoreError: If connection fails
        """
        if self.conn is not None:
            return self.conn

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
            self.conn = conn

            log_with_context(
                logger,
                "debug",
                "Opened database connection",
                db_path=self.db_path,
            )
            return conn

        except sqlite3.Error as e:
            raise self._failure("connect", e) from e

    def close(self) -> None:
        """Close the database connection. Safe to call multiple times."""
        if self.conn is not None:
            try:
                self.conn.close()
                self.conn = None
                log_with_context(logger, "debug", "Closed database connection")
            except sqlite3.Error as e:
                log_with_context(
                    logger,
                    "warning",
                    "Error closing database connection",
                    error=str(e),
                )

    def __enter__(self) -> "AuditStore":
        """Context manager entry."""
        self._ensure_connection()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()
