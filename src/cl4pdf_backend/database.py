"""
SQLite persistence for job records.

This module provides the connection helper shared by every store in the
package and the ``pdf_jobs`` table that backs the job ledger.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Optional

DEFAULT_DB_PATH = Path("data/cl4pdf.db")


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


@contextmanager
def connect(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a connection that commits on success and rolls back on error."""
    _ensure_db_dir(db_path)
    conn = sqlite3.connect(str(db_path), timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


class JobDatabase:
    """
    SQLite table of PDF jobs.

    Thread-safe: each call opens its own connection and SQLite serializes
    writers. Terminal updates are guarded by the current status so a row
    never leaves a terminal state for a different one.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self._init_db()

    def _init_db(self) -> None:
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pdf_jobs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    platform TEXT NOT NULL,
                    tool_name TEXT NOT NULL,
                    job_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input_files TEXT NOT NULL,
                    processing_options TEXT,
                    output_files TEXT,
                    file_size_bytes INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT,
                    processing_time_ms INTEGER,
                    ip_address TEXT,
                    user_agent TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_pdf_jobs_user
                ON pdf_jobs(user_id, created_at DESC)
            """)

    def insert_job(self, job_data: Dict[str, Any]) -> None:
        with connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO pdf_jobs (
                    id, user_id, platform, tool_name, job_type, status,
                    input_files, processing_options, output_files,
                    file_size_bytes, error_message, created_at,
                    completed_at, processing_time_ms, ip_address, user_agent
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                job_data["id"],
                job_data.get("user_id"),
                job_data["platform"],
                job_data["tool_name"],
                job_data.get("job_type", "sync"),
                job_data["status"],
                json.dumps(job_data.get("input_files", [])),
                json.dumps(job_data.get("processing_options", {})),
                json.dumps(job_data.get("output_files", [])),
                job_data.get("file_size_bytes", 0),
                job_data.get("error_message"),
                serialize_datetime(job_data["created_at"]),
                serialize_datetime(job_data.get("completed_at")),
                job_data.get("processing_time_ms"),
                job_data.get("ip_address"),
                job_data.get("user_agent"),
            ))

    def update_terminal(
        self,
        job_id: str,
        status: str,
        allowed_from: Iterable[str],
        completed_at: datetime,
        output_files: Optional[list] = None,
        processing_time_ms: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> int:
        """
        Write a terminal status for a job.

        Args:
            job_id: The job ID
            status: The terminal status to write
            allowed_from: Statuses the row may currently hold
            completed_at: Completion timestamp
            output_files: Output descriptors (completion only)
            processing_time_ms: Elapsed processing time (completion only)
            error_message: Failure message (failure only)

        Returns:
            Number of rows updated (0 when the job is missing or in a
            status outside ``allowed_from``)
        """
        allowed = list(allowed_from)
        placeholders = ", ".join("?" for _ in allowed)
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                f"""
                UPDATE pdf_jobs
                SET status = ?, completed_at = ?, output_files = ?,
                    processing_time_ms = ?, error_message = ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                (
                    status,
                    serialize_datetime(completed_at),
                    json.dumps(output_files or []),
                    processing_time_ms,
                    error_message,
                    job_id,
                    *allowed,
                ),
            )
            return cursor.rowcount

    def get_job(self, job_id: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Retrieve a job by ID, optionally restricted to an owner.

        A guest job (NULL owner) never matches an owner filter.
        """
        with connect(self.db_path) as conn:
            if user_id is None:
                row = conn.execute(
                    "SELECT * FROM pdf_jobs WHERE id = ?", (job_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM pdf_jobs WHERE id = ? AND user_id = ?", (job_id, user_id)
                ).fetchone()

            if not row:
                return None
            return self._row_to_dict(row)

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a job data dictionary."""
        return {
            "id": row["id"],
            "user_id": row["user_id"],
            "platform": row["platform"],
            "tool_name": row["tool_name"],
            "job_type": row["job_type"],
            "status": row["status"],
            "input_files": json.loads(row["input_files"] or "[]"),
            "processing_options": json.loads(row["processing_options"] or "{}"),
            "output_files": json.loads(row["output_files"] or "[]"),
            "file_size_bytes": row["file_size_bytes"],
            "error_message": row["error_message"],
            "created_at": deserialize_datetime(row["created_at"]),
            "completed_at": deserialize_datetime(row["completed_at"]),
            "processing_time_ms": row["processing_time_ms"],
            "ip_address": row["ip_address"],
            "user_agent": row["user_agent"],
        }
