"""
Activity audit log.

Every processed request leaves one entry here. Guest entries carry the
caller's IP address and double as the guest quota: the usage gate counts
today's guest entries per IP.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from .database import connect, serialize_datetime
from .utils import utc_now

logger = logging.getLogger(__name__)


class AuditEvent(BaseModel):
    user_id: Optional[str] = None
    platform: str
    action: str
    resource_type: str = "pdf_job"
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


def _utc_day_bounds(day: date) -> tuple[str, str]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return serialize_datetime(start), serialize_datetime(start + timedelta(days=1))


class AuditLog:
    """Append-only audit trail stored in SQLite."""

    def __init__(self, db_path: Path, clock: Callable = utc_now) -> None:
        self.db_path = Path(db_path)
        self._clock = clock
        self._init_db()

    def _init_db(self) -> None:
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS audit_log (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    platform TEXT NOT NULL,
                    action TEXT NOT NULL,
                    resource_type TEXT,
                    resource_id TEXT,
                    ip_address TEXT,
                    details TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_log_guest
                ON audit_log(ip_address, created_at)
                WHERE user_id IS NULL
            """)

    def record(self, event: AuditEvent) -> None:
        created_at = self._clock().astimezone(timezone.utc)
        with connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO audit_log (
                    id, user_id, platform, action, resource_type,
                    resource_id, ip_address, details, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                uuid4().hex,
                event.user_id,
                event.platform,
                event.action,
                event.resource_type,
                event.resource_id,
                event.ip_address,
                json.dumps(event.details),
                serialize_datetime(created_at),
            ))
        logger.debug(f"Audit event {event.action} recorded for {event.user_id or event.ip_address}")

    def count_guest_events(self, ip_address: str, day: date) -> int:
        """Count entries without a user for ``ip_address`` on the given UTC day."""
        start, end = _utc_day_bounds(day)
        with connect(self.db_path) as conn:
            row = conn.execute("""
                SELECT COUNT(*) AS total FROM audit_log
                WHERE user_id IS NULL AND ip_address = ?
                  AND created_at >= ? AND created_at < ?
            """, (ip_address, start, end)).fetchone()
            return int(row["total"])
