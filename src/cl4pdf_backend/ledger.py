"""
Job ledger: the durable record of every processing attempt.

A job is created in ``processing`` before any work starts and receives
exactly one terminal update, ``completed`` or ``failed``. Terminal states are
never left for one another; completing a completed job again (or failing a
failed one) simply overwrites the same terminal values.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from .database import JobDatabase
from .errors import LedgerWriteError
from .models import InputFile, Job, JobStatus, OutputFile, RequestMeta, ToolName
from .utils import utc_now

logger = logging.getLogger(__name__)


class JobLedger:
    """Creates, terminates and reads job records."""

    def __init__(self, database: JobDatabase, clock: Callable = utc_now) -> None:
        self._db = database
        self._clock = clock

    def create(
        self,
        user_id: Optional[str],
        platform: str,
        tool: ToolName,
        input_files: List[InputFile],
        options: Dict[str, Any],
        total_bytes: int,
        request_meta: RequestMeta,
    ) -> Job:
        """
        Register a new job in ``processing`` state.

        Raises:
            LedgerWriteError: If the backing store rejects the insert. The
                caller must not start processing without a job record.
        """
        job = Job(
            id=uuid4().hex,
            user_id=user_id,
            platform=platform,
            tool_name=tool,
            status=JobStatus.PROCESSING,
            input_files=input_files,
            processing_options=options,
            file_size_bytes=total_bytes,
            created_at=self._clock(),
            ip_address=request_meta.ip_address,
            user_agent=request_meta.user_agent,
        )
        try:
            self._db.insert_job(job.model_dump(mode="json") | {"created_at": job.created_at})
        except sqlite3.Error as exc:
            logger.error(f"Job creation error: {exc}")
            raise LedgerWriteError("Failed to create processing job") from exc
        logger.info(f"Job {job.id} created ({tool.value}, user={user_id or 'guest'})")
        return job

    def complete(self, job_id: str, output_files: List[OutputFile], duration_ms: int) -> None:
        """
        Mark a job completed with its outputs and processing time.

        Raises:
            LedgerWriteError: If the update fails or the job is not in a
                state that can be completed.
        """
        try:
            updated = self._db.update_terminal(
                job_id,
                status=JobStatus.COMPLETED.value,
                allowed_from=(JobStatus.PROCESSING.value, JobStatus.COMPLETED.value),
                completed_at=self._clock(),
                output_files=[output.model_dump(mode="json", exclude_none=True) for output in output_files],
                processing_time_ms=duration_ms,
            )
        except sqlite3.Error as exc:
            raise LedgerWriteError(f"Failed to complete job {job_id}: {exc}") from exc
        if not updated:
            raise LedgerWriteError(f"Job {job_id} cannot be completed from its current state")
        logger.info(f"Job {job_id} completed in {duration_ms}ms with {len(output_files)} output(s)")

    def fail(self, job_id: str, error_message: str) -> None:
        """
        Mark a job failed.

        Raises:
            LedgerWriteError: If the update fails or the job already completed.
        """
        try:
            updated = self._db.update_terminal(
                job_id,
                status=JobStatus.FAILED.value,
                allowed_from=(JobStatus.PROCESSING.value, JobStatus.FAILED.value),
                completed_at=self._clock(),
                error_message=error_message,
            )
        except sqlite3.Error as exc:
            raise LedgerWriteError(f"Failed to mark job {job_id} as failed: {exc}") from exc
        if not updated:
            raise LedgerWriteError(f"Job {job_id} cannot be failed from its current state")
        logger.info(f"Job {job_id} failed: {error_message}")

    def get(self, job_id: str, owner_id: str) -> Optional[Job]:
        """Return the job if it belongs to ``owner_id``, otherwise None."""
        if not owner_id:
            return None
        data = self._db.get_job(job_id, user_id=owner_id)
        return Job(**data) if data else None
