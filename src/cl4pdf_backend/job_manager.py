"""
Request orchestration for PDF jobs.

For each merge or split request the JobManager runs, in order:

1. request-shape validation (nothing is written on failure)
2. the usage gate (nothing is written on denial)
3. ledger create, status ``processing``
4. the PDF transform
5. artifact uploads
6. ledger complete
7. usage increment for paid users (background)
8. audit event (background)

Any exception in steps 4-6 marks the job ``failed``, returns a reserved
quota unit and is re-raised as a ProcessingError, so no job outlives its
request in ``processing``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from . import pdf_engine
from .accounts import AccountStore
from .artifact_store import ArtifactStore
from .audit import AuditEvent, AuditLog
from .errors import PdfServiceError, ProcessingError, StorageError, ValidationError
from .ledger import JobLedger
from .models import (
    Caller,
    Job,
    JobView,
    MergeResponse,
    MergeResult,
    OutputFile,
    SplitResponse,
    SplitResult,
    ToolName,
    UploadedFile,
)
from .side_effects import BackgroundDispatcher
from .usage_gate import Admission, UsageGate
from .utils import PDF_CONTENT_TYPE, format_file_size, is_pdf_upload

logger = logging.getLogger(__name__)


@dataclass
class RequestLimits:
    """
    Request-shape limits checked before the usage gate.

    Attributes:
        platforms: Accepted platform tags
        default_platform: Platform used when the request names none
        max_files_per_job: Upper bound on uploaded files per request
        max_file_size: Upper bound in bytes on each uploaded file
    """

    platforms: List[str] = field(default_factory=lambda: ["snackpdf", "revisepdf"])
    default_platform: str = "snackpdf"
    max_files_per_job: int = 10
    max_file_size: int = 50 * 1024 * 1024


def _millis() -> int:
    return int(time.time() * 1000)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _describe_error(exc: Exception) -> str:
    if isinstance(exc, PdfServiceError):
        return exc.error
    return str(exc) or exc.__class__.__name__


class JobManager:
    """
    Central coordinator for merge and split requests.

    Every collaborator is injected, so tests can swap the artifact store
    or the audit log for fakes.
    """

    def __init__(
        self,
        ledger: JobLedger,
        gate: UsageGate,
        store: ArtifactStore,
        accounts: AccountStore,
        audit_log: AuditLog,
        dispatcher: BackgroundDispatcher,
        limits: Optional[RequestLimits] = None,
    ) -> None:
        self._ledger = ledger
        self._gate = gate
        self._store = store
        self._accounts = accounts
        self._audit_log = audit_log
        self._dispatcher = dispatcher
        self.limits = limits or RequestLimits()

    # -- validation -------------------------------------------------------

    def resolve_platform(self, platform: Optional[str]) -> str:
        if not platform:
            return self.limits.default_platform
        if platform not in self.limits.platforms:
            raise ValidationError("Invalid platform", {"valid_platforms": list(self.limits.platforms)})
        return platform

    def check_file_count(self, count: int) -> None:
        """Reject a request with more files than a job may take; callable before reading any upload."""
        if count > self.limits.max_files_per_job:
            raise ValidationError(
                "Too many files",
                {"max_files": self.limits.max_files_per_job, "received": count},
            )

    def _validate_uploads(self, files: Sequence[UploadedFile]) -> None:
        self.check_file_count(len(files))
        for upload in files:
            if not is_pdf_upload(upload.name, upload.content_type):
                raise ValidationError("Only PDF files are allowed", {"file": upload.name})
            if upload.size > self.limits.max_file_size:
                raise ValidationError(
                    "File too large",
                    {"file": upload.name, "max_file_size": self.limits.max_file_size},
                )

    # -- side effects -----------------------------------------------------

    def _record_activity(self, caller: Caller, platform: str, action: str, job_id: str, details: Dict[str, Any]) -> None:
        event = AuditEvent(
            user_id=caller.user_id,
            platform=platform,
            action=action,
            resource_id=job_id,
            ip_address=caller.ip_address,
            details=details,
        )
        self._dispatcher.submit(f"audit:{action}", self._audit_log.record, event)

    def _count_usage(self, caller: Caller, admission: Admission) -> None:
        # Reserved units were already counted by the gate.
        if caller.user is not None and not admission.reserved:
            self._dispatcher.submit("increment_usage", self._accounts.increment_usage, caller.user.id)

    def _create_job(
        self,
        caller: Caller,
        admission: Admission,
        platform: str,
        tool: ToolName,
        files: Sequence[UploadedFile],
        options: Dict[str, Any],
    ) -> Job:
        try:
            return self._ledger.create(
                caller.user_id,
                platform,
                tool,
                [upload.describe() for upload in files],
                options,
                sum(upload.size for upload in files),
                caller.request_meta(),
            )
        except Exception:
            self._release(caller, admission)
            raise

    def _release(self, caller: Caller, admission: Admission) -> None:
        try:
            self._gate.release(caller, admission)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to release usage reservation for {caller.user_id}: {exc}")

    def _fail_job(self, job: Job, caller: Caller, admission: Admission, action: str, exc: Exception) -> str:
        message = _describe_error(exc)
        logger.error(f"Job {job.id} ({job.tool_name.value}) failed: {message}")
        try:
            self._ledger.fail(job.id, message)
        except Exception as ledger_exc:  # noqa: BLE001
            logger.error(f"Could not mark job {job.id} as failed: {ledger_exc}")
        self._release(caller, admission)
        self._record_activity(caller, job.platform, action, job.id, {"error": message})
        return message

    # -- operations -------------------------------------------------------

    def merge(
        self,
        caller: Caller,
        files: Sequence[UploadedFile],
        platform: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> MergeResponse:
        """
        Merge uploaded PDFs into one document.

        Args:
            caller: The requesting user or guest
            files: Uploaded documents in merge order (at least two)
            platform: Platform tag; defaults to the configured default
            options: Tool options. ``addBookmarks`` is accepted but has no
                effect yet.

        Returns:
            MergeResponse with the job id and the stored document

        Raises:
            ValidationError: Bad request shape (no job is created)
            QuotaExceeded: Usage gate denial (no job is created)
            LedgerWriteError: The job record could not be created
            ProcessingError: Merge or upload failed; the job is ``failed``
        """
        platform = self.resolve_platform(platform)
        options = dict(options or {})
        if len(files) < 2:
            raise ValidationError("At least 2 PDF files are required for merging", {"min_files": 2})
        self._validate_uploads(files)

        admission = self._gate.admit(caller)
        started = time.perf_counter()
        job = self._create_job(caller, admission, platform, ToolName.MERGE, files, options)

        try:
            merged = pdf_engine.merge([(upload.name, upload.data) for upload in files])
            filename = f"merged-{_millis()}.pdf"
            url = self._store.upload(f"{job.id}/{filename}", merged.data, PDF_CONTENT_TYPE)
            output = OutputFile(name=filename, size=len(merged.data), type=PDF_CONTENT_TYPE, url=url)
            self._ledger.complete(job.id, [output], _elapsed_ms(started))
        except Exception as exc:
            message = self._fail_job(job, caller, admission, "pdf_merge_failed", exc)
            raise ProcessingError("Failed to merge PDFs", {"details": message}) from exc

        self._count_usage(caller, admission)
        self._record_activity(
            caller,
            platform,
            "pdf_merged",
            job.id,
            {"file_count": len(files), "output_size": len(merged.data)},
        )

        return MergeResponse(
            job_id=job.id,
            result=MergeResult(
                filename=filename,
                size=format_file_size(len(merged.data)),
                download_url=url,
                page_count=merged.page_count,
            ),
        )

    def _upload_pieces(self, job: Job, pieces: Sequence[pdf_engine.SplitPiece]) -> List[OutputFile]:
        outputs = []
        stamp = _millis()
        for piece in pieces:
            filename = f"{piece.name_stem}-{stamp}.pdf"
            try:
                url = self._store.upload(f"{job.id}/{filename}", piece.data, PDF_CONTENT_TYPE)
            except StorageError as exc:
                # A missing piece does not fail the split.
                logger.warning(f"Job {job.id}: skipping {filename}, upload failed: {exc.error}")
                continue
            outputs.append(
                OutputFile(name=filename, size=len(piece.data), type=PDF_CONTENT_TYPE, url=url, pages=piece.label)
            )
        return outputs

    def split(
        self,
        caller: Caller,
        upload: Optional[UploadedFile],
        platform: Optional[str] = None,
        split_mode: str = "all",
        page_ranges: Optional[str] = None,
        interval_pages: Optional[str] = None,
    ) -> SplitResponse:
        """
        Split an uploaded PDF per page, by page ranges or by interval.

        Pieces whose upload fails are left out of the result instead of
        failing the job. A mode whose parameter is missing completes with
        no files.

        Raises:
            ValidationError: No file, bad platform or unknown split mode
            QuotaExceeded: Usage gate denial (no job is created)
            LedgerWriteError: The job record could not be created
            ProcessingError: The source could not be read; the job is ``failed``
        """
        platform = self.resolve_platform(platform)
        if upload is None:
            raise ValidationError("PDF file is required")
        mode = pdf_engine.parse_split_mode(split_mode or "all")
        self._validate_uploads([upload])

        options = {"splitMode": mode.value, "pageRanges": page_ranges, "intervalPages": interval_pages}
        admission = self._gate.admit(caller)
        started = time.perf_counter()
        job = self._create_job(caller, admission, platform, ToolName.SPLIT, [upload], options)

        try:
            result = pdf_engine.split(upload.data, mode, page_ranges=page_ranges, interval_pages=interval_pages)
            outputs = self._upload_pieces(job, result.pieces)
            self._ledger.complete(job.id, outputs, _elapsed_ms(started))
        except Exception as exc:
            message = self._fail_job(job, caller, admission, "pdf_split_failed", exc)
            raise ProcessingError("Failed to split PDF", {"details": message}) from exc

        self._count_usage(caller, admission)
        self._record_activity(
            caller,
            platform,
            "pdf_split",
            job.id,
            {"split_mode": mode.value, "output_count": len(outputs), "total_pages": result.total_pages},
        )

        return SplitResponse(
            job_id=job.id,
            result=SplitResult(files=outputs, total_files=len(outputs), original_pages=result.total_pages),
        )

    def get_job(self, job_id: str, owner_id: str) -> Optional[JobView]:
        job = self._ledger.get(job_id, owner_id)
        return JobView.from_job(job) if job else None
