from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ToolName(str, Enum):
    MERGE = "merge"
    SPLIT = "split"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


class SplitMode(str, Enum):
    ALL = "all"
    RANGE = "range"
    INTERVAL = "interval"


class InputFile(BaseModel):
    name: str
    size: int
    type: str


class OutputFile(BaseModel):
    name: str
    size: int
    type: str = "application/pdf"
    url: str
    pages: Optional[str] = None


class RequestMeta(BaseModel):
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class Job(BaseModel):
    id: str
    user_id: Optional[str] = None
    platform: str
    tool_name: ToolName
    job_type: str = "sync"
    status: JobStatus
    input_files: List[InputFile] = Field(default_factory=list)
    processing_options: Dict[str, Any] = Field(default_factory=dict)
    output_files: List[OutputFile] = Field(default_factory=list)
    file_size_bytes: int = 0
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class JobView(BaseModel):
    """The subset of a job returned to its owner."""

    id: str
    tool_name: ToolName
    status: JobStatus
    input_files: List[InputFile]
    output_files: List[OutputFile]
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobView":
        return cls(
            id=job.id,
            tool_name=job.tool_name,
            status=job.status,
            input_files=job.input_files,
            output_files=job.output_files,
            error_message=job.error_message,
            processing_time_ms=job.processing_time_ms,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )


class JobResponse(BaseModel):
    job: JobView


class MergeResult(BaseModel):
    filename: str
    size: str
    download_url: str
    page_count: int


class MergeResponse(BaseModel):
    message: str = "PDFs merged successfully"
    job_id: str
    result: MergeResult


class SplitResult(BaseModel):
    files: List[OutputFile]
    total_files: int
    original_pages: int


class SplitResponse(BaseModel):
    message: str = "PDF split successfully"
    job_id: str
    result: SplitResult


class User(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    usage_count: int = 0
    usage_limit: int = 10
    is_active: bool = True


@dataclass
class UploadedFile:
    """An upload read fully into memory."""

    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    def describe(self) -> InputFile:
        return InputFile(name=self.name, size=self.size, type=self.content_type)


@dataclass
class Caller:
    """Who is asking: an authenticated user, or a guest identified by IP."""

    user: Optional[User]
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.user.id if self.user else None

    @property
    def is_guest(self) -> bool:
        return self.user is None

    def request_meta(self) -> RequestMeta:
        return RequestMeta(ip_address=self.ip_address, user_agent=self.user_agent)
