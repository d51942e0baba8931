from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from enum import Enum

class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

class Payload(BaseModel):
    data: bytes = Field(repr=False)
    media_type: str = "image/jpeg"
    filename: Optional[str] = None

class JobSnapshot(BaseModel):
    """Immutable copy of a job as seen by observers and queries."""
    model_config = ConfigDict(frozen=True)

    id: str
    status: JobStatus
    result: Optional[List[str]] = None
    error: Optional[str] = None
    submitted_at: float
    attempts: int = 0
    # server-side path, never serialized; the API serves the file itself
    preview_path: Optional[str] = Field(default=None, exclude=True)
    media_type: str
    filename: Optional[str] = None

class UploadJob(BaseModel):
    id: str
    payload: Payload = Field(exclude=True, repr=False)
    status: JobStatus = JobStatus.QUEUED
    result: Optional[List[str]] = None   # only when COMPLETED
    error: Optional[str] = None          # only when FAILED
    submitted_at: float                  # monotonic, refreshed on retry
    attempts: int = 0
    preview_path: Optional[str] = None

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            id=self.id,
            status=self.status,
            result=list(self.result) if self.result is not None else None,
            error=self.error,
            submitted_at=self.submitted_at,
            attempts=self.attempts,
            preview_path=self.preview_path,
            media_type=self.payload.media_type,
            filename=self.payload.filename,
        )
