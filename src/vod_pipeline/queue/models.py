"""Pydantic models for queue payloads and processing records.

State transitions of a VideoProcessingRecord:
    PENDING    → PROCESSING  (worker dequeues the job)
    PROCESSING → READY       (at least one rendition published)
    PROCESSING → FAILED      (download/upload error, no rendition, cancellation)
    PENDING    → FAILED      (producer could not upload or enqueue)

READY and FAILED are terminal; see ALLOWED_TRANSITIONS.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class UploadStatus(str, Enum):
    """Processing states of one movie's video."""

    PENDING = "PENDING"  # Raw upload accepted, job queued
    PROCESSING = "PROCESSING"  # A worker is transcoding it
    READY = "READY"  # Master playlist published
    FAILED = "FAILED"  # Terminal failure, see error_message


MAX_MOVIE_ID = 2**63 - 1  # int64, the catalog id type and the SQLite INTEGER range

# Status changes a record may make; READY and FAILED are terminal
ALLOWED_TRANSITIONS: Dict[UploadStatus, FrozenSet[UploadStatus]] = {
    UploadStatus.PENDING: frozenset({UploadStatus.PENDING, UploadStatus.PROCESSING, UploadStatus.FAILED}),
    UploadStatus.PROCESSING: frozenset({UploadStatus.READY, UploadStatus.FAILED}),
    UploadStatus.READY: frozenset(),
    UploadStatus.FAILED: frozenset(),
}


class TranscodingJob(BaseModel):
    """Immutable queue payload.

    Wire format: ``{"movie_id": 42, "raw_file_path": "raw-videos/movie-42.mp4"}``
    """

    model_config = ConfigDict(frozen=True)

    movie_id: int = Field(..., ge=0, le=MAX_MOVIE_ID, description="Catalog movie identifier")
    raw_file_path: str = Field(..., min_length=1, description="Object key in the raw bucket")

    def to_message(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_message(cls, data) -> "TranscodingJob":
        """Parse a queue payload (str or bytes).

        Raises:
            ValidationError: Payload is not a valid job
            UnicodeDecodeError: Payload bytes are not UTF-8
        """
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return cls.model_validate_json(data)


class VideoProcessingRecord(BaseModel):
    """Persisted processing state for one movie.

    Invariants:
    - hls_playlist_url is set iff upload_status is READY
    - error_message is set iff upload_status is FAILED
    """

    model_config = ConfigDict(use_enum_values=False)

    movie_id: int = Field(..., ge=0, le=MAX_MOVIE_ID, description="Catalog movie identifier")
    upload_status: UploadStatus = Field(default=UploadStatus.PENDING)
    raw_file_path: Optional[str] = Field(default=None, description="Raw object key")
    hls_playlist_url: Optional[str] = Field(default=None, description="Master playlist key")
    error_message: Optional[str] = Field(default=None, description="Failure detail")
    uploaded_at: datetime = Field(default_factory=datetime.now)
    processed_at: Optional[datetime] = Field(default=None)

    @model_validator(mode="after")
    def status_fields_consistent(self) -> "VideoProcessingRecord":
        is_ready = self.upload_status == UploadStatus.READY
        if is_ready != bool(self.hls_playlist_url):
            raise ValueError("hls_playlist_url must be set exactly when upload_status is READY")
        is_failed = self.upload_status == UploadStatus.FAILED
        if is_failed != bool(self.error_message):
            raise ValueError("error_message must be set exactly when upload_status is FAILED")
        return self


class StateTransition(BaseModel):
    """Audit log entry for record status changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    movie_id: int = Field(..., description="Movie identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=datetime.now, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
