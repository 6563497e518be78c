import time
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    """Base for payloads exchanged with the transcription service"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ProcessingStrategy(str, Enum):
    """Server-decided processing strategy for a job"""
    DIRECT = "direct"
    CHUNKED = "chunked"


class JobStatus(str, Enum):
    """Remote job status enum"""
    QUEUED = "queued"
    PROCESSING = "processing"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.EXPIRED)


class JobStage(str, Enum):
    """Sub-stage reported while a job is active"""
    CHUNKING = "chunking"
    TRANSCRIBING = "transcribing"
    ASSEMBLING = "assembling"


class TranscriptionStrategy(str, Enum):
    """How one transcription attempt is carried out"""
    REMOTE_JOB = "remote-job"
    DIRECT_UPLOAD = "direct-upload"
    LOCAL_CHUNKED = "local-chunked"


class TranscriptionOptions(BaseModel):
    """Caller options for a transcription"""
    timestamped: bool = False


class UploadPlan(WireModel):
    """Multipart plan the service hands out when a job is created"""
    part_size_bytes: int = Field(alias="partSizeBytes", gt=0)
    total_parts: int = Field(alias="totalParts", gt=0)

    def covers(self, size: int) -> bool:
        """True when the parts cover size bytes with no unused trailing part"""
        return (
            self.total_parts * self.part_size_bytes >= size
            and (self.total_parts - 1) * self.part_size_bytes < size
        )


class CreatedJob(WireModel):
    id: str = Field(min_length=1)
    processing_strategy: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("processingStrategy", "processing_strategy"),
    )

    @property
    def is_chunked(self) -> bool:
        return (self.processing_strategy or "").strip().lower() == ProcessingStrategy.CHUNKED.value


class UploadPart(WireModel):
    """One uploaded part and the integrity token the storage endpoint returned"""
    part_number: int = Field(alias="partNumber", ge=1)
    etag: str = Field(min_length=1)


class SignedPart(WireModel):
    url: str = Field(min_length=1)


class PartUrlResponse(WireModel):
    part: SignedPart


class JobSnapshot(WireModel):
    status: str = ""
    stage: Optional[str] = None
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    chunk_count: Optional[int] = Field(default=None, alias="chunkCount")


class JobProgress(WireModel):
    stage: Optional[str] = None
    chunks_total: Optional[float] = Field(default=None, alias="chunksTotal")
    chunks_succeeded: Optional[float] = Field(default=None, alias="chunksSucceeded")


class TranscriptLinks(WireModel):
    text: Optional[str] = None
    text_url: Optional[str] = Field(default=None, alias="textUrl")
    json_url: Optional[str] = Field(default=None, alias="jsonUrl")


class JobStatusResponse(WireModel):
    job: JobSnapshot = Field(default_factory=JobSnapshot)
    progress: Optional[JobProgress] = None
    transcript: Optional[TranscriptLinks] = None


class TranscriptSegment(WireModel):
    """Transcript segment schema"""
    start: float = 0.0
    end: float = 0.0
    text: str = ""


class SubtitleEntry(BaseModel):
    """
    One parsed subtitle block

    position is the character offset of the block in the text it was
    parsed from; chunk_index is the chunk the text belongs to.
    """
    number: int
    timestamp: str
    content: str
    position: int = 0
    chunk_index: int = 0


class TranscriptionAttempt(BaseModel):
    """Book-keeping for one logical transcription request"""
    strategy: Optional[TranscriptionStrategy] = None
    retry_count: int = 0
    timeout_seconds: float
    started_at: float = Field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def over_budget(self) -> bool:
        return self.elapsed > self.timeout_seconds


