"""Data model for generation jobs, history records and derived progress.

``Job`` mirrors the authoritative status owned by the generation backend.
``BackendJob`` is the bookkeeping record returned by the history endpoint.
``DisplayProgress`` is derived on the client and never sent anywhere.

Status lifecycle:
    pending → processing → completed
                         ↘ failed
                         ↘ cancelled
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

GenerationMode = Literal["text-to-3d", "image-to-3d"]

ProgressPhase = Literal[
    "waiting in queue",
    "processing",
    "completed",
    "failed",
    "cancelled",
]


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class BackendJobStatus(str, Enum):
    """Status codes used by the bookkeeping backend."""

    WAIT = "WAIT"
    RUN = "RUN"
    DONE = "DONE"
    FAIL = "FAIL"


_BACKEND_STATUS_MAP: dict[str, JobStatus] = {
    BackendJobStatus.WAIT.value: JobStatus.PENDING,
    BackendJobStatus.RUN.value: JobStatus.PROCESSING,
    BackendJobStatus.DONE.value: JobStatus.COMPLETED,
    BackendJobStatus.FAIL.value: JobStatus.FAILED,
}


def parse_status(value: Any) -> JobStatus:
    """Map either status vocabulary onto ``JobStatus`` (unknown → pending)."""
    if isinstance(value, JobStatus):
        return value
    text = str(value or "")
    if text in _BACKEND_STATUS_MAP:
        return _BACKEND_STATUS_MAP[text]
    try:
        return JobStatus(text.lower())
    except ValueError:
        return JobStatus.PENDING


def to_epoch_seconds(value: Any) -> float | None:
    """Normalise a timestamp (epoch s, epoch ms, ISO string, datetime) to epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        # Millisecond timestamps are 13 digits
        return float(value) / 1000.0 if value > 1e12 else float(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_epoch_seconds(datetime.fromisoformat(text))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Queue information
# ---------------------------------------------------------------------------


class QueueInfo(BaseModel):
    """Queue position and duration estimates reported alongside a job status."""

    model_config = ConfigDict(extra="ignore")

    # 0 = processing, 1+ = waiting
    position: int = 0
    jobs_ahead: int | None = None
    estimated_wait_seconds: float | None = None
    estimated_total_seconds: float | None = None
    queue_length: int | None = None
    currently_processing: bool | None = None

    @field_validator("position", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> int:
        if value is None:
            return 0
        return max(0, int(value))


class QueueSnapshot(QueueInfo):
    """Global queue state from ``/api/3d/queue/info`` (not tied to one job)."""

    estimated_wait_for_preview_seconds: float = 0.0
    estimated_preview_time_seconds: float = 20.0
    api_available: bool = True


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class Job(BaseModel):
    """Authoritative job status, mirrored locally as a read-mostly cache."""

    id: str
    status: JobStatus
    created_at: float | None = None  # epoch seconds
    updated_at: float | None = None
    queue: QueueInfo | None = None
    result_artifact_url: str | None = None
    preview_image_url: str | None = None
    error_message: str | None = None
    prompt: str | None = None
    mode: GenerationMode | None = None
    message: str = ""

    @model_validator(mode="after")
    def _check_invariants(self) -> "Job":
        completed = self.status is JobStatus.COMPLETED
        if completed != bool(self.result_artifact_url):
            raise ValueError(
                "result_artifact_url must be set if and only if status is completed"
            )
        if self.error_message and self.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
            raise ValueError("error_message is only allowed for failed or cancelled jobs")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def queue_position(self) -> int | None:
        return self.queue.position if self.queue else None

    @property
    def estimated_wait_seconds(self) -> float | None:
        return self.queue.estimated_wait_seconds if self.queue else None

    @property
    def estimated_total_seconds(self) -> float | None:
        return self.queue.estimated_total_seconds if self.queue else None

    @classmethod
    def build(
        cls,
        *,
        id: str,
        status: JobStatus,
        artifact_url: str | None = None,
        artifact_fallback: str | None = None,
        error_message: str | None = None,
        **fields: Any,
    ) -> "Job":
        """Construct a Job, dropping fields that the status does not allow.

        A completed job with no artifact URL uses ``artifact_fallback`` (the
        backend's GLB proxy URL).
        """
        if status is JobStatus.COMPLETED:
            artifact_url = artifact_url or artifact_fallback
            if not artifact_url:
                raise ValueError(f"Completed job {id} has no result artifact")
        else:
            artifact_url = None
        if status not in (JobStatus.FAILED, JobStatus.CANCELLED):
            error_message = None
        return cls(
            id=id,
            status=status,
            result_artifact_url=artifact_url,
            error_message=error_message,
            **fields,
        )

    @classmethod
    def from_payload(cls, data: dict[str, Any], *, artifact_fallback: str | None = None) -> "Job":
        """Parse a status payload.

        Accepts the generation API's native shape (``job_id``, ``status``,
        ``result``...) and the backend envelope ``{"job": {...}, "queue": {...}}``.
        """
        queue = data.get("queue")
        if queue is not None and not isinstance(queue, dict):
            raise ValueError(f"queue must be an object, got {type(queue).__name__}")

        if isinstance(data.get("job"), dict):
            job = BackendJob.model_validate(data["job"]).to_job(artifact_fallback=artifact_fallback)
            if queue:
                job = job.model_copy(update={"queue": QueueInfo.model_validate(queue)})
            return job

        if "job_id" not in data and "id" in data:
            job = BackendJob.model_validate(data).to_job(artifact_fallback=artifact_fallback)
            if queue:
                job = job.model_copy(update={"queue": QueueInfo.model_validate(queue)})
            return job

        result = data.get("result")
        if not isinstance(result, dict):
            result = {}
        status = parse_status(data.get("status"))
        mode = result.get("mode")
        return cls.build(
            id=str(data["job_id"]),
            status=status,
            artifact_url=result.get("mesh_url") or result.get("output"),
            artifact_fallback=artifact_fallback,
            error_message=data.get("error") or None,
            created_at=to_epoch_seconds(data.get("created_at")),
            updated_at=to_epoch_seconds(data.get("updated_at")),
            queue=QueueInfo.model_validate(queue) if queue else None,
            preview_image_url=(
                result.get("processed_image_url")
                or result.get("generated_image_url")
                or result.get("processed_image")
                or result.get("generated_image")
            ),
            prompt=result.get("prompt"),
            mode=mode if mode in ("text-to-3d", "image-to-3d") else None,
            message=data.get("message") or "",
        )


class BackendJob(BaseModel):
    """A job record as stored by the bookkeeping backend (history endpoint)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    status: str = BackendJobStatus.WAIT.value
    prompt: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    generate_type: str = Field(default="", alias="generateType")
    result_glb_url: Optional[str] = Field(default=None, alias="resultGlbUrl")
    preview_image_url: Optional[str] = Field(default=None, alias="previewImageUrl")
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    name: Optional[str] = None
    chat_id: Optional[str] = Field(default=None, alias="chatId")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    @property
    def job_status(self) -> JobStatus:
        return parse_status(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.job_status.is_terminal

    @property
    def mode(self) -> GenerationMode:
        return "text-to-3d" if self.prompt else "image-to-3d"

    def to_job(self, *, artifact_fallback: str | None = None) -> Job:
        status = self.job_status
        if status is JobStatus.COMPLETED:
            message = "Completed"
        else:
            message = self.error_message or "Processing..."
        return Job.build(
            id=self.id,
            status=status,
            artifact_url=self.result_glb_url,
            artifact_fallback=artifact_fallback,
            error_message=self.error_message,
            created_at=to_epoch_seconds(self.created_at),
            updated_at=to_epoch_seconds(self.updated_at),
            preview_image_url=self.preview_image_url,
            prompt=self.prompt,
            mode=self.mode,
            message=message,
        )


# ---------------------------------------------------------------------------
# Other backend resources
# ---------------------------------------------------------------------------


class Chat(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    name: str = "New Chat"
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    first_job_preview_image_url: Optional[str] = Field(default=None, alias="firstJobPreviewImageUrl")
    first_job_prompt: Optional[str] = Field(default=None, alias="firstJobPrompt")


class PreviewImage(BaseModel):
    """Result of ``POST /text-to-image``."""

    image_url: str
    preview_id: str
    queue: QueueInfo | None = None


class UserProfile(BaseModel):
    user: dict[str, Any] = Field(default_factory=dict)
    stats: dict[str, Any] = Field(default_factory=dict)


class EarlyAccessPayment(BaseModel):
    payment_id: str
    payment_link: str | None = None
    status: str = "pending"


class EarlyAccessStatus(BaseModel):
    has_access: bool = False
    access_info: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Client-only derived state
# ---------------------------------------------------------------------------


@dataclass
class DisplayProgress:
    """Client-synthesised progress for one job. Never persisted."""

    job_id: str
    percent: float
    phase: ProgressPhase
    step_message: str = ""
    elapsed_seconds: float = 0.0
    remaining_seconds: float | None = None
