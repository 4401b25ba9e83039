"""Domain models for background jobs, admission and processing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from codeplan.jobs.admission import CancellationToken


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    IDLE = "idle"
    QUEUED = "queued"
    PREPARING = "preparing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED})
STARTABLE_STATUSES = (JobStatus.QUEUED,)
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.IDLE: frozenset({JobStatus.QUEUED, JobStatus.CANCELED}),
    JobStatus.QUEUED: frozenset(
        {JobStatus.PREPARING, JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELED},
    ),
    JobStatus.PREPARING: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELED: frozenset(),
}


def is_transition_allowed(current: JobStatus, target: JobStatus) -> bool:
    """Whether ``current -> target`` is an edge of the job status graph."""

    return target in ALLOWED_TRANSITIONS[current]


class FailureClass(str, Enum):
    """Normalized failure classes used by the retry recommendation."""

    TRANSIENT_NETWORK = "transient_network"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    AUTH_ERROR = "auth_error"
    MODEL_NOT_AVAILABLE = "model_not_available"
    VALIDATION_ERROR = "validation_error"
    CONTENT_VALIDATION_ERROR = "content_validation_error"
    TIMEOUT = "timeout"
    CANCELED = "canceled"
    INTERNAL_ERROR = "internal_error"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.TRANSIENT_NETWORK,
        FailureClass.RATE_LIMITED,
        FailureClass.SERVER_ERROR,
        FailureClass.TIMEOUT,
    },
)


def is_retryable(failure_class: FailureClass) -> bool:
    return failure_class in RETRYABLE_FAILURE_CLASSES


@dataclass(slots=True)
class JobCreate:
    """Input payload for creating a background job."""

    session_id: str
    task_type: str
    api_type: str
    prompt_text: str = ""
    job_id: str | None = None
    status: JobStatus = JobStatus.QUEUED
    model_used: str | None = None
    max_output_tokens: int | None = None
    status_message: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobView:
    """Readable job view for processors, scheduler and CLI."""

    job_id: str
    session_id: str
    task_type: str
    api_type: str
    status: JobStatus
    prompt_text: str
    response_text: str
    tokens_sent: int
    tokens_received: int
    chars_received: int
    model_used: str | None
    max_output_tokens: int | None
    status_message: str | None
    failure_class: FailureClass | None
    payload: dict[str, Any]
    metadata: dict[str, Any]
    cleared: bool
    created_at: datetime
    start_time: datetime | None
    end_time: datetime | None
    last_update: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job view with ordered event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class ActiveRequest:
    """In-flight request tracked by the admission controller; never persisted."""

    request_id: str
    token: CancellationToken
    created_at: datetime
    session_id: str
    request_type: str
    cancel_reason: str | None = None


@dataclass(slots=True)
class StreamingJobLink:
    """Accumulator binding an ephemeral streaming request to its durable job."""

    job_id: str
    accumulated_text: str = ""
    total_tokens: int = 0
    last_chunk_time: datetime | None = None
    current_length: int = 0


@dataclass(slots=True, frozen=True)
class StreamingSnapshot:
    """Final state of a streaming link returned on cleanup."""

    job_id: str
    accumulated_response: str
    total_tokens: int


@dataclass(slots=True)
class ConcurrencyLimits:
    """Runtime-mutable admission ceilings."""

    global_max: int = 10
    per_session_max: int = 5
    per_task_type_max: dict[str, int] = field(default_factory=dict)
    default_task_type_max: int = 1

    def task_type_limit(self, request_type: str) -> int:
        return self.per_task_type_max.get(request_type, self.default_task_type_max)


@dataclass(slots=True, frozen=True)
class AdmissionStats:
    """Read-only snapshot of admission counters."""

    active_global: int
    active_by_session: dict[str, int]
    active_by_type: dict[str, int]
    limits: ConcurrencyLimits


@dataclass(slots=True)
class JobPayload:
    """Common processor input: the job record plus its request-specific fields."""

    background_job_id: str
    session_id: str
    task_type: str
    project_directory: str | None = None
    prompt_text: str = ""
    system_prompt: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    options: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None
    cancel_token: CancellationToken | None = None

    @classmethod
    def from_job(
        cls,
        job: JobView,
        *,
        request_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> JobPayload:
        """Rebuild processor payload from the persisted job record."""

        stored = dict(job.payload)
        temperature = stored.pop("temperature", None)
        return cls(
            background_job_id=job.job_id,
            session_id=job.session_id,
            task_type=job.task_type,
            project_directory=stored.pop("project_directory", None),
            prompt_text=job.prompt_text,
            system_prompt=stored.pop("system_prompt", None),
            model=stored.pop("model", None) or job.model_used,
            temperature=float(temperature) if temperature is not None else None,
            max_output_tokens=stored.pop("max_output_tokens", None) or job.max_output_tokens,
            options=stored,
            request_id=request_id,
            cancel_token=cancel_token,
        )


@dataclass(slots=True)
class JobProcessResult:
    """Uniform processor result."""

    success: bool
    message: str
    data: Any = None
    error: BaseException | None = None
    should_retry: bool | None = None
    failure_class: FailureClass | None = None
