"""Use-case services for submitting and canceling background jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from codeplan.jobs.admission import AdmissionController, estimate_tokens
from codeplan.jobs.models import JobCreate, JobStatus
from codeplan.jobs.repository import JobRepository
from codeplan.processors.base import ProcessorRegistry
from codeplan.providers.base import ApiResponse, BackgroundJobRef, CancelCounts

logger = logging.getLogger(__name__)

CANCELED_BY_USER = "Canceled by user interaction"


@dataclass(slots=True)
class SubmitJob:
    """High-level command to submit a background job."""

    session_id: str
    task_type: str
    prompt_text: str = ""
    api_type: str = "openai"
    project_directory: str | None = None
    system_prompt: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    options: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None
    start_idle: bool = False


class JobService:
    """Creates jobs for the scheduler and cancels them on request."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        admission: AdmissionController,
        registry: ProcessorRegistry | None = None,
    ) -> None:
        self.repository = repository
        self.admission = admission
        self.registry = registry

    def submit(self, command: SubmitJob) -> ApiResponse:
        """Persist a job and answer with a background job reference."""

        if self.registry is not None and not self.registry.supports(command.task_type):
            return ApiResponse(
                is_success=False,
                data=None,
                message=f"Unsupported task type: {command.task_type}",
                error=ValueError(f"Unsupported task type: {command.task_type}"),
            )

        payload: dict[str, Any] = dict(command.options)
        for key, value in (
            ("project_directory", command.project_directory),
            ("system_prompt", command.system_prompt),
            ("model", command.model),
            ("temperature", command.temperature),
            ("max_output_tokens", command.max_output_tokens),
        ):
            if value is not None:
                payload[key] = value

        job = self.repository.create_job(
            JobCreate(
                session_id=command.session_id,
                task_type=command.task_type,
                api_type=command.api_type,
                prompt_text=command.prompt_text,
                job_id=command.job_id,
                status=JobStatus.IDLE if command.start_idle else JobStatus.QUEUED,
                model_used=command.model,
                max_output_tokens=command.max_output_tokens,
                status_message="Waiting to start" if command.start_idle else "Queued",
                payload=payload,
                metadata={"estimatedPromptTokens": estimate_tokens(command.prompt_text)},
            ),
        )
        logger.info("Submitted job %s (%s) for session %s", job.job_id, job.task_type, job.session_id)
        return ApiResponse(
            is_success=True,
            data=BackgroundJobRef(job_id=job.job_id),
            message="Job queued" if not command.start_idle else "Job created",
            metadata={"status": job.status.value},
        )

    def enqueue(self, job_id: str) -> bool:
        """Release an idle job to the scheduler."""

        return self.repository.update_status(job_id, JobStatus.QUEUED, status_message="Queued")

    def cancel_job(self, job_id: str, *, reason: str = CANCELED_BY_USER) -> bool:
        """Cancel one job: fire its active request, then mark it canceled."""

        had_request = self.admission.cancel_request(job_id, reason=reason)
        canceled = self.repository.cancel_job(job_id, reason=reason)
        if had_request or canceled:
            logger.info("Canceled job %s (active_request=%s)", job_id, had_request)
        return canceled

    def cancel_session(self, session_id: str, *, reason: str = CANCELED_BY_USER) -> CancelCounts:
        """Cancel active requests of the session and every non-terminal job it owns.

        Queued jobs have no active request, so they are canceled in the store
        directly; other sessions are untouched.
        """

        requests = self.admission.cancel_session_requests(session_id, reason=reason)
        jobs = self.repository.cancel_session_jobs(session_id, reason=reason)
        return CancelCounts(requests=requests, jobs=len(jobs))
