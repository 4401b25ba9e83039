"""Exceptions raised by job storage, processors and providers."""

from __future__ import annotations

from codeplan.jobs.models import FailureClass, JobStatus


class JobError(Exception):
    """Base error for the background job subsystem."""


class JobNotFoundError(JobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobStateError(JobError):
    """Requested status change is not an edge of the status graph."""

    def __init__(self, job_id: str, current: JobStatus, target: JobStatus) -> None:
        super().__init__(
            f"Illegal status transition for job {job_id}: {current.value} -> {target.value}",
        )
        self.job_id = job_id
        self.current = current
        self.target = target


class ProcessorError(JobError):
    """Failure with a known classification and a user-facing message."""

    failure_class = FailureClass.INTERNAL_ERROR

    def __init__(self, message: str, *, failure_class: FailureClass | None = None) -> None:
        super().__init__(message)
        if failure_class is not None:
            self.failure_class = failure_class


class PayloadValidationError(ProcessorError):
    failure_class = FailureClass.VALIDATION_ERROR


class ContentValidationError(ProcessorError):
    failure_class = FailureClass.CONTENT_VALIDATION_ERROR


class JobCanceledError(ProcessorError):
    failure_class = FailureClass.CANCELED

    def __init__(self, message: str = "Canceled by user interaction") -> None:
        super().__init__(message)


class ProviderRequestError(ProcessorError):
    """Model provider answered with a non-success HTTP status."""

    def __init__(self, message: str, *, status_code: int, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
