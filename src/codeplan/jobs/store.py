"""Job Store contract consumed by processors, scheduler and admission controller."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from codeplan.jobs.models import FailureClass, JobCreate, JobStatus, JobView


class JobStore(Protocol):
    """Durable job record operations.

    Non-append fields are last-write-wins. Appends for one job come from a single
    writer and are applied in emission order. Terminal jobs accept only metadata.
    """

    def create_job(self, payload: JobCreate) -> JobView: ...

    def get_job(self, job_id: str) -> JobView | None: ...

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        status_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool: ...

    def append_to_response(
        self,
        job_id: str,
        chunk: str,
        token_delta: int,
        new_length: int,
    ) -> bool: ...

    def set_cleared(self, job_id: str, cleared: bool) -> bool: ...

    def augment_metadata(self, job_id: str, metadata: dict[str, Any]) -> bool: ...

    def complete_job(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        response_text: str | None = None,
        status_message: str = "Completed successfully",
        tokens_sent: int | None = None,
        tokens_received: int | None = None,
        model_used: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool: ...

    def fail_job(
        self,
        job_id: str,
        *,
        status_message: str,
        failure_class: FailureClass,
        metadata: dict[str, Any] | None = None,
    ) -> bool: ...

    def cancel_job(self, job_id: str, *, reason: str = "Canceled by user interaction") -> bool: ...

    def claim_job(self, job_id: str) -> bool: ...

    def list_startable_jobs(
        self,
        *,
        limit: int = 50,
        after: tuple[datetime, str] | None = None,
    ) -> list[JobView]: ...

    def recover_stale_running_jobs(self, *, stale_after_seconds: int) -> list[str]: ...
