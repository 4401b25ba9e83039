"""Controllers for job, scheduler and admission CLI commands."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from codeplan.config import Settings
from codeplan.jobs.admission import AdmissionController
from codeplan.jobs.errors import JobNotFoundError
from codeplan.jobs.models import JobStatus, JobView
from codeplan.jobs.repository import JobRepository
from codeplan.jobs.scheduler import JobScheduler
from codeplan.jobs.services import JobService, SubmitJob
from codeplan.processors import build_default_registry
from codeplan.providers import ApiClient, EchoApiClient, OpenAiCompatibleClient

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 120


@dataclass(slots=True)
class JobsSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    session_id: str
    task_type: str
    prompt: str
    project_directory: str | None
    model: str | None
    max_output_tokens: int | None
    options: tuple[str, ...]


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    session_id: str | None
    status: str | None
    include_cleared: bool
    limit: int


@dataclass(slots=True)
class JobsInspectCommand:
    """CLI input for single job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobsCancelCommand:
    """CLI input for single job cancel."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobsCancelSessionCommand:
    """CLI input for canceling every active job of a session."""

    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class JobsClearCommand:
    """CLI input for toggling the cleared flag."""

    db_path: Path | None
    job_id: str
    cleared: bool


@dataclass(slots=True)
class SchedulerRunCommand:
    """CLI input for a scheduler run."""

    db_path: Path | None
    once: bool
    provider: str | None
    timeout_seconds: float


@dataclass(slots=True)
class AdmissionStatsCommand:
    """CLI input for admission limits report."""

    db_path: Path | None


class JobsCliController:
    """Coordinates submission, scheduling and inspection CLI operations."""

    def submit(self, command: JobsSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        options = _parse_options(command.options)
        with _repository(settings) as repository:
            service = JobService(
                repository=repository,
                admission=AdmissionController.from_settings(settings.admission),
            )
            response = service.submit(
                SubmitJob(
                    session_id=command.session_id,
                    task_type=command.task_type,
                    prompt_text=command.prompt,
                    api_type=settings.provider.kind,
                    project_directory=command.project_directory,
                    model=command.model,
                    max_output_tokens=command.max_output_tokens,
                    options=options,
                ),
            )

        if not response.is_success or response.data is None:
            return [f"Job not submitted: {response.message}"]
        return [
            f"Job submitted: job_id={response.data.job_id} type={command.task_type} "
            f"session={command.session_id} status={response.metadata.get('status')}",
        ]

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                session_id=command.session_id,
                status=status_filter,
                include_cleared=command.include_cleared,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(f"  {_job_line(job)}" for job in jobs)
        return lines

    def inspect_job(self, command: JobsInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Session: {job.session_id}",
            f"Type: {job.task_type} (api={job.api_type})",
            f"Status: {job.status.value}",
            f"Message: {job.status_message or '-'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Model: {job.model_used or '-'}",
            (
                f"Tokens: sent={job.tokens_sent} received={job.tokens_received} "
                f"chars={job.chars_received}"
            ),
            f"Created: {job.created_at.isoformat()}",
            f"Started: {job.start_time.isoformat() if job.start_time else '-'}",
            f"Ended: {job.end_time.isoformat() if job.end_time else '-'}",
            f"Cleared: {job.cleared}",
            f"Metadata: {json.dumps(job.metadata, ensure_ascii=False, sort_keys=True)}",
            "Response:",
            job.response_text or "(empty)",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            transition = (
                f"{event.status_from.value if event.status_from else '-'}"
                f" -> {event.status_to.value if event.status_to else '-'}"
            )
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} {transition} "
                f"{json.dumps(event.details, ensure_ascii=False, sort_keys=True)}",
            )
        return lines

    def cancel_job(self, command: JobsCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = JobService(
                repository=repository,
                admission=AdmissionController.from_settings(settings.admission),
            )
            try:
                canceled = service.cancel_job(command.job_id)
            except JobNotFoundError:
                return [f"Job not found: {command.job_id}"]
        if canceled:
            return [f"Job canceled: {command.job_id}"]
        return [f"Job not canceled (already finished): {command.job_id}"]

    def cancel_session(self, command: JobsCancelSessionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            service = JobService(
                repository=repository,
                admission=AdmissionController.from_settings(settings.admission),
            )
            counts = service.cancel_session(command.session_id)
        return [
            f"Session canceled: session={command.session_id} "
            f"jobs={counts.jobs} requests={counts.requests}",
        ]

    def clear_job(self, command: JobsClearCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            updated = repository.set_cleared(command.job_id, command.cleared)
        if not updated:
            return [f"Job not found: {command.job_id}"]
        return [f"Job {'cleared' if command.cleared else 'restored'}: {command.job_id}"]

    def run_scheduler(self, command: SchedulerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.provider is not None:
            settings.provider.kind = command.provider
        settings.validate()

        with _repository(settings) as repository:
            admission = AdmissionController.from_settings(settings.admission, job_store=repository)
            api_client = _api_client(settings, admission)
            scheduler = JobScheduler.from_settings(
                settings.scheduler,
                job_store=repository,
                admission=admission,
                registry=build_default_registry(
                    job_store=repository,
                    api_client=api_client,
                    admission=admission,
                ),
            )
            try:
                if command.once:
                    if settings.scheduler.reconcile_on_start:
                        scheduler.reconcile_stale_jobs()
                    summary = scheduler.run_until_idle(timeout=command.timeout_seconds)
                    scheduler.wait_idle(timeout=command.timeout_seconds)
                else:
                    summary = None
                    _run_forever(scheduler)
            finally:
                scheduler.shutdown(wait=True)
                if isinstance(api_client, OpenAiCompatibleClient):
                    api_client.close()
                admission.close()

        if summary is None:
            return ["Scheduler stopped."]
        return [
            "Scheduler summary: "
            f"dispatched={summary.dispatched} skipped_capacity={summary.skipped_capacity} "
            f"timed_out={summary.timed_out} rejected={summary.rejected}",
        ]

    def admission_stats(self, command: AdmissionStatsCommand) -> list[str]:
        """Show configured admission limits and current in-process counters."""

        settings = Settings.from_env(db_path=command.db_path)
        stats = AdmissionController.from_settings(settings.admission).get_stats()
        lines = [
            f"Active requests: {stats.active_global}/{stats.limits.global_max}",
            f"Per-session limit: {stats.limits.per_session_max}",
            "Per-task-type limits:",
        ]
        for task_type, limit in sorted(stats.limits.per_task_type_max.items()):
            active = stats.active_by_type.get(task_type, 0)
            lines.append(f"  {task_type}: {active}/{limit}")
        lines.append(f"  (other types): default {stats.limits.default_task_type_max}")
        return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def _api_client(settings: Settings, admission: AdmissionController) -> ApiClient:
    if settings.provider.kind == "echo":
        return EchoApiClient(admission=admission)
    return OpenAiCompatibleClient.from_settings(settings.provider, admission=admission)


def _run_forever(scheduler: JobScheduler) -> None:
    scheduler.start()
    try:
        while scheduler.is_running:
            time.sleep(scheduler.poll_interval_seconds)
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping scheduler")
    finally:
        scheduler.stop()


def _parse_status(raw: str | None) -> JobStatus | None:
    if raw is None:
        return None
    try:
        return JobStatus(raw)
    except ValueError as error:
        allowed = ", ".join(status.value for status in JobStatus)
        raise ValueError(f"Unsupported status: {raw!r}. Expected one of: {allowed}.") from error


def _parse_options(raw_options: tuple[str, ...]) -> dict[str, object]:
    options: dict[str, object] = {}
    for raw in raw_options:
        if "=" not in raw:
            raise ValueError(f"Invalid option {raw!r}. Expected format 'key=value'.")
        key, value = raw.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"Empty option key in {raw!r}")
        try:
            options[key] = json.loads(value)
        except json.JSONDecodeError:
            options[key] = value
    return options


def _job_line(job: JobView) -> str:
    message = (job.status_message or "").replace("\n", " ")
    if len(message) > _PREVIEW_CHARS:
        message = message[: _PREVIEW_CHARS - 3] + "..."
    cleared = " cleared" if job.cleared else ""
    return (
        f"{job.job_id} session={job.session_id} type={job.task_type} "
        f"status={job.status.value} tokens={job.tokens_sent}/{job.tokens_received}"
        f"{cleared} message={message or '-'}"
    )
