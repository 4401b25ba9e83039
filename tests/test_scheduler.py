from __future__ import annotations

import time
from collections.abc import Iterator

import allure
import pytest

from codeplan.jobs.admission import AdmissionController
from codeplan.jobs.models import (
    ConcurrencyLimits,
    FailureClass,
    JobPayload,
    JobProcessResult,
    JobStatus,
)
from codeplan.jobs.repository import JobRepository
from codeplan.jobs.scheduler import JobScheduler
from codeplan.processors import build_default_registry
from codeplan.processors.base import ProcessorRegistry
from codeplan.providers import EchoApiClient

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("Scheduler"),
]


class _ExplodingProcessor:
    task_type = "explode"

    def process(self, payload: JobPayload) -> JobProcessResult:
        raise RuntimeError(f"processor bug for {payload.background_job_id}")


class _StubbornProcessor:
    """Ignores cancellation and returns only after its work is done."""

    task_type = "stubborn"

    def process(self, payload: JobPayload) -> JobProcessResult:
        time.sleep(0.6)
        return JobProcessResult(success=True, message="Finished anyway")


@pytest.fixture()
def build_scheduler(repository: JobRepository) -> Iterator:
    created: list[tuple[JobScheduler, AdmissionController]] = []

    def _build(
        *,
        responses: dict | None = None,
        delay_seconds: float = 0.0,
        task_type_limits: dict[str, int] | None = None,
        job_timeout_ms: int = 30_000,
        concurrency_limit: int = 4,
        fetch_batch_size: int = 50,
    ) -> tuple[JobScheduler, AdmissionController]:
        admission = AdmissionController(
            limits=ConcurrencyLimits(
                global_max=10,
                per_session_max=10,
                per_task_type_max=dict(task_type_limits or {}),
                default_task_type_max=10,
            ),
            job_store=repository,
        )
        client = EchoApiClient(
            admission=admission,
            responses=responses,
            delay_seconds=delay_seconds,
            chunk_size=4,
        )
        registry = build_default_registry(
            job_store=repository,
            api_client=client,
            admission=admission,
        )
        registry.register(_ExplodingProcessor())
        registry.register(_StubbornProcessor())
        scheduler = JobScheduler(
            job_store=repository,
            admission=admission,
            registry=registry,
            poll_interval_seconds=0.01,
            concurrency_limit=concurrency_limit,
            job_timeout_ms=job_timeout_ms,
            stale_running_seconds=600,
            fetch_batch_size=fetch_batch_size,
        )
        created.append((scheduler, admission))
        return scheduler, admission

    yield _build
    for scheduler, admission in created:
        scheduler.shutdown(wait=True)
        admission.close()


def test_run_until_idle_completes_queued_jobs(
    repository: JobRepository,
    make_job,
    build_scheduler,
) -> None:
    first = make_job(prompt_text="first prompt")
    second = make_job(prompt_text="second prompt", session_id="session-2")
    scheduler, admission = build_scheduler()

    summary = scheduler.run_until_idle(timeout=10)

    assert summary.dispatched == 2
    for job, prompt in ((first, "first prompt"), (second, "second prompt")):
        stored = repository.get_job(job.job_id)
        assert stored is not None
        assert stored.status == JobStatus.COMPLETED
        assert stored.response_text == prompt
        assert stored.chars_received == len(prompt)
        assert stored.model_used == "echo-1"
    assert admission.get_stats().active_global == 0


def test_type_limit_holds_back_jobs_until_a_slot_frees(
    repository: JobRepository,
    make_job,
    build_scheduler,
) -> None:
    jobs = [make_job(prompt_text=f"prompt {index}") for index in range(3)]
    scheduler, admission = build_scheduler(
        delay_seconds=0.05,
        task_type_limits={"generic_completion": 1},
    )

    tick = scheduler.run_once()
    assert tick.dispatched == 1
    assert tick.skipped_capacity == 2
    assert admission.get_stats().active_by_type == {"generic_completion": 1}

    scheduler.run_until_idle(timeout=20)

    statuses = [repository.get_job(job.job_id).status for job in jobs]
    assert statuses == [JobStatus.COMPLETED] * 3


def test_blocked_jobs_do_not_starve_later_jobs_with_capacity(
    repository: JobRepository,
    make_job,
    build_scheduler,
) -> None:
    for index in range(7):
        make_job(job_id=f"queue-{index:02d}", task_type="text_correction", prompt_text="fix teh")
    later = make_job(job_id="queue-99", prompt_text="hi")
    scheduler, _ = build_scheduler(
        delay_seconds=0.3,
        task_type_limits={"text_correction": 1},
        fetch_batch_size=3,
    )

    tick = scheduler.run_once()

    assert tick.dispatched == 2
    assert tick.skipped_capacity == 6
    stored = repository.get_job(later.job_id)
    assert stored is not None
    assert stored.status != JobStatus.QUEUED


def test_unsupported_task_type_is_failed_not_retried(
    repository: JobRepository,
    make_job,
    build_scheduler,
) -> None:
    job = make_job(task_type="mystery")
    scheduler, _ = build_scheduler()

    summary = scheduler.run_once()

    assert summary.rejected == 1
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.failure_class == FailureClass.VALIDATION_ERROR
    assert stored.status_message == "Unsupported task type: mystery"
    assert repository.list_startable_jobs() == []


def test_job_exceeding_timeout_is_failed_and_slot_released(
    repository: JobRepository,
    make_job,
    build_scheduler,
) -> None:
    job = make_job(prompt_text="a slow answer that streams in many chunks")
    scheduler, admission = build_scheduler(delay_seconds=0.5, job_timeout_ms=200)

    assert scheduler.run_once().dispatched == 1
    assert admission.get_stats().active_global == 1

    time.sleep(0.4)
    summary = scheduler.run_once()

    assert summary.timed_out == 1
    assert admission.get_stats().active_global == 0
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.failure_class == FailureClass.TIMEOUT
    assert "timed out" in (stored.status_message or "")

    scheduler.shutdown(wait=True)
    final = repository.get_job(job.job_id)
    assert final is not None
    assert final.status == JobStatus.FAILED
    assert final.failure_class == FailureClass.TIMEOUT


def test_timed_out_worker_holds_its_slot_until_it_returns(
    repository: JobRepository,
    make_job,
    build_scheduler,
) -> None:
    stubborn = make_job(job_id="slot-a", task_type="stubborn")
    waiting = make_job(job_id="slot-b", prompt_text="hi")
    scheduler, admission = build_scheduler(concurrency_limit=1, job_timeout_ms=200)

    assert scheduler.run_once().dispatched == 1
    time.sleep(0.3)
    tick = scheduler.run_once()

    assert tick.timed_out == 1
    assert tick.dispatched == 0
    assert admission.get_stats().active_global == 0
    assert scheduler.in_flight_count == 1
    queued = repository.get_job(waiting.job_id)
    assert queued is not None
    assert queued.status == JobStatus.QUEUED

    assert scheduler.wait_idle(timeout=5) is True
    assert scheduler.run_once().timed_out == 0
    scheduler.run_until_idle(timeout=10)

    timed_out = repository.get_job(stubborn.job_id)
    assert timed_out is not None
    assert timed_out.status == JobStatus.FAILED
    assert timed_out.failure_class == FailureClass.TIMEOUT
    finished = repository.get_job(waiting.job_id)
    assert finished is not None
    assert finished.status == JobStatus.COMPLETED


def test_finished_job_is_not_counted_as_timed_out(
    repository: JobRepository,
    make_job,
    build_scheduler,
) -> None:
    job = make_job(prompt_text="hi")
    scheduler, _ = build_scheduler(job_timeout_ms=200)

    assert scheduler.run_once().dispatched == 1
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        stored = repository.get_job(job.job_id)
        if stored is not None and stored.is_terminal:
            break
        time.sleep(0.02)
    time.sleep(0.3)

    assert scheduler.run_once().timed_out == 0
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED


def test_processor_crash_fails_job_as_internal_error(
    repository: JobRepository,
    make_job,
    build_scheduler,
) -> None:
    job = make_job(task_type="explode")
    scheduler, admission = build_scheduler()

    scheduler.run_until_idle(timeout=10)

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.failure_class == FailureClass.INTERNAL_ERROR
    assert stored.status_message == "Internal error while processing job (RuntimeError)"
    assert admission.get_stats().active_global == 0


def test_start_and_stop_are_idempotent(
    repository: JobRepository,
    make_job,
    build_scheduler,
) -> None:
    scheduler, _ = build_scheduler()
    job = make_job()

    scheduler.start()
    scheduler.start()
    assert scheduler.is_running is True

    deadline = time.monotonic() + 10
    while time.monotonic() < deadline:
        stored = repository.get_job(job.job_id)
        if stored is not None and stored.is_terminal:
            break
        time.sleep(0.02)

    scheduler.stop()
    scheduler.stop()
    assert scheduler.is_running is False
    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED


def test_reconcile_fails_jobs_left_running(
    repository: JobRepository,
    make_job,
    build_scheduler,
) -> None:
    orphan = make_job()
    repository.claim_job(orphan.job_id)
    repository.update_status(orphan.job_id, JobStatus.RUNNING)
    scheduler, _ = build_scheduler()
    scheduler.stale_running_seconds = 0
    time.sleep(0.01)

    recovered = scheduler.reconcile_stale_jobs()

    assert recovered == [orphan.job_id]
    stored = repository.get_job(orphan.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.status_message == "Interrupted by process restart"


def test_registry_rejects_duplicates_and_unknown_types() -> None:
    registry = ProcessorRegistry()
    registry.register(_ExplodingProcessor())

    with pytest.raises(ValueError, match="already registered"):
        registry.register(_ExplodingProcessor())
    with pytest.raises(ValueError, match="Unsupported task type: nope"):
        registry.resolve("nope")
    assert registry.supports("explode") is True
    assert registry.task_types == ("explode",)
