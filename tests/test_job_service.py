from __future__ import annotations

import time

import allure

from codeplan.jobs.admission import AdmissionController
from codeplan.jobs.models import FailureClass, JobStatus
from codeplan.jobs.repository import JobRepository
from codeplan.jobs.scheduler import JobScheduler
from codeplan.jobs.services import JobService, SubmitJob
from codeplan.processors import build_default_registry
from codeplan.providers import BackgroundJobRef, EchoApiClient

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("Job Submission and Cancellation"),
]


def test_submit_returns_background_job_reference(
    repository: JobRepository,
    admission: AdmissionController,
) -> None:
    service = JobService(repository=repository, admission=admission)

    response = service.submit(
        SubmitJob(
            session_id="s1",
            task_type="path_finder",
            prompt_text="Where is auth handled?",
            api_type="echo",
            project_directory="/srv/project",
            temperature=0.2,
            options={"verify_existence": False},
        ),
    )

    assert response.is_success is True
    assert isinstance(response.data, BackgroundJobRef)
    assert response.data.is_background_job is True
    job = repository.get_job(response.data.job_id)
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.payload == {
        "verify_existence": False,
        "project_directory": "/srv/project",
        "temperature": 0.2,
    }
    assert job.metadata["estimatedPromptTokens"] > 0


def test_submit_rejects_unknown_task_type_when_registry_is_known(
    repository: JobRepository,
    admission: AdmissionController,
) -> None:
    registry = build_default_registry(
        job_store=repository,
        api_client=EchoApiClient(admission=admission),
        admission=admission,
    )
    service = JobService(repository=repository, admission=admission, registry=registry)

    response = service.submit(SubmitJob(session_id="s1", task_type="mystery", prompt_text="x"))

    assert response.is_success is False
    assert response.message == "Unsupported task type: mystery"
    assert repository.list_jobs() == []


def test_idle_job_waits_for_enqueue(
    repository: JobRepository,
    admission: AdmissionController,
) -> None:
    service = JobService(repository=repository, admission=admission)
    response = service.submit(
        SubmitJob(
            session_id="s1",
            task_type="generic_completion",
            prompt_text="x",
            start_idle=True,
        ),
    )
    assert isinstance(response.data, BackgroundJobRef)
    job_id = response.data.job_id

    assert repository.list_startable_jobs() == []
    assert service.enqueue(job_id) is True
    assert [job.job_id for job in repository.list_startable_jobs()] == [job_id]


def test_cancel_queued_job(
    repository: JobRepository,
    admission: AdmissionController,
    make_job,
) -> None:
    service = JobService(repository=repository, admission=admission)
    job = make_job()

    assert service.cancel_job(job.job_id) is True
    assert service.cancel_job(job.job_id) is False

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.CANCELED
    assert stored.failure_class == FailureClass.CANCELED
    assert stored.status_message == "Canceled by user interaction"


def test_cancel_running_job_interrupts_the_request(
    repository: JobRepository,
    admission: AdmissionController,
    make_job,
) -> None:
    client = EchoApiClient(admission=admission, chunk_size=2, delay_seconds=0.2)
    registry = build_default_registry(job_store=repository, api_client=client, admission=admission)
    scheduler = JobScheduler(
        job_store=repository,
        admission=admission,
        registry=registry,
        poll_interval_seconds=0.01,
    )
    service = JobService(repository=repository, admission=admission, registry=registry)
    job = make_job(prompt_text="a long streamed answer that takes a while")

    assert scheduler.run_once().dispatched == 1
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline:
        current = repository.get_job(job.job_id)
        if current is not None and current.status == JobStatus.RUNNING:
            break
        time.sleep(0.02)

    assert service.cancel_job(job.job_id) is True
    assert scheduler.wait_idle(timeout=5) is True
    scheduler.shutdown(wait=True)

    stored = repository.get_job(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.CANCELED
    assert stored.status_message == "Canceled by user interaction"
    assert len(stored.response_text) < len(job.prompt_text)
    assert admission.get_stats().active_global == 0


def test_cancel_session_counts_requests_and_jobs(
    repository: JobRepository,
    admission: AdmissionController,
    make_job,
) -> None:
    service = JobService(repository=repository, admission=admission)
    running = make_job(session_id="alpha")
    repository.claim_job(running.job_id)
    token = admission.track_request(running.job_id, "alpha", running.task_type)
    make_job(session_id="alpha")
    other = make_job(session_id="beta")
    admission.track_request(other.job_id, "beta", other.task_type)

    counts = service.cancel_session("alpha")

    assert counts.requests == 1
    assert counts.jobs == 2
    assert token.is_canceled is True
    assert admission.is_request_active(other.job_id) is True
    other_stored = repository.get_job(other.job_id)
    assert other_stored is not None
    assert other_stored.status == JobStatus.QUEUED
