"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from codeplan.jobs.admission import AdmissionController
from codeplan.jobs.models import ConcurrencyLimits, JobCreate, JobView
from codeplan.jobs.repository import JobRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def admission(repository: JobRepository) -> Iterator[AdmissionController]:
    controller = AdmissionController(
        limits=ConcurrencyLimits(global_max=10, per_session_max=5, default_task_type_max=5),
        job_store=repository,
    )
    try:
        yield controller
    finally:
        controller.close()


@pytest.fixture()
def make_job(repository: JobRepository) -> Callable[..., JobView]:
    """Create a queued job with sensible defaults."""

    def _make(**overrides: Any) -> JobView:
        fields: dict[str, Any] = {
            "session_id": "session-1",
            "task_type": "generic_completion",
            "api_type": "echo",
            "prompt_text": "Say hello.",
        }
        fields.update(overrides)
        return repository.create_job(JobCreate(**fields))

    return _make
