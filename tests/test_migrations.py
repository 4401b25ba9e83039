from pathlib import Path

import allure
from sqlalchemy import inspect, text

from codeplan.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("Job Store Reliability"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = JobRepository(tmp_path / "migrations.db")
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    inspector = inspect(repository.engine)
    tables = set(inspector.get_table_names())
    job_columns = {column["name"] for column in inspector.get_columns("background_jobs")}
    repository.close()

    assert version == "20261016_0001"
    assert {"background_jobs", "background_job_events"} <= tables
    assert {
        "job_id",
        "session_id",
        "status",
        "response_text",
        "chars_received",
        "tokens_received",
        "cleared",
        "last_update",
    } <= job_columns
    assert str(journal_mode).lower() == "wal"
