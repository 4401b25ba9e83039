"""Persistent background job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from codeplan.jobs.errors import JobNotFoundError, JobStateError
from codeplan.jobs.models import (
    STARTABLE_STATUSES,
    TERMINAL_STATUSES,
    FailureClass,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    is_transition_allowed,
)
from codeplan.storage.alembic_runner import upgrade_head
from codeplan.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from codeplan.storage.sqlmodel_models import BackgroundJob, BackgroundJobEvent

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)
_CANCELABLE_VALUES = (
    JobStatus.IDLE.value,
    JobStatus.QUEUED.value,
    JobStatus.PREPARING.value,
    JobStatus.RUNNING.value,
)


class JobRepository:
    """Job Store facade backed by SQLModel + SQLite.

    Every status change is a conditional ``UPDATE ... WHERE status = <observed>``;
    a lost race is retried against the fresh state, so concurrent writers
    (scheduler timeout vs. finishing processor) cannot both move a job.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(self, payload: JobCreate) -> JobView:
        """Persist a new non-terminal job."""

        if payload.status not in {JobStatus.IDLE, JobStatus.QUEUED}:
            raise ValueError(f"Jobs must be created idle or queued, got {payload.status.value}")

        now = to_db_datetime(utc_now())
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = BackgroundJob(
                job_id=job_id,
                session_id=payload.session_id,
                task_type=payload.task_type,
                api_type=payload.api_type,
                status=payload.status.value,
                prompt_text=payload.prompt_text,
                response_text="",
                model_used=payload.model_used,
                max_output_tokens=payload.max_output_tokens,
                status_message=payload.status_message,
                payload_json=_dump_json(payload.payload),
                metadata_json=_dump_json(payload.metadata),
                cleared=False,
                created_at=now,
                last_update=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=payload.status,
                details={"task_type": payload.task_type, "api_type": payload.api_type},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(BackgroundJob, job_id)
            return _to_job_view(row) if row is not None else None

    def update_status(  # noqa: PLR0913
        self,
        job_id: str,
        status: JobStatus,
        *,
        status_message: str | None = None,
        metadata: dict[str, Any] | None = None,
        failure_class: FailureClass | None = None,
        response_text: str | None = None,
        tokens_sent: int | None = None,
        tokens_received: int | None = None,
        model_used: str | None = None,
    ) -> bool:
        """Move a job along the status graph.

        Returns False without touching the row when the job is already terminal.
        Re-entering the current non-terminal status refreshes the message only.
        Raises JobStateError for any other edge not in the graph.
        """

        values: dict[str, Any] = {}
        if status_message is not None:
            values["status_message"] = status_message
        if failure_class is not None:
            values["failure_class"] = failure_class.value
        if response_text is not None:
            values["response_text"] = response_text
            values["chars_received"] = len(response_text)
        if tokens_sent is not None:
            values["tokens_sent"] = tokens_sent
        if tokens_received is not None:
            values["tokens_received"] = tokens_received
        if model_used is not None:
            values["model_used"] = model_used
        return self._transition(
            job_id=job_id,
            target=status,
            values=values,
            metadata=metadata,
            details={"status_message": status_message} if status_message else {},
        )

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
    ) -> bool:
        """Finalize a job as completed; streamed jobs keep their accumulated response."""

        return self.update_status(
            job_id,
            JobStatus.COMPLETED,
            status_message=status_message,
            metadata=metadata,
            response_text=response_text,
            tokens_sent=tokens_sent,
            tokens_received=tokens_received,
            model_used=model_used,
        )

    def fail_job(
        self,
        job_id: str,
        *,
        status_message: str,
        failure_class: FailureClass,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        return self.update_status(
            job_id,
            JobStatus.FAILED,
            status_message=status_message,
            failure_class=failure_class,
            metadata=metadata,
        )

    def cancel_job(self, job_id: str, *, reason: str = "Canceled by user interaction") -> bool:
        return self.update_status(
            job_id,
            JobStatus.CANCELED,
            status_message=reason,
            failure_class=FailureClass.CANCELED,
        )

    def claim_job(self, job_id: str) -> bool:
        """Atomically move a queued job to preparing; False if another caller won."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BackgroundJob)
                .where(
                    col(BackgroundJob.job_id) == job_id,
                    col(BackgroundJob.status) == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.PREPARING.value,
                    status_message="Preparing request",
                    last_update=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="claimed",
                status_from=JobStatus.QUEUED,
                status_to=JobStatus.PREPARING,
                details={},
            )
            session.commit()
            return True

    def append_to_response(
        self,
        job_id: str,
        chunk: str,
        token_delta: int,
        new_length: int,
    ) -> bool:
        """Append one streamed chunk; refused once the job is terminal.

        ``new_length`` is the producer's cumulative length. The stored
        ``chars_received`` is always derived from the stored text so the two
        cannot diverge; a mismatch with the producer is only logged.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BackgroundJob)
                .where(
                    col(BackgroundJob.job_id) == job_id,
                    col(BackgroundJob.status).not_in(_TERMINAL_VALUES),
                )
                .values(
                    response_text=col(BackgroundJob.response_text).concat(chunk),
                    tokens_received=col(BackgroundJob.tokens_received) + max(0, token_delta),
                    chars_received=func.length(col(BackgroundJob.response_text)) + len(chunk),
                    last_update=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            stored_length = session.exec(
                select(BackgroundJob.chars_received).where(BackgroundJob.job_id == job_id),
            ).one()
            session.commit()
        if stored_length != new_length:
            logger.warning(
                "Streamed length drift for job %s: stored=%d producer=%d",
                job_id,
                stored_length,
                new_length,
            )
        return True

    def set_cleared(self, job_id: str, cleared: bool) -> bool:
        """Toggle the UI hide flag; independent of lifecycle status."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(BackgroundJob)
                .where(col(BackgroundJob.job_id) == job_id)
                .values(cleared=cleared, last_update=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def augment_metadata(self, job_id: str, metadata: dict[str, Any]) -> bool:
        """Merge keys into job metadata; allowed on terminal jobs."""

        with Session(self.engine) as session:
            row = session.get(BackgroundJob, job_id)
            if row is None:
                return False
            merged = _load_json(row.metadata_json)
            merged.update(metadata)
            row.metadata_json = _dump_json(merged)
            row.last_update = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            return True

    def list_startable_jobs(
        self,
        *,
        limit: int = 50,
        after: tuple[datetime, str] | None = None,
    ) -> list[JobView]:
        """Queued jobs, oldest first.

        ``after`` is a ``(created_at, job_id)`` keyset cursor; only jobs ordered
        strictly after it are returned.
        """

        statement = select(BackgroundJob).where(
            col(BackgroundJob.status).in_([s.value for s in STARTABLE_STATUSES]),
        )
        if after is not None:
            created_at = to_db_datetime(after[0])
            statement = statement.where(
                or_(
                    col(BackgroundJob.created_at) > created_at,
                    and_(
                        col(BackgroundJob.created_at) == created_at,
                        col(BackgroundJob.job_id) > after[1],
                    ),
                ),
            )
        with Session(self.engine) as session:
            rows = session.exec(
                statement.order_by(
                    col(BackgroundJob.created_at).asc(),
                    col(BackgroundJob.job_id).asc(),
                ).limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_jobs(
        self,
        *,
        session_id: str | None = None,
        status: JobStatus | None = None,
        include_cleared: bool = True,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by session and status."""

        with Session(self.engine) as session:
            statement = select(BackgroundJob)
            if session_id is not None:
                statement = statement.where(BackgroundJob.session_id == session_id)
            if status is not None:
                statement = statement.where(BackgroundJob.status == status.value)
            if not include_cleared:
                statement = statement.where(col(BackgroundJob.cleared).is_(False))
            rows = session.exec(
                statement.order_by(col(BackgroundJob.created_at).desc()).limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_session_active_job_ids(self, session_id: str) -> list[str]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(BackgroundJob.job_id).where(
                        BackgroundJob.session_id == session_id,
                        col(BackgroundJob.status).in_(_CANCELABLE_VALUES),
                    ),
                ).all(),
            )

    def cancel_session_jobs(
        self,
        session_id: str,
        *,
        reason: str = "Canceled by user interaction",
    ) -> list[str]:
        """Cancel every non-terminal job of the session; returns canceled ids."""

        canceled: list[str] = []
        for job_id in self.list_session_active_job_ids(session_id):
            if self.cancel_job(job_id, reason=reason):
                canceled.append(job_id)
        return canceled

    def recover_stale_running_jobs(self, *, stale_after_seconds: int) -> list[str]:
        """Fail preparing/running jobs whose owner process is gone."""

        cutoff = to_db_datetime(utc_now() - timedelta(seconds=stale_after_seconds))
        with Session(self.engine) as session:
            stale_ids = list(
                session.exec(
                    select(BackgroundJob.job_id).where(
                        col(BackgroundJob.status).in_(
                            [JobStatus.PREPARING.value, JobStatus.RUNNING.value],
                        ),
                        col(BackgroundJob.last_update) < cutoff,
                    ),
                ).all(),
            )

        recovered: list[str] = []
        for job_id in stale_ids:
            if self.fail_job(
                job_id,
                status_message="Interrupted by process restart",
                failure_class=FailureClass.INTERNAL_ERROR,
                metadata={"recovered": True},
            ):
                recovered.append(job_id)
        if recovered:
            logger.warning("Recovered %d stale running jobs", len(recovered))
        return recovered

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.get(BackgroundJob, job_id)
            if job is None:
                return None
            event_rows = session.exec(
                select(BackgroundJobEvent)
                .where(BackgroundJobEvent.job_id == job_id)
                .order_by(col(BackgroundJobEvent.created_at).asc(), col(BackgroundJobEvent.id)),
            ).all()
            view = _to_job_view(job)

        events = [
            JobEventView(
                event_id=row.id or 0,
                job_id=row.job_id,
                event_type=row.event_type,
                status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=_load_json(row.details_json),
            )
            for row in event_rows
        ]
        return JobDetails(job=view, events=events)

    def _transition(
        self,
        *,
        job_id: str,
        target: JobStatus,
        values: dict[str, Any],
        metadata: dict[str, Any] | None,
        details: dict[str, object],
    ) -> bool:
        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                row = session.get(BackgroundJob, job_id)
                if row is None:
                    raise JobNotFoundError(job_id)
                current = JobStatus(row.status)
                if current.is_terminal:
                    return False
                if current != target and not is_transition_allowed(current, target):
                    raise JobStateError(job_id, current, target)

                update_values = dict(values)
                update_values["status"] = target.value
                update_values["last_update"] = now
                if target == JobStatus.RUNNING and row.start_time is None:
                    update_values["start_time"] = now
                if target.is_terminal:
                    update_values["end_time"] = now
                if metadata:
                    merged = _load_json(row.metadata_json)
                    merged.update(metadata)
                    update_values["metadata_json"] = _dump_json(merged)

                result = session.exec(
                    sa_update(BackgroundJob)
                    .where(
                        col(BackgroundJob.job_id) == job_id,
                        col(BackgroundJob.status) == current.value,
                    )
                    .values(**update_values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                if current != target:
                    self._add_event(
                        session=session,
                        job_id=job_id,
                        event_type=target.value,
                        status_from=current,
                        status_to=target,
                        details=details,
                    )
                session.commit()
                return True

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            BackgroundJobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details),
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _dump_json(value: dict[str, Any]) -> str | None:
    if not value:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_job_view(row: BackgroundJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        session_id=row.session_id,
        task_type=row.task_type,
        api_type=row.api_type,
        status=JobStatus(row.status),
        prompt_text=row.prompt_text,
        response_text=row.response_text,
        tokens_sent=row.tokens_sent,
        tokens_received=row.tokens_received,
        chars_received=row.chars_received,
        model_used=row.model_used,
        max_output_tokens=row.max_output_tokens,
        status_message=row.status_message,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        payload=_load_json(row.payload_json),
        metadata=_load_json(row.metadata_json),
        cleared=bool(row.cleared),
        created_at=to_utc_aware_datetime(row.created_at),
        start_time=to_utc_aware_datetime(row.start_time) if row.start_time is not None else None,
        end_time=to_utc_aware_datetime(row.end_time) if row.end_time is not None else None,
        last_update=to_utc_aware_datetime(row.last_update),
    )
