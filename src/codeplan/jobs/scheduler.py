"""Polling scheduler that admits queued jobs and dispatches them to processors."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from codeplan.config import SchedulerSettings
from codeplan.jobs.admission import AdmissionController
from codeplan.jobs.models import FailureClass, JobPayload, JobProcessResult, JobView
from codeplan.jobs.store import JobStore
from codeplan.processors.base import ProcessorRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerTickSummary:
    """Counters for one poll tick."""

    dispatched: int = 0
    skipped_capacity: int = 0
    timed_out: int = 0
    rejected: int = 0

    def merge(self, other: SchedulerTickSummary) -> None:
        self.dispatched += other.dispatched
        self.skipped_capacity += other.skipped_capacity
        self.timed_out += other.timed_out
        self.rejected += other.rejected


@dataclass(slots=True)
class _Dispatch:
    job_id: str
    # set by the worker thread once the processor actually starts
    started: float | None = None
    timed_out: bool = False
    future: Future[JobProcessResult] | None = None

    @property
    def done(self) -> bool:
        return self.future is not None and self.future.done()


class JobScheduler:
    """Stopped/Running polling loop over the Job Store.

    Each tick enforces per-job wall-clock timeouts, then pages through startable
    jobs oldest first and dispatches those the admission controller lets
    through, up to ``concurrency_limit`` in flight. Processors run on a thread
    pool; stopping the loop never interrupts them. A timed-out job is failed
    and its admission slot released at once, but its worker keeps counting
    against ``concurrency_limit`` until the processor returns.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        job_store: JobStore,
        admission: AdmissionController,
        registry: ProcessorRegistry,
        poll_interval_seconds: float = 1.0,
        concurrency_limit: int = 4,
        job_timeout_ms: int = 300_000,
        stale_running_seconds: int = 1_800,
        fetch_batch_size: int = 50,
        reconcile_on_start: bool = True,
    ) -> None:
        self.job_store = job_store
        self.admission = admission
        self.registry = registry
        self.poll_interval_seconds = poll_interval_seconds
        self.concurrency_limit = concurrency_limit
        self.job_timeout_ms = job_timeout_ms
        self.stale_running_seconds = stale_running_seconds
        self.fetch_batch_size = fetch_batch_size
        self.reconcile_on_start = reconcile_on_start

        self._executor = ThreadPoolExecutor(
            max_workers=concurrency_limit,
            thread_name_prefix="codeplan-job",
        )
        self._lock = threading.Lock()
        self._in_flight: dict[str, _Dispatch] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._tick_lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: SchedulerSettings,
        *,
        job_store: JobStore,
        admission: AdmissionController,
        registry: ProcessorRegistry,
    ) -> JobScheduler:
        return cls(
            job_store=job_store,
            admission=admission,
            registry=registry,
            poll_interval_seconds=settings.poll_interval_seconds,
            concurrency_limit=settings.concurrency_limit,
            job_timeout_ms=settings.job_timeout_ms,
            stale_running_seconds=settings.stale_running_seconds,
            fetch_batch_size=settings.fetch_batch_size,
            reconcile_on_start=settings.reconcile_on_start,
        )

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def start(self) -> None:
        """Start polling; a second call while running does nothing."""

        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._loop,
                daemon=True,
                name="codeplan-scheduler",
            )
        if self.reconcile_on_start:
            self.reconcile_stale_jobs()
        self._thread.start()
        logger.info("Job scheduler started")

    def stop(self, *, timeout: float | None = 10.0) -> None:
        """Stop polling; in-flight jobs keep running to completion or timeout."""

        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        thread.join(timeout=timeout)
        self._thread = None
        logger.info("Job scheduler stopped")

    def shutdown(self, *, wait: bool = True) -> None:
        self.stop()
        self._executor.shutdown(wait=wait)

    def reconcile_stale_jobs(self) -> list[str]:
        """Fail preparing/running jobs left behind by a previous process."""

        recovered = self.job_store.recover_stale_running_jobs(
            stale_after_seconds=self.stale_running_seconds,
        )
        for job_id in recovered:
            logger.warning("Job %s was left running by a previous process; marked failed", job_id)
        return recovered

    def run_once(self) -> SchedulerTickSummary:
        """Run a single poll tick synchronously."""

        with self._tick_lock:
            self._reap_finished()
            summary = SchedulerTickSummary(timed_out=self._enforce_timeouts())
            slots = self.concurrency_limit - self.in_flight_count
            cursor: tuple[datetime, str] | None = None
            while slots > 0:
                batch = self.job_store.list_startable_jobs(
                    limit=self.fetch_batch_size,
                    after=cursor,
                )
                for job in batch:
                    if slots <= 0:
                        break
                    if not self.registry.supports(job.task_type):
                        self._reject_unsupported(job)
                        summary.rejected += 1
                        continue
                    if self._dispatch(job):
                        summary.dispatched += 1
                        slots -= 1
                    else:
                        summary.skipped_capacity += 1
                if len(batch) < self.fetch_batch_size:
                    break
                cursor = (batch[-1].created_at, batch[-1].job_id)
            return summary

    def run_until_idle(self, *, timeout: float = 30.0) -> SchedulerTickSummary:
        """Tick until nothing is queued or in flight; for CLI one-shot runs and tests."""

        aggregate = SchedulerTickSummary()
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            aggregate.merge(self.run_once())
            if self.in_flight_count == 0 and not self.job_store.list_startable_jobs(limit=1):
                break
            time.sleep(min(self.poll_interval_seconds, 0.05))
        return aggregate

    def wait_idle(self, *, timeout: float | None = None) -> bool:
        """Block until every in-flight job has returned."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                futures = [d.future for d in self._in_flight.values() if d.future is not None]
            if not futures:
                return True
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            if remaining == 0.0:
                return False
            for future in futures:
                try:
                    future.result(timeout=remaining)
                except TimeoutError:
                    return False
            self._reap_finished()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop.wait(timeout=self.poll_interval_seconds)

    def _dispatch(self, job: JobView) -> bool:
        token = self.admission.try_track_request(job.job_id, job.session_id, job.task_type)
        if token is None:
            return False
        if not self.job_store.claim_job(job.job_id):
            self.admission.untrack_request(job.job_id)
            return False

        payload = JobPayload.from_job(job, request_id=job.job_id, cancel_token=token)
        dispatch = _Dispatch(job_id=job.job_id)
        with self._lock:
            self._in_flight[job.job_id] = dispatch
        try:
            dispatch.future = self._executor.submit(self._run_job, payload, dispatch)
        except RuntimeError:
            with self._lock:
                self._in_flight.pop(job.job_id, None)
            self.admission.untrack_request(job.job_id)
            self.job_store.fail_job(
                job.job_id,
                status_message="Scheduler is shutting down",
                failure_class=FailureClass.INTERNAL_ERROR,
            )
            raise
        logger.info("Dispatched job %s (%s)", job.job_id, job.task_type)
        return True

    def _reject_unsupported(self, job: JobView) -> None:
        message = f"Unsupported task type: {job.task_type}"
        logger.error("Rejecting job %s: %s", job.job_id, message)
        self.job_store.fail_job(
            job.job_id,
            status_message=message,
            failure_class=FailureClass.VALIDATION_ERROR,
            metadata={"errorCategory": "validation"},
        )

    def _run_job(self, payload: JobPayload, dispatch: _Dispatch) -> JobProcessResult:
        job_id = payload.background_job_id
        with self._lock:
            dispatch.started = time.monotonic()
        try:
            processor = self.registry.resolve(payload.task_type)
            result = processor.process(payload)
        except Exception as error:
            logger.exception("Processor for job %s raised", job_id)
            result = JobProcessResult(
                success=False,
                message=f"Internal error while processing job ({type(error).__name__})",
                error=error,
                should_retry=False,
                failure_class=FailureClass.INTERNAL_ERROR,
            )
        try:
            self._ensure_terminal(job_id, result)
        finally:
            self.admission.untrack_request(job_id)
        if result.should_retry:
            logger.info("Job %s failed with a retryable error: %s", job_id, result.message)
        return result

    def _ensure_terminal(self, job_id: str, result: JobProcessResult) -> None:
        job = self.job_store.get_job(job_id)
        if job is None or job.is_terminal:
            return
        if result.success:
            self.job_store.complete_job(job_id)
            return
        self.job_store.fail_job(
            job_id,
            status_message=result.message or "Job failed without a specific error message.",
            failure_class=result.failure_class or FailureClass.INTERNAL_ERROR,
        )

    def _enforce_timeouts(self) -> int:
        limit_seconds = self.job_timeout_ms / 1000.0
        now = time.monotonic()
        with self._lock:
            expired = [
                dispatch
                for dispatch in self._in_flight.values()
                if dispatch.started is not None
                and not dispatch.timed_out
                and not dispatch.done
                and now - dispatch.started >= limit_seconds
            ]
            for dispatch in expired:
                dispatch.timed_out = True

        for dispatch in expired:
            message = f"Job timed out after {self.job_timeout_ms} ms"
            if self.job_store.fail_job(
                dispatch.job_id,
                status_message=message,
                failure_class=FailureClass.TIMEOUT,
                metadata={"errorCategory": "timeout", "timeoutMs": self.job_timeout_ms},
            ):
                logger.warning("Job %s timed out after %d ms", dispatch.job_id, self.job_timeout_ms)
            self.admission.cancel_request(dispatch.job_id, reason=message)
        return len(expired)

    def _reap_finished(self) -> None:
        with self._lock:
            for job_id, dispatch in list(self._in_flight.items()):
                if dispatch.done:
                    del self._in_flight[job_id]
