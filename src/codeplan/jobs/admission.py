"""In-memory admission control for outbound model requests.

The controller owns three counters (global, per session, per request type),
the map of active requests with their cancellation tokens, and the streaming
accumulators that link an ephemeral request to its durable job. All of that
state is guarded by a single lock; Job Store writes and HTTP I/O happen
outside of it.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from typing import Any

import httpx

from codeplan.config import AdmissionSettings
from codeplan.jobs.errors import JobCanceledError
from codeplan.jobs.models import (
    ActiveRequest,
    AdmissionStats,
    ConcurrencyLimits,
    StreamingJobLink,
    StreamingSnapshot,
)
from codeplan.jobs.store import JobStore
from codeplan.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "Canceled by user interaction"
CHARS_PER_TOKEN = 3.5


def estimate_tokens(text: str) -> int:
    """Rough token estimate used when the provider does not report usage."""

    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class CancellationToken:
    """Per-request cancellation handle, safe to share between threads."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[str], None]] = []
        self.reason: str | None = None

    @property
    def is_canceled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> bool:
        """Fire the token; returns False if it was already fired."""

        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason or DEFAULT_CANCEL_REASON
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback(self.reason)
            except Exception:
                logger.exception("Cancellation callback failed")
        return True

    def on_cancel(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Register a callback; runs immediately if already canceled.

        Returns a function that unregisters the callback.
        """

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _unregister
        callback(self.reason or DEFAULT_CANCEL_REASON)
        return lambda: None

    def raise_if_canceled(self) -> None:
        if self._event.is_set():
            raise JobCanceledError(self.reason or DEFAULT_CANCEL_REASON)

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class AdmissionController:
    """Three-level concurrency gate with cancellation and streaming bookkeeping.

    There is no internal queue: callers poll ``has_capacity`` (or use the
    atomic ``try_track_request``) and hold work back themselves.
    """

    def __init__(
        self,
        *,
        limits: ConcurrencyLimits | None = None,
        job_store: JobStore | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._limits = limits or ConcurrencyLimits()
        self._job_store = job_store
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._lock = threading.Lock()
        self._active: dict[str, ActiveRequest] = {}
        self._global_active = 0
        self._by_session: Counter[str] = Counter()
        self._by_type: Counter[str] = Counter()
        self._streaming: dict[str, StreamingJobLink] = {}

    @classmethod
    def from_settings(
        cls,
        settings: AdmissionSettings,
        *,
        job_store: JobStore | None = None,
        http_client: httpx.Client | None = None,
    ) -> AdmissionController:
        return cls(
            limits=ConcurrencyLimits(
                global_max=settings.global_max,
                per_session_max=settings.per_session_max,
                per_task_type_max=dict(settings.per_task_type_max),
            ),
            job_store=job_store,
            http_client=http_client,
        )

    def close(self) -> None:
        if self._http_client is not None and self._owns_http_client:
            self._http_client.close()
            self._http_client = None

    # -- capacity and tracking -------------------------------------------------

    def has_capacity(self, session_id: str, request_type: str) -> bool:
        with self._lock:
            return self._has_capacity_locked(session_id, request_type)

    def track_request(
        self,
        request_id: str,
        session_id: str,
        request_type: str,
    ) -> CancellationToken:
        """Register an active request and bump all three counters.

        Tracking an id that is already active returns its existing token
        without counting it twice.
        """

        with self._lock:
            return self._track_locked(request_id, session_id, request_type)

    def try_track_request(
        self,
        request_id: str,
        session_id: str,
        request_type: str,
    ) -> CancellationToken | None:
        """Capacity check and tracking as one atomic step; None when full."""

        with self._lock:
            existing = self._active.get(request_id)
            if existing is not None:
                return existing.token
            if not self._has_capacity_locked(session_id, request_type):
                return None
            return self._track_locked(request_id, session_id, request_type)

    def untrack_request(self, request_id: str) -> bool:
        """Release a request's slot; unknown ids are a no-op."""

        with self._lock:
            return self._release_locked(request_id) is not None

    def is_request_active(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._active

    def get_request_count(self) -> int:
        with self._lock:
            return len(self._active)

    def get_token(self, request_id: str) -> CancellationToken | None:
        with self._lock:
            entry = self._active.get(request_id)
            return entry.token if entry is not None else None

    # -- scoped requests ------------------------------------------------------

    @contextmanager
    def request_scope(
        self,
        request_id: str,
        *,
        session_id: str,
        request_type: str,
    ) -> Iterator[CancellationToken]:
        """Acquire the cancellation handle for a call and release it on exit.

        If ``request_id`` is already tracked (the scheduler admitted the job),
        its token is reused and the slot stays with its owner; otherwise the
        request is tracked here and released on every exit path.
        """

        with self._lock:
            existing = self._active.get(request_id)
            owned = existing is None
            token = (
                self._track_locked(request_id, session_id, request_type)
                if existing is None
                else existing.token
            )
        try:
            token.raise_if_canceled()
            yield token
        finally:
            if owned:
                self.untrack_request(request_id)

    @contextmanager
    def fetch(  # noqa: PLR0913
        self,
        request_id: str,
        url: str,
        *,
        session_id: str,
        request_type: str,
        method: str = "POST",
        client: httpx.Client | None = None,
        **request_kwargs: Any,
    ) -> Iterator[httpx.Response]:
        """Issue a streamed HTTP request inside ``request_scope``.

        Cancelling the token closes the response, which interrupts a blocked read.
        """

        with self.request_scope(
            request_id,
            session_id=session_id,
            request_type=request_type,
        ) as token:
            http_client = client or self._get_http_client()
            request = http_client.build_request(method, url, **request_kwargs)
            response = http_client.send(request, stream=True)
            unregister = token.on_cancel(lambda _reason: response.close())
            try:
                yield response
            except (httpx.HTTPError, RuntimeError) as error:
                if token.is_canceled:
                    raise JobCanceledError(token.reason or DEFAULT_CANCEL_REASON) from error
                raise
            finally:
                unregister()
                response.close()

    # -- cancellation ---------------------------------------------------------

    def cancel_request(self, request_id: str, reason: str | None = None) -> bool:
        """Fire cancellation and release tracking; False for unknown ids."""

        with self._lock:
            entry = self._release_locked(request_id)
        if entry is None:
            return False
        entry.cancel_reason = reason or DEFAULT_CANCEL_REASON
        entry.token.cancel(entry.cancel_reason)
        logger.info("Canceled request %s: %s", request_id, entry.cancel_reason)
        return True

    def cancel_session_requests(self, session_id: str, reason: str | None = None) -> int:
        """Cancel the active requests of one session only."""

        with self._lock:
            entries = [
                self._release_locked(request_id)
                for request_id, entry in list(self._active.items())
                if entry.session_id == session_id
            ]
        return self._fire(entries, reason)

    def cancel_all(self, reason: str | None = None) -> int:
        with self._lock:
            entries = [self._release_locked(request_id) for request_id in list(self._active)]
        return self._fire(entries, reason)

    # -- streaming ------------------------------------------------------------

    def register_streaming_job(self, request_id: str, job_id: str) -> None:
        with self._lock:
            previous = self._streaming.get(request_id)
            self._streaming[request_id] = StreamingJobLink(job_id=job_id)
        if previous is not None:
            logger.warning(
                "Overwriting streaming link for request %s (job %s -> %s)",
                request_id,
                previous.job_id,
                job_id,
            )

    def handle_stream_chunk(self, request_id: str, chunk: str, token_estimate: int) -> bool:
        """Accumulate a chunk and forward it to the Job Store.

        Returns False when no link exists, which means the job was finalized
        elsewhere, or when the store refuses or fails the append.
        """

        with self._lock:
            link = self._streaming.get(request_id)
            if link is None:
                return False
            if not chunk:
                return True
            link.accumulated_text += chunk
            link.total_tokens += max(0, token_estimate)
            link.current_length += len(chunk)
            link.last_chunk_time = utc_now()
            job_id = link.job_id
            new_length = link.current_length

        if self._job_store is None:
            return True
        try:
            return self._job_store.append_to_response(
                job_id,
                chunk,
                max(0, token_estimate),
                new_length,
            )
        except Exception:
            logger.exception("Failed to persist stream chunk for job %s", job_id)
            return False

    def cleanup_streaming_job(self, request_id: str) -> StreamingSnapshot | None:
        with self._lock:
            link = self._streaming.pop(request_id, None)
        if link is None:
            return None
        return StreamingSnapshot(
            job_id=link.job_id,
            accumulated_response=link.accumulated_text,
            total_tokens=link.total_tokens,
        )

    # -- administration -------------------------------------------------------

    def get_stats(self) -> AdmissionStats:
        with self._lock:
            return AdmissionStats(
                active_global=self._global_active,
                active_by_session={k: v for k, v in self._by_session.items() if v > 0},
                active_by_type={k: v for k, v in self._by_type.items() if v > 0},
                limits=replace(
                    self._limits,
                    per_task_type_max=dict(self._limits.per_task_type_max),
                ),
            )

    def update_limits(
        self,
        *,
        global_max: int | None = None,
        per_session_max: int | None = None,
        per_task_type_max: dict[str, int] | None = None,
    ) -> None:
        """Override ceilings at runtime; non-positive values are ignored."""

        with self._lock:
            if global_max is not None and global_max > 0:
                self._limits.global_max = global_max
            if per_session_max is not None and per_session_max > 0:
                self._limits.per_session_max = per_session_max
            for request_type, limit in (per_task_type_max or {}).items():
                if limit > 0:
                    self._limits.per_task_type_max[request_type] = limit
                else:
                    logger.warning("Ignoring non-positive limit for %s: %d", request_type, limit)

    # -- internals ------------------------------------------------------------

    def _has_capacity_locked(self, session_id: str, request_type: str) -> bool:
        return (
            self._global_active < self._limits.global_max
            and self._by_session[session_id] < self._limits.per_session_max
            and self._by_type[request_type] < self._limits.task_type_limit(request_type)
        )

    def _track_locked(
        self,
        request_id: str,
        session_id: str,
        request_type: str,
    ) -> CancellationToken:
        existing = self._active.get(request_id)
        if existing is not None:
            return existing.token
        token = CancellationToken()
        self._active[request_id] = ActiveRequest(
            request_id=request_id,
            token=token,
            created_at=utc_now(),
            session_id=session_id,
            request_type=request_type,
        )
        self._global_active += 1
        self._by_session[session_id] += 1
        self._by_type[request_type] += 1
        return token

    def _release_locked(self, request_id: str) -> ActiveRequest | None:
        entry = self._active.pop(request_id, None)
        if entry is None:
            return None
        self._global_active = max(0, self._global_active - 1)
        self._by_session[entry.session_id] = max(0, self._by_session[entry.session_id] - 1)
        if self._by_session[entry.session_id] == 0:
            del self._by_session[entry.session_id]
        self._by_type[entry.request_type] = max(0, self._by_type[entry.request_type] - 1)
        if self._by_type[entry.request_type] == 0:
            del self._by_type[entry.request_type]
        return entry

    def _fire(self, entries: list[ActiveRequest | None], reason: str | None) -> int:
        count = 0
        for entry in entries:
            if entry is None:
                continue
            entry.cancel_reason = reason or DEFAULT_CANCEL_REASON
            entry.token.cancel(entry.cancel_reason)
            count += 1
        if count:
            logger.info("Canceled %d active requests: %s", count, reason or DEFAULT_CANCEL_REASON)
        return count

    def _get_http_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=httpx.Timeout(120.0, connect=10.0))
            self._owns_http_client = True
        return self._http_client
