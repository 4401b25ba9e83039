"""Deterministic offline API client for local runs and tests."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from uuid import uuid4

from codeplan.jobs.admission import AdmissionController, estimate_tokens
from codeplan.jobs.errors import JobCanceledError
from codeplan.providers.base import ApiRequestOptions, ApiResponse, CancelCounts, StreamingRef

RECENT_CALLS_KEPT = 64

ScriptedResponse = str | list[str] | BaseException | Callable[[str, ApiRequestOptions], str]


class EchoApiClient:
    """Answers from a script keyed by request type, or echoes the prompt.

    A script entry may be full text, a list of stream chunks, an exception to
    raise, or a callable ``(prompt, options) -> text``. ``delay_seconds`` is
    spent per chunk waiting on the request's cancellation token, so slow
    responses can be canceled or timed out like real ones. ``calls`` keeps the
    most recent requests.
    """

    api_type = "echo"

    def __init__(
        self,
        *,
        admission: AdmissionController,
        responses: dict[str, ScriptedResponse] | None = None,
        chunk_size: int = 16,
        delay_seconds: float = 0.0,
        model: str = "echo-1",
    ) -> None:
        self._admission = admission
        self._responses = dict(responses or {})
        self._chunk_size = max(1, chunk_size)
        self._delay_seconds = delay_seconds
        self._model = model
        self.calls: deque[tuple[str, ApiRequestOptions]] = deque(maxlen=RECENT_CALLS_KEPT)

    def send_request(self, prompt: str, options: ApiRequestOptions) -> ApiResponse:
        request_id = options.request_id or str(uuid4())
        self.calls.append((prompt, options))
        with self._admission.request_scope(
            request_id,
            session_id=options.session_id,
            request_type=options.request_type,
        ) as token:
            chunks = self._resolve(prompt, options)
            for _ in chunks:
                if self._delay_seconds and token.wait(self._delay_seconds):
                    break
            token.raise_if_canceled()
        text = "".join(chunks)
        return ApiResponse(
            is_success=True,
            data=text,
            message="Request completed",
            metadata=self._usage(prompt, options, text),
        )

    def send_streaming_request(self, prompt: str, options: ApiRequestOptions) -> ApiResponse:
        request_id = options.request_id or str(uuid4())
        self.calls.append((prompt, options))
        with self._admission.request_scope(
            request_id,
            session_id=options.session_id,
            request_type=options.request_type,
        ) as token:
            chunks = self._resolve(prompt, options)
            for chunk in chunks:
                if self._delay_seconds and token.wait(self._delay_seconds):
                    raise JobCanceledError(token.reason or "Canceled by user interaction")
                token.raise_if_canceled()
                self._admission.handle_stream_chunk(request_id, chunk, estimate_tokens(chunk))
        text = "".join(chunks)
        metadata = self._usage(prompt, options, text)
        metadata["response"] = text
        return ApiResponse(
            is_success=True,
            data=StreamingRef(request_id=request_id, job_id=options.job_id),
            message="Streaming completed",
            metadata=metadata,
        )

    def cancel_request(self, request_id: str) -> bool:
        return self._admission.cancel_request(request_id)

    def cancel_all_session_requests(self, session_id: str) -> CancelCounts:
        return CancelCounts(requests=self._admission.cancel_session_requests(session_id))

    def _resolve(self, prompt: str, options: ApiRequestOptions) -> list[str]:
        scripted = self._responses.get(options.request_type, prompt)
        if isinstance(scripted, BaseException):
            raise scripted
        if callable(scripted):
            scripted = scripted(prompt, options)
        if isinstance(scripted, list):
            return list(scripted)
        return [
            scripted[index : index + self._chunk_size]
            for index in range(0, len(scripted), self._chunk_size)
        ]

    def _usage(self, prompt: str, options: ApiRequestOptions, text: str) -> dict[str, object]:
        return {
            "model": options.model or self._model,
            "tokens_sent": estimate_tokens(prompt) + estimate_tokens(options.system_prompt or ""),
            "tokens_received": estimate_tokens(text),
        }
