"""Processor contract, shared lifecycle template and task-type registry."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from codeplan.jobs.admission import AdmissionController
from codeplan.jobs.errors import JobError, PayloadValidationError, ProcessorError
from codeplan.jobs.failure_classifier import FailureClassification, classify_exception
from codeplan.jobs.models import FailureClass, JobPayload, JobProcessResult, JobStatus
from codeplan.jobs.store import JobStore
from codeplan.providers.base import ApiClient, ApiRequestOptions

logger = logging.getLogger(__name__)

EMPTY_FAILURE_MESSAGE = "Job failed without a specific error message."
_MAX_STATUS_MESSAGE_CHARS = 300


class JobProcessor(Protocol):
    """Handler for one task type."""

    task_type: str

    def process(self, payload: JobPayload) -> JobProcessResult:
        """Run the job to a terminal status and report the outcome."""


@dataclass(slots=True)
class ModelReply:
    """Text and accounting from one model call."""

    text: str
    tokens_sent: int
    tokens_received: int
    model: str | None
    streamed: bool


@dataclass(slots=True)
class ProcessorOutcome:
    """Successful unit of work ready to be persisted."""

    response_text: str
    data: Any = None
    metadata: dict[str, Any] = field(default_factory=dict)
    tokens_sent: int | None = None
    tokens_received: int | None = None
    model_used: str | None = None
    streamed: bool = False


class BaseJobProcessor:
    """Lifecycle template shared by every processor.

    ``process`` validates the payload, marks the job running, delegates the
    unit of work to ``execute`` and always finalizes the job: completed on
    success, failed (or canceled) with a classified, retry-aware result on
    any exception.
    """

    task_type = ""
    uses_model = True

    def __init__(
        self,
        *,
        job_store: JobStore,
        api_client: ApiClient | None = None,
        admission: AdmissionController | None = None,
    ) -> None:
        if self.uses_model and api_client is None:
            raise ValueError(f"{type(self).__name__} requires an API client")
        self._job_store = job_store
        self._api_client = api_client
        self._admission = admission

    def process(self, payload: JobPayload) -> JobProcessResult:
        started = time.monotonic()
        job_id = payload.background_job_id
        try:
            self.validate(payload)
            self._check_canceled(payload)
            if not self._job_store.update_status(
                job_id,
                JobStatus.RUNNING,
                status_message=self.running_message(payload),
            ):
                return JobProcessResult(
                    success=False,
                    message="Job was already finalized before processing started",
                    should_retry=False,
                )

            outcome = self.execute(payload)
            self._check_canceled(payload)

            metadata = dict(outcome.metadata)
            metadata["durationMs"] = _elapsed_ms(started)
            if not self._job_store.complete_job(
                job_id,
                response_text=None if outcome.streamed else outcome.response_text,
                tokens_sent=outcome.tokens_sent,
                tokens_received=None if outcome.streamed else outcome.tokens_received,
                model_used=outcome.model_used,
                metadata=metadata,
            ):
                logger.info("Job %s was finalized elsewhere; dropping result", job_id)
                return JobProcessResult(
                    success=False,
                    message="Job was finalized before the result could be stored",
                    data=outcome.data,
                    should_retry=False,
                )
            return JobProcessResult(
                success=True,
                message="Completed successfully",
                data=outcome.data,
            )
        except Exception as error:  # noqa: BLE001
            return self._finalize_failure(payload, error, started=started)

    def validate(self, payload: JobPayload) -> None:
        if not payload.background_job_id:
            raise PayloadValidationError("Missing background job id")
        if not payload.session_id:
            raise PayloadValidationError("Missing session id")
        if self.uses_model and not payload.prompt_text.strip():
            raise PayloadValidationError("Prompt text is required")

    def running_message(self, payload: JobPayload) -> str:
        api_type = getattr(self._api_client, "api_type", "model")
        return f"Processing with {api_type} API"

    def execute(self, payload: JobPayload) -> ProcessorOutcome:
        raise NotImplementedError

    # -- model helpers ----------------------------------------------------------

    def call_model(self, payload: JobPayload, prompt: str) -> ModelReply:
        response = self._client().send_request(prompt, self._request_options(payload))
        if not response.is_success:
            raise ProcessorError(response.message or "Model request failed")
        text = response.data if isinstance(response.data, str) else ""
        return _reply(text, response.metadata, streamed=False)

    def stream_model(self, payload: JobPayload, prompt: str) -> ModelReply:
        """Stream into the job; the reply text is what was persisted chunk by chunk."""

        if self._admission is None:
            raise ValueError(f"{type(self).__name__} streams and needs an admission controller")
        options = self._request_options(payload)
        request_id = options.request_id or payload.background_job_id
        options.request_id = request_id
        self._admission.register_streaming_job(request_id, payload.background_job_id)
        try:
            response = self._client().send_streaming_request(prompt, options)
        finally:
            snapshot = self._admission.cleanup_streaming_job(request_id)
        if not response.is_success:
            raise ProcessorError(response.message or "Streaming request failed")
        metadata = dict(response.metadata)
        if snapshot is not None:
            metadata["response"] = snapshot.accumulated_response
            metadata.setdefault("tokens_received", snapshot.total_tokens)
        return _reply(str(metadata.get("response", "")), metadata, streamed=True)

    def _client(self) -> ApiClient:
        if self._api_client is None:
            raise ValueError(f"{type(self).__name__} has no API client")
        return self._api_client

    def _request_options(self, payload: JobPayload) -> ApiRequestOptions:
        return ApiRequestOptions(
            session_id=payload.session_id,
            request_type=payload.task_type,
            model=payload.model,
            system_prompt=payload.system_prompt,
            temperature=payload.temperature,
            max_output_tokens=payload.max_output_tokens,
            request_id=payload.request_id or payload.background_job_id,
            job_id=payload.background_job_id,
        )

    def _check_canceled(self, payload: JobPayload) -> None:
        if payload.cancel_token is not None:
            payload.cancel_token.raise_if_canceled()

    # -- failure path -----------------------------------------------------------

    def _finalize_failure(
        self,
        payload: JobPayload,
        error: Exception,
        *,
        started: float,
    ) -> JobProcessResult:
        classification = classify_exception(error)
        message = user_message(error, classification)
        if classification.failure_class == FailureClass.INTERNAL_ERROR:
            logger.exception(
                "Processor %s crashed on job %s",
                self.task_type,
                payload.background_job_id,
            )
        else:
            logger.warning(
                "Job %s failed (%s): %s",
                payload.background_job_id,
                classification.failure_class.value,
                message,
            )

        try:
            if classification.failure_class == FailureClass.CANCELED:
                self._job_store.cancel_job(payload.background_job_id, reason=message)
            else:
                self._job_store.fail_job(
                    payload.background_job_id,
                    status_message=message,
                    failure_class=classification.failure_class,
                    metadata={
                        "errorCategory": classification.category,
                        "errorType": type(error).__name__,
                        "failure": classification.to_event_details(),
                        "durationMs": _elapsed_ms(started),
                    },
                )
        except Exception:
            logger.exception("Could not finalize failed job %s", payload.background_job_id)

        return JobProcessResult(
            success=False,
            message=message,
            error=error,
            should_retry=classification.retryable,
            failure_class=classification.failure_class,
        )


class ProcessorRegistry:
    """Registry mapping task-type tags to processors."""

    def __init__(self, processors: dict[str, JobProcessor] | None = None) -> None:
        self._processors: dict[str, JobProcessor] = dict(processors or {})

    def register(self, processor: JobProcessor, *, task_type: str | None = None) -> None:
        key = task_type or processor.task_type
        if not key:
            raise ValueError(f"Processor {type(processor).__name__} has no task type")
        if key in self._processors:
            raise ValueError(f"Task type already registered: {key}")
        self._processors[key] = processor

    def resolve(self, task_type: str) -> JobProcessor:
        processor = self._processors.get(task_type)
        if processor is None:
            raise ValueError(f"Unsupported task type: {task_type}")
        return processor

    def supports(self, task_type: str) -> bool:
        return task_type in self._processors

    @property
    def task_types(self) -> tuple[str, ...]:
        return tuple(sorted(self._processors))


def user_message(error: BaseException, classification: FailureClassification) -> str:
    """Short status text for a failure; never a traceback."""

    if isinstance(error, httpx.TimeoutException):
        return "Request to the model provider timed out"
    if isinstance(error, httpx.TransportError):
        return "Network error while contacting the model provider"
    if isinstance(error, (ProcessorError, JobError)):
        text = str(error)
    elif classification.failure_class == FailureClass.INTERNAL_ERROR:
        return f"Internal error while processing job ({type(error).__name__})"
    else:
        text = str(error)
    text = text.strip().splitlines()[0] if text.strip() else ""
    if not text:
        return EMPTY_FAILURE_MESSAGE
    return text[:_MAX_STATUS_MESSAGE_CHARS]


def _reply(text: str, metadata: dict[str, Any], *, streamed: bool) -> ModelReply:
    return ModelReply(
        text=text,
        tokens_sent=int(metadata.get("tokens_sent") or 0),
        tokens_received=int(metadata.get("tokens_received") or 0),
        model=metadata.get("model"),
        streamed=streamed,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
