"""Provider-neutral API client contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True, frozen=True)
class BackgroundJobRef:
    """Marker returned instead of text when work was handed to a background job."""

    job_id: str
    is_background_job: bool = True


@dataclass(slots=True, frozen=True)
class StreamingRef:
    request_id: str
    job_id: str | None = None


@dataclass(slots=True)
class ApiRequestOptions:
    """Per-call options shared by every provider."""

    session_id: str
    request_type: str
    model: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    request_id: str | None = None
    job_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ApiResponse:
    """Uniform adapter result.

    ``data`` is the response text, a ``BackgroundJobRef`` or a ``StreamingRef``.
    """

    is_success: bool
    data: str | BackgroundJobRef | StreamingRef | None
    message: str = ""
    error: BaseException | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class CancelCounts:
    requests: int
    jobs: int = 0


class ApiClient(Protocol):
    """Uniform interface over model providers."""

    api_type: str

    def send_request(self, prompt: str, options: ApiRequestOptions) -> ApiResponse:
        """Run one completion and return its full text.

        Raises ProviderRequestError on a non-success status and
        JobCanceledError when the request's token fires.
        """

    def send_streaming_request(self, prompt: str, options: ApiRequestOptions) -> ApiResponse:
        """Stream a completion into the job linked to ``options.request_id``.

        On success ``data`` is a ``StreamingRef`` and ``metadata`` carries the
        accumulated text under ``response`` plus token usage.
        """

    def cancel_request(self, request_id: str) -> bool: ...

    def cancel_all_session_requests(self, session_id: str) -> CancelCounts: ...
