"""OpenAI-compatible chat completions client over httpx."""

from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

import httpx

from codeplan.config import ProviderSettings
from codeplan.jobs.admission import AdmissionController, estimate_tokens
from codeplan.jobs.errors import ProcessorError, ProviderRequestError
from codeplan.jobs.models import FailureClass
from codeplan.providers.base import ApiRequestOptions, ApiResponse, CancelCounts, StreamingRef

logger = logging.getLogger(__name__)

_ERROR_BODY_PREVIEW_CHARS = 2_000


class OpenAiCompatibleClient:
    """API client for any provider exposing ``/chat/completions``.

    Every call runs through ``AdmissionController.fetch`` so the request is
    tracked and cancellable; streamed deltas are fed to the controller, which
    persists them to the linked job.
    """

    api_type = "openai"

    def __init__(  # noqa: PLR0913
        self,
        *,
        admission: AdmissionController,
        base_url: str,
        api_key: str,
        default_model: str,
        timeout_seconds: float = 120.0,
        default_temperature: float = 0.7,
        default_max_output_tokens: int = 4096,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._admission = admission
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._default_temperature = default_temperature
        self._default_max_output_tokens = default_max_output_tokens
        self._client = http_client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {api_key}"},
        )

    @classmethod
    def from_settings(
        cls,
        settings: ProviderSettings,
        *,
        admission: AdmissionController,
        http_client: httpx.Client | None = None,
    ) -> OpenAiCompatibleClient:
        return cls(
            admission=admission,
            base_url=settings.base_url,
            api_key=settings.api_key,
            default_model=settings.default_model,
            timeout_seconds=settings.request_timeout_seconds,
            default_temperature=settings.temperature,
            default_max_output_tokens=settings.max_output_tokens,
            http_client=http_client,
        )

    def close(self) -> None:
        self._client.close()

    def send_request(self, prompt: str, options: ApiRequestOptions) -> ApiResponse:
        request_id = options.request_id or str(uuid4())
        model = options.model or self._default_model
        with self._admission.fetch(
            request_id,
            f"{self._base_url}/chat/completions",
            session_id=options.session_id,
            request_type=options.request_type,
            client=self._client,
            json=self._build_body(prompt, options, model=model, stream=False),
        ) as response:
            response.read()
            _raise_for_status(response)
            payload = _parse_json(response)

        try:
            text = payload["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as error:
            raise ProcessorError(
                "Provider returned a response without message content",
                failure_class=FailureClass.SERVER_ERROR,
            ) from error

        usage = payload.get("usage") or {}
        return ApiResponse(
            is_success=True,
            data=text,
            message="Request completed",
            metadata={
                "model": payload.get("model") or model,
                "tokens_sent": int(
                    usage.get("prompt_tokens") or _estimate_prompt_tokens(prompt, options),
                ),
                "tokens_received": int(usage.get("completion_tokens") or estimate_tokens(text)),
            },
        )

    def send_streaming_request(self, prompt: str, options: ApiRequestOptions) -> ApiResponse:
        request_id = options.request_id or str(uuid4())
        model = options.model or self._default_model
        chunks: list[str] = []
        usage: dict[str, Any] = {}
        resolved_model = model

        with self._admission.fetch(
            request_id,
            f"{self._base_url}/chat/completions",
            session_id=options.session_id,
            request_type=options.request_type,
            client=self._client,
            json=self._build_body(prompt, options, model=model, stream=True),
        ) as response:
            if not response.is_success:
                response.read()
                _raise_for_status(response)
            for line in response.iter_lines():
                data = _sse_data(line)
                if data is None:
                    continue
                if data == "[DONE]":
                    break
                try:
                    event = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug("Skipping undecodable stream event: %s", data[:80])
                    continue
                resolved_model = event.get("model") or resolved_model
                if event.get("usage"):
                    usage = event["usage"]
                for choice in event.get("choices") or []:
                    delta = (choice.get("delta") or {}).get("content")
                    if not delta:
                        continue
                    chunks.append(delta)
                    self._admission.handle_stream_chunk(request_id, delta, estimate_tokens(delta))

        text = "".join(chunks)
        return ApiResponse(
            is_success=True,
            data=StreamingRef(request_id=request_id, job_id=options.job_id),
            message="Streaming completed",
            metadata={
                "model": resolved_model,
                "response": text,
                "tokens_sent": int(
                    usage.get("prompt_tokens") or _estimate_prompt_tokens(prompt, options),
                ),
                "tokens_received": int(usage.get("completion_tokens") or estimate_tokens(text)),
            },
        )

    def cancel_request(self, request_id: str) -> bool:
        return self._admission.cancel_request(request_id)

    def cancel_all_session_requests(self, session_id: str) -> CancelCounts:
        return CancelCounts(requests=self._admission.cancel_session_requests(session_id))

    def _build_body(
        self,
        prompt: str,
        options: ApiRequestOptions,
        *,
        model: str,
        stream: bool,
    ) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": (
                options.temperature
                if options.temperature is not None
                else self._default_temperature
            ),
            "max_tokens": options.max_output_tokens or self._default_max_output_tokens,
            "stream": stream,
        }
        if stream:
            body["stream_options"] = {"include_usage": True}
        return body


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    body = response.text[:_ERROR_BODY_PREVIEW_CHARS]
    logger.warning("Provider returned HTTP %d: %s", response.status_code, body[:200])
    raise ProviderRequestError(
        f"Provider request failed with HTTP {response.status_code}",
        status_code=response.status_code,
        body=body,
    )


def _parse_json(response: httpx.Response) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as error:
        raise ProcessorError(
            "Provider returned a non-JSON response",
            failure_class=FailureClass.SERVER_ERROR,
        ) from error
    if not isinstance(payload, dict):
        raise ProcessorError(
            "Provider returned an unexpected response shape",
            failure_class=FailureClass.SERVER_ERROR,
        )
    return payload


def _sse_data(line: str) -> str | None:
    if not line.startswith("data:"):
        return None
    return line[len("data:") :].strip()


def _estimate_prompt_tokens(prompt: str, options: ApiRequestOptions) -> int:
    return estimate_tokens(prompt) + estimate_tokens(options.system_prompt or "")
