from __future__ import annotations

import json
from collections.abc import Callable

import allure
import httpx
import pytest

from codeplan.jobs.admission import AdmissionController
from codeplan.jobs.errors import JobCanceledError, ProcessorError, ProviderRequestError
from codeplan.jobs.models import ConcurrencyLimits, FailureClass
from codeplan.providers import (
    ApiRequestOptions,
    EchoApiClient,
    OpenAiCompatibleClient,
    StreamingRef,
)
from codeplan.providers.echo_client import RECENT_CALLS_KEPT

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("Provider Adapters"),
]


def _client(
    handler: Callable[[httpx.Request], httpx.Response],
) -> tuple[OpenAiCompatibleClient, AdmissionController]:
    admission = AdmissionController(limits=ConcurrencyLimits(default_task_type_max=5))
    client = OpenAiCompatibleClient(
        admission=admission,
        base_url="https://provider.test/v1/",
        api_key="secret",
        default_model="model-default",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    return client, admission


def _options(**overrides: object) -> ApiRequestOptions:
    fields: dict[str, object] = {"session_id": "s1", "request_type": "text_correction"}
    fields.update(overrides)
    return ApiRequestOptions(**fields)


def test_send_request_posts_chat_completion() -> None:
    captured: list[dict] = []
    active: list[bool] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/chat/completions"
        captured.append(json.loads(request.content))
        active.append(admission.is_request_active("req-1"))
        return httpx.Response(
            200,
            json={
                "model": "model-served",
                "choices": [{"message": {"role": "assistant", "content": "Fixed text."}}],
                "usage": {"prompt_tokens": 12, "completion_tokens": 3},
            },
        )

    client, admission = _client(_handler)
    response = client.send_request(
        "fix this txt",
        _options(request_id="req-1", system_prompt="Be brief.", max_output_tokens=50),
    )

    assert response.is_success is True
    assert response.data == "Fixed text."
    assert response.metadata == {
        "model": "model-served",
        "tokens_sent": 12,
        "tokens_received": 3,
    }
    body = captured[0]
    assert body["model"] == "model-default"
    assert body["stream"] is False
    assert body["max_tokens"] == 50
    assert body["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "fix this txt"},
    ]
    assert active == [True]
    assert admission.is_request_active("req-1") is False
    client.close()


def test_error_status_raises_provider_request_error() -> None:
    client, admission = _client(lambda request: httpx.Response(429, text="Too Many Requests"))

    with pytest.raises(ProviderRequestError) as excinfo:
        client.send_request("hello", _options(request_id="req-2"))

    assert excinfo.value.status_code == 429
    assert "Too Many Requests" in excinfo.value.body
    assert admission.get_stats().active_global == 0
    client.close()


def test_response_without_content_is_server_error() -> None:
    client, _ = _client(lambda request: httpx.Response(200, json={"choices": []}))

    with pytest.raises(ProcessorError) as excinfo:
        client.send_request("hello", _options())

    assert excinfo.value.failure_class == FailureClass.SERVER_ERROR
    client.close()


def test_streaming_request_feeds_the_admission_accumulator() -> None:
    events = [
        {"model": "model-stream", "choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": "Hello"}}]},
        {"choices": [{"delta": {"content": " world"}}]},
        {"choices": [], "usage": {"prompt_tokens": 4, "completion_tokens": 2}},
    ]
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events)
    body += ": keep-alive\n\ndata: not-json\n\ndata: [DONE]\n\n"
    captured: list[dict] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(
            200,
            content=body.encode(),
            headers={"content-type": "text/event-stream"},
        )

    client, admission = _client(_handler)
    admission.register_streaming_job("req-3", "job-3")

    response = client.send_streaming_request(
        "say hello",
        _options(request_id="req-3", job_id="job-3", request_type="generic_completion"),
    )
    snapshot = admission.cleanup_streaming_job("req-3")

    assert captured[0]["stream"] is True
    assert response.data == StreamingRef(request_id="req-3", job_id="job-3")
    assert response.metadata["response"] == "Hello world"
    assert response.metadata["model"] == "model-stream"
    assert response.metadata["tokens_sent"] == 4
    assert response.metadata["tokens_received"] == 2
    assert snapshot is not None
    assert snapshot.accumulated_response == "Hello world"
    client.close()


def test_canceled_request_is_not_sent() -> None:
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "x"}}]})

    client, admission = _client(_handler)
    token = admission.track_request("req-4", "s1", "text_correction")
    token.cancel("User closed the dialog")

    with pytest.raises(JobCanceledError, match="User closed the dialog"):
        client.send_request("hello", _options(request_id="req-4"))

    assert calls == []
    client.close()


def test_cancel_helpers_delegate_to_admission() -> None:
    client, admission = _client(lambda request: httpx.Response(200, json={}))
    admission.track_request("a", "s1", "t")
    admission.track_request("b", "s1", "t")
    admission.track_request("c", "s2", "t")

    assert client.cancel_request("a") is True
    assert client.cancel_request("a") is False
    assert client.cancel_all_session_requests("s1").requests == 1
    assert admission.get_request_count() == 1
    client.close()


def test_echo_client_keeps_only_recent_calls() -> None:
    admission = AdmissionController(limits=ConcurrencyLimits(default_task_type_max=5))
    client = EchoApiClient(admission=admission)

    for index in range(RECENT_CALLS_KEPT + 5):
        client.send_request(f"prompt {index}", _options())

    assert len(client.calls) == RECENT_CALLS_KEPT
    assert client.calls[-1][0] == f"prompt {RECENT_CALLS_KEPT + 4}"
    assert admission.get_request_count() == 0
