"""Model provider adapters."""

from codeplan.providers.base import (
    ApiClient,
    ApiRequestOptions,
    ApiResponse,
    BackgroundJobRef,
    CancelCounts,
    StreamingRef,
)
from codeplan.providers.echo_client import EchoApiClient
from codeplan.providers.http_client import OpenAiCompatibleClient

__all__ = [
    "ApiClient",
    "ApiRequestOptions",
    "ApiResponse",
    "BackgroundJobRef",
    "CancelCounts",
    "EchoApiClient",
    "OpenAiCompatibleClient",
    "StreamingRef",
]
