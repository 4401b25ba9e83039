"""Task-type processors and the default registry."""

from __future__ import annotations

from codeplan.jobs.admission import AdmissionController
from codeplan.jobs.store import JobStore
from codeplan.processors.base import (
    BaseJobProcessor,
    JobProcessor,
    ProcessorOutcome,
    ProcessorRegistry,
)
from codeplan.processors.directory_scan import DirectoryScanProcessor
from codeplan.processors.generic_completion import GenericCompletionProcessor
from codeplan.processors.implementation_plan import (
    ImplementationPlanProcessor,
    StreamingImplementationPlanProcessor,
)
from codeplan.processors.path_finder import PathFinderProcessor
from codeplan.processors.regex_generation import RegexGenerationProcessor
from codeplan.processors.text_correction import TextCorrectionProcessor
from codeplan.providers.base import ApiClient

__all__ = [
    "BaseJobProcessor",
    "DirectoryScanProcessor",
    "GenericCompletionProcessor",
    "ImplementationPlanProcessor",
    "JobProcessor",
    "PathFinderProcessor",
    "ProcessorOutcome",
    "ProcessorRegistry",
    "RegexGenerationProcessor",
    "StreamingImplementationPlanProcessor",
    "TextCorrectionProcessor",
    "build_default_registry",
]


def build_default_registry(
    *,
    job_store: JobStore,
    api_client: ApiClient,
    admission: AdmissionController,
) -> ProcessorRegistry:
    """Registry with every built-in task type wired to the same collaborators."""

    registry = ProcessorRegistry()
    for processor_cls in (
        ImplementationPlanProcessor,
        StreamingImplementationPlanProcessor,
        PathFinderProcessor,
        RegexGenerationProcessor,
        TextCorrectionProcessor,
        GenericCompletionProcessor,
    ):
        registry.register(
            processor_cls(job_store=job_store, api_client=api_client, admission=admission),
        )
    registry.register(DirectoryScanProcessor(job_store=job_store, admission=admission))
    return registry
