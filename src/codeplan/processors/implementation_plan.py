"""Implementation plan generation with structural validation of the model output."""

from __future__ import annotations

import re
from dataclasses import dataclass

from codeplan.jobs.errors import ContentValidationError
from codeplan.jobs.models import JobPayload
from codeplan.processors.base import BaseJobProcessor, ProcessorOutcome

_OPEN_TAG = re.compile(r"<implementation[-_]plan\b[^>]*>", re.IGNORECASE)
_CLOSE_TAG = re.compile(r"</implementation[-_]plan\s*>", re.IGNORECASE)
_CODE_FENCE = re.compile(r"^\s*```[\w-]*\s*\n(.*?)\n\s*```\s*$", re.DOTALL)
_STEP = re.compile(r"<step[\s>]", re.IGNORECASE)
_FIRST_STEP_TITLE = re.compile(
    r"<step[\s>].*?<title>\s*(.*?)\s*</title>",
    re.IGNORECASE | re.DOTALL,
)
_PLAN_TITLE_ATTR = re.compile(
    r"<implementation[-_]plan\b[^>]*\btitle=\"([^\"]*)\"",
    re.IGNORECASE,
)

DEFAULT_SYSTEM_PROMPT = (
    "You are a senior software engineer. Produce a step-by-step implementation plan "
    "wrapped in <implementation_plan>...</implementation_plan>. Each <step> must have a "
    "<title> and a <description>."
)


@dataclass(slots=True)
class ParsedPlan:
    """Validated plan body and facts derived from it."""

    plan_xml: str
    step_count: int
    title: str | None


def strip_code_fences(text: str) -> str:
    """Remove a single markdown fence wrapping the whole text."""

    match = _CODE_FENCE.match(text)
    return match.group(1) if match else text


def parse_implementation_plan(raw: str) -> ParsedPlan:
    """Validate plan delimiters and extract the plan element.

    Raises ContentValidationError when the text is empty or the
    ``<implementation_plan>`` element is incomplete, malformed or inverted.
    """

    text = strip_code_fences(raw).strip()
    if not text:
        raise ContentValidationError("Generated implementation plan is empty")

    opening = _OPEN_TAG.search(text)
    closings = list(_CLOSE_TAG.finditer(text))
    closing = closings[-1] if closings else None
    if opening is None and closing is None:
        raise ContentValidationError(
            "Generated implementation plan is incomplete or malformed (missing plan tags)",
        )
    if opening is None:
        raise ContentValidationError(
            "Generated implementation plan is incomplete or malformed (missing opening tag)",
        )
    if closing is None:
        raise ContentValidationError(
            "Generated implementation plan is incomplete or malformed (missing closing tag)",
        )
    if closing.start() < opening.end():
        raise ContentValidationError(
            "Generated implementation plan has XML tags in wrong order",
        )

    plan_xml = text[opening.start() : closing.end()]
    body = text[opening.end() : closing.start()]
    title_match = _FIRST_STEP_TITLE.search(body)
    attr_match = _PLAN_TITLE_ATTR.search(plan_xml)
    title = attr_match.group(1).strip() if attr_match else None
    if not title and title_match:
        title = title_match.group(1).strip() or None
    return ParsedPlan(plan_xml=plan_xml, step_count=len(_STEP.findall(body)), title=title)


class ImplementationPlanProcessor(BaseJobProcessor):
    """One model call that must return a well-formed implementation plan."""

    task_type = "implementation_plan"
    streaming = False

    def running_message(self, payload: JobPayload) -> str:
        return f"{super().running_message(payload)}: generating implementation plan"

    def execute(self, payload: JobPayload) -> ProcessorOutcome:
        if payload.system_prompt is None:
            payload.system_prompt = DEFAULT_SYSTEM_PROMPT
        prompt = _build_prompt(payload)
        reply = (
            self.stream_model(payload, prompt)
            if self.streaming
            else self.call_model(payload, prompt)
        )
        plan = parse_implementation_plan(reply.text)
        return ProcessorOutcome(
            response_text=reply.text,
            data={"stepCount": plan.step_count, "planTitle": plan.title},
            metadata={
                "stepCount": plan.step_count,
                "planTitle": plan.title,
                "planChars": len(plan.plan_xml),
                "streamed": reply.streamed,
            },
            tokens_sent=reply.tokens_sent,
            tokens_received=reply.tokens_received,
            model_used=reply.model,
            streamed=reply.streamed,
        )


class StreamingImplementationPlanProcessor(ImplementationPlanProcessor):
    """Same contract, with the plan persisted chunk by chunk while it is generated."""

    task_type = "implementation_plan_streaming"
    streaming = True


def _build_prompt(payload: JobPayload) -> str:
    files = payload.options.get("relevant_files") or []
    if not files:
        return payload.prompt_text
    listing = "\n".join(f"- {path}" for path in files)
    return f"{payload.prompt_text}\n\nRelevant files:\n{listing}"
