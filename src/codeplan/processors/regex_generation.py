"""Generate search regular expressions from a natural-language description."""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field

from codeplan.jobs.errors import ContentValidationError
from codeplan.jobs.models import JobPayload
from codeplan.processors.base import BaseJobProcessor, ProcessorOutcome

_ROOT = re.compile(r"<regex_generation>(.*?)</regex_generation>", re.DOTALL | re.IGNORECASE)
_PATTERN = re.compile(r"<pattern\b([^>]*)>(.*?)</pattern>", re.DOTALL | re.IGNORECASE)
_PURPOSE = re.compile(r"\bpurpose\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
_EXPRESSION = re.compile(r"<expression>(.*?)</expression>", re.DOTALL | re.IGNORECASE)
_EXPLANATION = re.compile(r"<explanation>(.*?)</explanation>", re.DOTALL | re.IGNORECASE)
_FLAG = re.compile(r"<flag>\s*([a-z]+)\s*</flag>", re.IGNORECASE)
_CDATA = re.compile(r"^<!\[CDATA\[(.*)\]\]>$", re.DOTALL)
_PYTHON_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}

DEFAULT_SYSTEM_PROMPT = (
    "Write a regular expression for the description. Answer with <regex_generation> "
    'holding one <pattern purpose="primary"> and optional <pattern purpose="alternative"> '
    "elements, each with <expression> and <explanation>, plus optional <flag> elements."
)


@dataclass(slots=True)
class RegexPattern:
    expression: str
    explanation: str = ""


@dataclass(slots=True)
class RegexGeneration:
    primary: RegexPattern
    alternatives: list[RegexPattern] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "primaryPattern": {
                "pattern": self.primary.expression,
                "explanation": self.primary.explanation,
            },
            "alternativePatterns": [
                {"pattern": item.expression, "explanation": item.explanation}
                for item in self.alternatives
            ],
            "flags": self.flags,
        }


def parse_regex_generation(text: str) -> RegexGeneration:
    """Parse and compile-check the patterns in a ``<regex_generation>`` answer."""

    root = _ROOT.search(text)
    if root is None:
        raise ContentValidationError("Response does not contain a <regex_generation> element")
    body = root.group(1)

    flags = [flag.lower() for flag in _FLAG.findall(body)]
    compile_flags = 0
    for flag in "".join(flags):
        compile_flags |= _PYTHON_FLAGS.get(flag, 0)

    primary: RegexPattern | None = None
    alternatives: list[RegexPattern] = []
    for attributes, inner in _PATTERN.findall(body):
        expression_match = _EXPRESSION.search(inner)
        expression = _unwrap(expression_match.group(1) if expression_match else inner)
        if not expression:
            continue
        explanation_match = _EXPLANATION.search(inner)
        pattern = RegexPattern(
            expression=expression,
            explanation=_unwrap(explanation_match.group(1)) if explanation_match else "",
        )
        try:
            re.compile(pattern.expression, compile_flags)
        except re.error as error:
            raise ContentValidationError(
                f"Generated pattern does not compile: {pattern.expression!r} ({error})",
            ) from error
        purpose_match = _PURPOSE.search(attributes)
        purpose = purpose_match.group(1).lower() if purpose_match else ""
        if primary is None and purpose != "alternative":
            primary = pattern
        else:
            alternatives.append(pattern)

    if primary is None:
        if not alternatives:
            raise ContentValidationError("No regex patterns found in model response")
        primary = alternatives.pop(0)
    return RegexGeneration(primary=primary, alternatives=alternatives, flags=flags)


class RegexGenerationProcessor(BaseJobProcessor):
    task_type = "regex_generation"

    def execute(self, payload: JobPayload) -> ProcessorOutcome:
        if payload.system_prompt is None:
            payload.system_prompt = DEFAULT_SYSTEM_PROMPT
        reply = self.call_model(payload, payload.prompt_text)
        generation = parse_regex_generation(reply.text)
        summary = (
            f"Generated Regex Pattern: /{generation.primary.expression}/"
            f"{''.join(generation.flags)}\n\n"
            f"Explanation:\n{generation.primary.explanation or 'No explanation available'}"
        )
        return ProcessorOutcome(
            response_text=summary,
            data=generation.to_dict(),
            metadata={"regexData": generation.to_dict(), "rawResponse": reply.text},
            tokens_sent=reply.tokens_sent,
            tokens_received=reply.tokens_received,
            model_used=reply.model,
        )


def _unwrap(value: str) -> str:
    stripped = value.strip()
    match = _CDATA.match(stripped)
    return match.group(1).strip() if match else html.unescape(stripped)
