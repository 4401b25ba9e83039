"""Single-pass correction of dictated or hand-typed task descriptions."""

from __future__ import annotations

from codeplan.jobs.errors import ContentValidationError
from codeplan.jobs.models import JobPayload
from codeplan.processors.base import BaseJobProcessor, ProcessorOutcome
from codeplan.processors.implementation_plan import strip_code_fences

DEFAULT_SYSTEM_PROMPT = (
    "Correct grammar, spelling and transcription errors in the user's text. "
    "Keep technical terms and meaning unchanged. Reply with the corrected text only."
)
_QUOTE_PAIRS = (('"', '"'), ("'", "'"), ("“", "”"))


def clean_correction(text: str) -> str:
    """Drop fences and one pair of quotes the model may wrap its answer in."""

    cleaned = strip_code_fences(text).strip()
    for opening, closing in _QUOTE_PAIRS:
        if len(cleaned) >= 2 and cleaned.startswith(opening) and cleaned.endswith(closing):
            cleaned = cleaned[1:-1].strip()
            break
    return cleaned


class TextCorrectionProcessor(BaseJobProcessor):
    task_type = "text_correction"

    def running_message(self, payload: JobPayload) -> str:
        return f"{super().running_message(payload)}: correcting text"

    def execute(self, payload: JobPayload) -> ProcessorOutcome:
        if payload.system_prompt is None:
            payload.system_prompt = DEFAULT_SYSTEM_PROMPT
        reply = self.call_model(payload, payload.prompt_text)
        corrected = clean_correction(reply.text)
        if not corrected:
            raise ContentValidationError("Text correction returned an empty result")
        return ProcessorOutcome(
            response_text=corrected,
            data={"correctedText": corrected},
            metadata={
                "originalChars": len(payload.prompt_text),
                "correctedChars": len(corrected),
                "changed": corrected != payload.prompt_text.strip(),
            },
            tokens_sent=reply.tokens_sent,
            tokens_received=reply.tokens_received,
            model_used=reply.model,
        )
