"""Free-form streamed completion."""

from __future__ import annotations

from codeplan.jobs.models import JobPayload
from codeplan.processors.base import BaseJobProcessor, ProcessorOutcome


class GenericCompletionProcessor(BaseJobProcessor):
    task_type = "generic_completion"

    def execute(self, payload: JobPayload) -> ProcessorOutcome:
        reply = self.stream_model(payload, payload.prompt_text)
        return ProcessorOutcome(
            response_text=reply.text,
            metadata={"responseChars": len(reply.text)},
            tokens_sent=reply.tokens_sent,
            tokens_received=reply.tokens_received,
            model_used=reply.model,
            streamed=True,
        )
