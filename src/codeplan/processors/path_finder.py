"""Ask the model which project files are relevant to a task."""

from __future__ import annotations

from pathlib import Path

from codeplan.jobs.errors import ContentValidationError, PayloadValidationError
from codeplan.jobs.models import JobPayload
from codeplan.processors.base import BaseJobProcessor, ProcessorOutcome
from codeplan.processors.path_extraction import extract_paths

DEFAULT_SYSTEM_PROMPT = (
    "List the project files most relevant to the task. Answer with one "
    '<file path="relative/path"/> element per file and nothing else.'
)
MAX_LISTED_FILES = 400


class PathFinderProcessor(BaseJobProcessor):
    """One model call whose answer is reduced to a list of relative paths."""

    task_type = "path_finder"

    def validate(self, payload: JobPayload) -> None:
        super().validate(payload)
        if payload.project_directory and not Path(payload.project_directory).is_dir():
            raise PayloadValidationError(
                f"Project directory does not exist: {payload.project_directory}",
            )

    def running_message(self, payload: JobPayload) -> str:
        return f"{super().running_message(payload)}: finding relevant files"

    def execute(self, payload: JobPayload) -> ProcessorOutcome:
        if payload.system_prompt is None:
            payload.system_prompt = DEFAULT_SYSTEM_PROMPT
        reply = self.call_model(payload, _build_prompt(payload))
        extraction = extract_paths(reply.text, project_directory=payload.project_directory)

        paths = extraction.paths
        unverified: list[str] = []
        if payload.project_directory and payload.options.get("verify_existence", True):
            root = Path(payload.project_directory)
            unverified = [path for path in paths if not (root / path).is_file()]
            paths = [path for path in paths if path not in unverified]
        if not paths and payload.options.get("require_paths", True):
            raise ContentValidationError("No valid file paths found in model response")

        return ProcessorOutcome(
            response_text="\n".join(paths),
            data={"paths": paths, "unverifiedPaths": unverified},
            metadata={
                "paths": paths,
                "pathCount": len(paths),
                "unverifiedPaths": unverified,
                "extractionStrategy": extraction.strategy,
            },
            tokens_sent=reply.tokens_sent,
            tokens_received=reply.tokens_received,
            model_used=reply.model,
        )


def _build_prompt(payload: JobPayload) -> str:
    candidates = payload.options.get("candidate_files") or []
    if not candidates:
        return payload.prompt_text
    listing = "\n".join(str(path) for path in candidates[:MAX_LISTED_FILES])
    return f"{payload.prompt_text}\n\nProject files:\n{listing}"
