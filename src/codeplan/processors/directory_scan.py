"""Project file listing; the only processor that does not call a model."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

from codeplan.jobs.errors import PayloadValidationError
from codeplan.jobs.models import JobPayload
from codeplan.processors.base import BaseJobProcessor, ProcessorOutcome

IGNORED_DIRECTORIES = frozenset(
    {
        ".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv", "dist",
        "build", "target", ".next", ".idea", ".mypy_cache", ".pytest_cache",
    },
)  # fmt: skip
DEFAULT_MAX_FILE_BYTES = 1_000_000
DEFAULT_MAX_FILES = 10_000


def scan_directory(
    root: Path,
    *,
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    max_files: int = DEFAULT_MAX_FILES,
    should_stop: Callable[[], bool] | None = None,
) -> tuple[list[str], int]:
    """Walk ``root`` and return sorted relative file paths plus the skipped count."""

    files: list[str] = []
    skipped = 0
    for dirpath, dirnames, filenames in os.walk(root):
        if should_stop is not None and should_stop():
            break
        dirnames[:] = sorted(name for name in dirnames if name not in IGNORED_DIRECTORIES)
        for filename in filenames:
            path = Path(dirpath) / filename
            try:
                if path.is_symlink() or path.stat().st_size > max_file_bytes:
                    skipped += 1
                    continue
            except OSError:
                skipped += 1
                continue
            files.append(path.relative_to(root).as_posix())
            if len(files) >= max_files:
                return sorted(files), skipped
    return sorted(files), skipped


class DirectoryScanProcessor(BaseJobProcessor):
    task_type = "directory_scan"
    uses_model = False

    def validate(self, payload: JobPayload) -> None:
        super().validate(payload)
        if not payload.project_directory:
            raise PayloadValidationError("Project directory is required for a directory scan")
        if not Path(payload.project_directory).is_dir():
            raise PayloadValidationError(
                f"Project directory does not exist: {payload.project_directory}",
            )

    def running_message(self, payload: JobPayload) -> str:
        return f"Scanning {payload.project_directory}"

    def execute(self, payload: JobPayload) -> ProcessorOutcome:
        token = payload.cancel_token
        files, skipped = scan_directory(
            Path(payload.project_directory or "."),
            max_file_bytes=int(payload.options.get("max_file_bytes", DEFAULT_MAX_FILE_BYTES)),
            max_files=int(payload.options.get("max_files", DEFAULT_MAX_FILES)),
            should_stop=(lambda: token.is_canceled) if token is not None else None,
        )
        return ProcessorOutcome(
            response_text="\n".join(files),
            data={"files": files},
            metadata={"fileCount": len(files), "skippedCount": skipped},
        )
