"""Runtime configuration for the job scheduler, admission limits and model provider."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_TASK_TYPE_LIMITS: dict[str, int] = {
    "implementation_plan": 2,
    "implementation_plan_streaming": 2,
    "path_finder": 3,
    "regex_generation": 3,
    "text_correction": 3,
    "directory_scan": 3,
    "generic_completion": 5,
}
PROVIDER_KINDS = frozenset({"openai", "echo"})


@dataclass(slots=True)
class SchedulerSettings:
    """Polling scheduler settings."""

    poll_interval_seconds: float = 1.0
    concurrency_limit: int = 4
    job_timeout_ms: int = 300_000
    stale_running_seconds: int = 1_800
    fetch_batch_size: int = 50
    reconcile_on_start: bool = True


@dataclass(slots=True)
class AdmissionSettings:
    """In-memory concurrency ceilings."""

    global_max: int = 10
    per_session_max: int = 5
    per_task_type_max: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_TASK_TYPE_LIMITS),
    )


@dataclass(slots=True)
class ProviderSettings:
    """Model provider settings."""

    kind: str = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    default_model: str = "gpt-4o-mini"
    request_timeout_seconds: float = 120.0
    temperature: float = 0.7
    max_output_tokens: int = 4096


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".codeplan.db")
    sqlite_busy_timeout_ms: int = 5_000
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    admission: AdmissionSettings = field(default_factory=AdmissionSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        task_type_limits = dict(DEFAULT_TASK_TYPE_LIMITS)
        task_type_limits.update(_collect_task_type_limits())
        return cls(
            db_path=db_path or Path(os.getenv("CODEPLAN_DB_PATH", ".codeplan.db")),
            sqlite_busy_timeout_ms=int(os.getenv("CODEPLAN_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            scheduler=SchedulerSettings(
                poll_interval_seconds=float(
                    os.getenv("CODEPLAN_SCHEDULER_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                concurrency_limit=int(os.getenv("CODEPLAN_SCHEDULER_CONCURRENCY_LIMIT", "4")),
                job_timeout_ms=int(os.getenv("CODEPLAN_SCHEDULER_JOB_TIMEOUT_MS", "300000")),
                stale_running_seconds=int(
                    os.getenv("CODEPLAN_SCHEDULER_STALE_RUNNING_SECONDS", "1800"),
                ),
                fetch_batch_size=int(os.getenv("CODEPLAN_SCHEDULER_FETCH_BATCH_SIZE", "50")),
                reconcile_on_start=_env_bool(
                    "CODEPLAN_SCHEDULER_RECONCILE_ON_START",
                    default=True,
                ),
            ),
            admission=AdmissionSettings(
                global_max=int(os.getenv("CODEPLAN_ADMISSION_GLOBAL_MAX", "10")),
                per_session_max=int(os.getenv("CODEPLAN_ADMISSION_PER_SESSION_MAX", "5")),
                per_task_type_max=task_type_limits,
            ),
            provider=ProviderSettings(
                kind=os.getenv("CODEPLAN_PROVIDER", "openai").strip().lower(),
                base_url=os.getenv("CODEPLAN_PROVIDER_BASE_URL", "https://api.openai.com/v1"),
                api_key=os.getenv("CODEPLAN_PROVIDER_API_KEY", ""),
                default_model=os.getenv("CODEPLAN_PROVIDER_DEFAULT_MODEL", "gpt-4o-mini"),
                request_timeout_seconds=float(
                    os.getenv("CODEPLAN_PROVIDER_REQUEST_TIMEOUT_SECONDS", "120.0"),
                ),
                temperature=float(os.getenv("CODEPLAN_PROVIDER_TEMPERATURE", "0.7")),
                max_output_tokens=int(os.getenv("CODEPLAN_PROVIDER_MAX_OUTPUT_TOKENS", "4096")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if limits or provider settings are unusable."""

        if self.scheduler.poll_interval_seconds <= 0:
            raise ValueError("CODEPLAN_SCHEDULER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.concurrency_limit <= 0:
            raise ValueError("CODEPLAN_SCHEDULER_CONCURRENCY_LIMIT must be > 0.")
        if self.scheduler.job_timeout_ms <= 0:
            raise ValueError("CODEPLAN_SCHEDULER_JOB_TIMEOUT_MS must be > 0.")
        if self.scheduler.stale_running_seconds <= 0:
            raise ValueError("CODEPLAN_SCHEDULER_STALE_RUNNING_SECONDS must be > 0.")
        if self.admission.global_max <= 0:
            raise ValueError("CODEPLAN_ADMISSION_GLOBAL_MAX must be > 0.")
        if self.admission.per_session_max <= 0:
            raise ValueError("CODEPLAN_ADMISSION_PER_SESSION_MAX must be > 0.")
        for task_type, limit in self.admission.per_task_type_max.items():
            if limit <= 0:
                raise ValueError(
                    f"Per-task-type admission limit must be positive: {task_type!r} -> {limit}",
                )

        if self.provider.kind not in PROVIDER_KINDS:
            raise ValueError(
                f"Unsupported CODEPLAN_PROVIDER: {self.provider.kind!r}. "
                f"Expected one of: {', '.join(sorted(PROVIDER_KINDS))}.",
            )
        if self.provider.kind == "echo":
            return
        parsed = urlparse(self.provider.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid CODEPLAN_PROVIDER_BASE_URL: "
                f"{self.provider.base_url!r}. Expected an absolute http(s) URL.",
            )
        if not self.provider.api_key.strip():
            raise ValueError("CODEPLAN_PROVIDER_API_KEY is required for remote providers.")
        if self.provider.max_output_tokens <= 0:
            raise ValueError("CODEPLAN_PROVIDER_MAX_OUTPUT_TOKENS must be > 0.")


def _collect_task_type_limits() -> dict[str, int]:
    raw = os.getenv("CODEPLAN_ADMISSION_TASK_TYPE_LIMITS", "").strip()
    if not raw:
        return {}

    overrides: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                "Invalid CODEPLAN_ADMISSION_TASK_TYPE_LIMITS entry: "
                f"{token!r}. Expected format '<task_type>|<limit>'.",
            )
        task_type, limit_raw = token.rsplit("|", 1)
        task_type = task_type.strip()
        limit_raw = limit_raw.strip()
        if not task_type:
            raise ValueError(f"Empty task type in CODEPLAN_ADMISSION_TASK_TYPE_LIMITS: {token!r}")
        try:
            limit = int(limit_raw)
        except ValueError as error:
            raise ValueError(
                "Invalid CODEPLAN_ADMISSION_TASK_TYPE_LIMITS value for "
                f"{task_type!r}: {limit_raw!r}",
            ) from error
        if limit <= 0:
            raise ValueError(
                "Invalid CODEPLAN_ADMISSION_TASK_TYPE_LIMITS value for "
                f"{task_type!r}: {limit!r} (must be > 0)",
            )
        overrides[task_type] = limit
    return overrides


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
