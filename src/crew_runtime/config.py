"""Runtime configuration for the agent scheduler, work sessions and LLM provider."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

LLM_PROVIDERS = ("echo", "openai")


@dataclass(slots=True)
class RunnerSettings:
    """Scheduler loop settings."""

    poll_interval_seconds: float = 10.0
    lead_rerun_interval_seconds: int = 86_400
    backoff_base_seconds: int = 60
    backoff_max_seconds: int = 3_600
    stale_task_after_seconds: int = 1_800
    stale_session_after_seconds: int = 3_600


@dataclass(slots=True)
class SessionSettings:
    """Per-agent work-session and foreground settings."""

    max_tool_steps: int = 10
    compaction_threshold: int = 50
    compaction_keep_recent: int = 10
    acknowledgment_max_tokens: int = 150
    knowledge_context_limit: int = 50
    memory_context_limit: int = 20


@dataclass(slots=True)
class LlmSettings:
    """LLM provider selection."""

    provider: str = "echo"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 60.0
    max_retries: int = 2


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"
    user_name: str = "Default User"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".crew_runtime.db")
    sqlite_busy_timeout_ms: int = 5_000
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    llm: LlmSettings = field(default_factory=LlmSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("CREW_RUNTIME_DB_PATH", ".crew_runtime.db")),
            sqlite_busy_timeout_ms=int(os.getenv("CREW_RUNTIME_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            runner=RunnerSettings(
                poll_interval_seconds=float(
                    os.getenv("CREW_RUNTIME_POLL_INTERVAL_SECONDS", "10"),
                ),
                lead_rerun_interval_seconds=int(
                    os.getenv("CREW_RUNTIME_LEAD_RERUN_INTERVAL_SECONDS", "86400"),
                ),
                backoff_base_seconds=int(os.getenv("CREW_RUNTIME_BACKOFF_BASE_SECONDS", "60")),
                backoff_max_seconds=int(os.getenv("CREW_RUNTIME_BACKOFF_MAX_SECONDS", "3600")),
                stale_task_after_seconds=int(
                    os.getenv("CREW_RUNTIME_STALE_TASK_AFTER_SECONDS", "1800"),
                ),
                stale_session_after_seconds=int(
                    os.getenv("CREW_RUNTIME_STALE_SESSION_AFTER_SECONDS", "3600"),
                ),
            ),
            session=SessionSettings(
                max_tool_steps=int(os.getenv("CREW_RUNTIME_MAX_TOOL_STEPS", "10")),
                compaction_threshold=int(os.getenv("CREW_RUNTIME_COMPACTION_THRESHOLD", "50")),
                compaction_keep_recent=int(
                    os.getenv("CREW_RUNTIME_COMPACTION_KEEP_RECENT", "10"),
                ),
                acknowledgment_max_tokens=int(
                    os.getenv("CREW_RUNTIME_ACK_MAX_TOKENS", "150"),
                ),
                knowledge_context_limit=int(
                    os.getenv("CREW_RUNTIME_KNOWLEDGE_CONTEXT_LIMIT", "50"),
                ),
                memory_context_limit=int(os.getenv("CREW_RUNTIME_MEMORY_CONTEXT_LIMIT", "20")),
            ),
            llm=LlmSettings(
                provider=_llm_provider_from_env(),
                base_url=os.getenv("CREW_RUNTIME_LLM_BASE_URL", "https://api.openai.com/v1"),
                api_key=os.getenv("CREW_RUNTIME_LLM_API_KEY", ""),
                model=os.getenv("CREW_RUNTIME_LLM_MODEL", "gpt-4o-mini"),
                timeout_seconds=float(os.getenv("CREW_RUNTIME_LLM_TIMEOUT_SECONDS", "60")),
                max_retries=int(os.getenv("CREW_RUNTIME_LLM_MAX_RETRIES", "2")),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("CREW_RUNTIME_USER_ID", "default_user"),
                user_name=os.getenv("CREW_RUNTIME_USER_NAME", "Default User"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runtime cannot work with."""

        if self.runner.poll_interval_seconds <= 0:
            raise ValueError("CREW_RUNTIME_POLL_INTERVAL_SECONDS must be > 0.")
        if self.runner.lead_rerun_interval_seconds <= 0:
            raise ValueError("CREW_RUNTIME_LEAD_RERUN_INTERVAL_SECONDS must be > 0.")
        if self.runner.backoff_base_seconds <= 0:
            raise ValueError("CREW_RUNTIME_BACKOFF_BASE_SECONDS must be > 0.")
        if self.runner.backoff_max_seconds < self.runner.backoff_base_seconds:
            raise ValueError(
                "CREW_RUNTIME_BACKOFF_MAX_SECONDS must be >= CREW_RUNTIME_BACKOFF_BASE_SECONDS.",
            )
        if self.runner.stale_task_after_seconds <= 0:
            raise ValueError("CREW_RUNTIME_STALE_TASK_AFTER_SECONDS must be > 0.")
        if self.runner.stale_session_after_seconds <= 0:
            raise ValueError("CREW_RUNTIME_STALE_SESSION_AFTER_SECONDS must be > 0.")
        if self.session.max_tool_steps <= 0:
            raise ValueError("CREW_RUNTIME_MAX_TOOL_STEPS must be a positive integer.")
        if self.session.compaction_keep_recent < 0:
            raise ValueError("CREW_RUNTIME_COMPACTION_KEEP_RECENT must be >= 0.")
        if self.session.compaction_threshold <= self.session.compaction_keep_recent:
            raise ValueError(
                "CREW_RUNTIME_COMPACTION_THRESHOLD must be greater than "
                "CREW_RUNTIME_COMPACTION_KEEP_RECENT.",
            )
        if self.session.acknowledgment_max_tokens <= 0:
            raise ValueError("CREW_RUNTIME_ACK_MAX_TOKENS must be > 0.")
        if self.llm.provider not in LLM_PROVIDERS:
            raise ValueError(
                f"CREW_RUNTIME_LLM_PROVIDER must be one of {', '.join(LLM_PROVIDERS)}; "
                f"got {self.llm.provider!r}.",
            )
        if self.llm.provider == "openai":
            if not self.llm.api_key:
                raise ValueError("CREW_RUNTIME_LLM_API_KEY is required for the openai provider.")
            parsed = urlparse(self.llm.base_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "Invalid CREW_RUNTIME_LLM_BASE_URL: "
                    f"{self.llm.base_url!r}. Expected an absolute http(s) URL.",
                )
            if self.llm.timeout_seconds <= 0:
                raise ValueError("CREW_RUNTIME_LLM_TIMEOUT_SECONDS must be > 0.")


def _llm_provider_from_env() -> str:
    if _env_bool("CREW_RUNTIME_MOCK_LLM", default=False):
        return "echo"
    return os.getenv("CREW_RUNTIME_LLM_PROVIDER", "echo").strip().lower()


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
