"""Service settings read from ``CLARITY_*`` environment variables.

Only ``CLARITY_GITHUB_TOKEN`` and ``CLARITY_SESSION_SIGNING_SECRET`` are
mandatory. Leaving ``CLARITY_DATABASE_URL`` unset runs the pipeline on
in-memory repositories, and leaving ``CLARITY_SLACK_BOT_TOKEN`` unset
turns chat notifications off.
"""

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClaritySettings(BaseSettings):
    """Everything the service process needs to start.

    Lists such as ``available_repositories`` are given as JSON, e.g.
    ``CLARITY_AVAILABLE_REPOSITORIES='["acme/widgets"]'``.
    """

    model_config = SettingsConfigDict(env_prefix="CLARITY_", case_sensitive=False)

    # GitHub
    github_token: str
    github_base_url: str = "https://api.github.com"
    github_webhook_secret: Optional[str] = None
    # matches the label itself and any clarity-ai-* variant
    trigger_label: str = "clarity-ai"

    # Persistence; None selects the in-memory repositories
    database_url: Optional[str] = None

    # Session storage and handover links
    session_signing_secret: str
    public_base_url: str = "http://localhost:8080"
    session_ttl_days: int = Field(default=7, ge=1)
    signed_url_ttl_seconds: int = Field(default=3600, ge=1)
    session_sweep_interval_seconds: int = Field(default=3600, ge=1)

    # Clones and commits
    workspace_base_path: str = "/tmp/workspace"
    clone_timeout_seconds: int = Field(default=300, ge=1)
    git_user_name: str = "Clarity AI Bot"
    git_user_email: str = "clarity-ai@users.noreply.github.com"

    # Coding agents
    default_agent_type: Literal["claude-code", "opencode"] = "claude-code"
    claude_cli_path: str = "claude"
    opencode_cli_path: str = "opencode"
    agent_timeout_seconds: int = Field(default=3600, ge=1)
    agent_max_turns: int = Field(default=100, ge=1)

    # Work queue
    max_attempts: int = Field(default=3, ge=1)
    worker_concurrency: int = Field(default=1, ge=1)

    # Slack
    slack_bot_token: Optional[str] = None
    slack_signing_secret: Optional[str] = None
    slack_base_url: str = "https://slack.com/api"
    # "owner/repo" entries a mention may pick from
    available_repositories: List[str] = Field(default_factory=list)
    default_repository: Optional[str] = None

    # HTTP server and logs
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("github_token", "session_signing_secret")
    @classmethod
    def reject_blank_secret(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @field_validator("github_base_url", "public_base_url", "slack_base_url")
    @classmethod
    def normalize_http_url(cls, v: str) -> str:
        """Require an http(s) URL and drop any trailing slash."""
        if v.split("://", 1)[0] not in ("http", "https"):
            raise ValueError(f"expected an http(s) URL, got {v!r}")
        return v.rstrip("/")

    @field_validator("database_url")
    @classmethod
    def normalize_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Blank means no database; anything else must be a PostgreSQL DSN."""
        if v is None or not v.strip():
            return None
        if v.split("://", 1)[0] not in ("postgresql", "postgres"):
            raise ValueError("only postgresql:// DSNs are supported")
        return v

    @field_validator("workspace_base_path")
    @classmethod
    def require_absolute_workspace(cls, v: str) -> str:
        if not Path(v).is_absolute():
            raise ValueError(f"workspace path {v!r} is not absolute")
        return v


def get_settings() -> ClaritySettings:
    """Load settings from the environment.

    Raises:
        pydantic.ValidationError: A required variable is missing or a
            value is out of range.
    """
    return ClaritySettings()
