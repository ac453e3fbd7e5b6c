"""Agent capability types.

``TaskContext`` is the immutable per-run description of the work. It is
threaded explicitly through the executor, the workspace and the agent
strategy; nothing about a run lives in process-wide state, so
concurrent runs cannot observe each other.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

DEFAULT_MAX_TURNS = 100
DEFAULT_AGENT_TIMEOUT_SECONDS = 3600


class AgentType(str, Enum):
    CLAUDE_CODE = "claude-code"
    OPENCODE = "opencode"


class AgentProvider(str, Enum):
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    GOOGLE = "google"
    GROQ = "groq"
    DEEPSEEK = "deepseek"
    MISTRAL = "mistral"
    TOGETHER = "together"
    FIREWORKS = "fireworks"
    OPENROUTER = "openrouter"


class ProgressEventType(str, Enum):
    STARTED = "started"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    FILE_CHANGE = "file_change"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class AgentConfig:
    """Which agent runs a task and under what limits.

    Attributes:
        type: Agent variant.
        provider: LLM provider, meaningful for multi-provider agents.
        model: Optional model override.
        max_turns: Upper bound on agent turns.
        timeout_seconds: Wall-clock ceiling for one execution.
    """

    type: AgentType
    provider: Optional[AgentProvider] = None
    model: Optional[str] = None
    max_turns: int = DEFAULT_MAX_TURNS
    timeout_seconds: int = DEFAULT_AGENT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class AgentCapabilities:
    supports_streaming: bool
    supports_session_management: bool
    supported_providers: Tuple[AgentProvider, ...]
    max_context_length: Optional[int] = None


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AgentProgressEvent:
    type: ProgressEventType
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


ProgressCallback = Callable[[AgentProgressEvent], None]


@dataclass(frozen=True)
class TaskContext:
    """Everything one execution needs to know about its request.

    Attributes:
        request_id: Request identifier; also names the work branch.
        repository_url: HTTPS clone URL of the target repository.
        repository_name: Full name, ``owner/repo``.
        issue_number: Anchor issue number used for comments and files.
        issue_title: Issue title.
        issue_body: Issue description.
        issue_id: Provider issue id, if known.
        labels: Issue labels.
        author: Issue author login.
        follow_up_request: Follow-up or clarification text for this turn.
        follow_up_author: Who asked for the follow-up.
        existing_pr_number: Pull request being iterated on, if any.
        existing_pr_url: URL of that pull request.
        conversation_history: Rendered history for turns without a session.
        github_token: Token used for clone, push and API calls.
        resume_session_id: Agent session to resume.
        session_download_url: Signed, short-lived URL for the session blob.
        agent_type: Requested agent variant override.
        agent_provider: Requested provider override.
        agent_model: Requested model override.
    """

    request_id: str
    repository_url: str
    repository_name: str
    issue_number: int
    issue_title: str
    issue_body: str = ""
    issue_id: Optional[str] = None
    labels: Tuple[str, ...] = ()
    author: str = ""
    follow_up_request: Optional[str] = None
    follow_up_author: Optional[str] = None
    existing_pr_number: Optional[int] = None
    existing_pr_url: Optional[str] = None
    conversation_history: Optional[str] = None
    github_token: str = field(default="", repr=False)
    resume_session_id: Optional[str] = None
    session_download_url: Optional[str] = field(default=None, repr=False)
    agent_type: Optional[str] = None
    agent_provider: Optional[str] = None
    agent_model: Optional[str] = None

    @property
    def owner(self) -> str:
        return self.repository_name.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository_name.split("/", 1)[1]

    @property
    def has_existing_pr(self) -> bool:
        return bool(self.existing_pr_number and self.existing_pr_url)


@dataclass(frozen=True)
class AgentContext:
    """Input to one agent strategy execution."""

    workspace_dir: str
    prompt: str
    config: AgentConfig
    task: TaskContext
    resume_session_id: Optional[str] = None
    session_blob: Optional[str] = field(default=None, repr=False)
    on_progress: Optional[ProgressCallback] = None


@dataclass
class AgentResult:
    """Outcome of one agent strategy execution.

    ``session_id``/``session_blob`` are populated on failures too when
    the agent got far enough to create a session.
    """

    success: bool
    message: str
    solution: Optional[str] = None
    error: Optional[str] = None
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    session_id: Optional[str] = None
    session_blob: Optional[str] = field(default=None, repr=False)
    metadata: Dict[str, Any] = field(default_factory=dict)
