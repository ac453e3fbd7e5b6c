"""Agent strategy interface.

One implementation per ``AgentType``; the executor only talks to this
interface and never branches on the agent variant.
"""

import os
from abc import ABC, abstractmethod
from typing import Mapping, Optional

from src.clarity.agents.types import (
    AgentCapabilities,
    AgentContext,
    AgentProvider,
    AgentResult,
    ValidationResult,
)

PROVIDER_ENV_KEYS = {
    AgentProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
    AgentProvider.OPENAI: "OPENAI_API_KEY",
    AgentProvider.GOOGLE: "GOOGLE_API_KEY",
    AgentProvider.GROQ: "GROQ_API_KEY",
    AgentProvider.DEEPSEEK: "DEEPSEEK_API_KEY",
    AgentProvider.MISTRAL: "MISTRAL_API_KEY",
    AgentProvider.TOGETHER: "TOGETHER_API_KEY",
    AgentProvider.FIREWORKS: "FIREWORKS_API_KEY",
    AgentProvider.OPENROUTER: "OPENROUTER_API_KEY",
}


def has_api_key(
    provider: AgentProvider, environ: Optional[Mapping[str, str]] = None
) -> bool:
    env = os.environ if environ is None else environ
    value = env.get(PROVIDER_ENV_KEYS[provider], "")
    return bool(value.strip())


class AgentStrategy(ABC):
    """A coding agent that edits a working tree in response to a prompt.

    Attributes:
        name: Stable identifier, equal to the AgentType value.
        display_name: Human readable name used in comments and commits.
    """

    name: str
    display_name: str

    @abstractmethod
    async def execute(self, context: AgentContext) -> AgentResult:
        """Run one agent turn inside ``context.workspace_dir``.

        Failures are reported through ``AgentResult.success``; this
        method does not raise for agent-level errors.
        """

    @abstractmethod
    async def abort(self) -> None:
        """Stop a running execution, if any."""

    @abstractmethod
    async def validate(self, context: AgentContext) -> ValidationResult:
        """Check preconditions before ``execute`` is attempted."""

    @abstractmethod
    def get_capabilities(self) -> AgentCapabilities:
        ...

    def supports_streaming(self) -> bool:
        return self.get_capabilities().supports_streaming

    async def cleanup(self) -> None:
        """Release per-run resources. Safe to call more than once."""
