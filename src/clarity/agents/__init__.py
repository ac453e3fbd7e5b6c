"""Agent capability: types, strategies, routing and prompts.

The executor lives in ``src.clarity.agents.executor`` and is imported
from there; it depends on the workspace package, which depends on
``src.clarity.agents.types``.
"""

from src.clarity.agents.cli import ClaudeCodeStrategy, CliAgentStrategy, OpenCodeStrategy
from src.clarity.agents.factory import AgentStrategyFactory
from src.clarity.agents.prompts import build_prompt, format_conversation_history
from src.clarity.agents.router import (
    LABEL_MAPPINGS,
    AgentRouter,
    get_clarity_label,
    has_clarity_label,
)
from src.clarity.agents.strategy import AgentStrategy
from src.clarity.agents.types import (
    AgentCapabilities,
    AgentConfig,
    AgentContext,
    AgentProgressEvent,
    AgentProvider,
    AgentResult,
    AgentType,
    ProgressEventType,
    TaskContext,
    ValidationResult,
)

__all__ = [
    "AgentCapabilities",
    "AgentConfig",
    "AgentContext",
    "AgentProgressEvent",
    "AgentProvider",
    "AgentResult",
    "AgentRouter",
    "AgentStrategy",
    "AgentStrategyFactory",
    "AgentType",
    "ClaudeCodeStrategy",
    "CliAgentStrategy",
    "LABEL_MAPPINGS",
    "OpenCodeStrategy",
    "ProgressEventType",
    "TaskContext",
    "ValidationResult",
    "build_prompt",
    "format_conversation_history",
    "get_clarity_label",
    "has_clarity_label",
]
