"""Label-based agent routing.

Source:
- src/clarity/agents/types.py (AgentConfig, AgentType, AgentProvider)
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, Optional

from src.clarity.agents.types import (
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_MAX_TURNS,
    AgentConfig,
    AgentProvider,
    AgentType,
)

logger = logging.getLogger(__name__)

CLARITY_LABEL_PREFIX = "clarity-ai"


@dataclass(frozen=True)
class LabelMapping:
    type: AgentType
    provider: Optional[AgentProvider] = None


LABEL_MAPPINGS: Dict[str, LabelMapping] = {
    "clarity-ai-opencode": LabelMapping(AgentType.OPENCODE, AgentProvider.ANTHROPIC),
    "clarity-ai-opencode-anthropic": LabelMapping(AgentType.OPENCODE, AgentProvider.ANTHROPIC),
    "clarity-ai-opencode-openai": LabelMapping(AgentType.OPENCODE, AgentProvider.OPENAI),
    "clarity-ai-opencode-google": LabelMapping(AgentType.OPENCODE, AgentProvider.GOOGLE),
    "clarity-ai-opencode-groq": LabelMapping(AgentType.OPENCODE, AgentProvider.GROQ),
    "clarity-ai-opencode-deepseek": LabelMapping(AgentType.OPENCODE, AgentProvider.DEEPSEEK),
    "clarity-ai-opencode-mistral": LabelMapping(AgentType.OPENCODE, AgentProvider.MISTRAL),
    "clarity-ai-claude": LabelMapping(AgentType.CLAUDE_CODE, AgentProvider.ANTHROPIC),
    "clarity-ai": LabelMapping(AgentType.CLAUDE_CODE, AgentProvider.ANTHROPIC),
}


def _parse_provider(value: Optional[str]) -> Optional[AgentProvider]:
    if not value:
        return None
    try:
        return AgentProvider(value)
    except ValueError:
        logger.warning("Ignoring unknown agent provider", extra={"provider": value})
        return None


class AgentRouter:
    """Resolves the AgentConfig for a task.

    Precedence: the longest recognised label wins, then an explicit
    agent type, then the configured default. Explicit provider and model
    overrides apply on top of a label match.
    """

    def __init__(
        self,
        default_agent_type: AgentType = AgentType.CLAUDE_CODE,
        max_turns: int = DEFAULT_MAX_TURNS,
        timeout_seconds: int = DEFAULT_AGENT_TIMEOUT_SECONDS,
        mappings: Optional[Dict[str, LabelMapping]] = None,
    ):
        self.default_config = AgentConfig(
            type=default_agent_type,
            provider=AgentProvider.ANTHROPIC,
            max_turns=max_turns,
            timeout_seconds=timeout_seconds,
        )
        self.mappings = dict(LABEL_MAPPINGS if mappings is None else mappings)

    def route(
        self,
        labels: Iterable[str] = (),
        agent_type: Optional[str] = None,
        agent_provider: Optional[str] = None,
        agent_model: Optional[str] = None,
    ) -> AgentConfig:
        provider = _parse_provider(agent_provider)

        for label in sorted(labels, key=len, reverse=True):
            mapping = self.mappings.get(label)
            if mapping is None:
                continue
            return replace(
                self.default_config,
                type=mapping.type,
                provider=provider or mapping.provider,
                model=agent_model or None,
            )

        if agent_type:
            try:
                explicit = AgentType(agent_type)
            except ValueError:
                logger.warning("Ignoring unknown agent type", extra={"agent_type": agent_type})
            else:
                return replace(
                    self.default_config,
                    type=explicit,
                    provider=provider,
                    model=agent_model or None,
                )

        return self.default_config

    def is_recognized_label(self, label: str) -> bool:
        return label in self.mappings


def get_clarity_label(labels: Iterable[str]) -> Optional[str]:
    return next((label for label in labels if label.startswith(CLARITY_LABEL_PREFIX)), None)


def has_clarity_label(labels: Iterable[str]) -> bool:
    return get_clarity_label(labels) is not None
