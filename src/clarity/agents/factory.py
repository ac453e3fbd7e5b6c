"""Registry mapping each AgentType to its strategy.

``create`` builds a fresh strategy per run. Strategies hold the running
subprocess, so instances are never shared between runs.
"""

import logging
from typing import Callable, Dict, List, Optional

from src.clarity.agents.cli import ClaudeCodeStrategy, OpenCodeStrategy
from src.clarity.agents.strategy import AgentStrategy
from src.clarity.agents.types import AgentCapabilities, AgentConfig, AgentType

logger = logging.getLogger(__name__)

StrategyBuilder = Callable[[], AgentStrategy]


class AgentStrategyFactory:
    """Creates agent strategies by type.

    Attributes:
        claude_cli_path: Executable for Claude Code.
        opencode_cli_path: Executable for OpenCode.
    """

    def __init__(
        self,
        claude_cli_path: str = "claude",
        opencode_cli_path: str = "opencode",
    ):
        self._builders: Dict[AgentType, StrategyBuilder] = {
            AgentType.CLAUDE_CODE: lambda: ClaudeCodeStrategy(claude_cli_path),
            AgentType.OPENCODE: lambda: OpenCodeStrategy(opencode_cli_path),
        }

    def register(self, agent_type: AgentType, builder: StrategyBuilder) -> None:
        self._builders[agent_type] = builder

    def create(self, config: AgentConfig) -> AgentStrategy:
        """Build the strategy for ``config.type``.

        Raises:
            ValueError: If no strategy is registered for the type.
        """
        builder = self._builders.get(AgentType(config.type))
        if builder is None:
            available = ", ".join(t.value for t in self.supported_types())
            raise ValueError(f"Unknown agent type: {config.type}. Available: {available}")
        return builder()

    def is_supported(self, agent_type: Optional[str]) -> bool:
        try:
            return AgentType(agent_type) in self._builders
        except ValueError:
            return False

    def supported_types(self) -> List[AgentType]:
        return list(self._builders)

    def capabilities(self) -> Dict[AgentType, AgentCapabilities]:
        return {t: builder().get_capabilities() for t, builder in self._builders.items()}
