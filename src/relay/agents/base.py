from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from relay.config import RepositoryConfig
from relay.models import AgentResult, Task


@dataclass(slots=True)
class AgentContext:
    repository: RepositoryConfig
    prior_artifact: str | None = None
    branch: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def working_directory(self) -> Path | None:
        return Path(self.repository.path) if self.repository.path else None


class AgentBackend(ABC):
    """Runs a prompt to completion and returns the agent's textual output."""

    name: str = "backend"

    @abstractmethod
    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        task_id: str,
        working_directory: Path | None = None,
    ) -> str:
        """Raise ``AgentExecutionError`` (or a subclass) on failure."""


class Agent(ABC):
    role: str = "agent"

    @abstractmethod
    async def invoke(self, task: Task, context: AgentContext) -> AgentResult:
        """Run the agent for ``task``. Expected failures return ``success=False``."""
