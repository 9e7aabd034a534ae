from relay.agents.base import Agent, AgentBackend, AgentContext
from relay.agents.cli import ClaudeCliBackend, CliBackend, CodexCliBackend
from relay.agents.openai_backend import OpenAIBackend
from relay.agents.resilient import ResilientBackend, RetryPolicy
from relay.agents.roles import (
    AnalysisAgent,
    FixAgent,
    ImplementationAgent,
    ReviewAgent,
    RoleAgent,
)

__all__ = [
    "Agent",
    "AgentBackend",
    "AgentContext",
    "AnalysisAgent",
    "ClaudeCliBackend",
    "CliBackend",
    "CodexCliBackend",
    "FixAgent",
    "ImplementationAgent",
    "OpenAIBackend",
    "ResilientBackend",
    "RetryPolicy",
    "ReviewAgent",
    "RoleAgent",
]
