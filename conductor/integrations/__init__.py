"""外部协作方适配层"""

from conductor.integrations.agent_client import (
    AgentDispatcher,
    AgentOutcome,
    OpenAIAgentDispatcher,
)

__all__ = [
    "AgentDispatcher",
    "AgentOutcome",
    "OpenAIAgentDispatcher",
]
