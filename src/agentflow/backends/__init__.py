from agentflow.backends.base import AgentBackend, BackendExecutionError, BackendProcessError
from agentflow.backends.claude import ClaudeCodeBackend

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "ClaudeCodeBackend",
]
