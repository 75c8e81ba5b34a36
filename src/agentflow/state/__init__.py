from agentflow.state.local import LocalWorkflowStore
from agentflow.state.store import (
    PlanStamp,
    StalePlanError,
    WorkflowNotFoundError,
    WorkflowStore,
    WorkflowStoreError,
)

__all__ = [
    "LocalWorkflowStore",
    "PlanStamp",
    "StalePlanError",
    "WorkflowNotFoundError",
    "WorkflowStore",
    "WorkflowStoreError",
]
