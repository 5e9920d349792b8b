"""Database models and storage layer."""

from .database import (
    Base,
    create_tables,
    drop_tables,
    get_session_factory,
    init_database,
    session_scope,
)
from .models import (
    QueueItemModel,
    DroppedEventModel,
    WorkflowModel,
    WorkflowNodeModel,
    WorkflowEdgeModel,
    WorkflowRunModel,
    WorkflowRunStepModel,
    OutboxMessageModel,
)

__all__ = [
    "Base",
    "create_tables",
    "drop_tables",
    "get_session_factory",
    "init_database",
    "session_scope",
    "QueueItemModel",
    "DroppedEventModel",
    "WorkflowModel",
    "WorkflowNodeModel",
    "WorkflowEdgeModel",
    "WorkflowRunModel",
    "WorkflowRunStepModel",
    "OutboxMessageModel",
]
