"""Data models for the automation engine."""

from .core import (
    EventType,
    WorkflowStatus,
    NodeKind,
    RunStatusEnum,
    StepStatusEnum,
    DropReason,
    OutboxChannel,
    OutboxStatus,
    Event,
    StageChangedPayload,
    QueueItem,
    TriggerFilter,
    TriggerConfig,
    NodeDefinition,
    EdgeDefinition,
    WorkflowGraph,
    Match,
    Run,
    RunStep,
    DroppedEvent,
    OutboxMessage,
    TickResult,
    QueueStats,
    BatchResult,
    normalize_event,
    is_known_event_type,
    utc_now,
)

__all__ = [
    "EventType",
    "WorkflowStatus",
    "NodeKind",
    "RunStatusEnum",
    "StepStatusEnum",
    "DropReason",
    "OutboxChannel",
    "OutboxStatus",
    "Event",
    "StageChangedPayload",
    "QueueItem",
    "TriggerFilter",
    "TriggerConfig",
    "NodeDefinition",
    "EdgeDefinition",
    "WorkflowGraph",
    "Match",
    "Run",
    "RunStep",
    "DroppedEvent",
    "OutboxMessage",
    "TickResult",
    "QueueStats",
    "BatchResult",
    "normalize_event",
    "is_known_event_type",
    "utc_now",
]
