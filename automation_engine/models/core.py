"""Core Pydantic models for the automation trigger engine."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


def utc_now() -> datetime:
    """Naive UTC timestamp, the form every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EventType(str, Enum):
    """Event types the engine knows how to evaluate."""
    ENTITY_STAGE_CHANGED = "entity.stage_changed"


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow graph."""
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"


class NodeKind(str, Enum):
    """Kinds of workflow graph nodes."""
    TRIGGER = "trigger"
    ACTION = "action"


class RunStatusEnum(str, Enum):
    """Enumeration of workflow run statuses."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatusEnum(str, Enum):
    """Enumeration of run step statuses."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class DropReason(str, Enum):
    """Why a queue item was completed without evaluation."""
    MALFORMED = "malformed"
    UNKNOWN_TYPE = "unknown_type"


class OutboxChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class OutboxStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    FAILED = "failed"


def _strip_required(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("value cannot be empty")
    return value.strip()


class Event(BaseModel):
    """An immutable domain occurrence to evaluate against trigger rules."""
    model_config = ConfigDict(frozen=True)

    workspace_id: str = Field(..., description="Tenant the event belongs to")
    event_type: str = Field(..., description="Event type, e.g. entity.stage_changed")
    entity_id: str = Field(..., description="Entity the event is about")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event-type specific payload")

    @field_validator('workspace_id', 'event_type', 'entity_id')
    @classmethod
    def validate_identifiers(cls, value):
        """Identifiers must be non-blank."""
        return _strip_required(value)


class StageChangedPayload(BaseModel):
    """Payload of an ``entity.stage_changed`` event."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    entity_id: str = Field(..., alias="entityId")
    container_id: Optional[str] = Field(None, alias="containerId")
    from_stage_id: Optional[str] = Field(None, alias="fromStageId")
    to_stage_id: str = Field(..., alias="toStageId")

    @field_validator('entity_id', 'to_stage_id')
    @classmethod
    def validate_required(cls, value):
        return _strip_required(value)

    @field_validator('container_id', 'from_stage_id')
    @classmethod
    def validate_optional(cls, value):
        if value is None:
            return None
        return value.strip() or None


# Event type -> payload schema. Adding a trigger kind means adding an entry here.
PAYLOAD_SCHEMAS: Dict[str, Type[BaseModel]] = {
    EventType.ENTITY_STAGE_CHANGED.value: StageChangedPayload,
}


def is_known_event_type(event_type: str) -> bool:
    return event_type in PAYLOAD_SCHEMAS


def normalize_event(event: Event) -> Event:
    """
    Validate an event's payload against its schema and return the event with
    the validated fields merged back over the raw payload.

    Raises:
        KeyError: If the event type has no registered schema
        pydantic.ValidationError: If required payload fields are missing
    """
    schema = PAYLOAD_SCHEMAS[event.event_type]
    raw = dict(event.payload)
    raw.setdefault("entityId", event.entity_id)
    validated = schema.model_validate(raw)
    merged = {**raw, **validated.model_dump(by_alias=True, exclude_none=True)}
    return event.model_copy(update={"payload": merged})


class QueueItem(BaseModel):
    """An event plus queue lifecycle metadata."""
    id: int
    event: Event
    idempotency_key: str
    created_at: datetime
    processed_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None
    lock_token: Optional[str] = None
    attempts: int = 0
    malformed: Optional[str] = Field(None, description="Why the stored row is not a valid event, if it is not")

    @property
    def in_flight(self) -> bool:
        return self.locked_at is not None and self.processed_at is None


class TriggerFilter(BaseModel):
    """Equality filter on one payload field."""
    field: str
    equals: Any

    @field_validator('field')
    @classmethod
    def validate_field(cls, value):
        return _strip_required(value)


class TriggerConfig(BaseModel):
    """Configuration of a trigger node."""
    event: str = Field(..., description="Event type the trigger reacts to")
    filter: Optional[TriggerFilter] = None

    @field_validator('event')
    @classmethod
    def validate_event(cls, value):
        return _strip_required(value)


class AddLabelAction(BaseModel):
    action: Literal["lead.add_label"]
    label: str = ""


class SendEmailAction(BaseModel):
    action: Literal["action.send_email"]
    to: str = ""
    subject: str = ""
    body: str = ""


class SendSmsAction(BaseModel):
    action: Literal["action.send_sms"]
    to: str = ""
    body: str = ""


ActionConfig = Annotated[
    Union[AddLabelAction, SendEmailAction, SendSmsAction],
    Field(discriminator="action"),
]

action_config_adapter = TypeAdapter(ActionConfig)


class NodeDefinition(BaseModel):
    """Definition of a workflow node."""
    id: str = Field(..., description="Unique identifier for the node")
    kind: NodeKind = Field(..., description="Trigger or action")
    config: Dict[str, Any] = Field(default_factory=dict, description="Kind-specific configuration")

    @field_validator('id')
    @classmethod
    def validate_id(cls, value):
        return _strip_required(value)

    @model_validator(mode='after')
    def validate_trigger_config(self):
        """Trigger nodes must carry a well-formed trigger config."""
        if self.kind == NodeKind.TRIGGER:
            TriggerConfig.model_validate(self.config)
        return self

    def trigger_config(self) -> TriggerConfig:
        return TriggerConfig.model_validate(self.config)


class EdgeDefinition(BaseModel):
    """Directed edge between two nodes of one workflow."""
    id: Optional[str] = Field(None, description="Edge identifier, assigned on save when missing")
    from_node_id: str = Field(..., description="Source node ID")
    to_node_id: str = Field(..., description="Target node ID")
    condition_key: Optional[str] = Field(None, description="Branch key, reserved for conditional edges")

    @field_validator('from_node_id', 'to_node_id')
    @classmethod
    def validate_node_ids(cls, node_id):
        return _strip_required(node_id)

    @model_validator(mode='after')
    def validate_edge(self):
        if self.from_node_id == self.to_node_id:
            raise ValueError("Self-referencing edges are not allowed")
        return self


class WorkflowGraph(BaseModel):
    """A user-authored trigger/action graph belonging to one workspace."""
    id: Optional[str] = Field(None, description="Workflow ID, assigned on save when missing")
    workspace_id: str = Field(..., description="Owning workspace")
    name: str = Field(..., description="Workflow name")
    status: WorkflowStatus = Field(default=WorkflowStatus.DRAFT)
    nodes: List[NodeDefinition] = Field(default_factory=list)
    edges: List[EdgeDefinition] = Field(default_factory=list)

    @field_validator('workspace_id', 'name')
    @classmethod
    def validate_not_empty(cls, value):
        return _strip_required(value)

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @model_validator(mode='after')
    def validate_edge_references(self):
        node_ids = {node.id for node in self.nodes}
        for edge in self.edges:
            if edge.from_node_id not in node_ids:
                raise ValueError(f"Edge references non-existent source node: {edge.from_node_id}")
            if edge.to_node_id not in node_ids:
                raise ValueError(f"Edge references non-existent target node: {edge.to_node_id}")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == WorkflowStatus.ACTIVE

    def trigger_nodes(self) -> List[NodeDefinition]:
        return [node for node in self.nodes if node.kind == NodeKind.TRIGGER]


class Match(BaseModel):
    """A trigger node that matched an event."""
    model_config = ConfigDict(frozen=True)

    workflow_id: str
    trigger_node_id: str


class Run(BaseModel):
    """One instantiated execution of a workflow."""
    id: str
    workflow_id: str
    workspace_id: str
    trigger_node_id: str
    event_key: Optional[str] = None
    status: RunStatusEnum
    context: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    completed_at: Optional[datetime] = None


class RunStep(BaseModel):
    """One queued unit of work inside a run."""
    id: str
    run_id: str
    node_id: str
    status: StepStatusEnum
    scheduled_for: datetime
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    finished_at: Optional[datetime] = None


class DroppedEvent(BaseModel):
    """Diagnostic record for a queue item completed without evaluation."""
    queue_item_id: int
    workspace_id: str
    event_type: str
    reason: DropReason
    detail: str = ""
    created_at: Optional[datetime] = None


class OutboxMessage(BaseModel):
    """Outgoing message produced by an action step."""
    id: str
    workspace_id: str
    run_id: str
    step_id: str
    channel: OutboxChannel
    recipient: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: OutboxStatus
    created_at: datetime
    sent_at: Optional[datetime] = None
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class TickResult(BaseModel):
    """Counts reported by one consumer tick."""
    processed: int = 0
    released: int = 0
    dropped: int = 0


class QueueStats(BaseModel):
    pending: int = 0
    in_flight: int = 0
    processed: int = 0


class BatchResult(BaseModel):
    """Counts reported by one step or outbox tick."""
    processed: int = 0
    failed: int = 0
