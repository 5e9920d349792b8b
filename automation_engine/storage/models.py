"""SQLAlchemy database models for the automation engine."""

from sqlalchemy import (
    Column, String, DateTime, Text, JSON, Integer, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from ..models.core import utc_now
from .database import Base


class QueueItemModel(Base):
    """Database model for queued domain events."""
    __tablename__ = "workflow_event_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workspace_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    idempotency_key = Column(String, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    processed_at = Column(DateTime)
    locked_at = Column(DateTime)
    lock_token = Column(String)

    __table_args__ = (
        Index("idx_event_queue_claimable", "processed_at", "locked_at", "created_at"),
        Index("idx_event_queue_lock_token", "lock_token"),
    )


class DroppedEventModel(Base):
    """Diagnostic record of queue items dropped without evaluation."""
    __tablename__ = "workflow_event_drops"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue_item_id = Column(Integer, ForeignKey("workflow_event_queue.id"), nullable=False)
    workspace_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    reason = Column(String, nullable=False)  # malformed, unknown_type
    detail = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utc_now)


class WorkflowModel(Base):
    """Database model for workflow graphs."""
    __tablename__ = "workflows"

    id = Column(String, primary_key=True)
    workspace_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False)  # draft, active, paused
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    nodes = relationship("WorkflowNodeModel", back_populates="workflow", cascade="all, delete-orphan")
    edges = relationship("WorkflowEdgeModel", back_populates="workflow", cascade="all, delete-orphan")


class WorkflowNodeModel(Base):
    """Database model for trigger and action nodes."""
    __tablename__ = "workflow_nodes"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)  # trigger, action
    config = Column(JSON, nullable=False, default=dict)

    workflow = relationship("WorkflowModel", back_populates="nodes")


class WorkflowEdgeModel(Base):
    """Database model for directed edges between nodes."""
    __tablename__ = "workflow_edges"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    from_node_id = Column(String, ForeignKey("workflow_nodes.id"), nullable=False, index=True)
    to_node_id = Column(String, ForeignKey("workflow_nodes.id"), nullable=False)
    condition_key = Column(String)

    workflow = relationship("WorkflowModel", back_populates="edges")


class WorkflowRunModel(Base):
    """Database model for workflow runs."""
    __tablename__ = "workflow_runs"

    id = Column(String, primary_key=True)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    workspace_id = Column(String, nullable=False)
    trigger_node_id = Column(String, nullable=False)
    event_key = Column(String)
    status = Column(String, nullable=False)  # running, completed, failed
    context = Column(JSON)
    created_at = Column(DateTime, default=utc_now)
    completed_at = Column(DateTime)

    steps = relationship("WorkflowRunStepModel", back_populates="run")

    __table_args__ = (
        UniqueConstraint("event_key", "trigger_node_id", name="uq_workflow_runs_event_trigger"),
    )


class WorkflowRunStepModel(Base):
    """Database model for queued run steps."""
    __tablename__ = "workflow_run_steps"

    id = Column(String, primary_key=True)
    run_id = Column(String, ForeignKey("workflow_runs.id"), nullable=False, index=True)
    node_id = Column(String, nullable=False)
    status = Column(String, nullable=False)  # queued, running, done, failed, skipped
    scheduled_for = Column(DateTime, nullable=False, default=utc_now)
    locked_at = Column(DateTime)
    lock_token = Column(String)
    output = Column(JSON)
    error = Column(Text)
    finished_at = Column(DateTime)

    run = relationship("WorkflowRunModel", back_populates="steps")

    __table_args__ = (
        Index("idx_run_steps_claimable", "status", "scheduled_for"),
    )


class OutboxMessageModel(Base):
    """Database model for outgoing messages produced by actions."""
    __tablename__ = "workflow_message_outbox"

    id = Column(String, primary_key=True)
    workspace_id = Column(String, nullable=False)
    run_id = Column(String, ForeignKey("workflow_runs.id"), nullable=False)
    step_id = Column(String, ForeignKey("workflow_run_steps.id"), nullable=False)
    channel = Column(String, nullable=False)  # email, sms
    recipient = Column(String, nullable=False)
    payload = Column(JSON)
    status = Column(String, nullable=False)  # queued, sent, failed
    created_at = Column(DateTime, nullable=False, default=utc_now)
    locked_at = Column(DateTime)
    lock_token = Column(String)
    sent_at = Column(DateTime)
    provider_message_id = Column(String)
    error = Column(Text)
