"""Pytest configuration and fixtures."""

import os
import tempfile
import uuid
from typing import Any, Dict, List, Optional

import pytest

from automation_engine.config import AppConfig, LogLevel, reset_config
from automation_engine.core.event_queue import EventQueue
from automation_engine.core.graph_store import WorkflowGraphStore
from automation_engine.core.outbox import OutboxDispatcher
from automation_engine.core.queue_consumer import QueueConsumer
from automation_engine.core.run_materializer import RunMaterializer
from automation_engine.core.step_executor import StepExecutor
from automation_engine.core.trigger_evaluator import TriggerEvaluator
from automation_engine.core.trigger_matcher import TriggerMatcher
from automation_engine.models.core import (
    EdgeDefinition,
    Event,
    EventType,
    NodeDefinition,
    NodeKind,
    WorkflowGraph,
    WorkflowStatus,
)
from automation_engine.storage.database import (
    create_database_engine,
    create_session_factory,
    create_tables,
    reset_database_engine,
)

RUNNER_SECRET = "test-runner-secret"
CRON_SECRET = "test-cron-secret"
WORKSPACE = "ws-1"


@pytest.fixture
def db_path():
    """Path of a temporary SQLite database file."""
    db_fd, path = tempfile.mkstemp(suffix=".db")
    os.close(db_fd)
    yield path
    for suffix in ("", "-wal", "-shm", "-journal"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def db_engine(db_path):
    engine = create_database_engine(f"sqlite:///{db_path}")
    create_tables(engine)
    yield engine
    engine.dispose()
    reset_database_engine()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def graph_store(session_factory):
    return WorkflowGraphStore(session_factory)


@pytest.fixture
def event_queue(session_factory):
    return EventQueue(session_factory, lock_timeout_seconds=300)


@pytest.fixture
def materializer(session_factory):
    return RunMaterializer(session_factory)


@pytest.fixture
def evaluator(graph_store, materializer):
    return TriggerEvaluator(graph_store, TriggerMatcher(), materializer)


@pytest.fixture
def consumer(event_queue, evaluator):
    return QueueConsumer(event_queue, evaluator, batch_size=25)


@pytest.fixture
def step_executor(session_factory):
    return StepExecutor(session_factory, batch_size=25)


@pytest.fixture
def outbox(session_factory):
    return OutboxDispatcher(session_factory, batch_size=25)


@pytest.fixture
def test_config(db_path):
    reset_config()
    config = AppConfig(
        debug=True,
        database_url=f"sqlite:///{db_path}",
        log_level=LogLevel.WARNING,
        runner_secret=RUNNER_SECRET,
        cron_secret=CRON_SECRET,
        enable_performance_monitoring=False,
    )
    yield config
    reset_config()


@pytest.fixture
def client(test_config, session_factory):
    """Test client whose app shares the test database."""
    from fastapi.testclient import TestClient
    from automation_engine.factory import create_app

    app = create_app(test_config, session_factory=session_factory)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def runner_headers():
    return {"Authorization": f"Bearer {RUNNER_SECRET}"}


def stage_event(to_stage: str = "S2", entity_id: str = "lead-1", workspace_id: str = WORKSPACE,
                **payload: Any) -> Event:
    return Event(
        workspace_id=workspace_id,
        event_type=EventType.ENTITY_STAGE_CHANGED.value,
        entity_id=entity_id,
        payload={"toStageId": to_stage, **payload},
    )


def build_workflow(workspace_id: str = WORKSPACE,
                   trigger_filter: Optional[Dict[str, Any]] = None,
                   actions: Optional[List[Dict[str, Any]]] = None,
                   status: WorkflowStatus = WorkflowStatus.ACTIVE,
                   trigger_count: int = 1) -> WorkflowGraph:
    """A workflow whose trigger nodes each point at every action node."""
    suffix = uuid.uuid4().hex[:8]
    trigger_config: Dict[str, Any] = {"event": EventType.ENTITY_STAGE_CHANGED.value}
    if trigger_filter is not None:
        trigger_config["filter"] = trigger_filter

    triggers = [
        NodeDefinition(id=f"trigger-{i}-{suffix}", kind=NodeKind.TRIGGER, config=dict(trigger_config))
        for i in range(trigger_count)
    ]
    if actions is None:
        actions = [{"action": "lead.add_label", "label": "hot"}]
    action_nodes = [
        NodeDefinition(id=f"action-{i}-{suffix}", kind=NodeKind.ACTION, config=config)
        for i, config in enumerate(actions)
    ]
    edges = [
        EdgeDefinition(from_node_id=trigger.id, to_node_id=action.id)
        for trigger in triggers
        for action in action_nodes
    ]
    return WorkflowGraph(
        workspace_id=workspace_id,
        name=f"workflow-{suffix}",
        status=status,
        nodes=triggers + action_nodes,
        edges=edges,
    )


@pytest.fixture
def make_event():
    return stage_event


@pytest.fixture
def make_workflow():
    return build_workflow
