"""Tests for the queue consumer tick."""

import uuid
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest

from automation_engine.core.exceptions import StorageError, TransientError
from automation_engine.core.queue_consumer import QueueConsumer
from automation_engine.models.core import Event, RunStatusEnum, StepStatusEnum, TickResult, utc_now
from automation_engine.storage.models import DroppedEventModel, QueueItemModel, WorkflowRunModel


def _runs(session_factory):
    with session_factory() as session:
        return session.query(WorkflowRunModel).all()


def _drops(session_factory):
    with session_factory() as session:
        return session.query(DroppedEventModel).all()


class FlakyEvaluator:
    """Raises for the listed entities and counts calls."""

    def __init__(self, failing_entities, error):
        self.failing_entities = set(failing_entities)
        self.error = error
        self.calls = []

    def evaluate(self, event, event_key=None):
        self.calls.append((event.entity_id, event_key))
        if event.entity_id in self.failing_entities:
            raise self.error
        return 0


class TestQueueConsumer:
    """Test draining the queue."""

    def test_empty_queue(self, consumer):
        assert consumer.tick() == TickResult(processed=0, released=0, dropped=0)

    def test_matching_event_creates_run_and_completes_item(self, consumer, event_queue, graph_store,
                                                           materializer, session_factory,
                                                           make_workflow, make_event):
        graph = make_workflow(trigger_filter={"field": "toStageId", "equals": "S1"})
        workflow_id = graph_store.save_graph(graph)
        item = event_queue.enqueue(make_event("S1"))

        result = consumer.tick()

        assert result == TickResult(processed=1, released=0, dropped=0)
        assert event_queue.get(item.id).processed_at is not None

        runs = materializer.list_runs(workflow_id)
        assert len(runs) == 1
        assert runs[0].status == RunStatusEnum.RUNNING
        assert runs[0].event_key == item.idempotency_key
        steps = materializer.get_steps(runs[0].id)
        assert len(steps) == 1
        assert steps[0].status == StepStatusEnum.QUEUED

    def test_non_matching_event_is_completed_without_runs(self, consumer, event_queue, graph_store,
                                                          session_factory, make_workflow, make_event):
        graph_store.save_graph(make_workflow(trigger_filter={"field": "toStageId", "equals": "S1"}))
        item = event_queue.enqueue(make_event("S2"))

        assert consumer.tick().processed == 1
        assert event_queue.get(item.id).processed_at is not None
        assert _runs(session_factory) == []

    def test_fan_out_to_two_workflows(self, consumer, event_queue, graph_store, session_factory,
                                      make_workflow, make_event):
        graph_store.save_graph(make_workflow())
        graph_store.save_graph(make_workflow())
        event_queue.enqueue(make_event())

        consumer.tick()

        assert len(_runs(session_factory)) == 2

    def test_malformed_payload_is_dropped(self, consumer, event_queue, graph_store, session_factory,
                                          make_workflow):
        graph_store.save_graph(make_workflow())
        item = event_queue.enqueue(Event(
            workspace_id="ws-1",
            event_type="entity.stage_changed",
            entity_id="lead-1",
            payload={"fromStageId": "S0"},
        ))

        result = consumer.tick()

        assert result == TickResult(processed=1, released=0, dropped=1)
        assert event_queue.get(item.id).processed_at is not None
        assert _runs(session_factory) == []
        drops = _drops(session_factory)
        assert [(d.queue_item_id, d.reason) for d in drops] == [(item.id, "malformed")]
        assert "toStageId" in drops[0].detail

    def test_invalid_stored_rows_are_dropped_without_blocking_the_queue(self, consumer, event_queue,
                                                                      session_factory, make_event):
        with session_factory() as session:
            rows = [
                QueueItemModel(workspace_id="ws-1", event_type="entity.stage_changed", entity_id="lead-1",
                               payload=["not", "an", "object"], idempotency_key="bad-payload",
                               created_at=utc_now() - timedelta(minutes=2)),
                QueueItemModel(workspace_id="ws-1", event_type="entity.stage_changed", entity_id="  ",
                               payload={"toStageId": "S1"}, idempotency_key="blank-entity",
                               created_at=utc_now() - timedelta(minutes=1)),
            ]
            session.add_all(rows)
            session.commit()
            bad_ids = [row.id for row in rows]
        good = event_queue.enqueue(make_event())

        result = consumer.tick()

        assert result == TickResult(processed=3, released=0, dropped=2)
        assert event_queue.get(good.id).processed_at is not None
        assert all(event_queue.get(item_id).processed_at is not None for item_id in bad_ids)
        drops = {d.queue_item_id: d for d in _drops(session_factory)}
        assert {item_id: drops[item_id].reason for item_id in bad_ids} == {
            bad_ids[0]: "malformed",
            bad_ids[1]: "malformed",
        }
        assert "toStageId" in drops[bad_ids[0]].detail
        assert "entity_id" in drops[bad_ids[1]].detail

    def test_run_write_failure_releases_item(self, consumer, event_queue, graph_store, session_factory,
                                             make_workflow):
        graph_store.save_graph(make_workflow(actions=[
            {"action": "lead.add_label", "label": "a"},
            {"action": "lead.add_label", "label": "b"},
        ]))
        item = event_queue.enqueue(Event(workspace_id="ws-1", event_type="entity.stage_changed",
                                         entity_id="lead-1", payload={"toStageId": "S1"}))

        # Colliding step ids make the run insert fail without any run existing
        with patch("automation_engine.core.run_materializer.uuid.uuid4", return_value=uuid.UUID(int=7)):
            result = consumer.tick()

        assert result == TickResult(processed=0, released=1, dropped=0)
        assert event_queue.get(item.id).processed_at is None
        assert _runs(session_factory) == []

        assert consumer.tick().processed == 1
        assert len(_runs(session_factory)) == 1

    def test_unknown_event_type_is_dropped(self, consumer, event_queue, session_factory):
        item = event_queue.enqueue(Event(workspace_id="ws-1", event_type="entity.archived", entity_id="lead-1"))

        result = consumer.tick()

        assert result.dropped == 1
        assert event_queue.get(item.id).processed_at is not None
        assert [d.reason for d in _drops(session_factory)] == ["unknown_type"]

    def test_transient_failure_releases_only_the_failing_item(self, event_queue, make_event):
        evaluator = FlakyEvaluator({"lead-2"}, TransientError("evaluation endpoint unavailable"))
        consumer = QueueConsumer(event_queue, evaluator)
        ok = event_queue.enqueue(make_event(entity_id="lead-1"))
        failing = event_queue.enqueue(make_event(entity_id="lead-2"))

        result = consumer.tick()

        assert result == TickResult(processed=1, released=1, dropped=0)
        assert event_queue.get(ok.id).processed_at is not None
        released = event_queue.get(failing.id)
        assert released.processed_at is None
        assert released.lock_token is None

    def test_released_item_is_retried_on_next_tick(self, event_queue, make_event):
        evaluator = FlakyEvaluator({"lead-1"}, StorageError("database is locked"))
        consumer = QueueConsumer(event_queue, evaluator)
        item = event_queue.enqueue(make_event(entity_id="lead-1"))

        consumer.tick()
        evaluator.failing_entities.clear()
        result = consumer.tick()

        assert result.processed == 1
        stored = event_queue.get(item.id)
        assert stored.processed_at is not None
        assert stored.attempts == 2
        assert evaluator.calls == [("lead-1", item.idempotency_key)] * 2

    def test_unexpected_error_releases_item(self, event_queue, make_event):
        consumer = QueueConsumer(event_queue, FlakyEvaluator({"lead-1"}, RuntimeError("boom")))
        item = event_queue.enqueue(make_event(entity_id="lead-1"))

        assert consumer.tick().released == 1
        assert event_queue.get(item.id).processed_at is None

    def test_drop_record_failure_releases_item(self, event_queue, evaluator):
        item = event_queue.enqueue(Event(workspace_id="ws-1", event_type="entity.archived", entity_id="lead-1"))
        event_queue.record_dropped = Mock(side_effect=StorageError("disk full"))
        consumer = QueueConsumer(event_queue, evaluator)

        result = consumer.tick()

        assert result == TickResult(processed=0, released=1, dropped=0)
        assert event_queue.get(item.id).processed_at is None

    def test_redelivered_item_does_not_duplicate_runs(self, consumer, event_queue, graph_store,
                                                      session_factory, make_workflow, make_event):
        graph_store.save_graph(make_workflow())
        item = event_queue.enqueue(make_event())

        # A consumer that created the run but crashed before completing the item
        locked = event_queue.lock_batch(1, "crashed")
        consumer.evaluator.evaluate(locked[0].event, event_key=item.idempotency_key)
        event_queue.release([item.id], "crashed")

        consumer.tick()

        assert len(_runs(session_factory)) == 1
        assert event_queue.get(item.id).processed_at is not None

    def test_batch_size_limits_items_per_tick(self, event_queue, evaluator, make_event):
        consumer = QueueConsumer(event_queue, evaluator, batch_size=2)
        for i in range(3):
            event_queue.enqueue(make_event(entity_id=f"lead-{i}"))

        assert consumer.tick().processed == 2
        assert consumer.tick().processed == 1
        assert consumer.tick().processed == 0

    def test_batch_size_must_be_positive(self, event_queue, evaluator):
        with pytest.raises(ValueError):
            QueueConsumer(event_queue, evaluator, batch_size=0)


class TestEndToEnd:
    """Event in, run and steps out."""

    def test_stage_change_to_target_stage(self, consumer, event_queue, graph_store, materializer,
                                          make_workflow, make_event):
        graph = make_workflow(
            trigger_filter={"field": "toStageId", "equals": "S1"},
            actions=[{"action": "action.send_email", "to": "rep@example.com", "subject": "Moved"}],
        )
        workflow_id = graph_store.save_graph(graph)

        event_queue.enqueue(make_event("S2", entity_id="lead-7"))
        event_queue.enqueue(make_event("S1", entity_id="lead-7", containerId="pipeline-1"))

        result = consumer.tick()

        assert result.processed == 2
        runs = materializer.list_runs(workflow_id)
        assert len(runs) == 1
        assert runs[0].context["toStageId"] == "S1"
        assert runs[0].context["entityId"] == "lead-7"
        assert runs[0].context["containerId"] == "pipeline-1"
        assert event_queue.stats().processed == 2
