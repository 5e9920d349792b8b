"""Tests for trigger matching."""

import pytest

from automation_engine.core.trigger_matcher import TriggerMatcher
from automation_engine.models.core import (
    Event,
    Match,
    NodeDefinition,
    NodeKind,
    TriggerConfig,
    WorkflowGraph,
    WorkflowStatus,
)


def _saved(graph: WorkflowGraph, workflow_id: str) -> WorkflowGraph:
    return graph.model_copy(update={"id": workflow_id})


class TestTriggerMatcher:
    """Test matching events against trigger nodes."""

    @pytest.fixture(autouse=True)
    def _helpers(self, make_event, make_workflow):
        self.matcher = TriggerMatcher()
        self.event = make_event
        self.workflow = make_workflow

    def test_filter_matches_equal_payload_value(self):
        graph = _saved(self.workflow(trigger_filter={"field": "toStageId", "equals": "S1"}), "wf-1")

        assert self.matcher.match(self.event("S2"), [graph]) == []
        assert self.matcher.match(self.event("S1"), [graph]) == [
            Match(workflow_id="wf-1", trigger_node_id=graph.trigger_nodes()[0].id)
        ]

    def test_trigger_without_filter_matches_every_event_of_its_type(self):
        graph = _saved(self.workflow(), "wf-1")

        assert len(self.matcher.match(self.event("S1"), [graph])) == 1
        assert len(self.matcher.match(self.event("S9"), [graph])) == 1

    def test_missing_filter_field_does_not_match(self):
        graph = _saved(self.workflow(trigger_filter={"field": "containerId", "equals": None}), "wf-1")
        assert self.matcher.match(self.event("S1"), [graph]) == []

    def test_every_matching_workflow_is_returned(self):
        first = _saved(self.workflow(), "wf-1")
        second = _saved(self.workflow(), "wf-2")

        matches = self.matcher.match(self.event(), [first, second])

        assert [m.workflow_id for m in matches] == ["wf-1", "wf-2"]

    def test_several_triggers_of_one_workflow_all_match(self):
        graph = _saved(self.workflow(trigger_count=2), "wf-1")

        matches = self.matcher.match(self.event(), [graph])

        assert {m.trigger_node_id for m in matches} == {n.id for n in graph.trigger_nodes()}

    def test_inactive_graphs_are_ignored(self):
        paused = _saved(self.workflow(status=WorkflowStatus.PAUSED), "wf-paused")
        draft = _saved(self.workflow(status=WorkflowStatus.DRAFT), "wf-draft")

        assert self.matcher.match(self.event(), [paused, draft]) == []

    def test_other_event_types_do_not_match(self):
        graph = _saved(self.workflow(), "wf-1")
        event = Event(workspace_id="ws-1", event_type="entity.created", entity_id="lead-1")

        assert self.matcher.match(event, [graph]) == []

    def test_action_nodes_are_never_matched(self):
        graph = WorkflowGraph(
            id="wf-1",
            workspace_id="ws-1",
            name="actions only",
            status=WorkflowStatus.ACTIVE,
            nodes=[NodeDefinition(id="a1", kind=NodeKind.ACTION, config={"event": "entity.stage_changed"})],
        )
        assert self.matcher.match(self.event(), [graph]) == []

    def test_node_matches_compares_filter_value_exactly(self):
        config = TriggerConfig.model_validate(
            {"event": "entity.stage_changed", "filter": {"field": "toStageId", "equals": "S1"}}
        )
        assert TriggerMatcher.node_matches(config, self.event("S1")) is True
        assert TriggerMatcher.node_matches(config, self.event("s1")) is False
