"""Rule matching of events against trigger nodes."""

from typing import Iterable, List

from ..models.core import Event, Match, NodeKind, TriggerConfig, WorkflowGraph
from .logging import get_logger

logger = get_logger(__name__)

_MISSING = object()


class TriggerMatcher:
    """
    Pure matcher: finds every trigger node, across the given active graphs,
    whose configuration selects an event.

    A node matches when it is a trigger, its ``event`` equals the event type,
    and it either has no filter or the event payload holds ``filter.equals``
    under ``filter.field``. All matches are returned, including several
    triggers of the same workflow.
    """

    def match(self, event: Event, active_graphs: Iterable[WorkflowGraph]) -> List[Match]:
        matches: List[Match] = []
        for graph in active_graphs:
            if not graph.is_active:
                logger.debug(f"Ignoring workflow {graph.id} with status {graph.status.value}")
                continue
            for node in graph.nodes:
                if node.kind != NodeKind.TRIGGER:
                    continue
                if self.node_matches(node.trigger_config(), event):
                    matches.append(Match(workflow_id=graph.id, trigger_node_id=node.id))

        if matches:
            logger.debug(f"Event {event.event_type} matched {len(matches)} trigger(s) in workspace {event.workspace_id}")
        return matches

    @staticmethod
    def node_matches(config: TriggerConfig, event: Event) -> bool:
        if config.event != event.event_type:
            return False
        if config.filter is None:
            return True
        value = event.payload.get(config.filter.field, _MISSING)
        return value is not _MISSING and value == config.filter.equals
