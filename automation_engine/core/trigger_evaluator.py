"""Trigger evaluation: load active graphs, match, materialize."""

from typing import Optional

import requests

from ..models.core import Event
from .error_recovery import CircuitBreaker
from .exceptions import TransientError
from .graph_store import WorkflowGraphStore
from .logging import get_logger
from .run_materializer import RunMaterializer
from .trigger_matcher import TriggerMatcher

logger = get_logger(__name__)


class TriggerEvaluator:
    """In-process trigger evaluation against the local store."""

    def __init__(self, graph_store: WorkflowGraphStore,
                 matcher: Optional[TriggerMatcher] = None,
                 materializer: Optional[RunMaterializer] = None):
        self.graph_store = graph_store
        self.matcher = matcher or TriggerMatcher()
        self.materializer = materializer or RunMaterializer()

    def evaluate(self, event: Event, event_key: Optional[str] = None) -> int:
        """
        Evaluate one event and return the number of runs created.

        Storage failures propagate so the caller can release the source item.
        """
        graphs = self.graph_store.list_active(event.workspace_id)
        matches = self.matcher.match(event, graphs)

        created = 0
        for match in matches:
            if self.materializer.materialize(match, event, event_key=event_key) is not None:
                created += 1

        logger.info(
            f"Evaluated {event.event_type} for entity {event.entity_id}: "
            f"{len(matches)} match(es), {created} run(s) created"
        )
        return created


class HttpTriggerEvaluator:
    """
    Trigger evaluation through the ``/triggers/evaluate`` endpoint of a remote
    engine instance.

    Every way the call can fail (unreachable, timeout, non-2xx status,
    unreadable body) surfaces as ``TransientError`` so the consumer releases
    the item for a later tick. A circuit breaker stops hammering an endpoint
    that keeps failing.
    """

    def __init__(self, url: str, secret: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None,
                 circuit_breaker: Optional[CircuitBreaker] = None):
        if not url:
            raise ValueError("url cannot be empty")
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.session = session or requests.Session()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5, recovery_timeout=30.0, expected_exception=TransientError
        )

    def evaluate(self, event: Event, event_key: Optional[str] = None) -> int:
        return self.circuit_breaker.call(self._post, event, event_key)

    def _post(self, event: Event, event_key: Optional[str]) -> int:
        body = {
            "workspaceId": event.workspace_id,
            "eventType": event.event_type,
            "entityId": event.entity_id,
            "payload": dict(event.payload),
        }
        if event_key is not None:
            body["eventKey"] = event_key

        headers = {"Content-Type": "application/json"}
        if self.secret:
            headers["Authorization"] = f"Bearer {self.secret}"

        try:
            response = self.session.post(self.url, json=body, headers=headers, timeout=self.timeout)
        except requests.Timeout as e:
            raise TransientError(f"Trigger evaluation timed out after {self.timeout}s: {str(e)}")
        except requests.RequestException as e:
            raise TransientError(f"Trigger evaluation unreachable: {str(e)}")

        if not 200 <= response.status_code < 300:
            raise TransientError(
                f"Trigger evaluation returned HTTP {response.status_code}",
                details={"status": response.status_code, "response": response.text[:500]},
            )

        try:
            data = response.json()
        except ValueError:
            raise TransientError("Trigger evaluation returned a non-JSON body")

        triggered = data.get("triggered", 0) if isinstance(data, dict) else 0
        return int(triggered or 0)
