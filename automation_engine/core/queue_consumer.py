"""One processing tick of the event queue."""

import logging
import uuid
from typing import List, Optional, Protocol

from pydantic import ValidationError

from ..models.core import DropReason, Event, QueueItem, TickResult, is_known_event_type, normalize_event
from .event_queue import EventQueue
from .exceptions import StorageError, TransientError
from .logging import get_logger, log_with_context, remove_logging_context, set_logging_context

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 25


class Evaluator(Protocol):
    def evaluate(self, event: Event, event_key: Optional[str] = None) -> int:
        ...


class QueueConsumer:
    """
    Drains one batch of the event queue per ``tick``.

    Items are processed sequentially. Each item resolves to completed
    (evaluated, or dropped as unknown/malformed) or released (evaluation
    failed and will be retried by a later tick). A failure on one item never
    affects the others.
    """

    def __init__(self, queue: EventQueue, evaluator: Evaluator, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.queue = queue
        self.evaluator = evaluator
        self.batch_size = batch_size

    def tick(self) -> TickResult:
        """
        Lock a batch, evaluate every item and resolve it.

        Raises:
            QueueError: If the batch cannot be locked. Nothing was claimed.
        """
        lock_token = str(uuid.uuid4())
        set_logging_context(lock_token=lock_token)
        try:
            items = self.queue.lock_batch(self.batch_size, lock_token)
            if not items:
                logger.debug("No claimable queue items")
                return TickResult()

            completed: List[int] = []
            released: List[int] = []
            dropped = 0

            for item in items:
                outcome = self._process(item)
                if outcome == "released":
                    released.append(item.id)
                else:
                    completed.append(item.id)
                    if outcome == "dropped":
                        dropped += 1

            processed = self.queue.complete(completed, lock_token)
            released_count = self.queue.release(released, lock_token)

            result = TickResult(processed=processed, released=released_count, dropped=dropped)
            logger.info(
                f"Tick finished: {result.processed} processed, {result.released} released, "
                f"{result.dropped} dropped of {len(items)} locked"
            )
            return result
        finally:
            remove_logging_context("lock_token")

    def _process(self, item: QueueItem) -> str:
        """Resolve one item to ``completed``, ``dropped`` or ``released``."""
        event = item.event

        if item.malformed:
            return self._drop(item, DropReason.MALFORMED, item.malformed)

        if not is_known_event_type(event.event_type):
            return self._drop(item, DropReason.UNKNOWN_TYPE, f"unknown event type '{event.event_type}'")

        try:
            normalized = normalize_event(event)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            return self._drop(item, DropReason.MALFORMED, f"invalid payload fields: {fields}")

        try:
            self.evaluator.evaluate(normalized, event_key=item.idempotency_key)
            return "completed"
        except (TransientError, StorageError) as e:
            logger.warning(f"Releasing queue item {item.id} after recoverable failure: {e.message}")
        except Exception as e:
            logger.error(f"Releasing queue item {item.id} after evaluation error: {type(e).__name__}: {str(e)}")
        return "released"

    def _drop(self, item: QueueItem, reason: DropReason, detail: str) -> str:
        log_with_context(
            logger, logging.WARNING,
            f"Dropping queue item {item.id}: {detail}",
            queue_item_id=item.id,
            workspace_id=item.event.workspace_id,
            event_type=item.event.event_type,
            reason=reason.value,
        )
        try:
            self.queue.record_dropped(item, reason, detail)
        except StorageError as e:
            # Keep the item so the diagnostic record is not lost
            logger.error(f"Could not record dropped item {item.id}, releasing it: {e.message}")
            return "released"
        return "dropped"
