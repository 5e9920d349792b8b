"""Wiring of the engine's components from configuration."""

from typing import Optional

from sqlalchemy.orm import sessionmaker

from .config import AppConfig
from .core.event_queue import EventQueue
from .core.graph_store import WorkflowGraphStore
from .core.logging import get_logger
from .core.outbox import OutboxDispatcher
from .core.queue_consumer import QueueConsumer
from .core.run_materializer import RunMaterializer
from .core.step_executor import StepExecutor
from .core.trigger_evaluator import HttpTriggerEvaluator, TriggerEvaluator
from .core.trigger_matcher import TriggerMatcher

logger = get_logger(__name__)


class EngineComponents:
    """Container for the engine's components, shared by the API and the CLI."""

    def __init__(self, config: AppConfig, session_factory: Optional[sessionmaker] = None):
        self.config = config
        self.graph_store = WorkflowGraphStore(session_factory)
        self.queue = EventQueue(session_factory, lock_timeout_seconds=config.lock_timeout_seconds)
        self.matcher = TriggerMatcher()
        self.materializer = RunMaterializer(session_factory)

        # The evaluate endpoint always evaluates in-process
        self.local_evaluator = TriggerEvaluator(self.graph_store, self.matcher, self.materializer)
        if config.trigger_evaluation_url:
            logger.info(f"Trigger evaluation delegated to {config.trigger_evaluation_url}")
            self.evaluator = HttpTriggerEvaluator(
                config.trigger_evaluation_url,
                secret=config.runner_secret,
                timeout=config.trigger_evaluation_timeout,
            )
        else:
            self.evaluator = self.local_evaluator

        self.consumer = QueueConsumer(self.queue, self.evaluator, batch_size=config.batch_size)
        self.step_executor = StepExecutor(
            session_factory,
            batch_size=config.step_batch_size,
            lock_timeout_seconds=config.lock_timeout_seconds,
        )
        self.outbox = OutboxDispatcher(
            session_factory,
            batch_size=config.outbox_batch_size,
            lock_timeout_seconds=config.lock_timeout_seconds,
        )
