"""Core automation engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    EventValidationError,
    UnknownEventTypeError,
    StorageError,
    QueueError,
    NotFoundError,
    TransientError,
    ConfigurationError,
    UnauthorizedError,
)
from .logging import setup_logging, get_logger
from .graph_store import WorkflowGraphStore
from .event_queue import EventQueue
from .trigger_matcher import TriggerMatcher
from .run_materializer import RunMaterializer
from .trigger_evaluator import TriggerEvaluator, HttpTriggerEvaluator
from .queue_consumer import QueueConsumer
from .step_executor import StepExecutor
from .outbox import OutboxDispatcher, LoggingMessageSender

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "EventValidationError",
    "UnknownEventTypeError",
    "StorageError",
    "QueueError",
    "NotFoundError",
    "TransientError",
    "ConfigurationError",
    "UnauthorizedError",
    "setup_logging",
    "get_logger",
    "WorkflowGraphStore",
    "EventQueue",
    "TriggerMatcher",
    "RunMaterializer",
    "TriggerEvaluator",
    "HttpTriggerEvaluator",
    "QueueConsumer",
    "StepExecutor",
    "OutboxDispatcher",
    "LoggingMessageSender",
]
