"""Execution of queued run steps, one hop at a time."""

import uuid
from typing import Any, Dict, Optional

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import (
    AddLabelAction,
    BatchResult,
    NodeKind,
    OutboxChannel,
    RunStatusEnum,
    SendEmailAction,
    SendSmsAction,
    StepStatusEnum,
    action_config_adapter,
    utc_now,
)
from ..storage.database import session_scope
from ..storage.locking import claim_rows
from ..storage.models import WorkflowEdgeModel, WorkflowNodeModel, WorkflowRunModel, WorkflowRunStepModel
from .exceptions import QueueError, StorageError
from .logging import get_logger
from .outbox import add_outbox_message

logger = get_logger(__name__)

_OPEN_STEP_STATUSES = (StepStatusEnum.QUEUED.value, StepStatusEnum.RUNNING.value)


class StepFailure(Exception):
    """A step cannot run; the message is stored as the step's error."""


class StepExecutor:
    """
    Consumes queued RunSteps with the same claim discipline as the event queue.

    Executing a step applies its action, queues one step per outgoing edge of
    the step's node, and closes the run once no open steps remain. Each step
    is committed in its own transaction.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 batch_size: int = 25, lock_timeout_seconds: int = 300):
        self._session_factory = session_factory
        self.batch_size = batch_size
        self.lock_timeout_seconds = lock_timeout_seconds

    def tick(self) -> BatchResult:
        """
        Claim and execute one batch of due steps.

        Raises:
            QueueError: If the batch cannot be claimed
        """
        lock_token = str(uuid.uuid4())
        now = utc_now()
        try:
            with session_scope(self._session_factory) as session:
                rows = claim_rows(
                    session, WorkflowRunStepModel,
                    criteria=[
                        WorkflowRunStepModel.status.in_(_OPEN_STEP_STATUSES),
                        WorkflowRunStepModel.scheduled_for <= now,
                    ],
                    order_by=[WorkflowRunStepModel.scheduled_for.asc(), WorkflowRunStepModel.id.asc()],
                    limit=self.batch_size,
                    lock_token=lock_token,
                    now=now,
                    lock_timeout_seconds=self.lock_timeout_seconds,
                    values={"status": StepStatusEnum.RUNNING.value},
                )
                step_ids = [row.id for row in rows]
        except SQLAlchemyError as e:
            raise QueueError(f"Failed to claim run steps: {str(e)}", operation="step_claim",
                             lock_token=lock_token)

        result = BatchResult()
        for step_id in step_ids:
            if self._execute(step_id, lock_token):
                result.processed += 1
            else:
                result.failed += 1

        if step_ids:
            logger.info(f"Step tick: {result.processed} executed, {result.failed} failed")
        return result

    def _execute(self, step_id: str, lock_token: str) -> bool:
        try:
            with session_scope(self._session_factory) as session:
                step = session.get(WorkflowRunStepModel, step_id)
                if step is None or step.lock_token != lock_token:
                    logger.warning(f"Run step {step_id} is no longer owned by this executor")
                    return False
                self._run_step(session, step)
                self._finalize_run(session, step.run_id)
            return True
        except StepFailure as e:
            logger.warning(f"Run step {step_id} failed: {str(e)}")
            self._mark_failed(step_id, lock_token, str(e))
        except SQLAlchemyError as e:
            logger.error(f"Storage error while executing run step {step_id}: {str(e)}")
            self._mark_failed(step_id, lock_token, f"storage_error: {str(e)}")
        return False

    def _run_step(self, session: Session, step: WorkflowRunStepModel) -> None:
        run = session.get(WorkflowRunModel, step.run_id)
        node = session.get(WorkflowNodeModel, step.node_id)
        if run is None or node is None:
            raise StepFailure("missing_run_or_node")

        if node.kind != NodeKind.ACTION.value:
            self._close_step(step, StepStatusEnum.SKIPPED, {"reason": "non_action_node"})
            return

        try:
            action = action_config_adapter.validate_python(node.config or {})
        except ValidationError:
            raise StepFailure("invalid_action_config")

        context = run.context or {}
        if isinstance(action, SendEmailAction):
            add_outbox_message(
                session, workspace_id=run.workspace_id, run_id=run.id, step_id=step.id,
                channel=OutboxChannel.EMAIL, recipient=action.to,
                payload={"subject": action.subject, "body": action.body, "context": context},
            )
            output: Dict[str, Any] = {"enqueued": True, "channel": OutboxChannel.EMAIL.value}
        elif isinstance(action, SendSmsAction):
            add_outbox_message(
                session, workspace_id=run.workspace_id, run_id=run.id, step_id=step.id,
                channel=OutboxChannel.SMS, recipient=action.to,
                payload={"body": action.body, "context": context},
            )
            output = {"enqueued": True, "channel": OutboxChannel.SMS.value}
        elif isinstance(action, AddLabelAction):
            # Labels live in the CRM; the engine only records the intent
            output = {"applied": False, "action": action.action, "label": action.label}
        else:
            raise StepFailure("invalid_action_config")

        self._close_step(step, StepStatusEnum.DONE, output)
        self._queue_next_steps(session, run, step.node_id)

    @staticmethod
    def _close_step(step: WorkflowRunStepModel, status: StepStatusEnum, output: Dict[str, Any]) -> None:
        step.status = status.value
        step.output = output
        step.finished_at = utc_now()
        step.locked_at = None
        step.lock_token = None

    @staticmethod
    def _queue_next_steps(session: Session, run: WorkflowRunModel, node_id: str) -> None:
        next_nodes = session.execute(
            select(WorkflowEdgeModel.to_node_id)
            .where(WorkflowEdgeModel.workflow_id == run.workflow_id, WorkflowEdgeModel.from_node_id == node_id)
            .order_by(WorkflowEdgeModel.id.asc())
        ).scalars().all()
        now = utc_now()
        for to_node_id in next_nodes:
            session.add(WorkflowRunStepModel(
                id=str(uuid.uuid4()),
                run_id=run.id,
                node_id=to_node_id,
                status=StepStatusEnum.QUEUED.value,
                scheduled_for=now,
            ))
        session.flush()

    @staticmethod
    def _finalize_run(session: Session, run_id: str) -> None:
        """Complete or fail the run once none of its steps is open."""
        session.flush()
        counts = dict(session.execute(
            select(WorkflowRunStepModel.status, func.count())
            .where(WorkflowRunStepModel.run_id == run_id)
            .group_by(WorkflowRunStepModel.status)
        ).all())
        if any(counts.get(status, 0) for status in _OPEN_STEP_STATUSES):
            return

        run = session.get(WorkflowRunModel, run_id)
        if run is None or run.status != RunStatusEnum.RUNNING.value:
            return
        failed = counts.get(StepStatusEnum.FAILED.value, 0)
        run.status = (RunStatusEnum.FAILED if failed else RunStatusEnum.COMPLETED).value
        run.completed_at = utc_now()
        logger.info(f"Run {run_id} finished as {run.status}")

    def _mark_failed(self, step_id: str, lock_token: str, error: str) -> None:
        try:
            with session_scope(self._session_factory) as session:
                step = session.get(WorkflowRunStepModel, step_id)
                if step is None or step.lock_token != lock_token:
                    logger.warning(f"Run step {step_id} was reclaimed; leaving its failure unrecorded")
                    return
                step.status = StepStatusEnum.FAILED.value
                step.error = error[:2000]
                step.finished_at = utc_now()
                step.locked_at = None
                step.lock_token = None
                self._finalize_run(session, step.run_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to mark run step failed: {str(e)}", operation="step_fail",
                               table=WorkflowRunStepModel.__tablename__)

