"""Materialization of matched triggers into runs and queued first-hop steps."""

import copy
import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..models.core import Event, Match, Run, RunStatusEnum, RunStep, StepStatusEnum, utc_now
from ..storage.database import session_scope
from ..storage.models import WorkflowEdgeModel, WorkflowRunModel, WorkflowRunStepModel
from .exceptions import StorageError
from .logging import get_logger

logger = get_logger(__name__)


class RunMaterializer:
    """Creates one Run and one queued RunStep per outgoing edge of a matched trigger."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    def materialize(self, match: Match, event: Event, event_key: Optional[str] = None) -> Optional[Run]:
        """
        Materialize a match.

        The run and all of its steps are written in one transaction. A trigger
        without outgoing edges performs no work and yields ``None``. When
        ``event_key`` is given and a run already exists for
        ``(event_key, trigger_node_id)``, nothing is created and ``None`` is
        returned, so re-evaluating the same queue item is harmless.

        Raises:
            StorageError: If the store fails; nothing was written.
        """
        try:
            with session_scope(self._session_factory) as session:
                edges = session.execute(
                    select(WorkflowEdgeModel)
                    .where(
                        WorkflowEdgeModel.workflow_id == match.workflow_id,
                        WorkflowEdgeModel.from_node_id == match.trigger_node_id,
                    )
                    .order_by(WorkflowEdgeModel.id.asc())
                ).scalars().all()

                if not edges:
                    logger.debug(f"Trigger {match.trigger_node_id} has no outgoing edges; nothing to materialize")
                    return None

                if event_key is not None and self._run_exists(session, event_key, match.trigger_node_id):
                    logger.info(f"Run for event {event_key} and trigger {match.trigger_node_id} already exists")
                    return None

                now = utc_now()
                run_model = WorkflowRunModel(
                    id=str(uuid.uuid4()),
                    workflow_id=match.workflow_id,
                    workspace_id=event.workspace_id,
                    trigger_node_id=match.trigger_node_id,
                    event_key=event_key,
                    status=RunStatusEnum.RUNNING.value,
                    context=copy.deepcopy(dict(event.payload)),
                    created_at=now,
                )
                session.add(run_model)

                step_models: List[WorkflowRunStepModel] = []
                for edge in edges:
                    step = WorkflowRunStepModel(
                        id=str(uuid.uuid4()),
                        run_id=run_model.id,
                        node_id=edge.to_node_id,
                        status=StepStatusEnum.QUEUED.value,
                        scheduled_for=now,
                    )
                    session.add(step)
                    step_models.append(step)

                # Surface constraint violations inside the transaction
                session.flush()
                run = self._to_run(run_model)

        except IntegrityError as e:
            if event_key is not None and self._run_created_concurrently(event_key, match.trigger_node_id):
                logger.info(f"Run for event {event_key} and trigger {match.trigger_node_id} was created concurrently")
                return None
            logger.error(f"Failed to materialize run for trigger {match.trigger_node_id}: {str(e)}")
            raise StorageError(f"Failed to materialize run: {str(e)}", operation="materialize",
                               table=WorkflowRunModel.__tablename__)
        except SQLAlchemyError as e:
            logger.error(f"Failed to materialize run for trigger {match.trigger_node_id}: {str(e)}")
            raise StorageError(f"Failed to materialize run: {str(e)}", operation="materialize",
                               table=WorkflowRunModel.__tablename__)

        logger.info(f"Materialized run {run.id} of workflow {match.workflow_id} with {len(step_models)} queued step(s)")
        return run

    def get_steps(self, run_id: str) -> List[RunStep]:
        """Steps of a run in creation order."""
        try:
            with session_scope(self._session_factory) as session:
                rows = session.execute(
                    select(WorkflowRunStepModel)
                    .where(WorkflowRunStepModel.run_id == run_id)
                    .order_by(WorkflowRunStepModel.scheduled_for.asc(), WorkflowRunStepModel.node_id.asc())
                ).scalars().all()
                return [to_run_step(row) for row in rows]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load run steps: {str(e)}", operation="get_steps")

    def list_runs(self, workflow_id: Optional[str] = None) -> List[Run]:
        """Runs, oldest first, optionally restricted to one workflow."""
        try:
            with session_scope(self._session_factory) as session:
                query = select(WorkflowRunModel).order_by(WorkflowRunModel.created_at.asc())
                if workflow_id is not None:
                    query = query.where(WorkflowRunModel.workflow_id == workflow_id)
                return [self._to_run(row) for row in session.execute(query).scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list runs: {str(e)}", operation="list_runs")

    def _run_created_concurrently(self, event_key: str, trigger_node_id: str) -> bool:
        """Check for the winning run in a fresh session, after the failed transaction rolled back."""
        try:
            with session_scope(self._session_factory) as session:
                return self._run_exists(session, event_key, trigger_node_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to check for an existing run of event {event_key}: {str(e)}")
            return False

    @staticmethod
    def _run_exists(session, event_key: str, trigger_node_id: str) -> bool:
        return session.execute(
            select(WorkflowRunModel.id).where(
                WorkflowRunModel.event_key == event_key,
                WorkflowRunModel.trigger_node_id == trigger_node_id,
            )
        ).first() is not None

    @staticmethod
    def _to_run(row: WorkflowRunModel) -> Run:
        return Run(
            id=row.id,
            workflow_id=row.workflow_id,
            workspace_id=row.workspace_id,
            trigger_node_id=row.trigger_node_id,
            event_key=row.event_key,
            status=RunStatusEnum(row.status),
            context=row.context or {},
            created_at=row.created_at,
            completed_at=row.completed_at,
        )


def to_run_step(row: WorkflowRunStepModel) -> RunStep:
    return RunStep(
        id=row.id,
        run_id=row.run_id,
        node_id=row.node_id,
        status=StepStatusEnum(row.status),
        scheduled_for=row.scheduled_for,
        output=row.output,
        error=row.error,
        finished_at=row.finished_at,
    )
