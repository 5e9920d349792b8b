"""Workflow graph persistence and retrieval."""

import uuid
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from ..models.core import (
    EdgeDefinition,
    NodeDefinition,
    WorkflowGraph,
    WorkflowStatus,
)
from ..storage.database import get_session_factory
from ..storage.models import WorkflowEdgeModel, WorkflowModel, WorkflowNodeModel
from .error_recovery import RetryConfig, with_retry
from .exceptions import GraphValidationError, NotFoundError, StorageError
from .logging import get_logger

logger = get_logger(__name__)

_read_retry = RetryConfig(max_attempts=3, base_delay=0.05, max_delay=1.0)


class WorkflowGraphStore:
    """Stores workflow graphs and serves the active ones of a workspace."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """Initialize the store with an optional session factory."""
        self._session_factory = session_factory

    def _get_session(self) -> Session:
        factory = self._session_factory or get_session_factory()
        return factory()

    def save_graph(self, graph: WorkflowGraph) -> str:
        """
        Persist a new workflow graph with its nodes and edges.

        Args:
            graph: The graph to store. Missing workflow and edge IDs are generated.

        Returns:
            str: The workflow ID

        Raises:
            GraphValidationError: If the graph collides with stored IDs
            StorageError: If the storage operation fails
        """
        workflow_id = graph.id or str(uuid.uuid4())
        logger.info(f"Saving workflow '{graph.name}' ({workflow_id}) for workspace {graph.workspace_id}")

        session = self._get_session()
        try:
            workflow = WorkflowModel(
                id=workflow_id,
                workspace_id=graph.workspace_id,
                name=graph.name,
                status=graph.status.value,
            )
            session.add(workflow)
            for node in graph.nodes:
                session.add(WorkflowNodeModel(
                    id=node.id,
                    workflow_id=workflow_id,
                    kind=node.kind.value,
                    config=dict(node.config),
                ))
            # Edges reference node rows by foreign key
            session.flush()
            for edge in graph.edges:
                session.add(WorkflowEdgeModel(
                    id=edge.id or str(uuid.uuid4()),
                    workflow_id=workflow_id,
                    from_node_id=edge.from_node_id,
                    to_node_id=edge.to_node_id,
                    condition_key=edge.condition_key,
                ))
            session.commit()
            logger.info(f"Saved workflow {workflow_id} with {len(graph.nodes)} nodes and {len(graph.edges)} edges")
            return workflow_id

        except IntegrityError as e:
            session.rollback()
            logger.error(f"Workflow {workflow_id} conflicts with stored data: {str(e)}")
            raise GraphValidationError(
                f"Workflow '{graph.name}' conflicts with an existing workflow, node or edge ID",
                workflow_id=workflow_id,
            )
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error while saving workflow: {str(e)}")
            raise StorageError(f"Failed to store workflow: {str(e)}", operation="save_graph",
                               table=WorkflowModel.__tablename__)
        finally:
            session.close()

    @with_retry(_read_retry)
    def get_graph(self, workflow_id: str) -> WorkflowGraph:
        """
        Load one workflow graph.

        Raises:
            NotFoundError: If no workflow has this ID
            StorageError: If the storage operation fails
        """
        session = self._get_session()
        try:
            model = session.execute(
                select(WorkflowModel)
                .options(selectinload(WorkflowModel.nodes), selectinload(WorkflowModel.edges))
                .where(WorkflowModel.id == workflow_id)
            ).scalar_one_or_none()
            if model is None:
                raise NotFoundError(f"Workflow with ID '{workflow_id}' not found", operation="get_graph")
            return self._to_graph(model)
        except SQLAlchemyError as e:
            logger.error(f"Database error while loading workflow {workflow_id}: {str(e)}")
            raise StorageError(f"Failed to load workflow: {str(e)}", operation="get_graph")
        finally:
            session.close()

    @with_retry(_read_retry)
    def list_active(self, workspace_id: str) -> List[WorkflowGraph]:
        """
        Load every active workflow graph of a workspace.

        Graphs whose stored nodes no longer validate are skipped with a warning
        so that one broken workflow cannot block the rest of the workspace.
        """
        session = self._get_session()
        try:
            models = session.execute(
                select(WorkflowModel)
                .options(selectinload(WorkflowModel.nodes), selectinload(WorkflowModel.edges))
                .where(
                    WorkflowModel.workspace_id == workspace_id,
                    WorkflowModel.status == WorkflowStatus.ACTIVE.value,
                )
                .order_by(WorkflowModel.created_at.asc(), WorkflowModel.id.asc())
            ).scalars().all()

            graphs = []
            for model in models:
                try:
                    graphs.append(self._to_graph(model))
                except ValidationError as e:
                    logger.warning(f"Skipping workflow {model.id} with invalid stored definition: {e.error_count()} errors")
            logger.debug(f"Loaded {len(graphs)} active workflows for workspace {workspace_id}")
            return graphs
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing active workflows: {str(e)}")
            raise StorageError(f"Failed to list active workflows: {str(e)}", operation="list_active",
                               table=WorkflowModel.__tablename__)
        finally:
            session.close()

    def set_status(self, workflow_id: str, status: WorkflowStatus) -> None:
        """
        Change a workflow's lifecycle status.

        Raises:
            NotFoundError: If no workflow has this ID
        """
        session = self._get_session()
        try:
            model = session.get(WorkflowModel, workflow_id)
            if model is None:
                raise NotFoundError(f"Workflow with ID '{workflow_id}' not found", operation="set_status")
            model.status = WorkflowStatus(status).value
            session.commit()
            logger.info(f"Workflow {workflow_id} is now {model.status}")
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to update workflow status: {str(e)}", operation="set_status")
        finally:
            session.close()

    @staticmethod
    def _to_graph(model: WorkflowModel) -> WorkflowGraph:
        return WorkflowGraph(
            id=model.id,
            workspace_id=model.workspace_id,
            name=model.name,
            status=WorkflowStatus(model.status),
            nodes=[
                NodeDefinition(id=node.id, kind=node.kind, config=node.config or {})
                for node in sorted(model.nodes, key=lambda n: n.id)
            ],
            edges=[
                EdgeDefinition(
                    id=edge.id,
                    from_node_id=edge.from_node_id,
                    to_node_id=edge.to_node_id,
                    condition_key=edge.condition_key,
                )
                for edge in sorted(model.edges, key=lambda e: e.id)
            ],
        )
