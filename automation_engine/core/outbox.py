"""Durable outbox of messages produced by action steps, and its dispatcher."""

import uuid
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import BatchResult, OutboxChannel, OutboxMessage, OutboxStatus, utc_now
from ..storage.database import session_scope
from ..storage.locking import claim_rows
from ..storage.models import OutboxMessageModel
from .exceptions import QueueError, StorageError
from .logging import get_logger

logger = get_logger(__name__)

STUB_PROVIDER_MESSAGE_ID = "stub"


def add_outbox_message(session: Session, *, workspace_id: str, run_id: str, step_id: str,
                       channel: OutboxChannel, recipient: str, payload: Dict[str, Any]) -> OutboxMessageModel:
    """Add a queued message to the caller's transaction."""
    row = OutboxMessageModel(
        id=str(uuid.uuid4()),
        workspace_id=workspace_id,
        run_id=run_id,
        step_id=step_id,
        channel=channel.value,
        recipient=recipient,
        payload=payload,
        status=OutboxStatus.QUEUED.value,
        created_at=utc_now(),
    )
    session.add(row)
    return row


class MessageSender(Protocol):
    def send(self, message: OutboxMessage) -> str:
        """Deliver a message and return the provider's message id."""
        ...


class LoggingMessageSender:
    """Sender used until a real email/SMS provider is configured: logs and reports success."""

    def send(self, message: OutboxMessage) -> str:
        logger.info(f"Sending {message.channel.value} message {message.id} to {message.recipient}")
        return STUB_PROVIDER_MESSAGE_ID


class OutboxDispatcher:
    """Claims queued outbox messages and hands them to a sender."""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 sender: Optional[MessageSender] = None,
                 batch_size: int = 25, lock_timeout_seconds: int = 300):
        self._session_factory = session_factory
        self.sender = sender or LoggingMessageSender()
        self.batch_size = batch_size
        self.lock_timeout_seconds = lock_timeout_seconds

    def tick(self) -> BatchResult:
        """
        Send one batch of queued messages.

        A message whose send raises is marked failed with the error text; it is
        not retried.

        Raises:
            QueueError: If the batch cannot be claimed
        """
        lock_token = str(uuid.uuid4())
        try:
            with session_scope(self._session_factory) as session:
                rows = claim_rows(
                    session, OutboxMessageModel,
                    criteria=[OutboxMessageModel.status == OutboxStatus.QUEUED.value],
                    order_by=[OutboxMessageModel.created_at.asc(), OutboxMessageModel.id.asc()],
                    limit=self.batch_size,
                    lock_token=lock_token,
                    now=utc_now(),
                    lock_timeout_seconds=self.lock_timeout_seconds,
                    values={},
                )
                messages = [to_outbox_message(row) for row in rows]
        except SQLAlchemyError as e:
            raise QueueError(f"Failed to claim outbox messages: {str(e)}", operation="outbox_claim",
                             lock_token=lock_token)

        result = BatchResult()
        for message in messages:
            try:
                provider_id = self.sender.send(message)
            except Exception as e:
                logger.error(f"Failed to send outbox message {message.id}: {type(e).__name__}: {str(e)}")
                self._finish(message.id, lock_token, status=OutboxStatus.FAILED, error=str(e) or type(e).__name__)
                result.failed += 1
                continue
            self._finish(message.id, lock_token, status=OutboxStatus.SENT, provider_message_id=provider_id)
            result.processed += 1

        if messages:
            logger.info(f"Outbox tick: {result.processed} sent, {result.failed} failed")
        return result

    def _finish(self, message_id: str, lock_token: str, status: OutboxStatus,
                provider_message_id: Optional[str] = None, error: Optional[str] = None) -> None:
        try:
            with session_scope(self._session_factory) as session:
                row = session.get(OutboxMessageModel, message_id)
                if row is None or row.lock_token != lock_token:
                    logger.warning(f"Outbox message {message_id} is no longer owned by this dispatcher")
                    return
                row.status = status.value
                row.locked_at = None
                row.lock_token = None
                if status == OutboxStatus.SENT:
                    row.sent_at = utc_now()
                    row.provider_message_id = provider_message_id
                else:
                    row.error = error
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to update outbox message: {str(e)}", operation="outbox_finish",
                               table=OutboxMessageModel.__tablename__)

    def list_messages(self, run_id: Optional[str] = None) -> List[OutboxMessage]:
        try:
            with session_scope(self._session_factory) as session:
                query = select(OutboxMessageModel).order_by(OutboxMessageModel.created_at.asc())
                if run_id is not None:
                    query = query.where(OutboxMessageModel.run_id == run_id)
                return [to_outbox_message(row) for row in session.execute(query).scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list outbox messages: {str(e)}", operation="list_messages")


def to_outbox_message(row: OutboxMessageModel) -> OutboxMessage:
    return OutboxMessage(
        id=row.id,
        workspace_id=row.workspace_id,
        run_id=row.run_id,
        step_id=row.step_id,
        channel=OutboxChannel(row.channel),
        recipient=row.recipient,
        payload=row.payload or {},
        status=OutboxStatus(row.status),
        created_at=row.created_at,
        sent_at=row.sent_at,
        provider_message_id=row.provider_message_id,
        error=row.error,
    )
