"""Durable, at-least-once queue of domain events awaiting trigger evaluation.

Coordination between overlapping consumers happens entirely through the
``locked_at`` / ``lock_token`` / ``processed_at`` columns:

* an item is *claimable* while ``processed_at`` is unset and it is either
  unlocked or its lock is older than ``lock_timeout_seconds``;
* claiming sets ``locked_at`` and ``lock_token`` with a conditional UPDATE that
  re-checks claimability, so of two racing consumers exactly one wins a row;
* ``complete`` and ``release`` only touch rows still owned by the caller's
  token, which makes both safe to call after the lock was lost.
"""

import uuid
from datetime import timedelta
from typing import Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import DropReason, Event, QueueItem, QueueStats, utc_now
from ..storage.database import get_session_factory
from ..storage.locking import claim_rows
from ..storage.models import DroppedEventModel, QueueItemModel
from .exceptions import QueueError, StorageError
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_LOCK_TIMEOUT_SECONDS = 300


class EventQueue:
    """Exclusive-lock event queue backed by the ``workflow_event_queue`` table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None,
                 lock_timeout_seconds: int = DEFAULT_LOCK_TIMEOUT_SECONDS):
        """
        Initialize the queue.

        Args:
            session_factory: Optional session factory. Defaults to the global one.
            lock_timeout_seconds: Age after which a lock is considered abandoned
        """
        if lock_timeout_seconds < 1:
            raise ValueError("lock_timeout_seconds must be at least 1")
        self._session_factory = session_factory
        self.lock_timeout_seconds = lock_timeout_seconds

    def _get_session(self) -> Session:
        factory = self._session_factory or get_session_factory()
        return factory()

    def enqueue(self, event: Event, idempotency_key: Optional[str] = None) -> QueueItem:
        """
        Append a new unprocessed, unlocked item.

        No deduplication is performed; producers must not enqueue the same fact twice.

        Raises:
            StorageError: If the store is unavailable
        """
        session = self._get_session()
        try:
            row = QueueItemModel(
                workspace_id=event.workspace_id,
                event_type=event.event_type,
                entity_id=event.entity_id,
                payload=dict(event.payload),
                idempotency_key=idempotency_key or str(uuid.uuid4()),
                attempts=0,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            logger.debug(f"Enqueued {event.event_type} event {row.id} for workspace {event.workspace_id}")
            return self._to_item(row)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to enqueue event: {str(e)}")
            raise StorageError(f"Failed to enqueue event: {str(e)}", operation="enqueue",
                               table=QueueItemModel.__tablename__)
        finally:
            session.close()

    def lock_batch(self, limit: int, lock_token: str) -> List[QueueItem]:
        """
        Claim up to ``limit`` claimable items, oldest first, for ``lock_token``.

        Selection and claim run in one transaction. On PostgreSQL the candidate
        rows are selected ``FOR UPDATE SKIP LOCKED``; on every backend the claim
        itself is a conditional UPDATE, so a row can only ever be won by one token.

        Returns:
            The items actually claimed; fewer than ``limit`` is normal under contention.

        Raises:
            QueueError: If the store fails; the caller's tick must abort.
        """
        if limit <= 0:
            return []
        if not lock_token:
            raise ValueError("lock_token cannot be empty")

        session = self._get_session()
        try:
            rows = claim_rows(
                session,
                QueueItemModel,
                criteria=[QueueItemModel.processed_at.is_(None)],
                order_by=[QueueItemModel.created_at.asc(), QueueItemModel.id.asc()],
                limit=limit,
                lock_token=lock_token,
                now=utc_now(),
                lock_timeout_seconds=self.lock_timeout_seconds,
                values={"attempts": QueueItemModel.attempts + 1},
            )
            claimed = [self._to_item(row) for row in rows]
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to lock event batch: {str(e)}")
            raise QueueError(f"Failed to lock event batch: {str(e)}", operation="lock_batch",
                             lock_token=lock_token)
        finally:
            session.close()

        if claimed:
            logger.info(f"Locked {len(claimed)} of {limit} requested queue items")
        return claimed

    def complete(self, ids: Iterable[int], lock_token: str) -> int:
        """
        Mark items processed, but only those still owned by ``lock_token``.

        Idempotent: already completed items and items whose lock was reassigned
        are left untouched.

        Returns:
            Number of items transitioned to processed
        """
        id_list = list(ids)
        if not id_list:
            return 0

        affected = self._update_owned(id_list, lock_token, {"processed_at": utc_now()}, "complete")
        if affected < len(id_list):
            logger.warning(f"Completed {affected} of {len(id_list)} items; the rest were no longer owned by this lock")
        return affected

    def release(self, ids: Iterable[int], lock_token: str) -> int:
        """
        Clear the lock of items still owned by ``lock_token`` so the next
        ``lock_batch`` can pick them up again.

        Returns:
            Number of items released
        """
        id_list = list(ids)
        if not id_list:
            return 0

        return self._update_owned(id_list, lock_token, {"locked_at": None, "lock_token": None}, "release")

    def _update_owned(self, ids: List[int], lock_token: str, values: dict, operation: str) -> int:
        session = self._get_session()
        try:
            result = session.execute(
                update(QueueItemModel)
                .where(
                    QueueItemModel.id.in_(ids),
                    QueueItemModel.lock_token == lock_token,
                    QueueItemModel.processed_at.is_(None),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to {operation} queue items: {str(e)}")
            raise QueueError(f"Failed to {operation} queue items: {str(e)}", operation=operation,
                             lock_token=lock_token)
        finally:
            session.close()

    def recover_stale_locks(self) -> int:
        """Clear every lock older than the lock timeout; returns how many were cleared."""
        stale_cutoff = self._stale_cutoff(utc_now())
        session = self._get_session()
        try:
            result = session.execute(
                update(QueueItemModel)
                .where(
                    QueueItemModel.processed_at.is_(None),
                    QueueItemModel.locked_at.is_not(None),
                    QueueItemModel.locked_at < stale_cutoff,
                )
                .values(locked_at=None, lock_token=None)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            recovered = result.rowcount or 0
            if recovered:
                logger.warning(f"Recovered {recovered} stale queue locks older than {self.lock_timeout_seconds}s")
            return recovered
        except SQLAlchemyError as e:
            session.rollback()
            raise QueueError(f"Failed to recover stale locks: {str(e)}", operation="recover_stale_locks")
        finally:
            session.close()

    def record_dropped(self, item: QueueItem, reason: DropReason, detail: str = "") -> None:
        """
        Persist a diagnostic record for an item completed without evaluation.

        Raises:
            StorageError: If the record cannot be written
        """
        session = self._get_session()
        try:
            session.add(DroppedEventModel(
                queue_item_id=item.id,
                workspace_id=item.event.workspace_id,
                event_type=item.event.event_type,
                reason=reason.value,
                detail=detail[:2000],
                created_at=utc_now(),
            ))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"Failed to record dropped event: {str(e)}", operation="record_dropped",
                               table=DroppedEventModel.__tablename__)
        finally:
            session.close()

    def get(self, item_id: int) -> Optional[QueueItem]:
        session = self._get_session()
        try:
            row = session.get(QueueItemModel, item_id)
            return self._to_item(row) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load queue item: {str(e)}", operation="get")
        finally:
            session.close()

    def pending_count(self) -> int:
        """Number of items not yet processed, locked or not."""
        session = self._get_session()
        try:
            return session.execute(
                select(func.count()).select_from(QueueItemModel).where(QueueItemModel.processed_at.is_(None))
            ).scalar_one()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to count pending items: {str(e)}", operation="pending_count")
        finally:
            session.close()

    def stats(self) -> QueueStats:
        """Pending, in-flight and processed counts."""
        session = self._get_session()
        try:
            def count(*criteria) -> int:
                return session.execute(
                    select(func.count()).select_from(QueueItemModel).where(*criteria)
                ).scalar_one()

            return QueueStats(
                pending=count(QueueItemModel.processed_at.is_(None), QueueItemModel.locked_at.is_(None)),
                in_flight=count(QueueItemModel.processed_at.is_(None), QueueItemModel.locked_at.is_not(None)),
                processed=count(QueueItemModel.processed_at.is_not(None)),
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to read queue stats: {str(e)}", operation="stats")
        finally:
            session.close()

    def _stale_cutoff(self, now):
        return now - timedelta(seconds=self.lock_timeout_seconds)

    @staticmethod
    def _to_item(row: QueueItemModel) -> QueueItem:
        """
        Convert a stored row. Rows written by other producers are not
        guaranteed to hold a valid event: a non-object payload reads as ``{}``
        and blank identifiers flag the item ``malformed`` instead of raising.
        """
        payload = row.payload if isinstance(row.payload, dict) else {}
        malformed = None
        try:
            event = Event(
                workspace_id=row.workspace_id,
                event_type=row.event_type,
                entity_id=row.entity_id,
                payload=payload,
            )
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            malformed = f"invalid event fields: {fields}"
            event = Event.model_construct(
                workspace_id=row.workspace_id or "",
                event_type=row.event_type or "",
                entity_id=row.entity_id or "",
                payload=payload,
            )

        return QueueItem(
            id=row.id,
            event=event,
            malformed=malformed,
            idempotency_key=row.idempotency_key,
            created_at=row.created_at,
            processed_at=row.processed_at,
            locked_at=row.locked_at,
            lock_token=row.lock_token,
            attempts=row.attempts or 0,
        )
