"""Row claiming shared by the step and outbox work queues."""

from datetime import datetime, timedelta
from typing import Any, Dict, List

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session


def claim_rows(session: Session, model, criteria: List[Any], order_by: List[Any], limit: int,
               lock_token: str, now: datetime, lock_timeout_seconds: int,
               values: Dict[str, Any]) -> List[Any]:
    """
    Claim up to ``limit`` rows of ``model`` matching ``criteria`` for ``lock_token``.

    A row is claimable when it matches ``criteria`` and is unlocked or holds a
    lock older than ``lock_timeout_seconds``. The model must carry
    ``locked_at`` and ``lock_token`` columns. Returns the claimed ORM rows.
    """
    stale_cutoff = now - timedelta(seconds=lock_timeout_seconds)
    claimable = [
        *criteria,
        or_(model.locked_at.is_(None), model.locked_at < stale_cutoff),
    ]

    candidate_ids = list(session.execute(
        select(model.id)
        .where(*claimable)
        .order_by(*order_by)
        .limit(limit)
        .with_for_update(skip_locked=True)
    ).scalars())
    if not candidate_ids:
        return []

    session.execute(
        update(model)
        .where(model.id.in_(candidate_ids), *claimable)
        .values(locked_at=now, lock_token=lock_token, **values)
        .execution_options(synchronize_session=False)
    )
    return list(session.execute(
        select(model)
        .where(model.id.in_(candidate_ids), model.lock_token == lock_token)
        .order_by(*order_by)
    ).scalars())
