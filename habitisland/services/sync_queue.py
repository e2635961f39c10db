"""Bounded queue of local mutations waiting to be pushed.

Upserts for the same entity coalesce into one row, so editing a habit ten
times offline costs one slot. When the queue is full the new mutation is
refused with ``QueueFull``; nothing already queued is dropped.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..config import EngineConfig
from ..enums import EntityType, OperationType, SyncStatus
from ..models import SyncOperation
from ..results import Err, Ok, QueueFull

logger = logging.getLogger(__name__)


def operation_id(entity_type: EntityType, entity_id: str) -> str:
    return f"{entity_type.value}:{entity_id}"


def size(db: Session, owner_id: str) -> int:
    return db.query(SyncOperation).filter(SyncOperation.user_id == owner_id).count()


def get(db: Session, entity_type: EntityType, entity_id: str) -> Optional[SyncOperation]:
    return db.query(SyncOperation).filter(SyncOperation.id == operation_id(entity_type, entity_id)).first()


def has_pending(db: Session, entity_type: EntityType, entity_id: str) -> bool:
    return get(db, entity_type, entity_id) is not None


def enqueue(db: Session, *, owner_id: str, entity_type: EntityType, entity_id: str, payload: dict,
            now: datetime, config: EngineConfig, operation: OperationType = OperationType.UPSERT):
    existing = get(db, entity_type, entity_id)
    if existing is not None:
        existing.operation = operation.value
        existing.payload = payload
        existing.status = SyncStatus.PENDING.value
        existing.retry_count = 0
        existing.last_error = None
        return Ok(existing)

    current = size(db, owner_id)
    if current >= config.sync_queue_limit:
        logger.warning("Sync queue full for %s (%s/%s)", owner_id, current, config.sync_queue_limit)
        return Err(QueueFull(current_size=current, max_size=config.sync_queue_limit))

    op = SyncOperation(
        id=operation_id(entity_type, entity_id),
        user_id=owner_id,
        entity_type=entity_type.value,
        operation=operation.value,
        entity_id=entity_id,
        payload=payload,
        status=SyncStatus.PENDING.value,
        retry_count=0,
        increment_due=False,
        created_at=now,
    )
    db.add(op)
    db.flush()
    return Ok(op)


def pending(db: Session, owner_id: str) -> List[SyncOperation]:
    """Operations still eligible for push, oldest first."""
    return (
        db.query(SyncOperation)
        .filter(SyncOperation.user_id == owner_id, SyncOperation.status != SyncStatus.FAILED.value)
        .order_by(SyncOperation.created_at.asc())
        .all()
    )


def mark_syncing(op: SyncOperation, now: datetime) -> None:
    op.status = SyncStatus.SYNCING.value
    op.last_attempt_at = now


def mark_synced(db: Session, op: SyncOperation) -> None:
    db.delete(op)


def mark_failed(op: SyncOperation, error: str, now: datetime, config: EngineConfig, retryable: bool = True) -> None:
    op.retry_count = (op.retry_count or 0) + 1
    op.last_error = error
    op.last_attempt_at = now
    if not retryable or op.retry_count >= config.sync_max_retries:
        op.status = SyncStatus.FAILED.value
        logger.warning("Sync operation %s gave up after %s attempts: %s", op.id, op.retry_count, error)
    else:
        op.status = SyncStatus.PENDING.value


def retry_failed(db: Session, owner_id: str) -> int:
    failed = db.query(SyncOperation).filter(
        SyncOperation.user_id == owner_id,
        SyncOperation.status == SyncStatus.FAILED.value,
    ).all()
    for op in failed:
        op.status = SyncStatus.PENDING.value
        op.retry_count = 0
    return len(failed)


def discard(db: Session, entity_type: EntityType, entity_id: str) -> None:
    op = get(db, entity_type, entity_id)
    if op is not None:
        db.delete(op)


def operations(db: Session, owner_id: str, entity_type: Optional[EntityType] = None) -> List[SyncOperation]:
    """Every queued operation for the owner, failed ones included."""
    q = db.query(SyncOperation).filter(SyncOperation.user_id == owner_id)
    if entity_type is not None:
        q = q.filter(SyncOperation.entity_type == entity_type.value)
    return q.order_by(SyncOperation.created_at.asc()).all()
