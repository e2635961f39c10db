"""Append-only completion log.

The ledger never rejects duplicates itself; the habit aggregate checks for an
existing completion on the same logical day before appending.
"""
import uuid
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import EngineConfig
from ..models import Completion
from . import dates


def append(db: Session, *, habit_id: str, owner_id: str, completed_at: datetime, config: EngineConfig,
           now: datetime, note: Optional[str] = None, xp_earned: int = 0, is_bonus: bool = False,
           completion_id: Optional[str] = None) -> Completion:
    completion = Completion(
        id=completion_id or str(uuid.uuid4()),
        habit_id=habit_id,
        user_id=owner_id,
        completed_at=dates.ensure_utc(completed_at),
        logical_day=dates.day_key(dates.logical_day(completed_at, config.timezone, config.grace_period_minutes)),
        note=note,
        xp_earned=xp_earned,
        is_bonus=is_bonus,
        created_at=now,
    )
    db.add(completion)
    db.flush()
    return completion


def completion_days(db: Session, habit_id: str) -> List[str]:
    rows = db.query(Completion.logical_day).filter(Completion.habit_id == habit_id).distinct().all()
    return [r[0] for r in rows]


def earliest_completion_day(db: Session, habit_id: str) -> Optional[str]:
    return db.query(func.min(Completion.logical_day)).filter(Completion.habit_id == habit_id).scalar()


def latest_completion(db: Session, habit_id: str) -> Optional[Completion]:
    return (
        db.query(Completion)
        .filter(Completion.habit_id == habit_id)
        .order_by(Completion.completed_at.desc())
        .first()
    )


def exists_on_day(db: Session, habit_id: str, day: date) -> bool:
    return db.query(Completion.id).filter(
        Completion.habit_id == habit_id,
        Completion.logical_day == dates.day_key(day),
    ).first() is not None


def for_owner_between(db: Session, owner_id: str, start_day: date, end_day: date) -> List[Completion]:
    """Completions whose logical day lies in [start_day, end_day]."""
    return (
        db.query(Completion)
        .filter(
            Completion.user_id == owner_id,
            Completion.logical_day >= dates.day_key(start_day),
            Completion.logical_day <= dates.day_key(end_day),
        )
        .order_by(Completion.completed_at.desc())
        .all()
    )


def habits_completed_on(db: Session, owner_id: str, day: date) -> set:
    rows = db.query(Completion.habit_id).filter(
        Completion.user_id == owner_id,
        Completion.logical_day == dates.day_key(day),
    ).distinct().all()
    return {r[0] for r in rows}


def get(db: Session, completion_id: str) -> Optional[Completion]:
    return db.query(Completion).filter(Completion.id == completion_id).first()
