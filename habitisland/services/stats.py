from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import EngineConfig
from ..models import Habit, XpEvent
from . import dates, ledger
from .accounts import get_or_create_account, refresh_global_streak, refresh_habit_counts


# Simple level up logic: every level costs the same amount of XP
def calculate_level(total_xp: int, xp_per_level: int = 100) -> int:
    return max(0, total_xp) // xp_per_level + 1


def xp_for_level(level: int, xp_per_level: int = 100) -> int:
    """Total XP at which ``level`` is reached."""
    return max(0, level - 1) * xp_per_level


def xp_remaining_for_next_level(total_xp: int, xp_per_level: int = 100) -> int:
    level = calculate_level(total_xp, xp_per_level)
    return xp_for_level(level + 1, xp_per_level) - total_xp


def level_progress(total_xp: int, xp_per_level: int = 100) -> float:
    return (max(0, total_xp) % xp_per_level) / xp_per_level


@dataclass(frozen=True)
class LevelSummary:
    level: int
    total_xp: int
    xp_required_for_next_level: int
    xp_remaining_for_next_level: int
    progress_to_next_level: float
    xp_today: int
    xp_this_week: int
    xp_this_month: int


@dataclass(frozen=True)
class HabitStats:
    total_habits: int
    active_habits: int
    completions_today: int
    completion_rate_today: float
    completions_this_week: int
    total_completions: int
    best_current_streak: int
    longest_streak: int
    global_streak: int
    level: LevelSummary


def period_xp(db: Session, owner_id: str, start_day: date, end_day: date) -> int:
    total = db.query(func.coalesce(func.sum(XpEvent.amount), 0)).filter(
        XpEvent.user_id == owner_id,
        XpEvent.logical_day >= dates.day_key(start_day),
        XpEvent.logical_day <= dates.day_key(end_day),
    ).scalar()
    return int(total or 0)


def total_xp(db: Session, owner_id: str) -> int:
    total = db.query(func.coalesce(func.sum(XpEvent.amount), 0)).filter(XpEvent.user_id == owner_id).scalar()
    return int(total or 0)


def level_summary(db: Session, owner_id: str, now: datetime, config: EngineConfig) -> LevelSummary:
    account = get_or_create_account(db, owner_id, now, config)
    # the account total may include XP pulled from other devices that is not in the local ledger
    xp = max(account.total_xp or 0, total_xp(db, owner_id))
    today = dates.logical_day(now, config.timezone, config.grace_period_minutes)
    level = calculate_level(xp, config.xp_per_level)
    return LevelSummary(
        level=level,
        total_xp=xp,
        xp_required_for_next_level=xp_for_level(level + 1, config.xp_per_level),
        xp_remaining_for_next_level=xp_remaining_for_next_level(xp, config.xp_per_level),
        progress_to_next_level=level_progress(xp, config.xp_per_level),
        xp_today=period_xp(db, owner_id, today, today),
        xp_this_week=period_xp(db, owner_id, dates.week_start(today), today),
        xp_this_month=period_xp(db, owner_id, dates.month_start(today), today),
    )


def get_stats(db: Session, owner_id: str, now: datetime, config: EngineConfig) -> HabitStats:
    account = get_or_create_account(db, owner_id, now, config)
    refresh_habit_counts(db, account)
    refresh_global_streak(db, account, now, config)

    habits = db.query(Habit).filter(Habit.user_id == owner_id).all()
    active = [h for h in habits if h.is_active]
    today = dates.logical_day(now, config.timezone, config.grace_period_minutes)
    done_today = ledger.habits_completed_on(db, owner_id, today)
    week = ledger.for_owner_between(db, owner_id, dates.week_start(today), today)

    return HabitStats(
        total_habits=account.total_habits,
        active_habits=account.active_habits,
        completions_today=len(done_today),
        completion_rate_today=(len(done_today & {h.id for h in active}) / len(active)) if active else 0.0,
        completions_this_week=len(week),
        total_completions=sum(h.total_completions or 0 for h in habits),
        best_current_streak=max((h.current_streak or 0 for h in active), default=0),
        longest_streak=max((h.longest_streak or 0 for h in habits), default=0),
        global_streak=account.global_streak,
        level=level_summary(db, owner_id, now, config),
    )
