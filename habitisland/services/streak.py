"""Streak reconstruction from the completion ledger.

The cached ``current_streak`` / ``longest_streak`` on a habit are only an
optimisation. ``compute_streak`` is the source of truth and
``calculate_streak`` uses it to validate and repair the cache.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import EngineConfig
from ..enums import StreakStatus
from ..models import Habit, ShieldUse
from . import dates, ledger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreakSummary:
    current_streak: int
    longest_streak: int
    is_active: bool
    status: StreakStatus
    completed_today: bool
    last_completed_day: Optional[date] = None
    streak_start_day: Optional[date] = None
    consecutive_days: int = 0


def compute_streak(
    completion_days: Iterable[date],
    today: date,
    shield_days: Iterable[date] = (),
    shield_active: bool = False,
) -> StreakSummary:
    """
    Walk consecutive logical days back from the most recent covered day.
    A shield day bridges a gap but is not itself counted as a streak day.
    Same-day duplicates collapse; days after ``today`` are ignored.
    """
    real = {d for d in completion_days if d <= today}
    shields = {d for d in shield_days if d <= today}
    covered = real | shields

    if not real:
        return StreakSummary(0, 0, False, StreakStatus.BROKEN, False)

    yesterday = today - timedelta(days=1)
    last_covered = max(covered)
    last_real = max(real)

    current = 0
    run_length = 0
    start = None
    if last_covered >= yesterday:
        cursor = last_covered
        while cursor in covered:
            run_length += 1
            if cursor in real:
                current += 1
                start = cursor
            cursor -= timedelta(days=1)

    longest = 0
    run = 0
    previous = None
    for day in sorted(covered):
        if previous is None or (day - previous).days != 1:
            run = 0
        if day in real:
            run += 1
        longest = max(longest, run)
        previous = day

    completed_today = today in real
    if completed_today:
        status = StreakStatus.ACTIVE
    elif current > 0 and (shield_active or today in shields):
        status = StreakStatus.PROTECTED
    elif current > 0 and last_covered == yesterday:
        status = StreakStatus.AT_RISK
    else:
        status = StreakStatus.BROKEN

    return StreakSummary(
        current_streak=current,
        longest_streak=max(longest, current),
        is_active=status is not StreakStatus.BROKEN,
        status=status,
        completed_today=completed_today,
        last_completed_day=last_real,
        streak_start_day=start,
        consecutive_days=run_length,
    )


def next_milestone(streak: int, milestones=(7, 30)) -> Optional[int]:
    for m in sorted(milestones):
        if streak < m:
            return m
    return None


def days_until_next_milestone(streak: int, milestones=(7, 30)) -> Optional[int]:
    m = next_milestone(streak, milestones)
    return None if m is None else m - streak


def qualifies_for_milestone(streak: int, milestones=(7, 30)) -> bool:
    return streak in milestones


def is_shield_active(habit: Habit, now: datetime, config: EngineConfig) -> bool:
    used_at = dates.ensure_utc(habit.shield_used_at)
    if used_at is None:
        return False
    return used_at <= dates.ensure_utc(now) < used_at + timedelta(hours=config.shield_valid_hours)


def shield_days_for(db: Session, habit_id: str):
    rows = db.query(ShieldUse.covered_day).filter(ShieldUse.habit_id == habit_id).all()
    return [dates.parse_day(r[0]) for r in rows]


def summarize_habit(db: Session, habit: Habit, now: datetime, config: EngineConfig) -> StreakSummary:
    today = dates.logical_day(now, config.timezone, config.grace_period_minutes)
    completion_days = [dates.parse_day(k) for k in ledger.completion_days(db, habit.id)]
    return compute_streak(
        completion_days,
        today,
        shield_days=shield_days_for(db, habit.id),
        shield_active=is_shield_active(habit, now, config),
    )


def repair_streak_cache(db: Session, habit: Habit, summary: StreakSummary,
                        config: EngineConfig) -> Tuple[StreakSummary, bool]:
    """Bring the cached streak fields in line with ``summary``.

    Returns the summary that was applied and whether anything changed.
    """
    changed = False
    earliest = ledger.earliest_completion_day(db, habit.id)
    truncated = (
        summary.streak_start_day is not None
        and earliest is not None
        and dates.day_key(summary.streak_start_day) == earliest
        and habit.current_streak > summary.current_streak
    )
    if truncated:
        # the run reaches the edge of the locally held window; trust the cache
        summary = replace(summary, current_streak=habit.current_streak,
                          longest_streak=max(summary.longest_streak, habit.current_streak),
                          streak_start_day=None)
    if habit.current_streak != summary.current_streak:
        logger.info("Repairing current streak of %s: %s -> %s", habit.id, habit.current_streak, summary.current_streak)
        habit.current_streak = summary.current_streak
        changed = True
    # the local ledger only holds a window of history, so never shrink the best streak
    longest = max(habit.longest_streak or 0, summary.longest_streak, habit.current_streak)
    if habit.longest_streak != longest:
        habit.longest_streak = longest
        changed = True
    summary = replace(summary, longest_streak=longest)
    latest = ledger.latest_completion(db, habit.id)
    if latest is not None and dates.ensure_utc(habit.last_completed_at) != dates.ensure_utc(latest.completed_at):
        habit.last_completed_at = latest.completed_at
        changed = True
    if summary.streak_start_day is not None:
        start, _ = dates.day_bounds_utc(summary.streak_start_day, config.timezone, config.grace_period_minutes)
        if dates.ensure_utc(habit.streak_start_at) != start:
            habit.streak_start_at = start
            changed = True
    return summary, changed


def calculate_streak(db: Session, habit: Habit, now: datetime, config: EngineConfig) -> StreakSummary:
    # repairs are derived state, not edits: updated_at is left alone
    summary, _ = repair_streak_cache(db, habit, summarize_habit(db, habit, now, config), config)
    logger.debug("Streak for %s: current=%s longest=%s status=%s",
                 habit.id, summary.current_streak, summary.longest_streak, summary.status.value)
    return summary
