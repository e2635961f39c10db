"""Habit aggregate: validated commands over a single habit.

Functions here flush but never commit; the caller owns the transaction and
rolls it back when a command returns ``Err`` so a rejected command leaves no
partial writes behind.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config import EngineConfig
from ..enums import DecayState, EntityType, GrowthStage, HabitCategory, HabitFrequency, OperationType
from ..models import Completion, Habit, ShieldUse, UserAccount
from ..results import (AlreadyCompletedToday, CannotDeleteLast, DuplicateName, Err, HabitLimitExceeded,
                       NoActiveStreak, NoShieldsAvailable, NotFound, Ok, ValidationFailure, ZoneCapacityExceeded,
                       ZoneLocked)
from . import accounts, dates, growth, ledger, streak, sync_queue, xp

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "name", "description", "category", "frequency", "custom_frequency_days",
    "zone_id", "reminder_time", "is_active",
}


@dataclass(frozen=True)
class CompletionResult:
    habit: Habit
    completion: Completion
    xp_awarded: int
    had_bonus: bool
    bonus_types: Tuple[str, ...]
    new_streak: int
    stage_changed: bool
    leveled_up: bool


@dataclass(frozen=True)
class ShieldResult:
    habit: Habit
    shields_remaining: int
    streak_protected: int


@dataclass(frozen=True)
class DecayResult:
    habit: Habit
    decay_applied: bool
    decay_severity: int
    decay_state: DecayState
    days_inactive: int
    growth_levels_lost: int
    new_growth_level: int


# --- lookups ---

def get_habit(db: Session, habit_id: str) -> Optional[Habit]:
    return db.query(Habit).filter(Habit.id == habit_id).first()


def count_active(db: Session, owner_id: str, zone_id: Optional[str] = None) -> int:
    q = db.query(Habit).filter(Habit.user_id == owner_id, Habit.is_active.is_(True))
    if zone_id is not None:
        q = q.filter(Habit.zone_id == zone_id)
    return q.count()


def name_exists(db: Session, owner_id: str, name: str, exclude_id: Optional[str] = None) -> bool:
    q = db.query(Habit.id).filter(
        Habit.user_id == owner_id,
        Habit.is_active.is_(True),
        func.lower(Habit.name) == name.strip().lower(),
    )
    if exclude_id:
        q = q.filter(Habit.id != exclude_id)
    return q.first() is not None


def query_habits(db: Session, owner_id: str, active_only: bool = False, zone_id: Optional[str] = None,
                 category: Optional[str] = None) -> List[Habit]:
    q = db.query(Habit).filter(Habit.user_id == owner_id)
    if active_only:
        q = q.filter(Habit.is_active.is_(True))
    if zone_id:
        q = q.filter(Habit.zone_id == zone_id)
    if category:
        q = q.filter(Habit.category == category)
    return q.order_by(Habit.created_at.desc()).all()


# --- validation ---

def validate_name(name, config: EngineConfig):
    cleaned = (name or "").strip()
    if not cleaned:
        return Err(ValidationFailure("Habit name is required", field_name="name"))
    if len(cleaned) > config.habit_name_max_length:
        return Err(ValidationFailure(
            f"Habit name must be at most {config.habit_name_max_length} characters", field_name="name"))
    return Ok(cleaned)


def _parse_enum(enum_cls, value, field_name: str):
    try:
        return Ok(enum_cls(value.value if hasattr(value, "value") else value))
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        return Err(ValidationFailure(f"Invalid {field_name} '{value}' (expected one of: {allowed})",
                                     field_name=field_name))


def _validate_frequency(frequency: HabitFrequency, custom_days: Optional[str]):
    if frequency is not HabitFrequency.CUSTOM:
        return Ok(None)
    days = [d.strip() for d in (custom_days or "").split(",") if d.strip()]
    if not days or any(not d.isdigit() or not 1 <= int(d) <= 7 for d in days):
        return Err(ValidationFailure("Custom frequency needs weekdays 1-7, e.g. '1,3,5'",
                                     field_name="custom_frequency_days"))
    return Ok(",".join(sorted(set(days), key=int)))


def _check_zone(db: Session, account: UserAccount, zone_id: str, config: EngineConfig,
                exclude_id: Optional[str] = None):
    zone = config.zone(zone_id)
    if zone is None:
        return Err(ValidationFailure(f"Unknown zone '{zone_id}'", field_name="zone_id"))
    if zone_id not in (account.unlocked_zones or []) and (account.total_xp or 0) < zone.xp_required:
        return Err(ZoneLocked(zone_id=zone_id, xp_required=zone.xp_required, current_xp=account.total_xp or 0))
    in_zone = count_active(db, account.id, zone_id)
    if exclude_id:
        other = get_habit(db, exclude_id)
        if other is not None and other.zone_id == zone_id and other.is_active:
            in_zone -= 1
    if in_zone >= zone.max_habits:
        return Err(ZoneCapacityExceeded(zone_id=zone_id, current_count=in_zone, max_habits=zone.max_habits))
    return Ok(zone)


def _check_habit_limit(db: Session, account: UserAccount, now: datetime, config: EngineConfig):
    active = count_active(db, account.id)
    allowed = accounts.max_habits(account, now, config)
    if active >= allowed:
        return Err(HabitLimitExceeded(current_count=active, max_allowed=allowed,
                                      is_premium=accounts.is_premium_active(account, now)))
    return Ok(active)


# --- sync bookkeeping ---

def enqueue_changes(db: Session, config: EngineConfig, now: datetime, owner_id: str,
                    habits: Iterable[Habit] = (), completions: Iterable[Completion] = (),
                    account: Optional[UserAccount] = None):
    """Queue upserts for everything touched by a command; first failure wins."""
    items = [(EntityType.HABIT, h.id, h.to_dict()) for h in habits]
    items += [(EntityType.COMPLETION, c.id, c.to_dict()) for c in completions]
    if account is not None:
        items.append((EntityType.USER, account.id, account.to_dict()))
    for entity_type, entity_id, payload in items:
        result = sync_queue.enqueue(db, owner_id=owner_id, entity_type=entity_type, entity_id=entity_id,
                                    payload=payload, now=now, config=config)
        if not result.is_ok:
            return result
    return Ok(None)


# --- decay ---

def last_active_day(db: Session, habit: Habit, config: EngineConfig):
    """Most recent completed or shield-covered logical day, if any."""
    candidates = []
    latest = ledger.latest_completion(db, habit.id)
    if latest is not None:
        candidates.append(dates.parse_day(latest.logical_day))
    if habit.last_completed_at is not None:
        candidates.append(dates.logical_day(habit.last_completed_at, config.timezone, config.grace_period_minutes))
    if habit.shield_day:
        candidates.append(dates.parse_day(habit.shield_day))
    return max(candidates) if candidates else None


def apply_decay(db: Session, habit: Habit, now: datetime, config: EngineConfig) -> growth.DecayEvaluation:
    today = dates.logical_day(now, config.timezone, config.grace_period_minutes)
    evaluation = growth.evaluate_decay(habit.growth_level or 0, habit.decay_severity_applied or 0,
                                       last_active_day(db, habit, config), today)
    habit.decay_state = evaluation.state.value
    if evaluation.decay_applied:
        habit.growth_level = evaluation.new_level
        habit.decay_counter = (habit.decay_counter or 0) + 1
        habit.decay_severity_applied = evaluation.severity_applied
        habit.updated_at = now
        logger.warning("Decay on %s: %s days inactive, lost %s growth levels",
                       habit.id, evaluation.days_inactive, evaluation.levels_lost)
    return evaluation


def evaluate_decay(db: Session, habit_id: str, now: datetime, config: EngineConfig):
    habit = get_habit(db, habit_id)
    if habit is None:
        return Err(NotFound(entity="Habit", entity_id=habit_id))
    evaluation = apply_decay(db, habit, now, config)
    if evaluation.decay_applied:
        queued = enqueue_changes(db, config, now, habit.user_id, habits=[habit])
        if not queued.is_ok:
            return queued
    return Ok(DecayResult(
        habit=habit,
        decay_applied=evaluation.decay_applied,
        decay_severity=evaluation.severity,
        decay_state=evaluation.state,
        days_inactive=evaluation.days_inactive,
        growth_levels_lost=evaluation.levels_lost,
        new_growth_level=habit.growth_level,
    ))


# --- commands ---

def create_habit(db: Session, config: EngineConfig, now: datetime, *, owner_id: str, name: str,
                 category, frequency, zone_id: str, reminder_time: Optional[str] = None,
                 description: Optional[str] = None, custom_frequency_days: Optional[str] = None):
    named = validate_name(name, config)
    if not named.is_ok:
        return named
    cat = _parse_enum(HabitCategory, category, "category")
    if not cat.is_ok:
        return cat
    freq = _parse_enum(HabitFrequency, frequency, "frequency")
    if not freq.is_ok:
        return freq
    custom = _validate_frequency(freq.value, custom_frequency_days)
    if not custom.is_ok:
        return custom
    if not zone_id:
        return Err(ValidationFailure("Zone is required", field_name="zone_id"))

    account = accounts.get_or_create_account(db, owner_id, now, config)
    for check in (_check_habit_limit(db, account, now, config), _check_zone(db, account, zone_id, config)):
        if not check.is_ok:
            logger.warning("CreateHabit rejected for %s: %s", owner_id, check.failure)
            return check
    if name_exists(db, owner_id, named.value):
        return Err(DuplicateName(name=named.value))

    habit = Habit(
        id=str(uuid.uuid4()),
        user_id=owner_id,
        name=named.value,
        description=description,
        category=cat.value.value,
        frequency=freq.value.value,
        custom_frequency_days=custom.value,
        zone_id=zone_id,
        reminder_time=reminder_time,
        is_active=True,
        current_streak=0,
        longest_streak=0,
        total_completions=0,
        growth_stage=GrowthStage.SEED.value,
        growth_level=0,
        decay_state=DecayState.HEALTHY.value,
        decay_counter=0,
        decay_severity_applied=0,
        created_at=now,
        updated_at=now,
    )
    db.add(habit)
    db.flush()
    accounts.refresh_habit_counts(db, account)
    account.updated_at = now

    queued = enqueue_changes(db, config, now, owner_id, habits=[habit], account=account)
    if not queued.is_ok:
        return queued
    logger.info("Created habit %s (%s) for %s", habit.id, habit.name, owner_id)
    return Ok(habit)


def update_habit(db: Session, config: EngineConfig, now: datetime, habit_id: str, fields: dict):
    habit = get_habit(db, habit_id)
    if habit is None:
        return Err(NotFound(entity="Habit", entity_id=habit_id))
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        return Err(ValidationFailure(f"Fields cannot be updated: {', '.join(sorted(unknown))}"))

    changes = dict(fields)
    account = accounts.get_or_create_account(db, habit.user_id, now, config)

    if "name" in changes:
        named = validate_name(changes["name"], config)
        if not named.is_ok:
            return named
        if name_exists(db, habit.user_id, named.value, exclude_id=habit.id):
            return Err(DuplicateName(name=named.value))
        changes["name"] = named.value
    if "category" in changes:
        cat = _parse_enum(HabitCategory, changes["category"], "category")
        if not cat.is_ok:
            return cat
        changes["category"] = cat.value.value
    if "frequency" in changes or "custom_frequency_days" in changes:
        freq = _parse_enum(HabitFrequency, changes.get("frequency", habit.frequency), "frequency")
        if not freq.is_ok:
            return freq
        custom = _validate_frequency(freq.value, changes.get("custom_frequency_days", habit.custom_frequency_days))
        if not custom.is_ok:
            return custom
        changes["frequency"] = freq.value.value
        changes["custom_frequency_days"] = custom.value
    if "zone_id" in changes and changes["zone_id"] != habit.zone_id:
        zone = _check_zone(db, account, changes["zone_id"], config, exclude_id=habit.id)
        if not zone.is_ok:
            return zone
    if "is_active" in changes:
        changes["is_active"] = bool(changes["is_active"])
        if changes["is_active"] and not habit.is_active:
            limit = _check_habit_limit(db, account, now, config)
            if not limit.is_ok:
                return limit
        if not changes["is_active"] and habit.is_active and count_active(db, habit.user_id) <= 1:
            return Err(CannotDeleteLast(habit_id=habit.id))

    for key, value in changes.items():
        setattr(habit, key, value)
    habit.updated_at = now
    db.flush()
    accounts.refresh_habit_counts(db, account)

    queued = enqueue_changes(db, config, now, habit.user_id, habits=[habit], account=account)
    if not queued.is_ok:
        return queued
    logger.info("Updated habit %s: %s", habit.id, sorted(changes))
    return Ok(habit)


def delete_habit(db: Session, config: EngineConfig, now: datetime, habit_id: str, hard: bool = False):
    habit = get_habit(db, habit_id)
    if habit is None:
        return Err(NotFound(entity="Habit", entity_id=habit_id))
    if habit.is_active and count_active(db, habit.user_id) <= 1:
        logger.warning("Refusing to delete last active habit %s", habit.id)
        return Err(CannotDeleteLast(habit_id=habit.id))

    owner_id = habit.user_id
    account = accounts.get_or_create_account(db, owner_id, now, config)
    if hard:
        sync_queue.discard(db, EntityType.HABIT, habit.id)
        db.delete(habit)
        db.flush()
        queued = sync_queue.enqueue(db, owner_id=owner_id, entity_type=EntityType.HABIT, entity_id=habit_id,
                                    payload={"id": habit_id}, now=now, config=config,
                                    operation=OperationType.DELETE)
        if not queued.is_ok:
            return queued
        accounts.refresh_habit_counts(db, account)
        account.updated_at = now
        queued = enqueue_changes(db, config, now, owner_id, account=account)
    else:
        habit.is_active = False
        habit.updated_at = now
        db.flush()
        accounts.refresh_habit_counts(db, account)
        account.updated_at = now
        queued = enqueue_changes(db, config, now, owner_id, habits=[habit], account=account)
    if not queued.is_ok:
        return queued
    logger.info("Deleted habit %s (hard: %s)", habit_id, hard)
    return Ok(None)


def get_habits(db: Session, config: EngineConfig, now: datetime, owner_id: str, active_only: bool = False,
               zone_id: Optional[str] = None, category=None):
    if category is not None:
        cat = _parse_enum(HabitCategory, category, "category")
        if not cat.is_ok:
            return cat
        category = cat.value.value
    habits = query_habits(db, owner_id, active_only=active_only, zone_id=zone_id, category=category)
    decayed = []
    for habit in habits:
        streak.calculate_streak(db, habit, now, config)
        if apply_decay(db, habit, now, config).decay_applied:
            decayed.append(habit)
    if decayed:
        queued = enqueue_changes(db, config, now, owner_id, habits=decayed)
        if not queued.is_ok:
            return queued
    return Ok(habits)


def complete_habit(db: Session, config: EngineConfig, now: datetime, habit_id: str,
                   at: Optional[datetime] = None, note: Optional[str] = None):
    habit = get_habit(db, habit_id)
    if habit is None:
        return Err(NotFound(entity="Habit", entity_id=habit_id))
    if not habit.is_active:
        return Err(ValidationFailure("Archived habits cannot be completed", field_name="habit_id"))
    at = dates.ensure_utc(at or now)
    if at > dates.ensure_utc(now):
        return Err(ValidationFailure("Completion time cannot be in the future", field_name="completed_at"))

    day = dates.logical_day(at, config.timezone, config.grace_period_minutes)
    if ledger.exists_on_day(db, habit.id, day) or habit.shield_day == dates.day_key(day):
        logger.warning("Habit %s already completed on %s", habit.id, day)
        return Err(AlreadyCompletedToday(habit_id=habit.id, logical_day=dates.day_key(day)))

    # decay for the gap before this completion is settled first
    apply_decay(db, habit, now, config)

    previous = last_active_day(db, habit, config)
    if previous is not None and previous == day - timedelta(days=1) and (habit.current_streak or 0) > 0:
        new_streak = habit.current_streak + 1
    else:
        new_streak = 1
        habit.streak_start_at = at

    account = accounts.get_or_create_account(db, habit.user_id, now, config)
    completion = ledger.append(db, habit_id=habit.id, owner_id=habit.user_id, completed_at=at,
                               config=config, now=now, note=note)

    habit.total_completions = (habit.total_completions or 0) + 1
    habit.current_streak = new_streak
    habit.longest_streak = max(habit.longest_streak or 0, new_streak)
    if habit.last_completed_at is None or at > dates.ensure_utc(habit.last_completed_at):
        habit.last_completed_at = at
    change = growth.apply_completion(habit.growth_level or 0, GrowthStage(habit.growth_stage), config)
    habit.growth_level = change.level
    habit.growth_stage = change.stage.value
    habit.decay_state = DecayState.HEALTHY.value
    habit.decay_severity_applied = 0
    habit.updated_at = now

    summary = streak.calculate_streak(db, habit, now, config)
    streak_start = dates.day_key(summary.streak_start_day) if summary.streak_start_day else None

    award = xp.award_for_completion(db, account, habit, now, config,
                                    new_streak=habit.current_streak, streak_start=streak_start)
    completion.xp_earned = min(award.amount, config.max_completion_xp)
    completion.is_bonus = award.has_bonus
    accounts.refresh_global_streak(db, account, now, config)
    db.flush()

    queued = enqueue_changes(db, config, now, habit.user_id, habits=[habit], completions=[completion],
                             account=account)
    if not queued.is_ok:
        return queued
    if change.stage_changed:
        logger.info("Habit %s grew to %s", habit.id, change.stage.value)
    logger.info("Completed habit %s: streak=%s xp=%s", habit.id, habit.current_streak, award.amount)
    return Ok(CompletionResult(
        habit=habit,
        completion=completion,
        xp_awarded=award.amount,
        had_bonus=award.has_bonus,
        bonus_types=award.bonus_types,
        new_streak=habit.current_streak,
        stage_changed=change.stage_changed,
        leveled_up=award.leveled_up,
    ))


def use_streak_shield(db: Session, config: EngineConfig, now: datetime, habit_id: str,
                      owner_id: Optional[str] = None):
    habit = get_habit(db, habit_id)
    if habit is None or (owner_id is not None and habit.user_id != owner_id):
        return Err(NotFound(entity="Habit", entity_id=habit_id))

    account = accounts.get_or_create_account(db, habit.user_id, now, config)
    accounts.refill_shields_if_new_period(account, now, config)
    if (account.streak_shields_remaining or 0) <= 0:
        logger.warning("No streak shields left for %s", account.id)
        return Err(NoShieldsAvailable(shields_remaining=0))

    summary = streak.calculate_streak(db, habit, now, config)
    if summary.current_streak <= 0:
        return Err(NoActiveStreak(habit_id=habit.id))
    today = dates.logical_day(now, config.timezone, config.grace_period_minutes)
    today_key = dates.day_key(today)
    if summary.completed_today or habit.shield_day == today_key:
        return Err(AlreadyCompletedToday(habit_id=habit.id, logical_day=today_key))

    account.streak_shields_remaining -= 1
    account.updated_at = now
    db.add(ShieldUse(id=str(uuid.uuid4()), habit_id=habit.id, user_id=account.id,
                     used_at=now, covered_day=today_key))
    habit.shield_used_at = now
    habit.shield_day = today_key
    habit.decay_state = DecayState.HEALTHY.value
    habit.decay_severity_applied = 0
    habit.updated_at = now
    db.flush()

    queued = enqueue_changes(db, config, now, habit.user_id, habits=[habit], account=account)
    if not queued.is_ok:
        return queued
    logger.info("Shield used on %s, %s remaining", habit.id, account.streak_shields_remaining)
    return Ok(ShieldResult(habit=habit, shields_remaining=account.streak_shields_remaining,
                           streak_protected=summary.current_streak))
