"""XP ledger: every grant is an immutable ``XpEvent``.

Bonuses are derived from state transitions (the completion that finishes the
day, the completion that brings a streak to exactly 7 or 30) and each carries
an idempotency key, so re-running an award never credits it twice.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from ..config import EngineConfig
from ..enums import HabitFrequency, XpSource
from ..models import Habit, UserAccount, XpEvent
from ..results import AdLimitReached, Err, Ok, ValidationFailure
from . import dates, ledger
from .accounts import refresh_unlocked_zones
from .stats import calculate_level, total_xp as ledger_total_xp

logger = logging.getLogger(__name__)

BONUS_ALL_DAILY = "all_daily_complete"


@dataclass(frozen=True)
class XpAward:
    amount: int
    granted: bool = True
    bonus_types: Tuple[str, ...] = ()
    event_ids: Tuple[str, ...] = ()
    total_xp: int = 0
    level: int = 1
    leveled_up: bool = False
    metadata: dict = field(default_factory=dict)

    @property
    def has_bonus(self) -> bool:
        return bool(self.bonus_types)


def _today_key(now: datetime, config: EngineConfig) -> str:
    return dates.day_key(dates.logical_day(now, config.timezone, config.grace_period_minutes))


def _calendar_key(now: datetime, config: EngineConfig) -> str:
    """Local calendar date with no grace shift; the login and ad caps reset at midnight."""
    return dates.day_key(dates.logical_day(now, config.timezone, 0))


def _key_exists(db: Session, owner_id: str, key: str) -> bool:
    return db.query(XpEvent.id).filter(XpEvent.user_id == owner_id, XpEvent.idempotency_key == key).first() is not None


def _record(db: Session, account: UserAccount, amount: int, source: XpSource, now: datetime,
            config: EngineConfig, *, habit_id: Optional[str] = None, bonus_type: Optional[str] = None,
            description: Optional[str] = None, key: Optional[str] = None,
            meta: Optional[dict] = None, day: Optional[str] = None) -> XpEvent:
    event = XpEvent(
        id=str(uuid.uuid4()),
        user_id=account.id,
        habit_id=habit_id,
        amount=amount,
        source=source.value,
        bonus_type=bonus_type,
        description=description,
        idempotency_key=key,
        logical_day=day or _today_key(now, config),
        meta_json=meta or {},
        created_at=now,
    )
    db.add(event)
    db.flush()
    # the row may be stale if another session credited XP since it was loaded
    account.total_xp = max((account.total_xp or 0) + amount, ledger_total_xp(db, account.id))
    account.level = calculate_level(account.total_xp, config.xp_per_level)
    account.updated_at = now
    refresh_unlocked_zones(account, config)
    db.flush()
    return event


def _award(account: UserAccount, events, level_before: int, bonus_types=(), metadata=None) -> XpAward:
    return XpAward(
        amount=sum(e.amount for e in events),
        granted=bool(events),
        bonus_types=tuple(bonus_types),
        event_ids=tuple(e.id for e in events),
        total_xp=account.total_xp,
        level=account.level,
        leveled_up=account.level > level_before,
        metadata=metadata or {},
    )


def _all_daily_done(db: Session, owner_id: str, day) -> bool:
    active = db.query(Habit).filter(Habit.user_id == owner_id, Habit.is_active.is_(True)).all()
    due = [h for h in active if h.frequency == HabitFrequency.DAILY.value] or active
    if not due:
        return False
    done = ledger.habits_completed_on(db, owner_id, day)
    return all(h.id in done for h in due)


def award_for_completion(db: Session, account: UserAccount, habit: Habit, now: datetime,
                         config: EngineConfig, *, new_streak: int, streak_start: Optional[str] = None) -> XpAward:
    """
    Base XP plus the all-habits-done bonus and streak milestone bonuses.
    Call after the completion has been appended to the ledger.
    """
    level_before = account.level or 1
    day = dates.logical_day(now, config.timezone, config.grace_period_minutes)
    events = [_record(db, account, config.xp_per_completion, XpSource.HABIT_COMPLETION, now, config,
                      habit_id=habit.id, description=f"Completed {habit.name}")]
    bonuses = []

    all_daily_key = f"{BONUS_ALL_DAILY}:{dates.day_key(day)}"
    if _all_daily_done(db, account.id, day) and not _key_exists(db, account.id, all_daily_key):
        events.append(_record(db, account, config.xp_all_daily_bonus, XpSource.HABIT_COMPLETION, now, config,
                              habit_id=habit.id, bonus_type=BONUS_ALL_DAILY, key=all_daily_key,
                              description="All daily habits complete"))
        bonuses.append(BONUS_ALL_DAILY)

    for days, xp in config.xp_milestones:
        if new_streak != days:
            continue
        bonus = f"streak_{days}"
        key = f"{bonus}:{habit.id}:{streak_start or dates.day_key(day)}"
        if _key_exists(db, account.id, key):
            continue
        events.append(_record(db, account, xp, XpSource.HABIT_COMPLETION, now, config,
                              habit_id=habit.id, bonus_type=bonus, key=key,
                              description=f"{days}-day streak on {habit.name}"))
        bonuses.append(bonus)

    award = _award(account, events, level_before, bonuses)
    logger.info("Awarded %s XP to %s for %s (bonuses: %s)", award.amount, account.id, habit.id, bonuses or "none")
    return award


def award_for_daily_login(db: Session, account: UserAccount, now: datetime, config: EngineConfig) -> XpAward:
    """Zero-effect (``granted=False``) when already claimed for today."""
    account.last_login_at = now
    day = _calendar_key(now, config)
    key = f"login:{day}"
    if _key_exists(db, account.id, key):
        logger.debug("Daily login XP already claimed by %s", account.id)
        return _award(account, [], account.level or 1)
    level_before = account.level or 1
    event = _record(db, account, config.xp_daily_login, XpSource.DAILY_LOGIN, now, config,
                    key=key, description="Daily login", day=day)
    return _award(account, [event], level_before)


def ads_watched_today(db: Session, owner_id: str, now: datetime, config: EngineConfig) -> int:
    return db.query(XpEvent).filter(
        XpEvent.user_id == owner_id,
        XpEvent.source == XpSource.REWARDED_AD.value,
        XpEvent.logical_day == _calendar_key(now, config),
    ).count()


def award_for_rewarded_ad(db: Session, account: UserAccount, ad_id: str, now: datetime, config: EngineConfig):
    if not ad_id:
        return Err(ValidationFailure("Ad id is required", field_name="ad_id"))
    key = f"ad:{ad_id}"
    watched = ads_watched_today(db, account.id, now, config)
    if _key_exists(db, account.id, key):
        logger.warning("Ad %s already credited to %s", ad_id, account.id)
        return Ok(_award(account, [], account.level or 1, metadata={
            "duplicate": True,
            "ads_watched_today": watched,
            "ads_remaining_today": max(0, config.max_ads_per_day - watched),
        }))
    if watched >= config.max_ads_per_day:
        logger.warning("Ad limit reached for %s (%s/%s)", account.id, watched, config.max_ads_per_day)
        return Err(AdLimitReached(ads_watched_today=watched, max_ads_per_day=config.max_ads_per_day))

    level_before = account.level or 1
    event = _record(db, account, config.xp_rewarded_ad, XpSource.REWARDED_AD, now, config,
                    key=key, description="Rewarded ad", meta={"ad_id": ad_id},
                    day=_calendar_key(now, config))
    return Ok(_award(account, [event], level_before, metadata={
        "ads_watched_today": watched + 1,
        "ads_remaining_today": config.max_ads_per_day - (watched + 1),
    }))


def award_manual(db: Session, account: UserAccount, amount: int, description: str, now: datetime,
                 config: EngineConfig, metadata: Optional[dict] = None):
    if amount < 0:
        return Err(ValidationFailure("XP amount must not be negative", field_name="amount"))
    if not (description or "").strip():
        return Err(ValidationFailure("Description is required", field_name="description"))
    level_before = account.level or 1
    event = _record(db, account, amount, XpSource.MANUAL, now, config,
                    description=description.strip(), meta=metadata)
    logger.info("Manual grant of %s XP to %s: %s", amount, account.id, description)
    return Ok(_award(account, [event], level_before, metadata=metadata))
