import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..config import EngineConfig, ZoneConfig
from ..enums import PremiumTier
from ..models import Completion, Habit, UserAccount
from . import dates
from .streak import compute_streak

logger = logging.getLogger(__name__)


def get_account(db: Session, owner_id: str) -> Optional[UserAccount]:
    return db.query(UserAccount).filter(UserAccount.id == owner_id).first()


def get_or_create_account(db: Session, owner_id: str, now: datetime, config: EngineConfig) -> UserAccount:
    account = get_account(db, owner_id)
    if account:
        return account
    account = UserAccount(
        id=owner_id,
        total_xp=0,
        level=1,
        total_habits=0,
        active_habits=0,
        global_streak=0,
        premium_tier=PremiumTier.FREE.value,
        streak_shields_remaining=config.shields_per_month_free,
        last_shield_refill_at=now,
        vacation_days_remaining=0,
        unlocked_zones=[z.zone_id for z in config.zones if z.xp_required <= 0],
        created_at=now,
        updated_at=now,
    )
    db.add(account)
    db.flush()
    logger.info("Created account %s", owner_id)
    return account


def is_premium_active(account: UserAccount, now: datetime) -> bool:
    tier = PremiumTier(account.premium_tier or PremiumTier.FREE.value)
    if tier is PremiumTier.FREE:
        return False
    if tier is PremiumTier.LIFETIME:
        return True
    expires = dates.ensure_utc(account.premium_expires_at)
    return expires is not None and expires > dates.ensure_utc(now)


def max_habits(account: UserAccount, now: datetime, config: EngineConfig) -> int:
    return config.max_habits_premium if is_premium_active(account, now) else config.max_habits_free


def unlocked_zones(account: UserAccount, config: EngineConfig) -> List[ZoneConfig]:
    return [z for z in config.zones if (account.total_xp or 0) >= z.xp_required]


def refresh_unlocked_zones(account: UserAccount, config: EngineConfig) -> List[str]:
    """Zones only ever unlock; returns the ids newly unlocked."""
    current = list(account.unlocked_zones or [])
    new = [z.zone_id for z in unlocked_zones(account, config) if z.zone_id not in current]
    if new:
        account.unlocked_zones = current + new
        logger.info("Account %s unlocked zones %s", account.id, new)
    return new


def refill_shields_if_new_period(account: UserAccount, now: datetime, config: EngineConfig) -> bool:
    """Reset the shield allotment when a new calendar month starts."""
    allotment = (config.shields_per_month_premium if is_premium_active(account, now)
                 else config.shields_per_month_free)
    last = dates.ensure_utc(account.last_shield_refill_at)
    now = dates.ensure_utc(now)
    if last is not None and (last.year, last.month) == (now.year, now.month):
        return False
    account.streak_shields_remaining = max(account.streak_shields_remaining or 0, allotment)
    account.last_shield_refill_at = now
    return True


def refresh_habit_counts(db: Session, account: UserAccount) -> None:
    total = db.query(Habit).filter(Habit.user_id == account.id).count()
    active = db.query(Habit).filter(Habit.user_id == account.id, Habit.is_active.is_(True)).count()
    account.total_habits = total
    account.active_habits = min(active, total)


def refresh_global_streak(db: Session, account: UserAccount, now: datetime, config: EngineConfig) -> int:
    """Consecutive logical days on which any habit was completed."""
    rows = db.query(Completion.logical_day).filter(Completion.user_id == account.id).distinct().all()
    today = dates.logical_day(now, config.timezone, config.grace_period_minutes)
    summary = compute_streak([dates.parse_day(r[0]) for r in rows], today)
    account.global_streak = summary.current_streak
    return account.global_streak
