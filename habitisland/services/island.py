"""Island read model: a projection of habits and account, never stored."""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Tuple

from sqlalchemy.orm import Session

from ..config import EngineConfig
from ..models import Habit
from . import accounts, dates, ledger

WEATHER_BANDS = ((100, "rainbow"), (75, "sunny"), (50, "partly_cloudy"), (25, "cloudy"))


@dataclass(frozen=True)
class ZoneView:
    zone_id: str
    name: str
    unlocked: bool
    xp_required: int
    habit_count: int
    max_habits: int


@dataclass(frozen=True)
class IslandView:
    owner_id: str
    weather: str
    completion_percentage: float
    prosperity_level: int
    prosperity_tier: int
    zones: Tuple[ZoneView, ...]


def weather_for(completion_percentage: float) -> str:
    for threshold, weather in WEATHER_BANDS:
        if completion_percentage >= threshold:
            return weather
    return "stormy"


def prosperity(habits: List[Habit]) -> int:
    """Average growth level of active habits, 0..100."""
    active = [h for h in habits if h.is_active]
    if not active:
        return 0
    return min(100, sum(h.growth_level or 0 for h in active) // len(active))


def build_island(db: Session, owner_id: str, now: datetime, config: EngineConfig) -> IslandView:
    account = accounts.get_or_create_account(db, owner_id, now, config)
    habits = db.query(Habit).filter(Habit.user_id == owner_id).all()
    active = [h for h in habits if h.is_active]
    today = dates.logical_day(now, config.timezone, config.grace_period_minutes)
    done = ledger.habits_completed_on(db, owner_id, today)
    percentage = 100.0 * len([h for h in active if h.id in done]) / len(active) if active else 0.0

    unlocked = set(account.unlocked_zones or [])
    zones = tuple(
        ZoneView(
            zone_id=z.zone_id,
            name=z.name,
            unlocked=z.zone_id in unlocked or (account.total_xp or 0) >= z.xp_required,
            xp_required=z.xp_required,
            habit_count=len([h for h in active if h.zone_id == z.zone_id]),
            max_habits=z.max_habits,
        )
        for z in config.zones
    )
    level = prosperity(habits)
    return IslandView(
        owner_id=owner_id,
        weather=weather_for(percentage),
        completion_percentage=round(percentage, 1),
        prosperity_level=level,
        prosperity_tier=min(5, level // 20),
        zones=zones,
    )
