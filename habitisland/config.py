import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///habitisland.db"


@dataclass(frozen=True)
class ZoneConfig:
    zone_id: str
    name: str
    xp_required: int
    max_habits: int


DEFAULT_ZONES = (
    ZoneConfig("starter-beach", "Starter Beach", 0, 4),
    ZoneConfig("forest-grove", "Forest Grove", 101, 7),
    ZoneConfig("mountain-ridge", "Mountain Ridge", 301, 10),
)


@dataclass(frozen=True)
class EngineConfig:
    database_url: str = DEFAULT_DATABASE_URL
    remote_url: Optional[str] = None
    remote_api_key: Optional[str] = None
    remote_timeout_seconds: float = 30.0

    timezone: str = "UTC"
    grace_period_minutes: int = 180

    # XP
    xp_per_completion: int = 10
    xp_all_daily_bonus: int = 50
    xp_milestones: Tuple[Tuple[int, int], ...] = ((7, 100), (30, 500))
    xp_daily_login: int = 5
    xp_rewarded_ad: int = 50
    xp_per_level: int = 100
    max_ads_per_day: int = 3
    max_completion_xp: int = 1000

    # Habits
    max_habits_free: int = 7
    max_habits_premium: int = 999
    habit_name_max_length: int = 50
    zones: Tuple[ZoneConfig, ...] = DEFAULT_ZONES

    # Growth
    growth_per_completion: int = 1
    growth_thresholds: Tuple[int, ...] = (7, 14, 30, 60)
    max_growth_level: int = 999

    # Shields
    shields_per_month_premium: int = 3
    shields_per_month_free: int = 0
    shield_valid_hours: int = 24

    # Sync
    history_days: int = 90
    sync_queue_limit: int = 500
    sync_max_retries: int = 3
    sync_retry_delay_seconds: float = 5.0
    sync_watchdog_seconds: float = 120.0

    log_level: str = "INFO"

    def zone(self, zone_id: str) -> Optional[ZoneConfig]:
        for z in self.zones:
            if z.zone_id == zone_id:
                return z
        return None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ

        # Validate DATABASE_URL; fall back to SQLite if it looks malformed
        raw_db_url = env.get("DATABASE_URL", DEFAULT_DATABASE_URL)
        if raw_db_url and not raw_db_url.startswith(("sqlite://", "postgresql://", "postgres://")):
            logger.warning("Invalid DATABASE_URL detected. Using SQLite fallback.")
            database_url = DEFAULT_DATABASE_URL
        else:
            database_url = raw_db_url or DEFAULT_DATABASE_URL

        defaults = cls()
        return cls(
            database_url=database_url,
            remote_url=env.get("REMOTE_URL") or None,
            remote_api_key=env.get("REMOTE_API_KEY") or None,
            remote_timeout_seconds=float(env.get("REMOTE_TIMEOUT_SECONDS", defaults.remote_timeout_seconds)),
            timezone=env.get("HABIT_TIMEZONE", defaults.timezone),
            grace_period_minutes=int(env.get("GRACE_PERIOD_MINUTES", defaults.grace_period_minutes)),
            max_ads_per_day=int(env.get("MAX_ADS_PER_DAY", defaults.max_ads_per_day)),
            sync_queue_limit=int(env.get("SYNC_QUEUE_LIMIT", defaults.sync_queue_limit)),
            sync_max_retries=int(env.get("SYNC_MAX_RETRIES", defaults.sync_max_retries)),
            sync_retry_delay_seconds=float(env.get("SYNC_RETRY_DELAY_SECONDS", defaults.sync_retry_delay_seconds)),
            sync_watchdog_seconds=float(env.get("SYNC_WATCHDOG_SECONDS", defaults.sync_watchdog_seconds)),
            log_level=env.get("LOG_LEVEL", defaults.log_level),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_diagnostics(config: EngineConfig) -> dict:
    return {
        "Database": "SQLite (Default)" if "sqlite" in config.database_url else "Postgres",
        "Remote": "Configured" if config.remote_url else "Missing (Offline Mode)",
        "Timezone": config.timezone,
        "Grace period (min)": config.grace_period_minutes,
    }
