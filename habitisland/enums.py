from enum import Enum


class HabitCategory(str, Enum):
    WATER = "water"
    EXERCISE = "exercise"
    MINDFULNESS = "mindfulness"
    NUTRITION = "nutrition"
    SLEEP = "sleep"
    PRODUCTIVITY = "productivity"
    LEARNING = "learning"
    SOCIAL = "social"
    CREATIVE = "creative"
    READING = "reading"
    MEDITATION = "meditation"
    CUSTOM = "custom"


class HabitFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    CUSTOM = "custom"


class GrowthStage(str, Enum):
    SEED = "seed"
    SPROUT = "sprout"
    SAPLING = "sapling"
    TREE = "tree"
    FOREST = "forest"

    @property
    def rank(self) -> int:
        return list(GrowthStage).index(self)


class DecayState(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CLOUDY = "cloudy"
    STORMY = "stormy"


class StreakStatus(str, Enum):
    ACTIVE = "active"
    AT_RISK = "at_risk"
    BROKEN = "broken"
    PROTECTED = "protected"


class XpSource(str, Enum):
    HABIT_COMPLETION = "habit_completion"
    DAILY_LOGIN = "daily_login"
    REWARDED_AD = "rewarded_ad"
    MANUAL = "manual"


class PremiumTier(str, Enum):
    FREE = "free"
    MONTHLY = "monthly"
    ANNUAL = "annual"
    LIFETIME = "lifetime"


class EntityType(str, Enum):
    HABIT = "habit"
    COMPLETION = "completion"
    USER = "user"


class OperationType(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    FAILED = "failed"


class SyncPhase(str, Enum):
    IDLE = "idle"
    PULLING = "pulling"
    MERGING = "merging"
    PUSHING = "pushing"
    ERROR = "error"


class ConflictStrategy(str, Enum):
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"
    NEWEST_WINS = "newest_wins"
    MERGE = "merge"
