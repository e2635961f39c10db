"""Tagged success/failure values returned by every core command.

Expected failures (validation, business rules, capacity, conflicts, exhausted
infrastructure retries) travel as ``Err(failure)``. Truly unexpected faults are
raised and only converted to ``UnexpectedFailure`` by the command facade.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, ClassVar, Generic, Optional, TypeVar, Union

T = TypeVar("T")
U = TypeVar("U")


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    BUSINESS_RULE = "business_rule"
    INFRASTRUCTURE = "infrastructure"
    CONFLICT = "conflict"
    CAPACITY = "capacity"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class Failure:
    code: ClassVar[str] = "FAILURE"
    kind: ClassVar[ErrorKind] = ErrorKind.UNEXPECTED
    template: ClassVar[str] = "Something went wrong"

    @property
    def message(self) -> str:
        return self.template.format(**asdict(self))

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.INFRASTRUCTURE

    def to_dict(self) -> dict:
        data = asdict(self)
        data.update({"code": self.code, "kind": self.kind.value, "message": self.message})
        return data

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# --- validation ---

@dataclass(frozen=True)
class ValidationFailure(Failure):
    reason: str
    field_name: Optional[str] = None
    code: ClassVar[str] = "VALIDATION_ERROR"
    kind: ClassVar[ErrorKind] = ErrorKind.VALIDATION
    template: ClassVar[str] = "{reason}"


# --- business rules ---

@dataclass(frozen=True)
class HabitLimitExceeded(Failure):
    current_count: int
    max_allowed: int
    is_premium: bool
    code: ClassVar[str] = "HABIT_LIMIT_EXCEEDED"
    kind: ClassVar[ErrorKind] = ErrorKind.BUSINESS_RULE
    template: ClassVar[str] = "You have {current_count} of {max_allowed} habits. Upgrade to add more."


@dataclass(frozen=True)
class ZoneCapacityExceeded(Failure):
    zone_id: str
    current_count: int
    max_habits: int
    code: ClassVar[str] = "ZONE_CAPACITY_EXCEEDED"
    kind: ClassVar[ErrorKind] = ErrorKind.BUSINESS_RULE
    template: ClassVar[str] = "Zone {zone_id} is full ({current_count}/{max_habits} habits)"


@dataclass(frozen=True)
class ZoneLocked(Failure):
    zone_id: str
    xp_required: int
    current_xp: int
    code: ClassVar[str] = "ZONE_LOCKED"
    kind: ClassVar[ErrorKind] = ErrorKind.BUSINESS_RULE
    template: ClassVar[str] = "Zone {zone_id} unlocks at {xp_required} XP (you have {current_xp})"


@dataclass(frozen=True)
class DuplicateName(Failure):
    name: str
    code: ClassVar[str] = "DUPLICATE_HABIT"
    kind: ClassVar[ErrorKind] = ErrorKind.BUSINESS_RULE
    template: ClassVar[str] = "A habit named '{name}' already exists"


@dataclass(frozen=True)
class NotFound(Failure):
    entity: str
    entity_id: str
    code: ClassVar[str] = "NOT_FOUND"
    kind: ClassVar[ErrorKind] = ErrorKind.BUSINESS_RULE
    template: ClassVar[str] = "{entity} not found: {entity_id}"


@dataclass(frozen=True)
class AlreadyCompletedToday(Failure):
    habit_id: str
    logical_day: str
    code: ClassVar[str] = "ALREADY_COMPLETED"
    kind: ClassVar[ErrorKind] = ErrorKind.BUSINESS_RULE
    template: ClassVar[str] = "Habit already completed today ({logical_day})"


@dataclass(frozen=True)
class CannotDeleteLast(Failure):
    habit_id: str
    code: ClassVar[str] = "CANNOT_DELETE_LAST"
    kind: ClassVar[ErrorKind] = ErrorKind.BUSINESS_RULE
    template: ClassVar[str] = "Cannot delete your last habit"


@dataclass(frozen=True)
class NoShieldsAvailable(Failure):
    shields_remaining: int = 0
    code: ClassVar[str] = "NO_SHIELDS_AVAILABLE"
    kind: ClassVar[ErrorKind] = ErrorKind.BUSINESS_RULE
    template: ClassVar[str] = "No streak shields remaining"


@dataclass(frozen=True)
class NoActiveStreak(Failure):
    habit_id: str
    code: ClassVar[str] = "NO_ACTIVE_STREAK"
    kind: ClassVar[ErrorKind] = ErrorKind.BUSINESS_RULE
    template: ClassVar[str] = "No active streak to protect"


@dataclass(frozen=True)
class SyncInProgress(Failure):
    owner_id: str
    started_at: str
    code: ClassVar[str] = "SYNC_IN_PROGRESS"
    kind: ClassVar[ErrorKind] = ErrorKind.BUSINESS_RULE
    template: ClassVar[str] = "A sync is already running (started {started_at})"


# --- capacity ---

@dataclass(frozen=True)
class AdLimitReached(Failure):
    ads_watched_today: int
    max_ads_per_day: int
    code: ClassVar[str] = "AD_LIMIT_REACHED"
    kind: ClassVar[ErrorKind] = ErrorKind.CAPACITY
    template: ClassVar[str] = "Daily ad limit reached ({ads_watched_today}/{max_ads_per_day})"


@dataclass(frozen=True)
class QueueFull(Failure):
    current_size: int
    max_size: int
    code: ClassVar[str] = "OFFLINE_QUEUE_FULL"
    kind: ClassVar[ErrorKind] = ErrorKind.CAPACITY
    template: ClassVar[str] = "Offline queue is full ({current_size}/{max_size}). Sync to continue."


# --- conflict ---

@dataclass(frozen=True)
class SyncConflict(Failure):
    entity: str
    entity_id: str
    strategy: str
    winner: str
    code: ClassVar[str] = "SYNC_CONFLICT"
    kind: ClassVar[ErrorKind] = ErrorKind.CONFLICT
    template: ClassVar[str] = "{entity} {entity_id} changed on two devices; kept {winner} ({strategy})"


# --- infrastructure ---

@dataclass(frozen=True)
class NetworkFailure(Failure):
    reason: str
    code: ClassVar[str] = "NETWORK_ERROR"
    kind: ClassVar[ErrorKind] = ErrorKind.INFRASTRUCTURE
    template: ClassVar[str] = "Network error: {reason}"


@dataclass(frozen=True)
class TimeoutFailure(Failure):
    operation: str
    code: ClassVar[str] = "TIMEOUT"
    kind: ClassVar[ErrorKind] = ErrorKind.INFRASTRUCTURE
    template: ClassVar[str] = "Timed out during {operation}"


@dataclass(frozen=True)
class ServerFailure(Failure):
    reason: str
    status_code: Optional[int] = None
    code: ClassVar[str] = "SERVER_ERROR"
    kind: ClassVar[ErrorKind] = ErrorKind.INFRASTRUCTURE
    template: ClassVar[str] = "Server error: {reason}"

    @property
    def retryable(self) -> bool:
        # 4xx means the request itself is wrong
        return self.status_code is None or self.status_code >= 500


@dataclass(frozen=True)
class UnexpectedFailure(Failure):
    reason: str
    code: ClassVar[str] = "UNEXPECTED"
    kind: ClassVar[ErrorKind] = ErrorKind.UNEXPECTED
    template: ClassVar[str] = "Unexpected error: {reason}"


# --- result ---

@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    is_ok: ClassVar[bool] = True

    def map(self, fn: Callable[[T], U]) -> "Ok[U]":
        return Ok(fn(self.value))

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    failure: Failure
    is_ok: ClassVar[bool] = False

    def map(self, fn: Callable[[Any], Any]) -> "Err":
        return self

    def unwrap(self):
        raise ValueError(f"unwrap() on Err: {self.failure}")


Result = Union[Ok[T], Err]
