"""Pull / merge / push reconciliation between the local cache and the remote store.

One cycle walks ``idle -> pulling -> merging -> pushing -> idle``. Remote
calls are retried with linear backoff; anything still failing is recorded in
the ``SyncReport`` and the rest of the cycle carries on, so a failed
completions pull never blocks the habits that did arrive.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import EngineConfig
from ..enums import ConflictStrategy, EntityType, OperationType, SyncPhase
from ..exceptions import RemoteError, RemoteTimeout, RemoteUnavailable
from ..models import Completion, Habit, SyncOperation, UserAccount
from ..results import (Err, Failure, NetworkFailure, Ok, ServerFailure, SyncConflict, SyncInProgress,
                       TimeoutFailure)
from . import accounts, dates, ledger, streak, sync_queue
from .conflicts import Resolved, resolve_conflict
from .habits import get_habit
from .remote import RemoteStore
from .stats import calculate_level

logger = logging.getLogger(__name__)

HABIT_FIELDS = (
    "user_id", "name", "description", "category", "frequency", "custom_frequency_days", "zone_id",
    "reminder_time", "is_active", "current_streak", "longest_streak", "total_completions",
    "growth_stage", "growth_level", "decay_state", "decay_counter", "decay_severity_applied", "shield_day",
)
HABIT_TIMESTAMPS = ("last_completed_at", "streak_start_at", "shield_used_at", "created_at", "updated_at")
USER_FIELDS = ("total_xp", "premium_tier", "streak_shields_remaining", "vacation_days_remaining")
USER_TIMESTAMPS = ("premium_expires_at", "last_login_at", "updated_at")


@dataclass
class SyncReport:
    owner_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    phases: List[SyncPhase] = field(default_factory=list)
    habits_pulled: int = 0
    completions_pulled: int = 0
    user_pulled: bool = False
    pushed: int = 0
    conflicts: List[SyncConflict] = field(default_factory=list)
    failures: Dict[str, Failure] = field(default_factory=dict)
    succeeded: List[str] = field(default_factory=list)
    repaired_habits: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def pull_complete(self) -> bool:
        return not any(name.startswith("pull") for name in self.failures)


def to_failure(exc: RemoteError, operation: str) -> Failure:
    if isinstance(exc, RemoteTimeout):
        return TimeoutFailure(operation=operation)
    if exc.status_code is not None:
        return ServerFailure(reason=exc.message, status_code=exc.status_code)
    if isinstance(exc, RemoteUnavailable):
        return NetworkFailure(reason=exc.message)
    return ServerFailure(reason=exc.message)


def apply_remote_habit(habit: Habit, data: dict, config: EngineConfig) -> None:
    local_total = habit.total_completions or 0
    for key in HABIT_FIELDS:
        if key in data and data[key] is not None:
            setattr(habit, key, data[key])
    for key in HABIT_TIMESTAMPS:
        if key in data:
            setattr(habit, key, dates.parse_timestamp(data[key]))
    if not habit.zone_id:
        habit.zone_id = config.zones[0].zone_id
    # the server counter can lag behind outstanding increments; it never lowers ours
    habit.total_completions = max(local_total, habit.total_completions or 0)
    habit.longest_streak = max(habit.longest_streak or 0, habit.current_streak or 0)


def apply_remote_user(account: UserAccount, data: dict, config: EngineConfig) -> None:
    for key in USER_FIELDS:
        if key in data and data[key] is not None:
            setattr(account, key, data[key])
    for key in USER_TIMESTAMPS:
        if key in data:
            value = dates.parse_timestamp(data[key])
            if value is not None or key == "premium_expires_at":
                setattr(account, key, value)
    # zones only ever unlock
    zones = list(account.unlocked_zones or [])
    account.unlocked_zones = zones + [z for z in data.get("unlocked_zones") or [] if z not in zones]
    account.level = calculate_level(account.total_xp or 0, config.xp_per_level)
    accounts.refresh_unlocked_zones(account, config)


def completion_from_remote(data: dict, config: EngineConfig, now: datetime) -> Completion:
    completed_at = dates.parse_timestamp(data.get("completed_at")) or now
    day = data.get("logical_day") or dates.day_key(
        dates.logical_day(completed_at, config.timezone, config.grace_period_minutes))
    return Completion(
        id=data["id"],
        habit_id=data["habit_id"],
        user_id=data["user_id"],
        completed_at=completed_at,
        logical_day=day,
        note=data.get("note"),
        xp_earned=data.get("xp_earned") or 0,
        is_bonus=bool(data.get("is_bonus")),
        created_at=dates.parse_timestamp(data.get("created_at")) or now,
    )


class SyncEngine:
    def __init__(self, config: EngineConfig, remote: RemoteStore,
                 clock: Optional[Callable[[], datetime]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.remote = remote
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.sleep = sleep
        self._lock = threading.Lock()
        self._in_progress: Dict[str, datetime] = {}
        self._phase: Dict[str, SyncPhase] = {}

    # --- state ---

    def phase(self, owner_id: str) -> SyncPhase:
        return self._phase.get(owner_id, SyncPhase.IDLE)

    def is_syncing(self, owner_id: str) -> bool:
        with self._lock:
            return owner_id in self._in_progress

    def _acquire(self, owner_id: str, now: datetime):
        with self._lock:
            started = self._in_progress.get(owner_id)
            if started is not None:
                if now - started < timedelta(seconds=self.config.sync_watchdog_seconds):
                    return Err(SyncInProgress(owner_id=owner_id, started_at=dates.to_iso(started)))
                logger.warning("Sync for %s stuck since %s; watchdog clearing it", owner_id, started)
            self._in_progress[owner_id] = now
        return None

    def _release(self, owner_id: str) -> None:
        with self._lock:
            self._in_progress.pop(owner_id, None)
        self._phase[owner_id] = SyncPhase.IDLE

    def _enter(self, report: SyncReport, phase: SyncPhase) -> None:
        self._phase[report.owner_id] = phase
        report.phases.append(phase)
        logger.debug("Sync %s: %s", report.owner_id, phase.value)

    def _call(self, operation: str, fn, *args):
        attempts = max(1, self.config.sync_max_retries)
        for attempt in range(1, attempts + 1):
            try:
                return fn(*args)
            except RemoteError as exc:
                if not exc.retryable or attempt == attempts:
                    raise
                delay = self.config.sync_retry_delay_seconds * attempt
                logger.warning("%s failed (attempt %s/%s): %s; retrying in %.1fs",
                               operation, attempt, attempts, exc.message, delay)
                self.sleep(delay)

    # --- cycle ---

    def sync(self, db: Session, owner_id: str, strategy: ConflictStrategy = ConflictStrategy.NEWEST_WINS):
        now = self.clock()
        busy = self._acquire(owner_id, now)
        if busy is not None:
            logger.warning("Sync already running for %s", owner_id)
            return busy

        report = SyncReport(owner_id=owner_id, started_at=now)
        try:
            account = accounts.get_or_create_account(db, owner_id, now, self.config)
            self._enter(report, SyncPhase.PULLING)
            pulled = self.pull(db, account, report)
            self._enter(report, SyncPhase.MERGING)
            self.merge(db, account, pulled, report, ConflictStrategy(strategy))
            self._enter(report, SyncPhase.PUSHING)
            self.push(db, owner_id, report)
            if report.pull_complete:
                account.last_sync_at = now
            db.flush()
        except Exception:
            self._enter(report, SyncPhase.ERROR)
            raise
        finally:
            self._release(owner_id)

        report.finished_at = self.clock()
        if report.failures and not report.succeeded and not report.pushed:
            failure = next(iter(report.failures.values()))
            logger.warning("Sync for %s failed: %s", owner_id, failure)
            return Err(failure)
        logger.info("Sync for %s done: %s habits, %s completions pulled, %s pushed, %s conflicts, %s failures",
                    owner_id, report.habits_pulled, report.completions_pulled, report.pushed,
                    len(report.conflicts), len(report.failures))
        return Ok(report)

    def pull(self, db: Session, account: UserAccount, report: SyncReport) -> dict:
        since = dates.ensure_utc(account.last_sync_at)
        today = dates.logical_day(self.clock(), self.config.timezone, self.config.grace_period_minutes)
        cutoff = today - timedelta(days=self.config.history_days)
        portions = (
            ("habits", self.remote.fetch_habits, (account.id, since)),
            ("completions", self.remote.fetch_completions, (account.id, cutoff, since)),
            ("user", self.remote.fetch_user, (account.id,)),
        )
        pulled = {}
        for name, fn, args in portions:
            try:
                pulled[name] = self._call(f"pull {name}", fn, *args)
                report.succeeded.append(f"pull {name}")
            except RemoteError as exc:
                report.failures[f"pull {name}"] = to_failure(exc, f"pull {name}")
                logger.warning("Pulling %s for %s failed: %s", name, account.id, exc.message)
        return pulled

    def merge(self, db: Session, account: UserAccount, pulled: dict, report: SyncReport,
              strategy: ConflictStrategy = ConflictStrategy.NEWEST_WINS) -> None:
        touched = set()
        for data in pulled.get("habits") or []:
            if self._merge_habit(db, data, report, strategy):
                touched.add(data["id"])
        db.flush()
        for data in pulled.get("completions") or []:
            if self._merge_completion(db, data, report):
                touched.add(data["habit_id"])
        if pulled.get("user"):
            self._merge_user(db, account, pulled["user"], report, strategy)
        db.flush()

        now = self.clock()
        for habit_id in sorted(touched):
            habit = get_habit(db, habit_id)
            if habit is None:
                continue
            summary = streak.summarize_habit(db, habit, now, self.config)
            _, changed = streak.repair_streak_cache(db, habit, summary, self.config)
            if changed:
                report.repaired_habits.append(habit_id)
        accounts.refresh_habit_counts(db, account)
        accounts.refresh_global_streak(db, account, now, self.config)
        db.flush()

    def _merge_habit(self, db: Session, data: dict, report: SyncReport, strategy: ConflictStrategy) -> bool:
        habit_id = data.get("id")
        if not habit_id:
            return False
        local = get_habit(db, habit_id)
        op = sync_queue.get(db, EntityType.HABIT, habit_id)
        if local is None:
            if op is not None and op.operation == OperationType.DELETE.value:
                # deleted here; the push removes it remotely
                return False
            habit = Habit(id=habit_id)
            apply_remote_habit(habit, data, self.config)
            db.add(habit)
            report.habits_pulled += 1
            return True
        if op is None:
            apply_remote_habit(local, data, self.config)
            report.habits_pulled += 1
            return True

        resolved = resolve_conflict(local.to_dict(), data, strategy)
        self._apply_resolution(db, local, resolved)
        report.conflicts.append(SyncConflict(entity="Habit", entity_id=habit_id,
                                             strategy=strategy.value, winner=resolved.winner))
        logger.info("Conflict on habit %s resolved with %s: %s wins", habit_id, strategy.value, resolved.winner)
        report.habits_pulled += 1
        return True

    def _apply_resolution(self, db: Session, habit: Habit, resolved: Resolved) -> None:
        if resolved.winner == "local":
            return
        apply_remote_habit(habit, resolved.data, self.config)
        if resolved.winner == "remote":
            sync_queue.discard(db, EntityType.HABIT, habit.id)

    def _merge_completion(self, db: Session, data: dict, report: SyncReport) -> bool:
        if not data.get("id") or ledger.get(db, data["id"]) is not None:
            return False
        db.add(completion_from_remote(data, self.config, self.clock()))
        report.completions_pulled += 1
        return True

    def _merge_user(self, db: Session, account: UserAccount, data: dict, report: SyncReport,
                    strategy: ConflictStrategy) -> None:
        op = sync_queue.get(db, EntityType.USER, account.id)
        if op is not None:
            resolved = resolve_conflict(account.to_dict(), data, strategy)
            report.conflicts.append(SyncConflict(entity="User", entity_id=account.id,
                                                 strategy=strategy.value, winner=resolved.winner))
            if resolved.winner == "local":
                return
            if resolved.winner == "remote":
                sync_queue.discard(db, EntityType.USER, account.id)
            data = resolved.data
        apply_remote_user(account, data, self.config)
        report.user_pulled = True

    # --- push ---

    def _payload(self, db: Session, op: SyncOperation) -> dict:
        if op.entity_type == EntityType.HABIT.value:
            live = get_habit(db, op.entity_id)
            data = live.to_dict() if live is not None else dict(op.payload or {})
            data.pop("total_completions", None)
            return data
        if op.entity_type == EntityType.COMPLETION.value:
            live = ledger.get(db, op.entity_id)
        else:
            live = accounts.get_account(db, op.entity_id)
        return live.to_dict() if live is not None else dict(op.payload or {})

    def _send_completions(self, db: Session, batch: List[SyncOperation]) -> None:
        payloads = {op.entity_id: self._payload(db, op) for op in batch}
        inserted = set(self._call("push completions", self.remote.upsert_completions, list(payloads.values())) or [])
        for op in batch:
            if op.entity_id in inserted:
                op.increment_due = True
        # a retried upsert reports nothing as inserted, so owed increments live on the operation
        for op in batch:
            if op.increment_due:
                self._call("increment completions", self.remote.increment_completions,
                           payloads[op.entity_id]["habit_id"])
                op.increment_due = False

    def _push_batch(self, db: Session, report: SyncReport, name: str, batch: List[SyncOperation], send) -> None:
        if not batch:
            return
        try:
            send(batch)
        except RemoteError as exc:
            failure = to_failure(exc, name)
            report.failures[name] = failure
            now = self.clock()
            for op in batch:
                sync_queue.mark_failed(op, failure.message, now, self.config, retryable=exc.retryable)
            logger.warning("%s failed for %s operations: %s", name, len(batch), exc.message)
            return
        for op in batch:
            sync_queue.mark_synced(db, op)
        report.pushed += len(batch)

    def push(self, db: Session, owner_id: str, report: SyncReport) -> None:
        ops = sync_queue.pending(db, owner_id)
        if not ops:
            logger.debug("Nothing to push for %s", owner_id)
            return
        now = self.clock()
        for op in ops:
            sync_queue.mark_syncing(op, now)

        def select(entity_type, operation=OperationType.UPSERT):
            return [op for op in ops if op.entity_type == entity_type.value and op.operation == operation.value]

        self._push_batch(db, report, "push habits", select(EntityType.HABIT), lambda batch: self._call(
            "push habits", self.remote.upsert_habits, [self._payload(db, op) for op in batch]))
        for op in select(EntityType.HABIT, OperationType.DELETE):
            self._push_batch(db, report, f"delete habit {op.entity_id}", [op], lambda batch: self._call(
                "delete habit", self.remote.delete_habit, batch[0].entity_id))
        self._push_batch(db, report, "push completions", select(EntityType.COMPLETION),
                         lambda batch: self._send_completions(db, batch))
        for op in select(EntityType.USER):
            self._push_batch(db, report, "push user", [op], lambda batch: self._call(
                "push user", self.remote.upsert_user, self._payload(db, batch[0])))
        db.flush()

    # --- explicit resolution ---

    def resolve_pending(self, db: Session, owner_id: str, strategy: ConflictStrategy):
        """Resolve every locally modified habit against its remote copy."""
        strategy = ConflictStrategy(strategy)
        ids = [op.entity_id for op in sync_queue.operations(db, owner_id, EntityType.HABIT)
               if op.operation == OperationType.UPSERT.value]
        if not ids:
            return Ok([])
        try:
            remote_habits = self._call("fetch habits", self.remote.fetch_habits, owner_id)
        except RemoteError as exc:
            return Err(to_failure(exc, "resolve conflicts"))
        by_id = {h["id"]: h for h in remote_habits or []}

        resolutions = []
        for habit_id in ids:
            local = get_habit(db, habit_id)
            remote = by_id.get(habit_id)
            if local is None or remote is None:
                continue
            resolved = resolve_conflict(local.to_dict(), remote, strategy)
            self._apply_resolution(db, local, resolved)
            resolutions.append(resolved)
        db.flush()
        logger.info("Resolved %s conflicts for %s with %s", len(resolutions), owner_id, strategy.value)
        return Ok(resolutions)
