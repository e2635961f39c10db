"""Command surface consumed by the presentation layer.

Every command opens its own session, commits when the service returns
``Ok`` and rolls back on ``Err``. Unexpected exceptions are logged here and
turned into ``Err(UnexpectedFailure)``; nothing below this layer catches them.
"""
import logging
import threading
import time
from contextlib import ExitStack
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from .config import EngineConfig
from .db import init_db, make_engine, make_session_factory
from .enums import ConflictStrategy, HabitFrequency
from .models import Habit
from .results import Err, NotFound, Ok, UnexpectedFailure
from .services import accounts, habits, island, stats, streak, sync_queue, xp
from .services.remote import RemoteStore, make_remote_store
from .services.sync import SyncEngine

logger = logging.getLogger(__name__)


class HabitIsland:
    def __init__(self, config: Optional[EngineConfig] = None, session_factory=None,
                 remote: Optional[RemoteStore] = None, clock: Optional[Callable[[], datetime]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config or EngineConfig.from_env()
        if session_factory is None:
            engine = make_engine(self.config.database_url)
            init_db(engine)
            session_factory = make_session_factory(engine)
        self.session_factory = session_factory
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.remote = remote if remote is not None else make_remote_store(self.config)
        self.sync_engine = SyncEngine(self.config, self.remote, clock=self.clock, sleep=sleep)
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, key: str):
        with self._locks_guard:
            return self._locks.setdefault(key, threading.RLock())

    def _owner_of(self, habit_id: str) -> Optional[str]:
        db = self.session_factory()
        try:
            return db.query(Habit.user_id).filter(Habit.id == habit_id).scalar()
        finally:
            db.close()

    def _run(self, name: str, fn, owner_id: Optional[str] = None, habit_id: Optional[str] = None,
             commit_on_err: bool = False):
        """Run ``fn(db, now)`` in its own transaction, holding the owner lock and then the habit lock."""
        logger.debug("%s started", name)
        with ExitStack() as locks:
            db = None
            try:
                if habit_id is not None and owner_id is None:
                    owner_id = self._owner_of(habit_id)
                if owner_id is not None:
                    locks.enter_context(self._lock(f"owner:{owner_id}"))
                if habit_id is not None:
                    locks.enter_context(self._lock(habit_id))
                db = self.session_factory()
                result = fn(db, self.clock())
                if result.is_ok or commit_on_err:
                    db.commit()
                else:
                    db.rollback()
                    logger.warning("%s rejected: %s", name, result.failure)
                return result
            except Exception as exc:
                if db is not None:
                    db.rollback()
                logger.exception("%s failed unexpectedly", name)
                return Err(UnexpectedFailure(reason=str(exc) or exc.__class__.__name__))
            finally:
                if db is not None:
                    db.close()

    # --- habits ---

    def create_habit(self, owner_id: str, name: str, category="custom", frequency=HabitFrequency.DAILY,
                     zone_id: str = "starter-beach", reminder_time: Optional[str] = None,
                     description: Optional[str] = None, custom_frequency_days: Optional[str] = None):
        return self._run("create_habit", lambda db, now: habits.create_habit(
            db, self.config, now, owner_id=owner_id, name=name, category=category, frequency=frequency,
            zone_id=zone_id, reminder_time=reminder_time, description=description,
            custom_frequency_days=custom_frequency_days,
        ), owner_id=owner_id)

    def update_habit(self, habit_id: str, **fields):
        return self._run("update_habit", lambda db, now: habits.update_habit(db, self.config, now, habit_id, fields),
                         habit_id=habit_id)

    def delete_habit(self, habit_id: str, hard: bool = False):
        return self._run("delete_habit", lambda db, now: habits.delete_habit(db, self.config, now, habit_id, hard),
                         habit_id=habit_id)

    def get_habits(self, owner_id: str, active_only: bool = False, zone_id: Optional[str] = None, category=None):
        return self._run("get_habits", lambda db, now: habits.get_habits(
            db, self.config, now, owner_id, active_only=active_only, zone_id=zone_id, category=category),
            owner_id=owner_id)

    def complete_habit(self, habit_id: str, at: Optional[datetime] = None, note: Optional[str] = None):
        return self._run("complete_habit", lambda db, now: habits.complete_habit(
            db, self.config, now, habit_id, at=at, note=note), habit_id=habit_id)

    def use_streak_shield(self, habit_id: str, owner_id: Optional[str] = None):
        return self._run("use_streak_shield", lambda db, now: habits.use_streak_shield(
            db, self.config, now, habit_id, owner_id=owner_id), habit_id=habit_id)

    # --- streaks & growth ---

    def calculate_streak(self, habit_id: str):
        def run(db, now):
            habit = habits.get_habit(db, habit_id)
            if habit is None:
                return Err(NotFound(entity="Habit", entity_id=habit_id))
            return Ok(streak.calculate_streak(db, habit, now, self.config))
        return self._run("calculate_streak", run, habit_id=habit_id)

    def evaluate_decay(self, habit_id: str):
        return self._run("evaluate_decay", lambda db, now: habits.evaluate_decay(db, habit_id, now, self.config),
                         habit_id=habit_id)

    # --- XP ---

    def award_daily_login(self, owner_id: str):
        def run(db, now):
            account = accounts.get_or_create_account(db, owner_id, now, self.config)
            award = xp.award_for_daily_login(db, account, now, self.config)
            queued = habits.enqueue_changes(db, self.config, now, owner_id, account=account)
            return queued if not queued.is_ok else Ok(award)
        return self._run("award_daily_login", run, owner_id=owner_id)

    def award_rewarded_ad(self, owner_id: str, ad_id: str):
        def run(db, now):
            account = accounts.get_or_create_account(db, owner_id, now, self.config)
            result = xp.award_for_rewarded_ad(db, account, ad_id, now, self.config)
            if not result.is_ok or not result.value.granted:
                return result
            queued = habits.enqueue_changes(db, self.config, now, owner_id, account=account)
            return queued if not queued.is_ok else result
        return self._run("award_rewarded_ad", run, owner_id=owner_id)

    def award_manual_xp(self, owner_id: str, amount: int, description: str, metadata: Optional[dict] = None):
        def run(db, now):
            account = accounts.get_or_create_account(db, owner_id, now, self.config)
            result = xp.award_manual(db, account, amount, description, now, self.config, metadata)
            if not result.is_ok:
                return result
            queued = habits.enqueue_changes(db, self.config, now, owner_id, account=account)
            return queued if not queued.is_ok else result
        return self._run("award_manual_xp", run, owner_id=owner_id)

    def calculate_level(self, owner_id: str):
        return self._run("calculate_level", lambda db, now: Ok(stats.level_summary(db, owner_id, now, self.config)),
                         owner_id=owner_id)

    # --- sync ---

    def sync_data(self, owner_id: str, strategy: ConflictStrategy = ConflictStrategy.NEWEST_WINS):
        # retry bookkeeping on the queue is kept even when the whole cycle failed
        return self._run("sync_data", lambda db, now: self.sync_engine.sync(db, owner_id, strategy),
                         owner_id=owner_id, commit_on_err=True)

    def resolve_conflicts(self, owner_id: str, strategy: ConflictStrategy = ConflictStrategy.MERGE):
        return self._run("resolve_conflicts",
                         lambda db, now: self.sync_engine.resolve_pending(db, owner_id, strategy), owner_id=owner_id)

    def retry_failed_sync(self, owner_id: str):
        return self._run("retry_failed_sync", lambda db, now: Ok(sync_queue.retry_failed(db, owner_id)),
                         owner_id=owner_id)

    def pending_sync_count(self, owner_id: str):
        return self._run("pending_sync_count", lambda db, now: Ok(sync_queue.size(db, owner_id)), owner_id=owner_id)

    # --- read models ---

    def get_stats(self, owner_id: str):
        return self._run("get_stats", lambda db, now: Ok(stats.get_stats(db, owner_id, now, self.config)),
                         owner_id=owner_id)

    def get_island(self, owner_id: str):
        return self._run("get_island", lambda db, now: Ok(island.build_island(db, owner_id, now, self.config)),
                         owner_id=owner_id)
