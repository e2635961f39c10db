from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text,
                        UniqueConstraint)

from .db import Base
from .services.dates import to_iso


class UserAccount(Base):
    __tablename__ = "user_accounts"
    id = Column(String, primary_key=True)
    total_xp = Column(Integer, default=0, nullable=False)
    level = Column(Integer, default=1, nullable=False)
    total_habits = Column(Integer, default=0, nullable=False)
    active_habits = Column(Integer, default=0, nullable=False)
    global_streak = Column(Integer, default=0, nullable=False)
    premium_tier = Column(String, default="free", nullable=False)
    premium_expires_at = Column(DateTime(timezone=True), nullable=True)
    streak_shields_remaining = Column(Integer, default=0, nullable=False)
    last_shield_refill_at = Column(DateTime(timezone=True), nullable=True)
    vacation_days_remaining = Column(Integer, default=0, nullable=False)
    unlocked_zones = Column(JSON, default=list)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "total_xp": self.total_xp,
            "level": self.level,
            "total_habits": self.total_habits,
            "active_habits": self.active_habits,
            "global_streak": self.global_streak,
            "premium_tier": self.premium_tier,
            "premium_expires_at": to_iso(self.premium_expires_at),
            "streak_shields_remaining": self.streak_shields_remaining,
            "vacation_days_remaining": self.vacation_days_remaining,
            "unlocked_zones": list(self.unlocked_zones or []),
            "last_login_at": to_iso(self.last_login_at),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


class Habit(Base):
    __tablename__ = "habits"
    id = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("user_accounts.id"), index=True, nullable=False)
    name = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, default="custom", nullable=False)
    frequency = Column(String, default="daily", nullable=False)
    custom_frequency_days = Column(String, nullable=True)
    zone_id = Column(String, nullable=False)
    reminder_time = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    current_streak = Column(Integer, default=0, nullable=False)
    longest_streak = Column(Integer, default=0, nullable=False)
    total_completions = Column(Integer, default=0, nullable=False)
    last_completed_at = Column(DateTime(timezone=True), nullable=True)
    streak_start_at = Column(DateTime(timezone=True), nullable=True)
    growth_stage = Column(String, default="seed", nullable=False)
    growth_level = Column(Integer, default=0, nullable=False)
    decay_state = Column(String, default="healthy", nullable=False)
    decay_counter = Column(Integer, default=0, nullable=False)
    decay_severity_applied = Column(Integer, default=0, nullable=False)
    shield_used_at = Column(DateTime(timezone=True), nullable=True)
    shield_day = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "frequency": self.frequency,
            "custom_frequency_days": self.custom_frequency_days,
            "zone_id": self.zone_id,
            "reminder_time": self.reminder_time,
            "is_active": self.is_active,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "total_completions": self.total_completions,
            "last_completed_at": to_iso(self.last_completed_at),
            "streak_start_at": to_iso(self.streak_start_at),
            "growth_stage": self.growth_stage,
            "growth_level": self.growth_level,
            "decay_state": self.decay_state,
            "decay_counter": self.decay_counter,
            "decay_severity_applied": self.decay_severity_applied,
            "shield_used_at": to_iso(self.shield_used_at),
            "shield_day": self.shield_day,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }


class Completion(Base):
    __tablename__ = "completions"
    __table_args__ = (Index("ix_completions_owner_day", "user_id", "logical_day"),)
    id = Column(String, primary_key=True)
    habit_id = Column(String, index=True, nullable=False)
    user_id = Column(String, nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=False)
    logical_day = Column(String, nullable=False)
    note = Column(Text, nullable=True)
    xp_earned = Column(Integer, default=0, nullable=False)
    is_bonus = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "habit_id": self.habit_id,
            "user_id": self.user_id,
            "completed_at": to_iso(self.completed_at),
            "logical_day": self.logical_day,
            "note": self.note,
            "xp_earned": self.xp_earned,
            "is_bonus": self.is_bonus,
            "created_at": to_iso(self.created_at),
        }


class XpEvent(Base):
    __tablename__ = "xp_events"
    __table_args__ = (UniqueConstraint("user_id", "idempotency_key", name="uq_xp_events_owner_key"),)
    id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    habit_id = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)
    source = Column(String, nullable=False)
    bonus_type = Column(String, nullable=True)
    description = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=True)
    logical_day = Column(String, nullable=False)
    meta_json = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)


class ShieldUse(Base):
    __tablename__ = "shield_uses"
    id = Column(String, primary_key=True)
    habit_id = Column(String, index=True, nullable=False)
    user_id = Column(String, nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=False)
    covered_day = Column(String, nullable=False)


class SyncOperation(Base):
    __tablename__ = "sync_operations"
    id = Column(String, primary_key=True)
    user_id = Column(String, index=True, nullable=False)
    entity_type = Column(String, nullable=False)
    operation = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    payload = Column(JSON, default=dict)
    status = Column(String, default="pending", nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    # the remote holds the completion row but its habit counter has not been bumped yet
    increment_due = Column(Boolean, default=False, nullable=False)
