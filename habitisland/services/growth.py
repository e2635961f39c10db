"""Growth & decay rules.

Growth: every completion adds ``growth_per_completion`` levels; the stage
advances once the level crosses the next threshold and never goes back.

Decay (day-based): evaluated lazily when a habit is read after an inactivity
gap. The penalty for a gap is the total for its severity bucket, and only the
part not yet applied for the same gap is taken off, so re-reading a habit
never decays it twice.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional, Sequence

from ..config import EngineConfig
from ..enums import DecayState, GrowthStage

SEVERITY_NONE = 0
SEVERITY_MINOR = 1
SEVERITY_MODERATE = 2
SEVERITY_SEVERE = 3

# total levels lost per severity bucket
DECAY_PENALTIES = {
    SEVERITY_NONE: 0,
    SEVERITY_MINOR: 1,
    SEVERITY_MODERATE: 3,
    SEVERITY_SEVERE: 5,
}

_STAGES = list(GrowthStage)


@dataclass(frozen=True)
class GrowthChange:
    level: int
    stage: GrowthStage
    stage_changed: bool


@dataclass(frozen=True)
class DecayEvaluation:
    days_inactive: int
    severity: int
    state: DecayState
    levels_lost: int
    new_level: int
    severity_applied: int
    decay_applied: bool = False


def stage_for_level(level: int, thresholds: Sequence[int]) -> GrowthStage:
    stage = GrowthStage.SEED
    for i, threshold in enumerate(thresholds):
        if level >= threshold:
            stage = _STAGES[i + 1]
    return stage


def apply_completion(level: int, stage: GrowthStage, config: EngineConfig) -> GrowthChange:
    new_level = min(level + config.growth_per_completion, config.max_growth_level)
    reached = stage_for_level(new_level, config.growth_thresholds)
    new_stage = reached if reached.rank > stage.rank else stage
    return GrowthChange(new_level, new_stage, new_stage is not stage)


def growth_progress(level: int, stage: GrowthStage, thresholds: Sequence[int]) -> float:
    """Fraction of the way from the current stage's threshold to the next one."""
    if stage is GrowthStage.FOREST:
        return 1.0
    floor = 0 if stage is GrowthStage.SEED else thresholds[stage.rank - 1]
    ceiling = thresholds[stage.rank]
    if ceiling <= floor:
        return 1.0
    return max(0.0, min(1.0, (level - floor) / (ceiling - floor)))


def decay_severity(days_inactive: int) -> int:
    if days_inactive >= 7:
        return SEVERITY_SEVERE
    if days_inactive >= 4:
        return SEVERITY_MODERATE
    if days_inactive >= 2:
        return SEVERITY_MINOR
    return SEVERITY_NONE


def decay_state(days_inactive: int) -> DecayState:
    if days_inactive <= 0:
        return DecayState.HEALTHY
    if days_inactive == 1:
        return DecayState.WARNING
    if days_inactive <= 3:
        return DecayState.CLOUDY
    return DecayState.STORMY


def evaluate_decay(level: int, severity_applied: int, last_active_day: Optional[date], today: date) -> DecayEvaluation:
    """
    ``last_active_day`` is the most recent completed or shield-covered
    logical day; ``None`` (never completed) never decays.
    """
    if last_active_day is None:
        return DecayEvaluation(0, SEVERITY_NONE, DecayState.HEALTHY, 0, level, severity_applied)

    days = max(0, (today - last_active_day).days)
    severity = decay_severity(days)
    owed = DECAY_PENALTIES[severity] - DECAY_PENALTIES.get(severity_applied, 0)
    if owed <= 0:
        return DecayEvaluation(days, severity, decay_state(days), 0, level, max(severity_applied, severity))

    new_level = max(0, level - owed)
    return DecayEvaluation(days, severity, decay_state(days), level - new_level, new_level, severity, True)
