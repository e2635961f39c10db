from datetime import date, timedelta

from habitisland.config import EngineConfig
from habitisland.enums import DecayState, GrowthStage
from habitisland.services import growth

TODAY = date(2025, 1, 15)
THRESHOLDS = (7, 14, 30, 60)


def test_stage_for_level():
    assert growth.stage_for_level(0, THRESHOLDS) is GrowthStage.SEED
    assert growth.stage_for_level(7, THRESHOLDS) is GrowthStage.SPROUT
    assert growth.stage_for_level(29, THRESHOLDS) is GrowthStage.SAPLING
    assert growth.stage_for_level(30, THRESHOLDS) is GrowthStage.TREE
    assert growth.stage_for_level(500, THRESHOLDS) is GrowthStage.FOREST


def test_completion_crosses_threshold():
    change = growth.apply_completion(6, GrowthStage.SEED, EngineConfig())
    assert change.level == 7
    assert change.stage is GrowthStage.SPROUT
    assert change.stage_changed


def test_forest_is_terminal_but_level_grows():
    change = growth.apply_completion(80, GrowthStage.FOREST, EngineConfig())
    assert change.level == 81
    assert change.stage is GrowthStage.FOREST
    assert not change.stage_changed


def test_stage_never_regresses_after_decay_lowered_level():
    # level decayed below the sapling threshold; the next completion keeps sapling
    change = growth.apply_completion(3, GrowthStage.SAPLING, EngineConfig())
    assert change.stage is GrowthStage.SAPLING


def test_level_is_capped():
    change = growth.apply_completion(999, GrowthStage.FOREST, EngineConfig())
    assert change.level == 999


def test_decay_buckets_and_states():
    assert [growth.decay_severity(d) for d in (0, 1, 2, 3, 4, 6, 7, 30)] == [0, 0, 1, 1, 2, 2, 3, 3]
    assert growth.decay_state(0) is DecayState.HEALTHY
    assert growth.decay_state(1) is DecayState.WARNING
    assert growth.decay_state(3) is DecayState.CLOUDY
    assert growth.decay_state(4) is DecayState.STORMY


def test_five_days_inactive_is_moderate_decay():
    result = growth.evaluate_decay(10, 0, TODAY - timedelta(days=5), TODAY)
    assert result.severity == growth.SEVERITY_MODERATE
    assert result.levels_lost == 3
    assert result.new_level == 7
    assert result.decay_applied


def test_decay_floors_at_zero():
    result = growth.evaluate_decay(2, 0, TODAY - timedelta(days=5), TODAY)
    assert result.new_level == 0
    assert result.levels_lost == 2


def test_decay_is_not_applied_twice_for_the_same_gap():
    first = growth.evaluate_decay(10, 0, TODAY - timedelta(days=5), TODAY)
    second = growth.evaluate_decay(first.new_level, first.severity_applied, TODAY - timedelta(days=5), TODAY)
    assert not second.decay_applied
    assert second.new_level == 7


def test_decay_escalates_by_the_difference():
    minor = growth.evaluate_decay(10, 0, TODAY - timedelta(days=2), TODAY)
    assert minor.levels_lost == 1
    moderate = growth.evaluate_decay(minor.new_level, minor.severity_applied,
                                     TODAY - timedelta(days=2), TODAY + timedelta(days=3))
    assert moderate.levels_lost == 2
    assert moderate.new_level == 7


def test_decay_never_raises_level():
    for level in range(0, 12):
        for days in range(0, 12):
            result = growth.evaluate_decay(level, 0, TODAY - timedelta(days=days), TODAY)
            assert result.new_level <= level
            assert result.new_level >= 0


def test_never_completed_does_not_decay():
    result = growth.evaluate_decay(0, 0, None, TODAY)
    assert not result.decay_applied
    assert result.state is DecayState.HEALTHY


def test_growth_progress():
    assert growth.growth_progress(0, GrowthStage.SEED, THRESHOLDS) == 0.0
    assert growth.growth_progress(10, GrowthStage.SPROUT, THRESHOLDS) == 3 / 7
    assert growth.growth_progress(100, GrowthStage.FOREST, THRESHOLDS) == 1.0
