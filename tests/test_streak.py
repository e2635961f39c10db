import random
from datetime import date, timedelta

from habitisland.enums import StreakStatus
from habitisland.services import habits, ledger, streak
from habitisland.services.streak import compute_streak

from conftest import NOW

TODAY = date(2025, 1, 15)


def days_ago(*offsets):
    return [TODAY - timedelta(days=n) for n in offsets]


def test_no_history_is_broken():
    summary = compute_streak([], TODAY)
    assert summary.current_streak == 0
    assert summary.longest_streak == 0
    assert summary.status is StreakStatus.BROKEN
    assert not summary.is_active


def test_run_ending_today_is_active():
    summary = compute_streak(days_ago(0, 1, 2), TODAY)
    assert summary.current_streak == 3
    assert summary.longest_streak == 3
    assert summary.status is StreakStatus.ACTIVE
    assert summary.completed_today
    assert summary.streak_start_day == TODAY - timedelta(days=2)


def test_run_ending_yesterday_is_at_risk():
    summary = compute_streak(days_ago(1, 2, 3), TODAY)
    assert summary.current_streak == 3
    assert summary.status is StreakStatus.AT_RISK
    assert summary.is_active


def test_gap_breaks_streak_but_keeps_longest():
    summary = compute_streak(days_ago(2, 3, 4, 5), TODAY)
    assert summary.current_streak == 0
    assert summary.longest_streak == 4
    assert summary.status is StreakStatus.BROKEN


def test_same_day_duplicates_collapse():
    summary = compute_streak(days_ago(0, 0, 1, 1), TODAY)
    assert summary.current_streak == 2


def test_future_days_are_ignored():
    summary = compute_streak(days_ago(0) + [TODAY + timedelta(days=1)], TODAY)
    assert summary.current_streak == 1


def test_shield_day_bridges_without_counting():
    summary = compute_streak(days_ago(0, 2, 3), TODAY, shield_days=days_ago(1))
    assert summary.current_streak == 3
    assert summary.consecutive_days == 4
    assert summary.status is StreakStatus.ACTIVE


def test_shield_covering_today_protects():
    summary = compute_streak(days_ago(1, 2), TODAY, shield_days=days_ago(0))
    assert summary.current_streak == 2
    assert summary.status is StreakStatus.PROTECTED


def test_longest_never_below_current_for_random_histories():
    rng = random.Random(7)
    for _ in range(300):
        history = [TODAY - timedelta(days=rng.randint(0, 40)) for _ in range(rng.randint(0, 25))]
        shields = [TODAY - timedelta(days=rng.randint(0, 40)) for _ in range(rng.randint(0, 3))]
        summary = compute_streak(history, TODAY, shield_days=shields)
        assert summary.longest_streak >= summary.current_streak >= 0
        # recomputing from a shuffled copy gives the same answer
        shuffled = list(history)
        rng.shuffle(shuffled)
        assert compute_streak(shuffled, TODAY, shield_days=shields) == summary


def test_milestone_helpers():
    assert streak.next_milestone(3) == 7
    assert streak.next_milestone(7) == 30
    assert streak.next_milestone(30) is None
    assert streak.days_until_next_milestone(5) == 2
    assert streak.qualifies_for_milestone(7)
    assert not streak.qualifies_for_milestone(8)


def test_calculate_streak_repairs_cached_fields(db, config):
    habit = habits.create_habit(db, config, NOW, owner_id="u1", name="Read", category="reading",
                                frequency="daily", zone_id="starter-beach").unwrap()
    for offset in (0, 1, 2, 5):
        ledger.append(db, habit_id=habit.id, owner_id="u1", completed_at=NOW - timedelta(days=offset),
                      config=config, now=NOW)
    habit.current_streak = 99
    habit.longest_streak = 0
    edited_at = habit.updated_at

    summary = streak.calculate_streak(db, habit, NOW + timedelta(hours=1), config)

    assert summary.current_streak == 3
    assert habit.current_streak == 3
    assert habit.longest_streak == 3
    assert habit.longest_streak >= habit.current_streak
    assert habit.last_completed_at is not None
    assert habit.updated_at == edited_at


def test_cached_streak_is_trusted_past_the_local_window(db, config):
    habit = habits.create_habit(db, config, NOW, owner_id="u1", name="Run", category="exercise",
                                frequency="daily", zone_id="starter-beach").unwrap()
    # only the last three days of a 120 day run are held locally
    for offset in (0, 1, 2):
        ledger.append(db, habit_id=habit.id, owner_id="u1", completed_at=NOW - timedelta(days=offset),
                      config=config, now=NOW)
    habit.current_streak = 120
    habit.longest_streak = 120

    summary = streak.calculate_streak(db, habit, NOW, config)

    assert summary.current_streak == 120
    assert habit.current_streak == 120
