from dataclasses import replace
from datetime import timedelta

from habitisland.enums import XpSource
from habitisland.models import XpEvent
from habitisland.results import AdLimitReached, ValidationFailure
from habitisland.services import accounts, habits, stats, xp

from conftest import NOW


def account_for(db, config, owner="u1"):
    return accounts.get_or_create_account(db, owner, NOW, config)


def test_level_derivation():
    assert stats.calculate_level(0) == 1
    assert stats.calculate_level(99) == 1
    assert stats.calculate_level(100) == 2
    assert stats.calculate_level(250) == 3
    assert stats.xp_for_level(3) == 200
    assert stats.xp_remaining_for_next_level(250) == 50
    assert stats.level_progress(250) == 0.5


def test_fourth_ad_is_rejected(db, config):
    account = account_for(db, config)
    for i in range(3):
        award = xp.award_for_rewarded_ad(db, account, f"ad-{i}", NOW, config).unwrap()
        assert award.amount == 50

    result = xp.award_for_rewarded_ad(db, account, "ad-3", NOW, config)

    assert result.failure == AdLimitReached(ads_watched_today=3, max_ads_per_day=3)
    assert result.failure.to_dict()["kind"] == "capacity"
    events = db.query(XpEvent).filter(XpEvent.source == XpSource.REWARDED_AD.value).count()
    assert events == 3
    assert account.total_xp == 150


def test_ad_limit_resets_next_day(db, config):
    account = account_for(db, config)
    for i in range(3):
        xp.award_for_rewarded_ad(db, account, f"ad-{i}", NOW, config).unwrap()
    assert xp.award_for_rewarded_ad(db, account, "ad-tomorrow", NOW + timedelta(days=1), config).is_ok


def test_ad_cap_follows_the_calendar_day_not_the_grace_period(db, config):
    config = replace(config, grace_period_minutes=180)
    account = account_for(db, config)
    for i in range(3):
        xp.award_for_rewarded_ad(db, account, f"ad-{i}", NOW, config).unwrap()
    just_after_midnight = NOW.replace(hour=1) + timedelta(days=1)

    assert xp.award_for_rewarded_ad(db, account, "ad-night", just_after_midnight, config).is_ok
    assert xp.award_for_daily_login(db, account, NOW, config).granted
    assert xp.award_for_daily_login(db, account, just_after_midnight, config).granted


def test_same_ad_is_not_credited_twice(db, config):
    account = account_for(db, config)
    xp.award_for_rewarded_ad(db, account, "ad-1", NOW, config).unwrap()

    again = xp.award_for_rewarded_ad(db, account, "ad-1", NOW, config).unwrap()

    assert again.amount == 0
    assert not again.granted
    assert again.metadata["duplicate"]
    assert account.total_xp == 50


def test_daily_login_once_per_day(db, config):
    account = account_for(db, config)
    first = xp.award_for_daily_login(db, account, NOW, config)
    second = xp.award_for_daily_login(db, account, NOW + timedelta(hours=3), config)
    tomorrow = xp.award_for_daily_login(db, account, NOW + timedelta(days=1), config)

    assert first.granted and first.amount == 5
    assert not second.granted and second.amount == 0
    assert tomorrow.granted
    assert account.total_xp == 10


def test_manual_grant(db, config):
    account = account_for(db, config)
    assert isinstance(xp.award_manual(db, account, -5, "oops", NOW, config).failure, ValidationFailure)
    assert isinstance(xp.award_manual(db, account, 5, " ", NOW, config).failure, ValidationFailure)

    award = xp.award_manual(db, account, 150, "Launch promo", NOW, config, {"campaign": "launch"}).unwrap()

    assert award.amount == 150
    assert award.leveled_up
    assert award.level == 2
    assert "forest-grove" in account.unlocked_zones
    assert "mountain-ridge" not in account.unlocked_zones


def test_all_daily_bonus_when_last_habit_is_done(db, config):
    first = habits.create_habit(db, config, NOW, owner_id="u1", name="Water", category="water",
                                frequency="daily", zone_id="starter-beach").unwrap()
    second = habits.create_habit(db, config, NOW, owner_id="u1", name="Walk", category="exercise",
                                 frequency="daily", zone_id="starter-beach").unwrap()

    one = habits.complete_habit(db, config, NOW, first.id).unwrap()
    two = habits.complete_habit(db, config, NOW, second.id).unwrap()

    assert one.xp_awarded == 10
    assert not one.had_bonus
    assert two.xp_awarded == 60
    assert two.bonus_types == ("all_daily_complete",)
    assert db.query(XpEvent).filter(XpEvent.bonus_type == "all_daily_complete").count() == 1


def test_level_summary_aggregates_periods(db, config):
    account = account_for(db, config)
    xp.award_manual(db, account, 30, "last month", NOW - timedelta(days=20), config)
    xp.award_manual(db, account, 40, "monday", NOW - timedelta(days=2), config)
    xp.award_manual(db, account, 50, "today", NOW, config)

    summary = stats.level_summary(db, "u1", NOW, config)

    assert summary.total_xp == 120
    assert summary.level == 2
    assert summary.xp_today == 50
    assert summary.xp_this_week == 90
    assert summary.xp_this_month == 90
    assert summary.xp_remaining_for_next_level == 80


def test_stats(db, config):
    habit = habits.create_habit(db, config, NOW, owner_id="u1", name="Water", category="water",
                                frequency="daily", zone_id="starter-beach").unwrap()
    habits.create_habit(db, config, NOW, owner_id="u1", name="Walk", category="exercise",
                        frequency="daily", zone_id="starter-beach").unwrap()
    habits.complete_habit(db, config, NOW - timedelta(days=1), habit.id).unwrap()
    habits.complete_habit(db, config, NOW, habit.id).unwrap()

    result = stats.get_stats(db, "u1", NOW, config)

    assert result.active_habits == 2
    assert result.completions_today == 1
    assert result.completion_rate_today == 0.5
    assert result.best_current_streak == 2
    assert result.global_streak == 2
    assert result.total_completions == 2


def test_stale_account_row_does_not_lose_xp(app, session_factory, config):
    habit = app.create_habit("u1", "Drink water", "water").unwrap()
    stale = session_factory()
    account = accounts.get_account(stale, "u1")
    app.complete_habit(habit.id).unwrap()

    xp.award_manual(stale, account, 5, "promo", NOW, config).unwrap()
    stale.commit()
    stale.close()

    db = session_factory()
    assert accounts.get_account(db, "u1").total_xp == stats.total_xp(db, "u1") == 65
    db.close()
