from datetime import datetime, timedelta, timezone

from habitisland.enums import ConflictStrategy
from habitisland.services.conflicts import resolve_conflict

T = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


def record(updated_at, **fields):
    data = {
        "id": "h1",
        "name": "Drink water",
        "description": None,
        "is_active": True,
        "reminder_time": None,
        "zone_id": "starter-beach",
        "current_streak": 3,
        "longest_streak": 5,
        "total_completions": 10,
        "updated_at": updated_at.isoformat(),
    }
    data.update(fields)
    return data


def test_newest_wins_prefers_the_newer_local_copy():
    local = record(T + timedelta(seconds=10), name="Local")
    remote = record(T, name="Remote")
    resolved = resolve_conflict(local, remote, ConflictStrategy.NEWEST_WINS)
    assert resolved.winner == "local"
    assert resolved.data["name"] == "Local"


def test_newest_wins_ties_go_to_remote():
    resolved = resolve_conflict(record(T, name="Local"), record(T, name="Remote"))
    assert resolved.winner == "remote"
    assert resolved.data["name"] == "Remote"


def test_merge_takes_the_max_of_counters():
    local = record(T + timedelta(seconds=10), total_completions=12)
    remote = record(T, total_completions=15)
    resolved = resolve_conflict(local, remote, ConflictStrategy.MERGE)
    assert resolved.winner == "merged"
    assert resolved.data["total_completions"] == 15


def test_merge_prefers_local_edits_and_remote_for_the_rest():
    local = record(T, name="Hydrate", reminder_time="08:00", is_active=False, zone_id="forest-grove",
                   longest_streak=9)
    remote = record(T + timedelta(minutes=1), name="Water", zone_id="mountain-ridge", current_streak=12,
                    longest_streak=4)
    data = resolve_conflict(local, remote, ConflictStrategy.MERGE).data
    assert data["name"] == "Hydrate"
    assert data["reminder_time"] == "08:00"
    assert data["is_active"] is False
    assert data["zone_id"] == "mountain-ridge"
    assert data["current_streak"] == 12
    assert data["longest_streak"] == 12
    assert data["updated_at"] == (T + timedelta(minutes=1)).isoformat()


def test_fixed_strategies():
    local = record(T, name="Local")
    remote = record(T + timedelta(days=1), name="Remote")
    assert resolve_conflict(local, remote, ConflictStrategy.LOCAL_WINS).data["name"] == "Local"
    assert resolve_conflict(local, remote, ConflictStrategy.REMOTE_WINS).data["name"] == "Remote"
    assert resolve_conflict(local, remote, "remote_wins").winner == "remote"


def test_missing_timestamps_lose_to_real_ones():
    local = record(T, name="Local")
    remote = dict(record(T, name="Remote"), updated_at=None)
    assert resolve_conflict(local, remote).winner == "local"
