"""Per-record conflict resolution between a local and a remote copy.

Records are plain dicts as produced by ``to_dict`` / returned by the remote
store. ``updated_at`` may be an ISO string or a datetime.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from ..enums import ConflictStrategy
from . import dates

logger = logging.getLogger(__name__)

# user-editable fields; the person holding the device knows best
LOCAL_PREFERRED_FIELDS = ("name", "description", "is_active", "reminder_time")
# counters that only ever grow
MONOTONIC_FIELDS = ("total_completions", "longest_streak", "total_xp")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class Resolved:
    data: dict
    winner: str  # local | remote | merged
    strategy: ConflictStrategy

    @property
    def local_won(self) -> bool:
        return self.winner == "local"


def _updated_at(record: dict) -> datetime:
    value = record.get("updated_at")
    if isinstance(value, datetime):
        return dates.ensure_utc(value)
    return dates.parse_timestamp(value) or _EPOCH


def merge_records(local: dict, remote: dict) -> dict:
    merged = dict(remote)
    for key in LOCAL_PREFERRED_FIELDS:
        if key in local:
            merged[key] = local[key]
    for key in MONOTONIC_FIELDS:
        if key in local or key in remote:
            merged[key] = max(local.get(key) or 0, remote.get(key) or 0)
    for key, value in local.items():
        merged.setdefault(key, value)
    if "longest_streak" in merged and "current_streak" in merged:
        merged["longest_streak"] = max(merged["longest_streak"] or 0, merged["current_streak"] or 0)
    merged["updated_at"] = max(_updated_at(local), _updated_at(remote)).isoformat()
    return merged


def resolve_conflict(local: dict, remote: dict,
                     strategy: ConflictStrategy = ConflictStrategy.NEWEST_WINS) -> Resolved:
    strategy = ConflictStrategy(strategy)
    if strategy is ConflictStrategy.LOCAL_WINS:
        resolved = Resolved(dict(local), "local", strategy)
    elif strategy is ConflictStrategy.REMOTE_WINS:
        resolved = Resolved(dict(remote), "remote", strategy)
    elif strategy is ConflictStrategy.NEWEST_WINS:
        # ties favour remote
        if _updated_at(local) > _updated_at(remote):
            resolved = Resolved(dict(local), "local", strategy)
        else:
            resolved = Resolved(dict(remote), "remote", strategy)
    else:
        resolved = Resolved(merge_records(local, remote), "merged", strategy)
    logger.debug("Resolved conflict on %s with %s: %s wins",
                 local.get("id") or remote.get("id"), strategy.value, resolved.winner)
    return resolved
