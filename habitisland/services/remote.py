"""Remote authoritative store.

``RestRemoteStore`` talks to a PostgREST (Supabase-style) API with
``requests``. ``InMemoryRemoteStore`` is the offline fallback used when no
remote URL is configured, and the double the tests sync against.
"""
import copy
import logging
from datetime import date, datetime
from typing import Dict, List, Optional

import requests

from ..config import EngineConfig
from ..exceptions import RemoteError, RemoteRejected, RemoteTimeout, RemoteUnavailable
from . import dates

logger = logging.getLogger(__name__)

HABITS_TABLE = "habits"
COMPLETIONS_TABLE = "habit_completions"
USERS_TABLE = "users"


class RemoteStore:
    """Contract the sync engine relies on. All methods may raise ``RemoteError``."""

    def fetch_habits(self, owner_id: str, updated_after: Optional[datetime] = None) -> List[dict]:
        raise NotImplementedError

    def fetch_completions(self, owner_id: str, since_day: date,
                          created_after: Optional[datetime] = None) -> List[dict]:
        raise NotImplementedError

    def fetch_user(self, owner_id: str) -> Optional[dict]:
        raise NotImplementedError

    def upsert_habits(self, habits: List[dict]) -> None:
        raise NotImplementedError

    def delete_habit(self, habit_id: str) -> None:
        raise NotImplementedError

    def upsert_completions(self, completions: List[dict]) -> List[str]:
        """Insert unknown completions; returns the ids actually inserted."""
        raise NotImplementedError

    def upsert_user(self, user: dict) -> None:
        raise NotImplementedError

    def increment_completions(self, habit_id: str, by: int = 1) -> None:
        """Server-side atomic ``total_completions += by``."""
        raise NotImplementedError


class RestRemoteStore(RemoteStore):
    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["apikey"] = api_key
            self.headers["Authorization"] = f"Bearer {api_key}"

    def _url(self, path: str) -> str:
        return f"{self.base_url}/rest/v1/{path}"

    def _request(self, method: str, path: str, params=None, payload=None, prefer: Optional[str] = None):
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            resp = self.session.request(method, self._url(path), params=params, json=payload,
                                        headers=headers, timeout=self.timeout)
        except requests.Timeout as exc:
            raise RemoteTimeout(f"{method} {path} timed out after {self.timeout}s") from exc
        except requests.ConnectionError as exc:
            raise RemoteUnavailable(f"{method} {path} failed: {exc}") from exc
        except requests.RequestException as exc:
            raise RemoteError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code >= 500:
            raise RemoteUnavailable(f"{method} {path} returned {resp.status_code}", resp.status_code)
        if resp.status_code >= 400:
            raise RemoteRejected(f"{method} {path} returned {resp.status_code}: {resp.text[:200]}",
                                 resp.status_code)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteError(f"{method} {path} returned invalid JSON", resp.status_code) from exc

    def fetch_habits(self, owner_id, updated_after=None):
        params = {"user_id": f"eq.{owner_id}", "select": "*"}
        if updated_after is not None:
            params["updated_at"] = f"gt.{dates.to_iso(updated_after)}"
        return self._request("GET", HABITS_TABLE, params=params) or []

    def fetch_completions(self, owner_id, since_day, created_after=None):
        params = [("user_id", f"eq.{owner_id}"), ("logical_day", f"gte.{dates.day_key(since_day)}"),
                  ("select", "*")]
        if created_after is not None:
            params.append(("created_at", f"gt.{dates.to_iso(created_after)}"))
        return self._request("GET", COMPLETIONS_TABLE, params=params) or []

    def fetch_user(self, owner_id):
        rows = self._request("GET", USERS_TABLE, params={"id": f"eq.{owner_id}", "select": "*"}) or []
        return rows[0] if rows else None

    def upsert_habits(self, habits):
        if not habits:
            return
        self._request("POST", HABITS_TABLE, payload=habits, prefer="resolution=merge-duplicates")

    def delete_habit(self, habit_id):
        self._request("DELETE", HABITS_TABLE, params={"id": f"eq.{habit_id}"})

    def upsert_completions(self, completions):
        if not completions:
            return []
        rows = self._request("POST", COMPLETIONS_TABLE, payload=completions,
                             prefer="resolution=ignore-duplicates,return=representation") or []
        return [r["id"] for r in rows]

    def upsert_user(self, user):
        self._request("POST", USERS_TABLE, payload=user, prefer="resolution=merge-duplicates")

    def increment_completions(self, habit_id, by=1):
        self._request("POST", "rpc/increment_completions", payload={"habit_id": habit_id, "amount": by})


class InMemoryRemoteStore(RemoteStore):
    """Dict-backed remote. ``fail`` maps a method name to an exception it should raise."""

    def __init__(self):
        self.habits: Dict[str, dict] = {}
        self.completions: Dict[str, dict] = {}
        self.users: Dict[str, dict] = {}
        self.fail: Dict[str, RemoteError] = {}
        self.calls: List[str] = []

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        exc = self.fail.get(name)
        if exc is not None:
            raise exc

    def fetch_habits(self, owner_id, updated_after=None):
        self._enter("fetch_habits")
        rows = [h for h in self.habits.values() if h.get("user_id") == owner_id]
        if updated_after is not None:
            cutoff = dates.ensure_utc(updated_after)
            rows = [h for h in rows if (dates.parse_timestamp(h.get("updated_at")) or cutoff) > cutoff]
        return copy.deepcopy(rows)

    def fetch_completions(self, owner_id, since_day, created_after=None):
        self._enter("fetch_completions")
        rows = [c for c in self.completions.values()
                if c.get("user_id") == owner_id and c.get("logical_day", "") >= dates.day_key(since_day)]
        if created_after is not None:
            cutoff = dates.ensure_utc(created_after)
            rows = [c for c in rows if (dates.parse_timestamp(c.get("created_at")) or cutoff) > cutoff]
        return copy.deepcopy(rows)

    def fetch_user(self, owner_id):
        self._enter("fetch_user")
        user = self.users.get(owner_id)
        return copy.deepcopy(user) if user else None

    def upsert_habits(self, habits):
        self._enter("upsert_habits")
        for h in habits:
            current = self.habits.get(h["id"], {})
            # total_completions is server managed
            merged = dict(current, **h)
            merged.setdefault("total_completions", 0)
            self.habits[h["id"]] = merged

    def delete_habit(self, habit_id):
        self._enter("delete_habit")
        self.habits.pop(habit_id, None)

    def upsert_completions(self, completions):
        self._enter("upsert_completions")
        inserted = []
        for c in completions:
            if c["id"] not in self.completions:
                self.completions[c["id"]] = dict(c)
                inserted.append(c["id"])
        return inserted

    def upsert_user(self, user):
        self._enter("upsert_user")
        self.users[user["id"]] = dict(self.users.get(user["id"], {}), **user)

    def increment_completions(self, habit_id, by=1):
        self._enter("increment_completions")
        habit = self.habits.get(habit_id)
        if habit is not None:
            habit["total_completions"] = (habit.get("total_completions") or 0) + by


def make_remote_store(config: EngineConfig) -> RemoteStore:
    if config.remote_url:
        logger.info("Using remote store at %s", config.remote_url)
        return RestRemoteStore(config.remote_url, config.remote_api_key, config.remote_timeout_seconds)
    logger.warning("REMOTE_URL not set; syncing against an in-memory store (offline mode)")
    return InMemoryRemoteStore()
