from datetime import date, datetime, timezone

import pytest
import requests

from habitisland.config import EngineConfig
from habitisland.exceptions import RemoteError, RemoteRejected, RemoteTimeout, RemoteUnavailable
from habitisland.services.remote import InMemoryRemoteStore, RestRemoteStore, make_remote_store


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.content = b"" if payload is None else b"x"
        self.text = "" if payload is None else str(payload)

    def json(self):
        if self._payload == "garbage":
            raise ValueError("not json")
        return self._payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def store(*responses):
    session = FakeSession(*responses)
    return RestRemoteStore("https://example.supabase.co/", "anon-key", timeout=7, session=session), session


def test_fetch_habits_filters_by_owner_and_timestamp():
    remote, session = store(FakeResponse(200, [{"id": "h1"}]))
    since = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    assert remote.fetch_habits("u1", since) == [{"id": "h1"}]

    method, url, kwargs = session.calls[0]
    assert method == "GET"
    assert url == "https://example.supabase.co/rest/v1/habits"
    assert kwargs["params"]["user_id"] == "eq.u1"
    assert kwargs["params"]["updated_at"] == "gt.2025-01-15T12:00:00+00:00"
    assert kwargs["headers"]["apikey"] == "anon-key"
    assert kwargs["headers"]["Authorization"] == "Bearer anon-key"
    assert kwargs["timeout"] == 7


def test_fetch_completions_uses_retention_window():
    remote, session = store(FakeResponse(200, []))
    remote.fetch_completions("u1", date(2024, 10, 17))
    params = dict(session.calls[0][2]["params"])
    assert params["logical_day"] == "gte.2024-10-17"
    assert "created_at" not in params


def test_fetch_user_returns_first_row_or_none():
    remote, _ = store(FakeResponse(200, [{"id": "u1", "total_xp": 5}]), FakeResponse(200, []))
    assert remote.fetch_user("u1")["total_xp"] == 5
    assert remote.fetch_user("u1") is None


def test_upsert_completions_returns_inserted_ids():
    remote, session = store(FakeResponse(201, [{"id": "c1"}]))
    assert remote.upsert_completions([{"id": "c1"}, {"id": "c2"}]) == ["c1"]
    assert "ignore-duplicates" in session.calls[0][2]["headers"]["Prefer"]


def test_empty_batches_do_not_hit_the_network():
    remote, session = store()
    remote.upsert_habits([])
    assert remote.upsert_completions([]) == []
    assert session.calls == []


def test_increment_goes_through_rpc():
    remote, session = store(FakeResponse(204))
    remote.increment_completions("h1")
    method, url, kwargs = session.calls[0]
    assert url.endswith("/rest/v1/rpc/increment_completions")
    assert kwargs["json"] == {"habit_id": "h1", "amount": 1}


@pytest.mark.parametrize("raised, expected", [
    (requests.Timeout("slow"), RemoteTimeout),
    (requests.ConnectionError("refused"), RemoteUnavailable),
])
def test_transport_errors_are_mapped(raised, expected):
    remote, _ = store(raised)
    with pytest.raises(expected) as info:
        remote.fetch_habits("u1")
    assert info.value.retryable


def test_server_errors_are_retryable_and_client_errors_are_not():
    remote, _ = store(FakeResponse(503, {"message": "down"}), FakeResponse(409, {"message": "conflict"}))
    with pytest.raises(RemoteUnavailable) as server:
        remote.fetch_habits("u1")
    assert server.value.status_code == 503
    with pytest.raises(RemoteRejected) as client:
        remote.fetch_habits("u1")
    assert client.value.status_code == 409
    assert not client.value.retryable


def test_invalid_json_is_a_remote_error():
    remote, _ = store(FakeResponse(200, "garbage"))
    with pytest.raises(RemoteError):
        remote.fetch_habits("u1")


def test_in_memory_store_counts_completions_server_side():
    remote = InMemoryRemoteStore()
    remote.upsert_habits([{"id": "h1", "user_id": "u1", "name": "Water"}])
    assert remote.upsert_completions([{"id": "c1", "habit_id": "h1", "user_id": "u1"}]) == ["c1"]
    assert remote.upsert_completions([{"id": "c1", "habit_id": "h1", "user_id": "u1"}]) == []
    remote.increment_completions("h1")
    remote.upsert_habits([{"id": "h1", "user_id": "u1", "name": "Hydrate"}])
    assert remote.habits["h1"]["total_completions"] == 1
    assert remote.habits["h1"]["name"] == "Hydrate"


def test_make_remote_store_falls_back_to_memory():
    assert isinstance(make_remote_store(EngineConfig()), InMemoryRemoteStore)
    rest = make_remote_store(EngineConfig(remote_url="https://example.supabase.co", remote_api_key="k"))
    assert isinstance(rest, RestRemoteStore)
    assert rest.base_url == "https://example.supabase.co"
