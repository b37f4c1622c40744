from __future__ import annotations

import json
import stat
from datetime import timedelta
from pathlib import Path

import httpx
import pytest

from conftest import NOW, ScriptedServer, json_body, make_record
from vibekit_mcp.auth import (
    CredentialStore,
    TokenData,
    compute_expires_at,
    logout,
    parse_timestamp,
    refresh_access_token,
    revoke_token,
)
from vibekit_mcp.config import REFRESH_PATH, REVOKE_PATH, Settings


# --- Credential store ---
def test_load_missing_file_returns_none(store: CredentialStore) -> None:
    assert not store.location.exists()
    assert store.load() is None


@pytest.mark.parametrize(
    "content",
    [
        "",
        "   \n",
        "{not json",
        "[]",
        '{"access_token": "A1"}',
        json.dumps(
            {
                "access_token": "A1",
                "refresh_token": "R1",
                "expires_at": "tomorrow",
                "user": {"id": "u", "email": "e", "name": "n"},
            }
        ),
        json.dumps(
            {
                "access_token": "A1",
                "refresh_token": "R1",
                "expires_at": "2025-01-01T00:00:00.000Z",
                "user": None,
            }
        ),
    ],
    ids=["empty", "blank", "invalid-json", "not-object", "incomplete", "bad-expiry", "no-user"],
)
def test_load_unusable_file_returns_none(store: CredentialStore, content: str) -> None:
    store.location.parent.mkdir(parents=True)
    store.location.write_text(content, encoding="utf-8")
    assert store.load() is None


@pytest.mark.parametrize(
    "raw",
    [b"\xff\xfe{garbage", b'{"access_token": "\xc3\x28"}'],
    ids=["invalid-utf8", "invalid-utf8-in-value"],
)
def test_load_undecodable_file_returns_none(store: CredentialStore, raw: bytes) -> None:
    store.location.parent.mkdir(parents=True)
    store.location.write_bytes(raw)
    assert store.load() is None


def test_load_directory_in_place_of_file_returns_none(store: CredentialStore) -> None:
    store.location.mkdir(parents=True)
    assert store.load() is None


def test_save_then_load_round_trips(store: CredentialStore) -> None:
    record = make_record()
    store.save(record)
    assert store.load() == record


def test_save_writes_expected_json_shape(store: CredentialStore) -> None:
    store.save(make_record())
    data = json.loads(store.location.read_text(encoding="utf-8"))
    assert data == {
        "access_token": "A1",
        "refresh_token": "R1",
        "expires_at": "2025-01-01T13:00:00.000Z",
        "user": {"id": "u-1", "email": "ada@example.test", "name": "Ada"},
    }


def test_save_restricts_permissions(store: CredentialStore) -> None:
    store.save(make_record())
    file_mode = stat.S_IMODE(store.location.stat().st_mode)
    dir_mode = stat.S_IMODE(store.location.parent.stat().st_mode)
    assert file_mode == 0o600
    assert dir_mode & 0o077 == 0


def test_save_overwrites_and_leaves_no_temp_files(store: CredentialStore) -> None:
    store.save(make_record(access_token="A1"))
    store.save(make_record(access_token="A2"))
    loaded = store.load()
    assert loaded is not None and loaded.access_token == "A2"
    assert [p.name for p in store.location.parent.iterdir()] == ["token.json"]


def test_delete_is_idempotent(store: CredentialStore) -> None:
    store.delete()
    store.save(make_record())
    store.delete()
    assert not store.location.exists()
    store.delete()


def test_location_follows_settings(tmp_path: Path) -> None:
    settings = Settings(config_dir=tmp_path / "cfg")
    assert CredentialStore.from_settings(settings).location == tmp_path / "cfg" / "token.json"


# --- Expiry arithmetic ---
def test_compute_expires_at_adds_lifetime_to_issue_time() -> None:
    assert compute_expires_at(3600, NOW) == "2025-01-01T13:00:00.000Z"
    assert parse_timestamp(compute_expires_at(90, NOW)) == NOW + timedelta(seconds=90)


@pytest.mark.parametrize(
    "expires_in",
    [None, "3600", True, float("nan"), float("inf"), 1e12],
    ids=["missing", "string", "bool", "nan", "infinite", "out-of-range"],
)
def test_compute_expires_at_rejects_unusable_lifetimes(expires_in) -> None:
    with pytest.raises(ValueError):
        compute_expires_at(expires_in, NOW)


def test_token_expiry_helpers() -> None:
    record = make_record(expires_in=120)
    assert record.seconds_remaining(NOW) == 120
    assert not record.is_expired(NOW)
    assert record.is_expired(NOW + timedelta(seconds=120))


def test_from_dict_accepts_javascript_style_timestamps() -> None:
    record = TokenData.from_dict(
        {
            "access_token": "A1",
            "refresh_token": "R1",
            "expires_at": "2025-01-01T13:00:00.000Z",
            "user": {"id": "u-1", "email": "ada@example.test", "name": "Ada"},
        }
    )
    assert record.expires_at_datetime() == NOW + timedelta(hours=1)


# --- Refresh ---
def test_refresh_keeps_refresh_token_and_user(
    settings: Settings, store: CredentialStore, server: ScriptedServer, clock
) -> None:
    original = make_record(expires_in=-10)
    store.save(original)
    server.add(
        "POST", REFRESH_PATH, httpx.Response(200, json={"access_token": "A2", "expires_in": 3600})
    )

    with server.client() as http:
        updated = refresh_access_token(
            original, settings=settings, store=store, http=http, clock=clock
        )

    assert updated is not None
    assert updated.access_token == "A2"
    assert updated.refresh_token == original.refresh_token
    assert updated.user == original.user
    assert updated.expires_at == "2025-01-01T13:00:00.000Z"
    assert store.load() == updated
    assert json_body(server.calls(REFRESH_PATH)[0]) == {"refresh_token": "R1"}


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(400, json={"error": "invalid_grant"}),
        httpx.Response(500, text="oops"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"expires_in": 3600}),
        httpx.Response(200, json=["A2"]),
        httpx.Response(200, json={"access_token": None, "expires_in": 3600}),
        httpx.Response(200, json={"access_token": "A2"}),
        httpx.Response(200, json={"access_token": "A2", "expires_in": 1e12}),
        httpx.Response(200, content=b'{"access_token": "A2", "expires_in": NaN}'),
    ],
    ids=[
        "rejected",
        "server-error",
        "non-json",
        "missing-token",
        "not-object",
        "null-token",
        "missing-lifetime",
        "lifetime-overflow",
        "lifetime-nan",
    ],
)
def test_refresh_failure_returns_none_and_keeps_store(
    settings: Settings,
    store: CredentialStore,
    server: ScriptedServer,
    response: httpx.Response,
) -> None:
    original = make_record()
    store.save(original)
    before = store.location.read_bytes()
    server.add("POST", REFRESH_PATH, response)

    with server.client() as http:
        assert refresh_access_token(original, settings=settings, store=store, http=http) is None

    assert store.location.read_bytes() == before


def test_refresh_network_error_returns_none(
    settings: Settings, store: CredentialStore, server: ScriptedServer
) -> None:
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    server.add("POST", REFRESH_PATH, unreachable)
    with server.client() as http:
        assert refresh_access_token(make_record(), settings=settings, store=store, http=http) is None
    assert store.load() is None


# --- Revoke / logout ---
def test_revoke_sends_bearer_token(settings: Settings, server: ScriptedServer) -> None:
    server.add("POST", REVOKE_PATH, httpx.Response(200, json={"revoked": True}))
    with server.client() as http:
        assert revoke_token(make_record(), settings=settings, http=http) is True
    assert server.calls(REVOKE_PATH)[0].headers["Authorization"] == "Bearer A1"


def test_revoke_swallows_failures(settings: Settings, server: ScriptedServer) -> None:
    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    server.add("POST", REVOKE_PATH, unreachable)
    with server.client() as http:
        assert revoke_token(make_record(), settings=settings, http=http) is False


def test_logout_deletes_even_when_revoke_fails(
    settings: Settings, store: CredentialStore, server: ScriptedServer
) -> None:
    store.save(make_record())
    server.add("POST", REVOKE_PATH, httpx.Response(503))

    with server.client() as http:
        result = logout(settings=settings, store=store, http=http)

    assert result is not None
    assert result.record == make_record()
    assert result.revoke_requested is True
    assert result.revoked is False
    assert not store.location.exists()
    assert len(server.calls(REVOKE_PATH)) == 1


def test_logout_without_revoke_makes_no_request(
    settings: Settings, store: CredentialStore, server: ScriptedServer
) -> None:
    store.save(make_record())
    with server.client() as http:
        result = logout(settings=settings, store=store, http=http, revoke=False)
    assert result is not None
    assert (result.revoke_requested, result.revoked) == (False, False)
    assert server.requests == []
    assert store.load() is None


def test_logout_reports_confirmed_revocation(
    settings: Settings, store: CredentialStore, server: ScriptedServer
) -> None:
    store.save(make_record())
    server.add("POST", REVOKE_PATH, httpx.Response(200, json={"revoked": True}))

    with server.client() as http:
        result = logout(settings=settings, store=store, http=http)

    assert result is not None
    assert result.revoked is True
    assert not store.location.exists()


def test_logout_when_nothing_stored(
    settings: Settings, store: CredentialStore, server: ScriptedServer
) -> None:
    with server.client() as http:
        assert logout(settings=settings, store=store, http=http) is None
    assert server.requests == []
