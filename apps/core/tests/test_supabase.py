from __future__ import annotations

import asyncio
import json
from datetime import date

import httpx
import jwt
import pytest

from miniramadan import supabase
from miniramadan.schemas import ActivityKind, FastingLog, Star
from miniramadan.supabase import (
    GatewayAuthError,
    GatewayConflict,
    GatewayError,
    GatewayUnavailable,
    SupabaseClient,
    SupabaseGateway,
    client_for_token,
    parse_bearer_token,
)

BASE_URL = "https://proj.supabase.co"
JWT_SECRET = "test-secret-that-is-long-enough-for-hs256"

FAMILY_ROW = {
    "id": "fam-1",
    "user_id": "user-1",
    "family_name": "The Testers",
    "ramadan_start_date": "2026-02-28",
    "is_ramadan_date_confirmed": True,
    "timezone": "Europe/London",
    "subscription_tier": "free",
    "stripe_customer_id": "cus_123",
    "created_at": "2026-01-10T09:00:00+00:00",
}

STAR_ROW = {
    "id": "srv-1",
    "profile_id": "p-0",
    "family_id": "fam-1",
    "date": "2026-03-02",
    "ramadan_day": 3,
    "source": "fasting",
    "count": 3,
    "created_at": "2026-03-02T12:00:00+00:00",
}


@pytest.fixture(autouse=True)
def supabase_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SUPABASE_URL", BASE_URL + "/")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.delenv("SUPABASE_JWT_SECRET", raising=False)
    supabase._supabase_config.cache_clear()
    supabase._jwks_url.cache_clear()
    supabase._jwks_client.cache_clear()
    yield
    supabase._supabase_config.cache_clear()


def gateway_for(handler) -> tuple[SupabaseGateway, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = SupabaseClient(
        base_url=BASE_URL,
        anon_key="anon-key",
        access_token="user-token",
        transport=httpx.MockTransport(recording),
    )
    return SupabaseGateway(client), seen


def test_parse_bearer_token() -> None:
    assert parse_bearer_token("Bearer abc") == "abc"
    assert parse_bearer_token("bearer abc") == "abc"
    for header in (None, "", "abc", "Token abc", "Bearer a b"):
        with pytest.raises(GatewayAuthError):
            parse_bearer_token(header)


def test_client_for_token_uses_env() -> None:
    client = client_for_token("tok", timeout=3)
    assert client.base_url == BASE_URL
    assert client.anon_key == "anon-key"
    assert client.timeout == 3


def test_get_family_queries_by_owner() -> None:
    gateway, seen = gateway_for(lambda request: httpx.Response(200, json=[FAMILY_ROW]))
    family = asyncio.run(gateway.get_family("user-1"))

    [request] = seen
    assert request.method == "GET"
    assert request.url.path == "/rest/v1/families"
    assert request.url.params["user_id"] == "eq.user-1"
    assert request.url.params["limit"] == "1"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["authorization"] == "Bearer user-token"

    assert family.id == "fam-1"
    assert family.season_start_date == date(2026, 2, 28)
    assert family.is_start_confirmed
    assert family.timezone == "Europe/London"


def test_get_family_returns_none_when_missing() -> None:
    gateway, _ = gateway_for(lambda request: httpx.Response(200, json=[]))
    assert asyncio.run(gateway.get_family("user-1")) is None


def test_list_activity_filters_by_date_only_for_dated_kinds() -> None:
    gateway, seen = gateway_for(lambda request: httpx.Response(200, json=[]))
    asyncio.run(gateway.list_activity("fam-1", ActivityKind.STARS, date(2026, 3, 2)))
    asyncio.run(gateway.list_activity("fam-1", ActivityKind.MEMORIES, date(2026, 3, 2)))
    assert seen[0].url.params["date"] == "eq.2026-03-02"
    assert "date" not in seen[1].url.params
    assert seen[1].url.params["family_id"] == "eq.fam-1"


def test_insert_returns_server_record() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["prefer"] == "return=representation"
        body = json.loads(request.content)
        assert "id" not in body
        return httpx.Response(201, json=[STAR_ROW])

    gateway, _ = gateway_for(handler)
    payload = {k: v for k, v in STAR_ROW.items() if k not in {"id", "created_at"}}
    star = asyncio.run(gateway.insert(ActivityKind.STARS, payload))
    assert isinstance(star, Star)
    assert star.id == "srv-1"
    assert star.season_day == 3


def test_insert_without_returned_row_is_an_error() -> None:
    gateway, _ = gateway_for(lambda request: httpx.Response(201, content=b""))
    with pytest.raises(GatewayError):
        asyncio.run(gateway.insert(ActivityKind.STARS, {}))


def test_upsert_merges_on_conflict_key() -> None:
    row = {
        "id": "log-1",
        "profile_id": "p-0",
        "family_id": "fam-1",
        "date": "2026-03-02",
        "ramadan_day": 3,
        "mode": "full",
        "stars_earned": 3,
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.url.params["on_conflict"] == "profile_id,date"
        assert "merge-duplicates" in request.headers["prefer"]
        return httpx.Response(201, json=[row])

    gateway, _ = gateway_for(handler)
    log = asyncio.run(gateway.upsert(ActivityKind.FASTING_LOGS, row, "profile_id,date"))
    assert isinstance(log, FastingLog)
    assert log.mode.value == "full"


def test_update_and_delete_target_one_row() -> None:
    gateway, seen = gateway_for(
        lambda request: httpx.Response(200, json=[]) if request.method == "PATCH" else httpx.Response(204)
    )
    assert asyncio.run(gateway.update(ActivityKind.MEMORIES, "m-1", {"caption": "x"})) is None
    asyncio.run(gateway.delete(ActivityKind.MEMORIES, "m-1"))
    assert [r.method for r in seen] == ["PATCH", "DELETE"]
    assert all(r.url.params["id"] == "eq.m-1" for r in seen)


@pytest.mark.parametrize(
    "status, body, expected",
    [
        (409, {"code": "23505", "message": "duplicate key value"}, GatewayConflict),
        (400, {"code": "23505", "message": "duplicate key value"}, GatewayConflict),
        (401, {"message": "JWT expired"}, GatewayAuthError),
        (403, {"message": "permission denied"}, GatewayAuthError),
        (503, {"message": "unavailable"}, GatewayUnavailable),
        (400, {"code": "23514", "message": "check violation"}, GatewayError),
    ],
)
def test_error_statuses_map_to_gateway_errors(status, body, expected) -> None:
    gateway, _ = gateway_for(lambda request: httpx.Response(status, json=body))
    with pytest.raises(GatewayError) as excinfo:
        asyncio.run(gateway.insert(ActivityKind.STARS, {}))
    assert type(excinfo.value) is expected
    assert excinfo.value.status_code == status


def test_conflict_carries_postgres_code() -> None:
    gateway, _ = gateway_for(lambda request: httpx.Response(409, json={"code": "23505"}))
    with pytest.raises(GatewayConflict) as excinfo:
        asyncio.run(gateway.insert(ActivityKind.STARS, {}))
    assert excinfo.value.code == "23505"


def test_transport_failure_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway, _ = gateway_for(handler)
    with pytest.raises(GatewayUnavailable):
        asyncio.run(gateway.list_profiles("fam-1"))


def test_captive_portal_page_is_a_gateway_error() -> None:
    gateway, _ = gateway_for(
        lambda request: httpx.Response(200, text="<html>captive portal</html>", headers={"content-type": "text/html"})
    )
    with pytest.raises(GatewayError) as excinfo:
        asyncio.run(gateway.list_activity("fam-1", ActivityKind.STARS))
    assert "non-JSON" in str(excinfo.value)
    with pytest.raises(GatewayError):
        asyncio.run(gateway.get_family("user-1"))


def test_malformed_row_is_a_gateway_error() -> None:
    broken = {k: v for k, v in STAR_ROW.items() if k != "ramadan_day"}
    gateway, _ = gateway_for(lambda request: httpx.Response(200, json=[broken]))
    with pytest.raises(GatewayError) as excinfo:
        asyncio.run(gateway.list_activity("fam-1", ActivityKind.STARS))
    assert "Malformed stars row" in str(excinfo.value)

    gateway, _ = gateway_for(lambda request: httpx.Response(200, json={"unexpected": [1, 2]}))
    with pytest.raises(GatewayError):
        asyncio.run(gateway.list_profiles("fam-1"))


def test_identity_from_shared_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUPABASE_JWT_SECRET", JWT_SECRET)
    token = jwt.encode(
        {"sub": "user-1", "email": "family@example.com", "aud": "authenticated"},
        JWT_SECRET,
        algorithm="HS256",
    )
    client = SupabaseClient(base_url=BASE_URL, anon_key="anon-key", access_token=token)
    identity = asyncio.run(SupabaseGateway(client).get_identity())
    assert identity.user_id == "user-1"
    assert identity.email == "family@example.com"


def test_identity_rejects_bad_signature(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SUPABASE_JWT_SECRET", JWT_SECRET)
    token = jwt.encode({"sub": "user-1", "aud": "authenticated"}, "x" * 40, algorithm="HS256")
    client = SupabaseClient(base_url=BASE_URL, anon_key="anon-key", access_token=token)
    with pytest.raises(GatewayAuthError):
        asyncio.run(SupabaseGateway(client).get_identity())


def test_identity_falls_back_to_auth_api() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/auth/v1/user"
        return httpx.Response(200, json={"id": "user-9", "email": "nine@example.com"})

    token = jwt.encode({"sub": "ignored"}, "y" * 40, algorithm="HS256")
    client = SupabaseClient(
        base_url=BASE_URL,
        anon_key="anon-key",
        access_token=token,
        transport=httpx.MockTransport(handler),
    )
    identity = asyncio.run(SupabaseGateway(client).get_identity())
    assert identity.user_id == "user-9"


def test_auth_api_rejection() -> None:
    token = jwt.encode({"sub": "ignored"}, "y" * 40, algorithm="HS256")
    client = SupabaseClient(
        base_url=BASE_URL,
        anon_key="anon-key",
        access_token=token,
        transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"message": "bad jwt"})),
    )
    with pytest.raises(GatewayAuthError):
        asyncio.run(SupabaseGateway(client).get_identity())


def test_garbage_token_is_rejected() -> None:
    client = SupabaseClient(base_url=BASE_URL, anon_key="anon-key", access_token="not-a-jwt")
    with pytest.raises(GatewayAuthError):
        asyncio.run(SupabaseGateway(client).get_identity())
