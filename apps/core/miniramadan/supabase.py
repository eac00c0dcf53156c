from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import date
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

import httpx
import jwt
from jwt import PyJWKClient
from pydantic import BaseModel

from .gateway import ChangeStream, Identity
from .schemas import ActivityKind, Family, Profile
from .wire import family_to_domain, profile_to_domain, record_to_domain

logger = logging.getLogger(__name__)

CONFLICT_CODE = "23505"

T = TypeVar("T")

# Memories and time capsules are keyed by year, not by calendar date.
DATED_KINDS = {
    ActivityKind.STARS,
    ActivityKind.FASTING_LOGS,
    ActivityKind.SUHOOR_LOGS,
    ActivityKind.MESSAGES,
}


class GatewayError(Exception):
    """Backend call failed; carries the HTTP status and PostgREST code if any."""

    def __init__(self, detail: str, *, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.code = code


class GatewayUnavailable(GatewayError):
    """Transport failure or timeout; the backend was never reached."""


class GatewayConflict(GatewayError):
    """Duplicate key on insert/upsert."""


class GatewayAuthError(GatewayError):
    """Missing, invalid or expired credentials."""


@lru_cache
def _supabase_config() -> tuple[str, str]:
    url = os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL")
    anon_key = os.getenv("SUPABASE_ANON_KEY") or os.getenv("NEXT_PUBLIC_SUPABASE_ANON_KEY")
    if not url or not anon_key:
        raise RuntimeError("Missing SUPABASE_URL/SUPABASE_ANON_KEY for API access.")
    return url.rstrip("/"), anon_key


@lru_cache
def _jwks_url() -> str:
    base_url, _ = _supabase_config()
    return os.getenv("SUPABASE_JWKS_URL") or f"{base_url}/auth/v1/keys"


@lru_cache
def _jwks_client() -> PyJWKClient:
    return PyJWKClient(_jwks_url())


def parse_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise GatewayAuthError("Missing authorization token.", status_code=401)
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise GatewayAuthError("Invalid authorization token.", status_code=401)
    return parts[1]


def _describe_response(resp: httpx.Response) -> str:
    try:
        return resp.text or "<empty response>"
    except Exception:
        return "<unable to read response>"


def _error_code(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        code = body.get("code")
        return str(code) if code is not None else None
    return None


def _raise_supabase_error(
    resp: httpx.Response,
    action: str,
    *,
    object_label: Optional[str] = None,
) -> None:
    detail = _describe_response(resp)
    label = f" ({object_label})" if object_label else ""
    message = f"Supabase {action} failed{label}: status={resp.status_code}, body={detail}"
    code = _error_code(resp)
    if resp.status_code == 409 or code == CONFLICT_CODE:
        raise GatewayConflict(message, status_code=resp.status_code, code=code)
    if resp.status_code in {401, 403}:
        raise GatewayAuthError(message, status_code=resp.status_code, code=code)
    if resp.status_code in {502, 503, 504}:
        raise GatewayUnavailable(message, status_code=resp.status_code, code=code)
    raise GatewayError(message, status_code=resp.status_code, code=code)


def _json_rows(resp: httpx.Response, action: str, *, object_label: str) -> List[Dict[str, Any]]:
    """Decode a PostgREST row list; anything else (e.g. a captive portal page) is an error."""
    if not resp.content:
        return []
    try:
        body = resp.json()
    except ValueError as exc:
        raise GatewayError(
            f"Supabase {action} returned a non-JSON body ({object_label}): {_describe_response(resp)[:200]}",
            status_code=resp.status_code,
        ) from exc
    if isinstance(body, dict):
        body = [body]
    if not isinstance(body, list) or not all(isinstance(row, dict) for row in body):
        raise GatewayError(
            f"Supabase {action} returned an unexpected body ({object_label})",
            status_code=resp.status_code,
        )
    return body


def _convert(table: str, build: Callable[[], T]) -> T:
    try:
        return build()
    except (KeyError, TypeError, ValueError) as exc:
        raise GatewayError(f"Malformed {table} row: {exc}") from exc


def _decode(token: str, key: Any, algorithm: str) -> Dict[str, Any]:
    audience = os.getenv("SUPABASE_JWT_AUD", "authenticated")
    return jwt.decode(
        token,
        key,
        algorithms=[algorithm],
        audience=audience if audience else None,
        options={"verify_aud": bool(audience)},
    )


async def verify_access_token(
    token: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Return the token claims, trying the shared secret, JWKS, then the auth API."""
    try:
        algorithm = jwt.get_unverified_header(token).get("alg")
    except jwt.PyJWTError as exc:
        raise GatewayAuthError("Invalid or expired token.", status_code=401) from exc

    secret = os.getenv("SUPABASE_JWT_SECRET")
    if algorithm == "HS256" and secret:
        try:
            return _decode(token, secret, "HS256")
        except jwt.PyJWTError as exc:
            raise GatewayAuthError("Invalid or expired token.", status_code=401) from exc

    if algorithm and algorithm.startswith(("RS", "ES")):
        try:
            signing_key = _jwks_client().get_signing_key_from_jwt(token)
            return _decode(token, signing_key.key, algorithm)
        except jwt.ExpiredSignatureError as exc:
            raise GatewayAuthError("Invalid or expired token.", status_code=401) from exc
        except jwt.PyJWTError:
            logger.info("JWKS verification failed; falling back to auth API")

    base_url, anon_key = _supabase_config()
    try:
        async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
            resp = await client.get(
                f"{base_url}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": anon_key,
                },
            )
    except httpx.TransportError as exc:
        raise GatewayUnavailable(f"Auth lookup failed: {exc}") from exc
    if resp.status_code >= 400:
        raise GatewayAuthError("Invalid or expired token.", status_code=401)
    rows = _json_rows(resp, "auth lookup", object_label="auth/v1/user")
    data = rows[0] if rows else {}
    user_id = data.get("id")
    if not user_id:
        raise GatewayAuthError("Invalid or expired token.", status_code=401)
    return {"sub": user_id, "email": data.get("email")}


@dataclass
class SupabaseClient:
    base_url: str
    anon_key: str
    access_token: str
    timeout: float = 15.0
    transport: Optional[httpx.AsyncBaseTransport] = field(default=None, repr=False)

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    async def request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}/rest/v1/{table}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                return await client.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=self._headers(headers),
                )
        except httpx.TransportError as exc:
            raise GatewayUnavailable(f"Supabase {method} {table} unreachable: {exc}") from exc

    async def select(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        resp = await self.request("GET", table, params=params)
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "select", object_label=f"table={table}")
        return _json_rows(resp, "select", object_label=f"table={table}")

    async def insert(
        self,
        table: str,
        payload: Dict[str, Any],
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "POST",
            table,
            params=params,
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "insert", object_label=f"table={table}")
        return _json_rows(resp, "insert", object_label=f"table={table}")

    async def upsert(
        self,
        table: str,
        payload: Dict[str, Any],
        *,
        on_conflict: str,
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "POST",
            table,
            params={"on_conflict": on_conflict},
            json=payload,
            headers={
                "Prefer": "resolution=merge-duplicates,return=representation",
            },
        )
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "upsert", object_label=f"table={table}")
        return _json_rows(resp, "upsert", object_label=f"table={table}")

    async def update(
        self,
        table: str,
        payload: Dict[str, Any],
        params: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        resp = await self.request(
            "PATCH",
            table,
            params=params,
            json=payload,
            headers={"Prefer": "return=representation"},
        )
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "update", object_label=f"table={table}")
        return _json_rows(resp, "update", object_label=f"table={table}")

    async def delete(self, table: str, params: Dict[str, Any]) -> None:
        resp = await self.request("DELETE", table, params=params)
        if resp.status_code >= 400:
            _raise_supabase_error(resp, "delete", object_label=f"table={table}")


def client_for_token(
    access_token: str,
    *,
    timeout: float = 15.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SupabaseClient:
    base_url, anon_key = _supabase_config()
    return SupabaseClient(
        base_url=base_url,
        anon_key=anon_key,
        access_token=access_token,
        timeout=timeout,
        transport=transport,
    )


class SupabaseGateway:
    """DataGateway over PostgREST plus Realtime for push."""

    def __init__(self, client: SupabaseClient, *, realtime_connect: Any = None) -> None:
        self.client = client
        self._realtime_connect = realtime_connect
        self._email: Optional[str] = None

    async def get_identity(self) -> Identity:
        claims = await verify_access_token(self.client.access_token, transport=self.client.transport)
        user_id = claims.get("sub")
        if not user_id:
            raise GatewayAuthError("Token has no subject.", status_code=401)
        self._email = claims.get("email")
        return Identity(user_id=user_id, email=self._email)

    async def get_family(self, user_id: str) -> Optional[Family]:
        rows = await self.client.select(
            "families",
            params={"select": "*", "user_id": f"eq.{user_id}", "limit": "1"},
        )
        if not rows:
            logger.info("No family found for user", extra={"user_id": user_id})
            return None
        return _convert("families", lambda: family_to_domain(rows[0], email=self._email or ""))

    async def list_profiles(self, family_id: str) -> List[Profile]:
        rows = await self.client.select(
            "profiles",
            params={"select": "*", "family_id": f"eq.{family_id}", "order": "created_at.asc"},
        )
        return _convert("profiles", lambda: [profile_to_domain(row) for row in rows])

    async def list_activity(
        self,
        family_id: str,
        kind: ActivityKind,
        date: Optional[date] = None,
    ) -> List[BaseModel]:
        kind = ActivityKind(kind)
        params: Dict[str, Any] = {
            "select": "*",
            "family_id": f"eq.{family_id}",
            "order": "created_at.asc",
        }
        if date is not None and kind in DATED_KINDS:
            params["date"] = f"eq.{date.isoformat()}"
        rows = await self.client.select(kind.value, params=params)
        return _convert(kind.value, lambda: [record_to_domain(kind, row) for row in rows])

    async def insert(self, kind: ActivityKind, payload: Dict[str, Any]) -> BaseModel:
        kind = ActivityKind(kind)
        rows = await self.client.insert(kind.value, payload)
        if not rows:
            raise GatewayError(f"Supabase insert returned no row (table={kind.value})")
        return _convert(kind.value, lambda: record_to_domain(kind, rows[0]))

    async def upsert(self, kind: ActivityKind, payload: Dict[str, Any], conflict_key: str) -> BaseModel:
        kind = ActivityKind(kind)
        rows = await self.client.upsert(kind.value, payload, on_conflict=conflict_key)
        if not rows:
            raise GatewayError(f"Supabase upsert returned no row (table={kind.value})")
        return _convert(kind.value, lambda: record_to_domain(kind, rows[0]))

    async def update(
        self,
        kind: ActivityKind,
        record_id: str,
        payload: Dict[str, Any],
    ) -> Optional[BaseModel]:
        kind = ActivityKind(kind)
        rows = await self.client.update(kind.value, payload, params={"id": f"eq.{record_id}"})
        if not rows:
            return None
        return _convert(kind.value, lambda: record_to_domain(kind, rows[0]))

    async def delete(self, kind: ActivityKind, record_id: str) -> None:
        kind = ActivityKind(kind)
        await self.client.delete(kind.value, params={"id": f"eq.{record_id}"})

    async def subscribe(self, family_id: str, kinds: Sequence[ActivityKind]) -> ChangeStream:
        from .realtime import RealtimeSubscription

        subscription = RealtimeSubscription(
            base_url=self.client.base_url,
            api_key=self.client.anon_key,
            access_token=self.client.access_token,
            family_id=family_id,
            kinds=[ActivityKind(kind) for kind in kinds],
            connect=self._realtime_connect,
        )
        return await subscription.start()
