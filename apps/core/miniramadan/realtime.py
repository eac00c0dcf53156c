"""Supabase Realtime subscription (Phoenix channel protocol over websockets).

One channel per table, each joined with a `postgres_changes` filter on the
family id. Decoded records are published into a ChangeStream; the socket
task stops when the stream is closed.
"""
from __future__ import annotations

import asyncio
import json
import logging
from itertools import count
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlencode

import websockets
from pydantic import ValidationError

from .gateway import ChangeEvent, ChangeStream
from .schemas import ActivityKind
from .wire import record_to_domain

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 25.0
PHOENIX_VSN = "1.0.0"


def realtime_url(base_url: str, api_key: str) -> str:
    ws_base = base_url.replace("https://", "wss://", 1).replace("http://", "ws://", 1)
    query = urlencode({"apikey": api_key, "vsn": PHOENIX_VSN})
    return f"{ws_base}/realtime/v1/websocket?{query}"


def channel_topic(kind: ActivityKind) -> str:
    return f"realtime:{kind.value}-changes"


def join_message(
    kind: ActivityKind,
    family_id: str,
    access_token: str,
    ref: str,
    events: Iterable[str] = ("INSERT",),
) -> Dict[str, Any]:
    changes = [
        {
            "event": event,
            "schema": "public",
            "table": kind.value,
            "filter": f"family_id=eq.{family_id}",
        }
        for event in events
    ]
    return {
        "topic": channel_topic(kind),
        "event": "phx_join",
        "payload": {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": changes,
            },
            "access_token": access_token,
        },
        "ref": ref,
        "join_ref": ref,
    }


def heartbeat_message(ref: str) -> Dict[str, Any]:
    return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": ref}


def parse_change(raw: str | bytes) -> Optional[ChangeEvent]:
    """Decode one socket frame; None for anything that is not a row change."""
    try:
        message = json.loads(raw)
    except ValueError:
        logger.warning("Dropping malformed realtime frame")
        return None
    if not isinstance(message, dict) or message.get("event") != "postgres_changes":
        return None
    data = (message.get("payload") or {}).get("data") or {}
    table = data.get("table")
    record = data.get("record")
    if not table or not isinstance(record, dict):
        return None
    try:
        kind = ActivityKind(table)
        return ChangeEvent(kind=kind, event=data.get("type") or "INSERT", record=record_to_domain(kind, record))
    except (ValueError, KeyError, TypeError, ValidationError):
        logger.warning("Dropping unreadable realtime record", extra={"table": table})
        return None


class RealtimeSubscription:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        access_token: str,
        family_id: str,
        kinds: List[ActivityKind],
        events: Iterable[str] = ("INSERT",),
        connect: Optional[Callable[..., Any]] = None,
        heartbeat_seconds: float = HEARTBEAT_SECONDS,
    ) -> None:
        self.url = realtime_url(base_url, api_key)
        self.access_token = access_token
        self.family_id = family_id
        self.kinds = kinds
        self.events = tuple(events)
        self._connect = connect or websockets.connect
        self._heartbeat_seconds = heartbeat_seconds
        self._refs = count(1)
        self._task: Optional[asyncio.Task] = None
        self.stream = ChangeStream()

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def start(self) -> ChangeStream:
        self.stream.add_close_callback(self.stop)
        self._task = asyncio.create_task(self._run())
        return self.stream

    async def stop(self) -> None:
        task = self._task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            await ws.send(json.dumps(heartbeat_message(self._next_ref())))

    async def _run(self) -> None:
        heartbeat: Optional[asyncio.Task] = None
        try:
            async with self._connect(self.url, close_timeout=5) as ws:
                for kind in self.kinds:
                    message = join_message(kind, self.family_id, self.access_token, self._next_ref(), self.events)
                    await ws.send(json.dumps(message))
                logger.info(
                    "Realtime joined",
                    extra={"family_id": self.family_id, "kinds": [k.value for k in self.kinds]},
                )
                heartbeat = asyncio.create_task(self._heartbeat(ws))
                async for raw in ws:
                    event = parse_change(raw)
                    if event is not None:
                        self.stream.publish(event)
        except (OSError, websockets.WebSocketException) as exc:
            logger.warning("Realtime connection lost", extra={"family_id": self.family_id, "error": str(exc)})
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
            if not self.stream.closed:
                await self.stream.close()
