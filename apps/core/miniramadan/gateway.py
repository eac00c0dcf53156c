"""Remote data gateway contract and the push channel it feeds."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel

from .schemas import ActivityKind, Family, Profile

Row = Dict[str, Any]


class Identity(BaseModel):
    user_id: str
    email: Optional[str] = None


class Session(BaseModel):
    """Authenticated session handed to the coordinator by the auth shell."""

    access_token: str
    identity: Optional[Identity] = None


@dataclass
class ChangeEvent:
    kind: ActivityKind
    event: str
    record: BaseModel


_CLOSED = object()


class ChangeStream:
    """Single-consumer channel of pushed records.

    The subscription produces with `publish`; the coordinator consumes with
    `async for`. Closing ends iteration after already-queued events drain.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._on_close: List[Any] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    def add_close_callback(self, callback: Any) -> None:
        self._on_close.append(callback)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)
        for callback in self._on_close:
            result = callback()
            if asyncio.iscoroutine(result):
                await result

    def __aiter__(self) -> "ChangeStream":
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class DataGateway(Protocol):
    async def get_identity(self) -> Identity: ...

    async def get_family(self, user_id: str) -> Optional[Family]: ...

    async def list_profiles(self, family_id: str) -> List[Profile]: ...

    async def list_activity(
        self,
        family_id: str,
        kind: ActivityKind,
        date: Optional[date] = None,
    ) -> List[BaseModel]: ...

    async def insert(self, kind: ActivityKind, payload: Row) -> BaseModel: ...

    async def upsert(self, kind: ActivityKind, payload: Row, conflict_key: str) -> BaseModel: ...

    async def update(self, kind: ActivityKind, record_id: str, payload: Row) -> Optional[BaseModel]: ...

    async def delete(self, kind: ActivityKind, record_id: str) -> None: ...

    async def subscribe(self, family_id: str, kinds: Sequence[ActivityKind]) -> ChangeStream: ...
