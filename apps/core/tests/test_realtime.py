from __future__ import annotations

import asyncio
import json

from miniramadan.realtime import (
    RealtimeSubscription,
    channel_topic,
    join_message,
    parse_change,
    realtime_url,
)
from miniramadan.schemas import ActivityKind, FamilyMessage, Star

STAR_RECORD = {
    "id": "srv-1",
    "profile_id": "p-0",
    "family_id": "fam-1",
    "date": "2026-03-02",
    "ramadan_day": 3,
    "source": "wonder",
    "count": 1,
}


def change_frame(table: str, record: dict, event_type: str = "INSERT") -> str:
    return json.dumps(
        {
            "topic": f"realtime:{table}-changes",
            "event": "postgres_changes",
            "payload": {"data": {"table": table, "type": event_type, "record": record}},
            "ref": None,
        }
    )


class FakeSocket:
    def __init__(self, frames):
        self.frames = list(frames)
        self.sent = []

    async def send(self, data):
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            yield frame

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def test_realtime_url() -> None:
    url = realtime_url("https://proj.supabase.co", "anon-key")
    assert url == "wss://proj.supabase.co/realtime/v1/websocket?apikey=anon-key&vsn=1.0.0"
    assert realtime_url("http://localhost:54321", "k").startswith("ws://localhost:54321/")


def test_join_message_filters_by_family() -> None:
    message = join_message(ActivityKind.STARS, "fam-1", "token", "7")
    assert message["topic"] == channel_topic(ActivityKind.STARS) == "realtime:stars-changes"
    assert message["event"] == "phx_join"
    assert message["payload"]["access_token"] == "token"
    [change] = message["payload"]["config"]["postgres_changes"]
    assert change == {"event": "INSERT", "schema": "public", "table": "stars", "filter": "family_id=eq.fam-1"}


def test_parse_change_decodes_records() -> None:
    event = parse_change(change_frame("stars", STAR_RECORD))
    assert event.kind is ActivityKind.STARS
    assert event.event == "INSERT"
    assert isinstance(event.record, Star)
    assert event.record.season_day == 3


def test_parse_change_ignores_everything_else() -> None:
    assert parse_change("{not json") is None
    assert parse_change(json.dumps({"event": "phx_reply", "payload": {"status": "ok"}})) is None
    assert parse_change(change_frame("unknown_table", {"id": "x"})) is None
    assert parse_change(change_frame("stars", {"id": "missing-fields"})) is None
    assert parse_change(change_frame("stars", {**STAR_RECORD, "ramadan_day": "soon"})) is None
    assert parse_change(json.dumps(["postgres_changes"])) is None


def test_subscription_joins_each_table_and_publishes() -> None:
    message = {
        "id": "msg-1",
        "family_id": "fam-1",
        "sender_id": "p-0",
        "recipient_id": None,
        "message": "Iftar is ready",
        "date": "2026-03-02",
        "ramadan_day": 3,
    }
    socket = FakeSocket(
        [
            json.dumps({"event": "phx_reply", "payload": {"status": "ok"}}),
            change_frame("stars", STAR_RECORD),
            "garbage",
            change_frame("messages", message),
        ]
    )
    connected = []

    def connect(url, **kwargs):
        connected.append((url, kwargs))
        return socket

    async def scenario():
        subscription = RealtimeSubscription(
            base_url="https://proj.supabase.co",
            api_key="anon-key",
            access_token="token",
            family_id="fam-1",
            kinds=[ActivityKind.STARS, ActivityKind.MESSAGES],
            connect=connect,
        )
        stream = await subscription.start()
        return [event async for event in stream], stream

    events, stream = asyncio.run(scenario())

    assert [topic["topic"] for topic in socket.sent] == ["realtime:stars-changes", "realtime:messages-changes"]
    assert connected[0][1] == {"close_timeout": 5}
    assert [e.kind for e in events] == [ActivityKind.STARS, ActivityKind.MESSAGES]
    assert isinstance(events[1].record, FamilyMessage)
    assert events[1].record.recipient_id is None
    assert stream.closed


def test_connection_failure_closes_the_stream() -> None:
    def connect(url, **kwargs):
        raise OSError("network is unreachable")

    async def scenario():
        subscription = RealtimeSubscription(
            base_url="https://proj.supabase.co",
            api_key="anon-key",
            access_token="token",
            family_id="fam-1",
            kinds=[ActivityKind.STARS],
            connect=connect,
        )
        stream = await subscription.start()
        return [event async for event in stream], stream

    events, stream = asyncio.run(scenario())
    assert events == []
    assert stream.closed


def test_closing_the_stream_stops_the_socket_task() -> None:
    class IdleSocket(FakeSocket):
        async def _frames(self):
            await asyncio.Event().wait()
            yield  # pragma: no cover

    socket = IdleSocket([])

    async def scenario():
        subscription = RealtimeSubscription(
            base_url="https://proj.supabase.co",
            api_key="anon-key",
            access_token="token",
            family_id="fam-1",
            kinds=[ActivityKind.STARS],
            connect=lambda url, **kwargs: socket,
        )
        stream = await subscription.start()
        await asyncio.sleep(0)
        await stream.close()
        return subscription._task

    task = asyncio.run(scenario())
    assert task.done()
