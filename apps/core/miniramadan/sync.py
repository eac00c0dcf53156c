"""Sync coordinator: reconciles the local store with the remote gateway.

Driven by three signals (hydration finished, auth changed, connectivity
changed) plus explicit refresh/flush calls. Nothing raised by the gateway
escapes these entry points; failures land in the store's sync status.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from typing import Any, Callable, Optional, Sequence, Set

from pydantic import BaseModel, ValidationError

from .gateway import ChangeStream, DataGateway, Session
from .schemas import (
    DAILY_CONFLICT_KEY,
    ONCE_PER_DAY_KINDS,
    ActivityKind,
    PendingAction,
    PullResult,
    SyncStatus,
)
from .store import ACTIVITY_KINDS, FamilyStore
from .supabase import GatewayAuthError, GatewayConflict, GatewayError, GatewayUnavailable

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[Session], DataGateway]
MetricsRecorder = Callable[..., None]

SIGNED_IN_EVENTS = {"signed_in", "initial_session", "user_updated"}
TOKEN_EVENTS = {"token_refreshed"}
SIGNED_OUT_EVENTS = {"signed_out", "user_deleted"}


class DrainReport(BaseModel):
    processed: int = 0
    failed: int = 0
    remaining: int = 0
    stopped: bool = False
    error: Optional[str] = None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class SyncCoordinator:
    def __init__(
        self,
        store: FamilyStore,
        gateway_factory: GatewayFactory,
        *,
        realtime_kinds: Optional[Sequence[ActivityKind | str]] = None,
        clear_cache_on_sign_out: bool = False,
        teardown_timeout: float = 2.0,
        metrics: Optional[MetricsRecorder] = None,
    ) -> None:
        self.store = store
        self.gateway_factory = gateway_factory
        self.realtime_kinds = [
            ActivityKind(kind) for kind in (realtime_kinds or (ActivityKind.STARS, ActivityKind.MESSAGES))
        ]
        self.clear_cache_on_sign_out = clear_cache_on_sign_out
        self.teardown_timeout = teardown_timeout
        self.metrics = metrics

        self.session: Optional[Session] = None
        self.gateway: Optional[DataGateway] = None
        self.synced_this_session = False
        self._pull_generation = 0
        self._drain_lock = asyncio.Lock()
        self._stream: Optional[ChangeStream] = None
        self._realtime_task: Optional[asyncio.Task] = None
        self._subscribed_family_id: Optional[str] = None

    # Signals

    async def on_hydrated(self, session: Optional[Session] = None) -> SyncStatus:
        if not self.store.is_hydrated:
            logger.warning("Hydration signal received before the store hydrated; ignoring")
            return self.store.sync_status()
        session = session or self.session
        if session is None:
            # Guest mode: local data is all there is.
            self.store.mark_loaded()
            return self.store.sync_status()
        await self._start_session(session)
        return self.store.sync_status()

    async def on_auth_change(self, event: str, session: Optional[Session] = None) -> SyncStatus:
        name = event.lower()
        if name in SIGNED_OUT_EVENTS or session is None:
            await self._sign_out()
            return self.store.sync_status()
        if name in TOKEN_EVENTS:
            self._use_session(session)
            return self.store.sync_status()
        if name not in SIGNED_IN_EVENTS:
            logger.info("Ignoring auth event", extra={"event": event})
            return self.store.sync_status()
        if not self.store.is_hydrated:
            # Remembered; the pull happens once hydration completes.
            self._use_session(session)
            return self.store.sync_status()
        await self._start_session(session)
        return self.store.sync_status()

    async def on_connectivity_change(self, online: bool) -> SyncStatus:
        was_online = self.store.is_online
        self.store.set_online(online)
        if online and not was_online:
            logger.info("Back online", extra={"pending_count": self.store.pending_count})
            await self.flush()
            if self.gateway is not None and self.synced_this_session and self.store.family is not None:
                # A dropped socket closes the stream; reopen it.
                await self._ensure_realtime(self.store.family.id)
        return self.store.sync_status()

    async def refresh(self) -> SyncStatus:
        """User-triggered: push what is queued, then pull fresh state."""
        if self.gateway is None or not self.store.is_hydrated:
            return self.store.sync_status()
        if self.store.is_online:
            await self.drain()
        await self._pull()
        return self.store.sync_status()

    async def flush(self) -> Optional[DrainReport]:
        """Drain after a local write when a session and a connection exist."""
        if self.gateway is None or not self.store.is_online or not self.store.is_hydrated:
            return None
        if not self.store.next_pending():
            return None
        return await self.drain()

    async def before_teardown(self) -> Optional[DrainReport]:
        """Best-effort drain bounded by the teardown timeout."""
        try:
            return await asyncio.wait_for(self.flush(), timeout=self.teardown_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Teardown drain timed out",
                extra={"pending_count": self.store.pending_count, "timeout": self.teardown_timeout},
            )
            return None

    async def close(self) -> None:
        self._pull_generation += 1
        await self._stop_realtime()

    def status(self) -> SyncStatus:
        return self.store.sync_status()

    # Session handling

    def _use_session(self, session: Session) -> None:
        self.session = session
        self.gateway = self.gateway_factory(session)

    async def _start_session(self, session: Session) -> None:
        self._use_session(session)
        if self.synced_this_session:
            return
        self.synced_this_session = True
        if await self._pull() and self.store.is_online:
            await self.drain()

    async def _sign_out(self) -> None:
        self._pull_generation += 1
        self.synced_this_session = False
        await self._stop_realtime()
        self.session = None
        self.gateway = None
        if self.clear_cache_on_sign_out:
            self.store.clear()
        self.store.end_sync()
        self.store.mark_loaded()
        logger.info("Signed out", extra={"cache_cleared": self.clear_cache_on_sign_out})

    # Pull

    async def _pull(self) -> bool:
        gateway = self.gateway
        if gateway is None:
            return False
        self._pull_generation += 1
        generation = self._pull_generation
        started = time.monotonic()
        self.store.begin_sync()
        family_id: Optional[str] = None
        try:
            identity = await gateway.get_identity()
            family = await gateway.get_family(identity.user_id)
            if family is not None:
                family_id = family.id
                profiles = await gateway.list_profiles(family.id)
                collections = await asyncio.gather(
                    *(gateway.list_activity(family.id, kind) for kind in ACTIVITY_KINDS)
                )
        except (GatewayError, ValidationError) as exc:
            logger.warning(
                "Pull failed; serving local data",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            return self._pull_failed(generation, started, exc, family_id)
        except Exception as exc:
            logger.exception("Unexpected pull failure; serving local data", extra={"generation": generation})
            return self._pull_failed(generation, started, exc, family_id)

        if generation != self._pull_generation:
            logger.info("Discarding stale pull", extra={"generation": generation})
            return False

        if family is None:
            logger.info("Signed-in user has no family yet", extra={"user_id": identity.user_id})
            self.store.end_sync()
            self.store.mark_loaded()
            self._record("pull", "empty", started)
            return True

        try:
            result = PullResult(
                family=family,
                profiles=profiles,
                **{kind.value: records for kind, records in zip(ACTIVITY_KINDS, collections)},
            )
            self.store.apply_pull(result)
        except Exception as exc:
            logger.exception("Could not apply pulled data", extra={"family_id": family.id})
            return self._pull_failed(generation, started, exc, family.id)
        self.store.end_sync()
        self.store.mark_loaded()
        self._record("pull", "ok", started, family_id=family.id, processed_count=len(profiles))
        await self._ensure_realtime(family.id)
        return True

    def _pull_failed(self, generation: int, started: float, exc: Exception, family_id: Optional[str]) -> bool:
        if generation != self._pull_generation:
            return False
        self.store.end_sync(error=str(exc) or type(exc).__name__)
        self.store.mark_loaded()
        self._record("pull", "error", started, family_id=family_id, error_type=type(exc).__name__)
        return False

    # Drain

    async def _dispatch(self, gateway: DataGateway, action: PendingAction) -> Optional[BaseModel]:
        kind = action.kind
        if action.type.value.startswith("add_"):
            if kind in ONCE_PER_DAY_KINDS:
                return await gateway.upsert(kind, action.payload, DAILY_CONFLICT_KEY)
            return await gateway.insert(kind, action.payload)
        if action.type.value.startswith("delete_"):
            await gateway.delete(kind, action.record_id)
            return None
        return await gateway.update(kind, action.record_id, action.payload)

    def _next_action(self, attempted: Set[str]) -> Optional[PendingAction]:
        # Rescanned each time so actions queued mid-drain are sent in the same pass.
        for action in self.store.next_pending():
            if action.id in attempted or self.store.awaiting_server_id(action):
                continue
            return action
        return None

    async def drain(self) -> DrainReport:
        """Send queued actions in order; stops at the first network failure."""
        report = DrainReport()
        gateway = self.gateway
        if gateway is None or not self.store.is_hydrated:
            report.remaining = self.store.pending_count
            return report
        async with self._drain_lock:
            started = time.monotonic()
            attempted: Set[str] = set()
            while True:
                action = self._next_action(attempted)
                if action is None:
                    break
                attempted.add(action.id)
                self.store.in_flight_action_id = action.id
                try:
                    record = await self._dispatch(gateway, action)
                except GatewayConflict:
                    # Already persisted by an earlier attempt.
                    self.store.confirm_action(action.id)
                    report.processed += 1
                except (GatewayUnavailable, GatewayAuthError) as exc:
                    action.last_error = str(exc)
                    report.stopped = True
                    report.error = str(exc)
                    logger.warning(
                        "Drain stopped",
                        extra={"action_id": action.id, "error_type": type(exc).__name__},
                    )
                    break
                except (GatewayError, ValidationError) as exc:
                    self.store.fail_action(action.id, str(exc))
                    report.failed += 1
                except Exception as exc:
                    logger.exception("Unexpected error sending pending action", extra={"action_id": action.id})
                    self.store.fail_action(action.id, str(exc) or type(exc).__name__)
                    report.failed += 1
                else:
                    self.store.confirm_action(action.id, record)
                    report.processed += 1
                finally:
                    self.store.in_flight_action_id = None
            report.remaining = self.store.pending_count
            if report.processed or report.failed or report.stopped:
                self._record(
                    "drain",
                    "stopped" if report.stopped else "ok",
                    started,
                    family_id=self.store.family.id if self.store.family else None,
                    error_type="network" if report.stopped else None,
                    processed_count=report.processed,
                    failed_count=report.failed,
                )
        return report

    # Realtime

    async def _ensure_realtime(self, family_id: str) -> None:
        task = self._realtime_task
        if self._subscribed_family_id == family_id and task is not None and not task.done():
            return
        await self._stop_realtime()
        if self.gateway is None or not self.realtime_kinds:
            return
        try:
            stream = await self.gateway.subscribe(family_id, self.realtime_kinds)
        except (GatewayError, OSError) as exc:
            logger.warning("Realtime subscribe failed", extra={"family_id": family_id, "error": str(exc)})
            return
        self._stream = stream
        self._subscribed_family_id = family_id
        self._realtime_task = asyncio.create_task(self._consume(stream))

    async def _consume(self, stream: ChangeStream) -> None:
        async for event in stream:
            try:
                applied = self.store.apply_remote_record(event.kind, event.record)
            except Exception:
                logger.exception("Could not apply pushed record", extra={"kind": event.kind.value})
                continue
            logger.debug(
                "Realtime record",
                extra={"kind": event.kind.value, "event": event.event, "applied": applied},
            )

    async def _stop_realtime(self) -> None:
        stream, task = self._stream, self._realtime_task
        self._stream = None
        self._realtime_task = None
        self._subscribed_family_id = None
        if stream is not None:
            await stream.close()
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(task, timeout=1.0)
            except asyncio.TimeoutError:
                task.cancel()

    # Metrics

    def _record(self, operation: str, outcome: str, started: float, **fields: Any) -> None:
        if self.metrics is None:
            return
        try:
            self.metrics(operation=operation, outcome=outcome, duration_ms=_elapsed_ms(started), **fields)
        except sqlite3.Error:
            logger.exception("Failed to record sync metric", extra={"operation": operation})
