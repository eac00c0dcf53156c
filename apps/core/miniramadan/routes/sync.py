from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from ..gateway import Session
from ..schemas import SyncStatus
from ..store import FamilyStore
from ..supabase import GatewayAuthError, parse_bearer_token
from ..sync import SIGNED_OUT_EVENTS, SyncCoordinator
from .deps import get_coordinator, get_store

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


class ConnectivityPayload(BaseModel):
    online: bool


class AuthEventPayload(BaseModel):
    event: str


class FailedActionsResponse(BaseModel):
    affected: int
    status: SyncStatus


@router.get("/status", response_model=SyncStatus)
async def sync_status(coordinator: SyncCoordinator = Depends(get_coordinator)) -> SyncStatus:
    return coordinator.status()


@router.post("/refresh", response_model=SyncStatus)
async def refresh(coordinator: SyncCoordinator = Depends(get_coordinator)) -> SyncStatus:
    return await coordinator.refresh()


@router.post("/connectivity", response_model=SyncStatus)
async def connectivity(
    payload: ConnectivityPayload,
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> SyncStatus:
    return await coordinator.on_connectivity_change(payload.online)


@router.post("/auth", response_model=SyncStatus)
async def auth_event(
    payload: AuthEventPayload,
    authorization: Optional[str] = Header(None),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> SyncStatus:
    if payload.event.lower() in SIGNED_OUT_EVENTS:
        return await coordinator.on_auth_change(payload.event, None)
    try:
        token = parse_bearer_token(authorization)
    except GatewayAuthError as exc:
        raise HTTPException(status_code=401, detail=exc.detail) from exc
    return await coordinator.on_auth_change(payload.event, Session(access_token=token))


@router.post("/failed/retry", response_model=FailedActionsResponse)
async def retry_failed(
    store: FamilyStore = Depends(get_store),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> FailedActionsResponse:
    revived = store.retry_failed_actions()
    await coordinator.flush()
    return FailedActionsResponse(affected=revived, status=coordinator.status())


@router.post("/failed/discard", response_model=FailedActionsResponse)
async def discard_failed(
    store: FamilyStore = Depends(get_store),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> FailedActionsResponse:
    dropped = store.discard_failed_actions()
    return FailedActionsResponse(affected=dropped, status=coordinator.status())
