from __future__ import annotations

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..schemas import (
    EnergyLevel,
    FastingMode,
    FoodGroup,
    MessageType,
    MutationResult,
    StarSource,
)
from ..store import FamilyStore
from ..sync import SyncCoordinator
from .deps import get_coordinator, get_store

router = APIRouter(prefix="/api/v1", tags=["activity"])


class AddStarPayload(BaseModel):
    profile_id: str
    source: StarSource
    count: int = 1
    day: Optional[int] = None


class FastingLogPayload(BaseModel):
    profile_id: str
    mode: FastingMode
    partial_hours: Optional[float] = None
    energy_level: Optional[EnergyLevel] = None
    notes: Optional[str] = None
    day: Optional[int] = None


class SuhoorLogPayload(BaseModel):
    profile_id: str
    food_groups: List[FoodGroup] = Field(default_factory=list)
    photo_url: Optional[str] = None
    day: Optional[int] = None


class MessagePayload(BaseModel):
    sender_id: str
    message: str = ""
    recipient_id: Optional[str] = None
    message_type: MessageType = MessageType.TEXT
    emoji: Optional[str] = None
    day: Optional[int] = None


class ConfirmStartPayload(BaseModel):
    start_date: date


async def _accepted(result: MutationResult, coordinator: SyncCoordinator) -> MutationResult:
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.error)
    await coordinator.flush()
    return result


@router.post("/stars", response_model=MutationResult)
async def add_star_endpoint(
    payload: AddStarPayload,
    store: FamilyStore = Depends(get_store),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> MutationResult:
    result = store.add_star(payload.profile_id, payload.source, payload.count, day=payload.day)
    return await _accepted(result, coordinator)


@router.post("/fasting-logs", response_model=MutationResult)
async def add_fasting_log_endpoint(
    payload: FastingLogPayload,
    store: FamilyStore = Depends(get_store),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> MutationResult:
    result = store.add_fasting_log(
        payload.profile_id,
        payload.mode,
        partial_hours=payload.partial_hours,
        energy_level=payload.energy_level,
        notes=payload.notes,
        day=payload.day,
    )
    return await _accepted(result, coordinator)


@router.post("/suhoor-logs", response_model=MutationResult)
async def add_suhoor_log_endpoint(
    payload: SuhoorLogPayload,
    store: FamilyStore = Depends(get_store),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> MutationResult:
    result = store.add_suhoor_log(
        payload.profile_id,
        payload.food_groups,
        photo_url=payload.photo_url,
        day=payload.day,
    )
    return await _accepted(result, coordinator)


@router.post("/messages", response_model=MutationResult)
async def add_message_endpoint(
    payload: MessagePayload,
    store: FamilyStore = Depends(get_store),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> MutationResult:
    result = store.add_message(
        payload.sender_id,
        payload.message,
        recipient_id=payload.recipient_id,
        message_type=payload.message_type,
        emoji=payload.emoji,
        day=payload.day,
    )
    return await _accepted(result, coordinator)


@router.post("/family/confirm-start", response_model=MutationResult)
async def confirm_start_endpoint(
    payload: ConfirmStartPayload,
    store: FamilyStore = Depends(get_store),
    coordinator: SyncCoordinator = Depends(get_coordinator),
) -> MutationResult:
    result = store.confirm_season_start(payload.start_date)
    return await _accepted(result, coordinator)
