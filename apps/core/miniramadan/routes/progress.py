from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from ..dates import (
    CountdownInfo,
    StartDateOption,
    format_countdown,
    possible_start_dates,
    preparation_tip,
    retroactive_start_dates,
    today_in_timezone,
)
from ..progression import ProgressionResult
from ..schemas import (
    DailyProgress,
    Family,
    FamilyMessage,
    FastingLog,
    Profile,
    Star,
    SuhoorLog,
    SyncStatus,
)
from ..store import FamilyStore
from .deps import get_store, require_hydrated

router = APIRouter(prefix="/api/v1", tags=["progress"])


class StateResponse(BaseModel):
    family: Optional[Family]
    profiles: List[Profile]
    active_profile_id: Optional[str]
    locked_to_profile_id: Optional[str]
    todays_stars: List[Star]
    todays_fasting_logs: List[FastingLog]
    todays_suhoor_logs: List[SuhoorLog]
    todays_messages: List[FamilyMessage]
    daily_progress: Dict[str, DailyProgress]
    total_family_stars: int
    is_premium: bool
    sync: SyncStatus


class CountdownResponse(BaseModel):
    info: CountdownInfo
    text: str
    tip: Dict[str, str]
    start_date_options: List[StartDateOption]


@router.get("/state", response_model=StateResponse)
async def get_state(store: FamilyStore = Depends(get_store)) -> StateResponse:
    require_hydrated(store)
    today = store.today()
    return StateResponse(
        family=store.family,
        profiles=store.profiles,
        active_profile_id=store.active_profile_id,
        locked_to_profile_id=store.locked_to_profile_id,
        todays_stars=[s for s in store.stars if s.date == today],
        todays_fasting_logs=[l for l in store.fasting_logs if l.date == today],
        todays_suhoor_logs=[l for l in store.suhoor_logs if l.date == today],
        todays_messages=[m for m in store.messages if m.date == today],
        daily_progress={p.id: store.daily_progress(p.id, today) for p in store.profiles},
        total_family_stars=store.total_family_stars(),
        is_premium=store.premium(),
        sync=store.sync_status(),
    )


@router.get("/progress", response_model=ProgressionResult)
async def get_progress(store: FamilyStore = Depends(get_store)) -> ProgressionResult:
    require_hydrated(store)
    return store.progress()


@router.get("/countdown", response_model=CountdownResponse)
async def get_countdown(
    now: Optional[datetime] = Query(None, description="Override the current time"),
    store: FamilyStore = Depends(get_store),
) -> CountdownResponse:
    require_hydrated(store)
    info = store.countdown(now)
    if info is None:
        raise HTTPException(status_code=404, detail="No family is loaded.")
    today = store.today() if now is None else today_in_timezone(store.family.timezone, now)
    options: List[StartDateOption] = []
    if info.needs_confirmation:
        options = possible_start_dates(info.expected_date, today)
    elif info.is_during and not store.family.is_start_confirmed and info.current_day <= 3:
        # Window missed: offer the last few days as day 1.
        options = retroactive_start_dates(info.expected_date, today)
    return CountdownResponse(
        info=info,
        text=format_countdown(info),
        tip=preparation_tip(info.days_until),
        start_date_options=options,
    )
