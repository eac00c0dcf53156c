"""Pydantic schemas shared across the core."""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

LOCAL_ID_PREFIX = "local-"

# Alias so record fields named `date` do not shadow the type.
CalendarDate = date


class ProfileType(str, Enum):
    LITTLE_STAR = "little_star"
    CHILD = "child"
    ADULT = "adult"


class FastingMode(str, Enum):
    FULL = "full"
    PARTIAL = "partial"
    TRIED = "tried"
    NOT_TODAY = "not_today"


class EnergyLevel(str, Enum):
    TIRED = "tired"
    OKAY = "okay"
    STRONG = "strong"


class FoodGroup(str, Enum):
    WATER = "water"
    PROTEIN = "protein"
    FIBRE = "fibre"
    FRUIT = "fruit"
    DAIRY = "dairy"
    GRAINS = "grains"


class StarSource(str, Enum):
    FASTING = "fasting"
    SUHOOR = "suhoor"
    MISSION = "mission"
    WONDER = "wonder"
    CHECKIN = "checkin"
    HELPED = "helped"
    STORY = "story"
    QURAN = "quran"
    PREPARATION = "preparation"
    KINDNESS = "kindness"
    DUA = "dua"
    FASTING_HELPER = "fasting_helper"


class MessageType(str, Enum):
    TEXT = "text"
    VOICE = "voice"
    EMOJI = "emoji"
    DRAWING = "drawing"


class MemoryCategory(str, Enum):
    FIRST_IFTAR = "first_iftar"
    DECORATIONS = "decorations"
    FAMILY = "family"
    SUHOOR = "suhoor"
    EID = "eid"
    SPECIAL = "special"
    KINDNESS = "kindness"
    OTHER = "other"


class TimeCapsuleRevealType(str, Enum):
    NEXT_RAMADAN = "next_ramadan"
    NEXT_EID = "next_eid"
    SPECIFIC_DATE = "specific_date"


class SubscriptionTier(str, Enum):
    FREE = "free"
    PAID = "paid"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ActivityKind(str, Enum):
    """Backend table names; activity kinds plus the two owning entities."""

    FAMILIES = "families"
    PROFILES = "profiles"
    STARS = "stars"
    FASTING_LOGS = "fasting_logs"
    SUHOOR_LOGS = "suhoor_logs"
    MESSAGES = "messages"
    MEMORIES = "memories"
    TIME_CAPSULES = "time_capsules"


# Once-per-day kinds are upserted on (profile_id, date).
ONCE_PER_DAY_KINDS = {ActivityKind.FASTING_LOGS, ActivityKind.SUHOOR_LOGS}
DAILY_CONFLICT_KEY = "profile_id,date"


class Family(BaseModel):
    id: str
    email: str = ""
    family_name: str
    season_start_date: date
    is_start_confirmed: bool = False
    timezone: str = "UTC"
    suhoor_time: str = "04:30"
    iftar_time: str = "18:30"
    use_profile_prayer_times: bool = False
    enable_timezone_tracking: bool = False
    subscription_tier: SubscriptionTier = SubscriptionTier.FREE
    subscription_status: Optional[SubscriptionStatus] = None
    subscription_current_period_end: Optional[datetime] = None
    subscription_cancel_at_period_end: bool = False
    family_code: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Profile(BaseModel):
    id: str
    family_id: str
    nickname: str = Field(..., min_length=1)
    avatar: str
    profile_type: ProfileType
    age_range: Optional[str] = None
    is_active: bool = True
    timezone: Optional[str] = None
    location_label: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Star(BaseModel):
    id: str
    profile_id: str
    family_id: str
    date: CalendarDate
    season_day: int = Field(..., ge=1, le=30)
    source: StarSource
    count: int = Field(..., ge=0)
    created_at: Optional[datetime] = None


class FastingLog(BaseModel):
    id: str
    profile_id: str
    family_id: Optional[str] = None
    date: CalendarDate
    season_day: int = Field(..., ge=1, le=30)
    mode: FastingMode
    partial_hours: Optional[float] = None
    energy_level: Optional[EnergyLevel] = None
    notes: Optional[str] = None
    stars_earned: int = Field(default=0, ge=0)
    created_at: Optional[datetime] = None


class SuhoorLog(BaseModel):
    id: str
    profile_id: str
    family_id: Optional[str] = None
    date: CalendarDate
    season_day: int = Field(..., ge=1, le=30)
    food_groups: List[FoodGroup] = Field(default_factory=list)
    photo_url: Optional[str] = None
    stars_earned: int = Field(default=0, ge=0)
    created_at: Optional[datetime] = None


class FamilyMessage(BaseModel):
    id: str
    family_id: str
    sender_id: str
    recipient_id: Optional[str] = None
    message: str
    message_type: MessageType = MessageType.TEXT
    voice_url: Optional[str] = None
    drawing_url: Optional[str] = None
    emoji: Optional[str] = None
    date: CalendarDate
    season_day: int = Field(..., ge=1, le=30)
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class Memory(BaseModel):
    id: str
    family_id: str
    profile_id: str
    season_year: int
    season_day: Optional[int] = Field(default=None, ge=1, le=30)
    category: MemoryCategory = MemoryCategory.OTHER
    caption: Optional[str] = None
    photo_url: str
    thumbnail_url: Optional[str] = None
    is_favorite: bool = False
    created_at: Optional[datetime] = None


class TimeCapsule(BaseModel):
    id: str
    family_id: str
    author_id: str
    recipient_id: str
    written_year: int
    message: str
    voice_url: Optional[str] = None
    reveal_type: TimeCapsuleRevealType = TimeCapsuleRevealType.NEXT_RAMADAN
    reveal_date: Optional[date] = None
    is_revealed: bool = False
    revealed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class PendingActionType(str, Enum):
    ADD_STAR = "add_star"
    ADD_FASTING_LOG = "add_fasting_log"
    ADD_SUHOOR_LOG = "add_suhoor_log"
    ADD_MESSAGE = "add_message"
    ADD_MEMORY = "add_memory"
    UPDATE_MEMORY = "update_memory"
    DELETE_MEMORY = "delete_memory"
    ADD_TIME_CAPSULE = "add_time_capsule"
    REVEAL_TIME_CAPSULE = "reveal_time_capsule"
    ADD_PROFILE = "add_profile"
    UPDATE_PROFILE = "update_profile"
    DELETE_PROFILE = "delete_profile"
    UPDATE_FAMILY = "update_family"


class PendingAction(BaseModel):
    """A local mutation the backend has not confirmed yet."""

    id: str
    type: PendingActionType
    kind: ActivityKind
    record_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    local_timestamp: datetime
    retry_count: int = 0
    last_error: Optional[str] = None
    failed: bool = False


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    SYNC_FAILED = "sync-failed"


class SyncStatus(BaseModel):
    state: SyncState
    is_hydrated: bool
    has_initially_loaded: bool
    is_syncing: bool
    is_online: bool
    last_synced_at: Optional[datetime] = None
    pending_count: int = 0
    failed_pending_count: int = 0
    error: Optional[str] = None


class MutationResult(BaseModel):
    ok: bool
    error: Optional[str] = None
    record_id: Optional[str] = None
    action_id: Optional[str] = None

    @classmethod
    def rejected(cls, error: str) -> "MutationResult":
        return cls(ok=False, error=error)


class PullResult(BaseModel):
    """Everything one full pull from the backend returns for a family."""

    family: Optional[Family] = None
    profiles: List[Profile] = Field(default_factory=list)
    stars: List[Star] = Field(default_factory=list)
    fasting_logs: List[FastingLog] = Field(default_factory=list)
    suhoor_logs: List[SuhoorLog] = Field(default_factory=list)
    messages: List[FamilyMessage] = Field(default_factory=list)
    memories: List[Memory] = Field(default_factory=list)
    time_capsules: List[TimeCapsule] = Field(default_factory=list)


class DailyProgress(BaseModel):
    fasting_logged: bool
    suhoor_logged: bool
    messages_sent: int
    total_stars: int


class MonthlyStats(BaseModel):
    total_days_fasted: int
    full_fast_days: int
    partial_fast_days: int
    tried_fast_days: int
    quran_days: int
    mission_days: int
    story_days: int
    checkin_days: int
    total_stars: int
    milestones_unlocked: int


SNAPSHOT_VERSION = 2


class StoreSnapshot(BaseModel):
    """Durable copy of the store, written after every mutation."""

    version: int = SNAPSHOT_VERSION
    family: Optional[Family] = None
    profiles: List[Profile] = Field(default_factory=list)
    active_profile_id: Optional[str] = None
    locked_to_profile_id: Optional[str] = None
    profile_lock_pin_hash: Optional[str] = None
    stars: List[Star] = Field(default_factory=list)
    fasting_logs: List[FastingLog] = Field(default_factory=list)
    suhoor_logs: List[SuhoorLog] = Field(default_factory=list)
    messages: List[FamilyMessage] = Field(default_factory=list)
    memories: List[Memory] = Field(default_factory=list)
    time_capsules: List[TimeCapsule] = Field(default_factory=list)
    pending_actions: List[PendingAction] = Field(default_factory=list)
    last_synced_at: Optional[datetime] = None
