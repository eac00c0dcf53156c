"""Local store: the family's in-memory state plus the pending-action queue.

Reads are synchronous and return best-known data. Mutations validate, update
memory, append a PendingAction for anything the backend must learn about and
persist a snapshot. They never raise for domain input; failures come back as
a rejected MutationResult.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from .dates import (
    CountdownInfo,
    InvalidDateError,
    date_for_day,
    get_countdown_info,
    is_season_active,
    parse_season_date,
    season_day,
    today_in_timezone,
)
from .progression import (
    MAX_ADULT_PROFILES,
    ProgressionConfig,
    ProgressionResult,
    compute_progress,
    is_avatar_allowed,
    is_premium,
    stars_for_fasting,
    stars_for_suhoor,
)
from .schemas import (
    LOCAL_ID_PREFIX,
    ONCE_PER_DAY_KINDS,
    ActivityKind,
    DailyProgress,
    EnergyLevel,
    Family,
    FamilyMessage,
    FastingLog,
    FastingMode,
    FoodGroup,
    Memory,
    MemoryCategory,
    MessageType,
    MonthlyStats,
    MutationResult,
    PendingAction,
    PendingActionType,
    Profile,
    ProfileType,
    PullResult,
    Star,
    StarSource,
    StoreSnapshot,
    SuhoorLog,
    SyncState,
    SyncStatus,
    TimeCapsule,
    TimeCapsuleRevealType,
)
from .wire import (
    family_updates_to_wire,
    memory_updates_to_wire,
    profile_updates_to_wire,
    record_to_wire,
    time_capsule_reveal_to_wire,
    updates_to_domain,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

ACTIVITY_KINDS: Tuple[ActivityKind, ...] = (
    ActivityKind.STARS,
    ActivityKind.FASTING_LOGS,
    ActivityKind.SUHOOR_LOGS,
    ActivityKind.MESSAGES,
    ActivityKind.MEMORIES,
    ActivityKind.TIME_CAPSULES,
)

_ADD_ACTIONS = {
    PendingActionType.ADD_STAR,
    PendingActionType.ADD_FASTING_LOG,
    PendingActionType.ADD_SUHOOR_LOG,
    PendingActionType.ADD_MESSAGE,
    PendingActionType.ADD_MEMORY,
    PendingActionType.ADD_TIME_CAPSULE,
    PendingActionType.ADD_PROFILE,
}

# Columns that point at another record; rewritten when a local id is confirmed.
_REFERENCE_FIELDS = ("profile_id", "sender_id", "recipient_id", "author_id", "family_id")


class SnapshotStorage(Protocol):
    def load(self) -> Optional[StoreSnapshot]: ...

    def save(self, snapshot: StoreSnapshot) -> None: ...

    def clear(self) -> None: ...


class MemorySnapshotStorage:
    """Keeps the snapshot in memory; used by tests and ephemeral sessions."""

    def __init__(self, snapshot: Optional[StoreSnapshot] = None) -> None:
        self.snapshot = snapshot
        self.save_count = 0

    def load(self) -> Optional[StoreSnapshot]:
        return self.snapshot.model_copy(deep=True) if self.snapshot else None

    def save(self, snapshot: StoreSnapshot) -> None:
        self.snapshot = snapshot.model_copy(deep=True)
        self.save_count += 1

    def clear(self) -> None:
        self.snapshot = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _hash_pin(pin: str) -> str:
    return hashlib.sha256(pin.encode("utf-8")).hexdigest()


def natural_key(kind: ActivityKind, record: BaseModel) -> Optional[Tuple[Any, ...]]:
    """Identity of a record independent of its id, where the backend enforces one."""
    if kind is ActivityKind.STARS:
        return (record.profile_id, record.season_day, StarSource(record.source))
    if kind in ONCE_PER_DAY_KINDS:
        return (record.profile_id, record.date)
    return None


def is_local_id(record_id: Optional[str]) -> bool:
    return bool(record_id) and record_id.startswith(LOCAL_ID_PREFIX)


class FamilyStore:
    def __init__(
        self,
        storage: SnapshotStorage,
        *,
        clock: Optional[Clock] = None,
        max_pending_retries: int = 5,
        default_profile_types: Optional[Sequence[str]] = None,
        progression_config: Optional[ProgressionConfig] = None,
    ) -> None:
        self.storage = storage
        self.clock = clock or _utcnow
        self.max_pending_retries = max_pending_retries
        self.default_profile_types = [
            ProfileType(t) for t in (default_profile_types or ("adult", "adult"))
        ]
        self.progression_config = progression_config

        self.is_hydrated = False
        self.has_initially_loaded = False
        self.is_syncing = False
        self.is_online = True
        self.sync_state = SyncState.IDLE
        self.sync_error: Optional[str] = None
        # Action the coordinator is sending right now; never folded into.
        self.in_flight_action_id: Optional[str] = None
        self._reset_data()

    def _reset_data(self) -> None:
        self.family: Optional[Family] = None
        self.profiles: List[Profile] = []
        self.active_profile_id: Optional[str] = None
        self.locked_to_profile_id: Optional[str] = None
        self._pin_hash: Optional[str] = None
        self._records: Dict[ActivityKind, List[BaseModel]] = {kind: [] for kind in ACTIVITY_KINDS}
        self.pending_actions: List[PendingAction] = []
        self.last_synced_at: Optional[datetime] = None

    # Lifecycle

    def hydrate(self) -> None:
        """Load the durable snapshot once; later calls are no-ops."""
        if self.is_hydrated:
            return
        snapshot = self.storage.load()
        if snapshot is not None:
            self._load(snapshot)
        self.is_hydrated = True
        logger.info(
            "Store hydrated",
            extra={
                "family_id": self.family.id if self.family else None,
                "pending_count": len(self.pending_actions),
            },
        )

    def _load(self, snapshot: StoreSnapshot) -> None:
        self.family = snapshot.family
        self.profiles = list(snapshot.profiles)
        self.active_profile_id = snapshot.active_profile_id
        self.locked_to_profile_id = snapshot.locked_to_profile_id
        self._pin_hash = snapshot.profile_lock_pin_hash
        for kind in ACTIVITY_KINDS:
            self._records[kind] = list(getattr(snapshot, kind.value))
        self.pending_actions = list(snapshot.pending_actions)
        self.last_synced_at = snapshot.last_synced_at

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(
            family=self.family,
            profiles=self.profiles,
            active_profile_id=self.active_profile_id,
            locked_to_profile_id=self.locked_to_profile_id,
            profile_lock_pin_hash=self._pin_hash,
            pending_actions=self.pending_actions,
            last_synced_at=self.last_synced_at,
            **{kind.value: self._records[kind] for kind in ACTIVITY_KINDS},
        )

    def _persist(self) -> None:
        self.storage.save(self.snapshot())

    def clear(self) -> None:
        """Drop all family data, including the durable snapshot."""
        self._reset_data()
        self.has_initially_loaded = False
        self.sync_state = SyncState.IDLE
        self.sync_error = None
        self.storage.clear()
        logger.info("Store cleared")

    # Helpers

    def _now(self) -> datetime:
        return self.clock()

    def today(self) -> date:
        return today_in_timezone(self.family.timezone if self.family else None, self._now())

    def _guard(self) -> Optional[MutationResult]:
        if not self.is_hydrated:
            return MutationResult.rejected("Store is not hydrated yet.")
        if self.family is None:
            return MutationResult.rejected("No family is loaded.")
        return None

    def _profile(self, profile_id: Optional[str]) -> Optional[Profile]:
        return next((p for p in self.profiles if p.id == profile_id), None)

    def _member(self, profile_id: str) -> Optional[str]:
        profile = self._profile(profile_id)
        if profile is None:
            return f"Unknown profile: {profile_id}"
        if self.family and profile.family_id != self.family.id:
            return f"Profile {profile_id} belongs to another family."
        return None

    def _resolve_day(self, day: Optional[int]) -> Tuple[Optional[date], Optional[int], Optional[str]]:
        start = self.family.season_start_date
        if day is None:
            today = self.today()
            return today, season_day(start, today), None
        if not isinstance(day, int) or isinstance(day, bool):
            return None, None, f"Invalid season day: {day!r}"
        try:
            return date_for_day(start, day), day, None
        except InvalidDateError as exc:
            return None, None, str(exc)

    def _enqueue(
        self,
        action_type: PendingActionType,
        kind: ActivityKind,
        record_id: str,
        payload: Dict[str, Any],
    ) -> PendingAction:
        action = PendingAction(
            id=f"action-{uuid4().hex}",
            type=action_type,
            kind=kind,
            record_id=record_id,
            payload=payload,
            local_timestamp=self._now(),
        )
        self.pending_actions.append(action)
        return action

    def _pending_add(self, record_id: str) -> Optional[PendingAction]:
        return next(
            (
                a
                for a in self.pending_actions
                if a.record_id == record_id and a.type in _ADD_ACTIONS and a.id != self.in_flight_action_id
            ),
            None,
        )

    def _pending_delete(self, record_id: str) -> bool:
        return any(a.record_id == record_id and a.type.value.startswith("delete_") for a in self.pending_actions)

    def _collection(self, kind: ActivityKind) -> List[BaseModel]:
        return self._records[kind]

    def _find(self, kind: ActivityKind, record_id: str) -> Optional[BaseModel]:
        if kind is ActivityKind.PROFILES:
            return self._profile(record_id)
        return next((r for r in self._collection(kind) if r.id == record_id), None)

    def _replace(self, kind: ActivityKind, old: BaseModel, new: BaseModel) -> None:
        items = self.profiles if kind is ActivityKind.PROFILES else self._collection(kind)
        items[items.index(old)] = new

    def _add_record(self, action_type: PendingActionType, kind: ActivityKind, record: BaseModel) -> MutationResult:
        self._collection(kind).append(record)
        action = self._enqueue(action_type, kind, record.id, record_to_wire(kind, record))
        self._persist()
        return MutationResult(ok=True, record_id=record.id, action_id=action.id)

    def _edit_record(
        self,
        kind: ActivityKind,
        record: BaseModel,
        updates: Dict[str, Any],
        action_type: PendingActionType,
        wire_updates: Dict[str, Any],
    ) -> MutationResult:
        try:
            updated = type(record).model_validate({**record.model_dump(), **updates})
        except ValidationError as exc:
            return MutationResult.rejected(str(exc))
        self._replace(kind, record, updated)
        pending = self._pending_add(record.id) if is_local_id(record.id) else None
        if pending is not None:
            # Not on the server yet: fold the edit into the queued insert.
            pending.payload = record_to_wire(kind, updated)
            self._persist()
            return MutationResult(ok=True, record_id=updated.id, action_id=pending.id)
        action = self._enqueue(action_type, kind, record.id, wire_updates)
        self._persist()
        return MutationResult(ok=True, record_id=updated.id, action_id=action.id)

    def _delete_record(self, kind: ActivityKind, record: BaseModel, action_type: PendingActionType) -> MutationResult:
        items = self.profiles if kind is ActivityKind.PROFILES else self._collection(kind)
        items.remove(record)
        pending = self._pending_add(record.id) if is_local_id(record.id) else None
        if pending is not None:
            self.pending_actions = [a for a in self.pending_actions if a.record_id != record.id]
            self._persist()
            return MutationResult(ok=True, record_id=record.id)
        # A local id here means the insert is in flight; confirm_action rewrites it.
        action = self._enqueue(action_type, kind, record.id, {})
        self._persist()
        return MutationResult(ok=True, record_id=record.id, action_id=action.id)

    # Reads

    def records(self, kind: ActivityKind | str) -> Optional[List[BaseModel]]:
        if not self.is_hydrated:
            return None
        return list(self._collection(ActivityKind(kind)))

    @property
    def stars(self) -> List[Star]:
        return list(self._records[ActivityKind.STARS])

    @property
    def fasting_logs(self) -> List[FastingLog]:
        return list(self._records[ActivityKind.FASTING_LOGS])

    @property
    def suhoor_logs(self) -> List[SuhoorLog]:
        return list(self._records[ActivityKind.SUHOOR_LOGS])

    @property
    def messages(self) -> List[FamilyMessage]:
        return list(self._records[ActivityKind.MESSAGES])

    @property
    def memories(self) -> List[Memory]:
        return list(self._records[ActivityKind.MEMORIES])

    @property
    def time_capsules(self) -> List[TimeCapsule]:
        return list(self._records[ActivityKind.TIME_CAPSULES])

    @property
    def active_profile(self) -> Optional[Profile]:
        return self._profile(self.active_profile_id)

    @property
    def pending_count(self) -> int:
        return sum(1 for a in self.pending_actions if not a.failed)

    @property
    def failed_pending_count(self) -> int:
        return sum(1 for a in self.pending_actions if a.failed)

    def next_pending(self) -> List[PendingAction]:
        """Actions eligible for a drain, oldest first."""
        return [a for a in self.pending_actions if not a.failed]

    def awaiting_server_id(self, action: PendingAction) -> bool:
        """An edit or delete queued behind the insert that gives its record a server id."""
        return action.type not in _ADD_ACTIONS and is_local_id(action.record_id)

    # Family

    def set_family(self, family: Family) -> MutationResult:
        """Adopt a family created by onboarding; the backend already has it."""
        if not self.is_hydrated:
            return MutationResult.rejected("Store is not hydrated yet.")
        if self.family and self.family.id != family.id:
            self._reset_data()
        self.family = family
        self._persist()
        return MutationResult(ok=True, record_id=family.id)

    def update_family_settings(self, **updates: Any) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        wire_updates = family_updates_to_wire(updates)
        if len(wire_updates) != len(updates):
            unknown = sorted(set(updates) - set(updates_to_domain(ActivityKind.FAMILIES, wire_updates)))
            return MutationResult.rejected(f"Unsupported family fields: {', '.join(unknown)}")
        try:
            family = Family.model_validate({**self.family.model_dump(), **updates})
        except ValidationError as exc:
            return MutationResult.rejected(str(exc))
        self.family = family
        action = self._enqueue(PendingActionType.UPDATE_FAMILY, ActivityKind.FAMILIES, family.id, wire_updates)
        self._persist()
        return MutationResult(ok=True, record_id=family.id, action_id=action.id)

    def confirm_season_start(self, start: date | str) -> MutationResult:
        """Record the start date the family's community observed."""
        try:
            start_date = parse_season_date(start)
        except InvalidDateError as exc:
            return MutationResult.rejected(str(exc))
        return self.update_family_settings(season_start_date=start_date, is_start_confirmed=True)

    # Profiles

    def _adult_count(self, exclude: Optional[str] = None) -> int:
        return sum(1 for p in self.profiles if p.profile_type is ProfileType.ADULT and p.id != exclude)

    def add_profile(
        self,
        nickname: str,
        avatar: str,
        profile_type: ProfileType | str,
        *,
        age_range: Optional[str] = None,
        timezone: Optional[str] = None,
        location_label: Optional[str] = None,
    ) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        try:
            kind = ProfileType(profile_type)
        except ValueError:
            return MutationResult.rejected(f"Unknown profile type: {profile_type}")
        if kind is ProfileType.ADULT and self._adult_count() >= MAX_ADULT_PROFILES:
            return MutationResult.rejected(f"A family can have at most {MAX_ADULT_PROFILES} adult profiles.")
        if not is_avatar_allowed(avatar, kind, is_premium(self.family, self._now())):
            return MutationResult.rejected(f"Avatar {avatar} is not available for this profile.")
        now = self._now()
        try:
            profile = Profile(
                id=f"{LOCAL_ID_PREFIX}{uuid4()}",
                family_id=self.family.id,
                nickname=nickname.strip(),
                avatar=avatar,
                profile_type=kind,
                age_range=age_range,
                timezone=timezone,
                location_label=location_label,
                created_at=now,
                updated_at=now,
            )
        except ValidationError as exc:
            return MutationResult.rejected(str(exc))
        self.profiles.append(profile)
        if self.active_profile_id is None:
            self.active_profile_id = profile.id
        action = self._enqueue(
            PendingActionType.ADD_PROFILE,
            ActivityKind.PROFILES,
            profile.id,
            record_to_wire(ActivityKind.PROFILES, profile),
        )
        self._persist()
        return MutationResult(ok=True, record_id=profile.id, action_id=action.id)

    def update_profile(self, profile_id: str, **updates: Any) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        error = self._member(profile_id)
        if error:
            return MutationResult.rejected(error)
        wire_updates = profile_updates_to_wire(updates)
        if len(wire_updates) != len(updates):
            return MutationResult.rejected("Unsupported profile fields.")
        profile = self._profile(profile_id)
        target_type = profile.profile_type
        if "profile_type" in updates:
            try:
                target_type = ProfileType(updates["profile_type"])
            except ValueError:
                return MutationResult.rejected(f"Unknown profile type: {updates['profile_type']}")
            if target_type is ProfileType.ADULT and self._adult_count(exclude=profile_id) >= MAX_ADULT_PROFILES:
                return MutationResult.rejected(f"A family can have at most {MAX_ADULT_PROFILES} adult profiles.")
        if "avatar" in updates:
            if not is_avatar_allowed(updates["avatar"], target_type, is_premium(self.family, self._now())):
                return MutationResult.rejected(f"Avatar {updates['avatar']} is not available for this profile.")
        return self._edit_record(
            ActivityKind.PROFILES,
            profile,
            {**updates, "updated_at": self._now()},
            PendingActionType.UPDATE_PROFILE,
            wire_updates,
        )

    def remove_profile(self, profile_id: str) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        error = self._member(profile_id)
        if error:
            return MutationResult.rejected(error)
        result = self._delete_record(ActivityKind.PROFILES, self._profile(profile_id), PendingActionType.DELETE_PROFILE)
        if self.active_profile_id == profile_id:
            self.active_profile_id = self.profiles[0].id if self.profiles else None
            self._persist()
        return result

    def set_active_profile(self, profile_id: str) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        error = self._member(profile_id)
        if error:
            return MutationResult.rejected(error)
        if self.locked_to_profile_id and self.locked_to_profile_id != profile_id:
            return MutationResult.rejected("Device is locked to another profile.")
        self.active_profile_id = profile_id
        self._persist()
        return MutationResult(ok=True, record_id=profile_id)

    def lock_to_profile(self, profile_id: str, pin: str) -> MutationResult:
        """Pin the device to one (usually child) profile until the PIN is entered."""
        rejected = self._guard()
        if rejected:
            return rejected
        error = self._member(profile_id)
        if error:
            return MutationResult.rejected(error)
        if not pin or not pin.isdigit() or len(pin) < 4:
            return MutationResult.rejected("PIN must be at least 4 digits.")
        self.locked_to_profile_id = profile_id
        self.active_profile_id = profile_id
        self._pin_hash = _hash_pin(pin)
        self._persist()
        return MutationResult(ok=True, record_id=profile_id)

    def verify_lock_pin(self, pin: str) -> bool:
        return bool(self._pin_hash) and hmac.compare_digest(self._pin_hash, _hash_pin(pin))

    def unlock_profile(self, pin: str) -> MutationResult:
        if self.locked_to_profile_id is None:
            return MutationResult(ok=True)
        if not self.verify_lock_pin(pin):
            return MutationResult.rejected("Incorrect PIN.")
        self.locked_to_profile_id = None
        self._pin_hash = None
        self._persist()
        return MutationResult(ok=True)

    # Activity

    def add_star(
        self,
        profile_id: str,
        source: StarSource | str,
        count: int = 1,
        *,
        day: Optional[int] = None,
    ) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        error = self._member(profile_id)
        if error:
            return MutationResult.rejected(error)
        try:
            star_source = StarSource(source)
        except ValueError:
            return MutationResult.rejected(f"Unknown star source: {source}")
        if not isinstance(count, int) or count < 0:
            return MutationResult.rejected("Star count must be a non-negative integer.")
        on, day_index, error = self._resolve_day(day)
        if error:
            return MutationResult.rejected(error)
        if day is None and not is_season_active(self.family.season_start_date, on):
            return MutationResult.rejected(f"Stars can only be earned during the season; today is {on.isoformat()}.")
        if self.has_completed_activity(profile_id, star_source, day_index):
            return MutationResult.rejected(f"Already earned a {star_source.value} star on day {day_index}.")
        star = Star(
            id=f"{LOCAL_ID_PREFIX}{uuid4()}",
            profile_id=profile_id,
            family_id=self.family.id,
            date=on,
            season_day=day_index,
            source=star_source,
            count=count,
            created_at=self._now(),
        )
        return self._add_record(PendingActionType.ADD_STAR, ActivityKind.STARS, star)

    def _upsert_daily(self, kind: ActivityKind, action_type: PendingActionType, record: BaseModel) -> MutationResult:
        key = natural_key(kind, record)
        items = self._collection(kind)
        existing = next((r for r in items if natural_key(kind, r) == key), None)
        if existing is not None:
            # Same (profile, date): the later write wins, locally as on the server.
            pending = self._pending_add(existing.id) if is_local_id(existing.id) else None
            if pending is not None:
                replacement = record.model_copy(update={"id": existing.id})
                self._replace(kind, existing, replacement)
                pending.payload = record_to_wire(kind, replacement)
                self._persist()
                return MutationResult(ok=True, record_id=replacement.id, action_id=pending.id)
            items.remove(existing)
        return self._add_record(action_type, kind, record)

    def add_fasting_log(
        self,
        profile_id: str,
        mode: FastingMode | str,
        *,
        partial_hours: Optional[float] = None,
        energy_level: Optional[EnergyLevel | str] = None,
        notes: Optional[str] = None,
        day: Optional[int] = None,
    ) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        error = self._member(profile_id)
        if error:
            return MutationResult.rejected(error)
        on, day_index, error = self._resolve_day(day)
        if error:
            return MutationResult.rejected(error)
        try:
            log = FastingLog(
                id=f"{LOCAL_ID_PREFIX}{uuid4()}",
                profile_id=profile_id,
                family_id=self.family.id,
                date=on,
                season_day=day_index,
                mode=mode,
                partial_hours=partial_hours,
                energy_level=energy_level,
                notes=notes,
                stars_earned=stars_for_fasting(mode),
                created_at=self._now(),
            )
        except (ValueError, ValidationError) as exc:
            return MutationResult.rejected(str(exc))
        return self._upsert_daily(ActivityKind.FASTING_LOGS, PendingActionType.ADD_FASTING_LOG, log)

    def add_suhoor_log(
        self,
        profile_id: str,
        food_groups: Sequence[FoodGroup | str],
        *,
        photo_url: Optional[str] = None,
        day: Optional[int] = None,
    ) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        error = self._member(profile_id)
        if error:
            return MutationResult.rejected(error)
        on, day_index, error = self._resolve_day(day)
        if error:
            return MutationResult.rejected(error)
        try:
            log = SuhoorLog(
                id=f"{LOCAL_ID_PREFIX}{uuid4()}",
                profile_id=profile_id,
                family_id=self.family.id,
                date=on,
                season_day=day_index,
                food_groups=list(food_groups),
                photo_url=photo_url,
                stars_earned=stars_for_suhoor(list(food_groups)),
                created_at=self._now(),
            )
        except ValidationError as exc:
            return MutationResult.rejected(str(exc))
        return self._upsert_daily(ActivityKind.SUHOOR_LOGS, PendingActionType.ADD_SUHOOR_LOG, log)

    def add_message(
        self,
        sender_id: str,
        message: str,
        *,
        recipient_id: Optional[str] = None,
        message_type: MessageType | str = MessageType.TEXT,
        emoji: Optional[str] = None,
        voice_url: Optional[str] = None,
        drawing_url: Optional[str] = None,
        day: Optional[int] = None,
    ) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        error = self._member(sender_id)
        if error:
            return MutationResult.rejected(error)
        if recipient_id is not None:
            error = self._member(recipient_id)
            if error:
                return MutationResult.rejected(error)
        if not message.strip() and not (emoji or voice_url or drawing_url):
            return MutationResult.rejected("Message cannot be empty.")
        on, day_index, error = self._resolve_day(day)
        if error:
            return MutationResult.rejected(error)
        try:
            record = FamilyMessage(
                id=f"{LOCAL_ID_PREFIX}{uuid4()}",
                family_id=self.family.id,
                sender_id=sender_id,
                recipient_id=recipient_id,
                message=message,
                message_type=message_type,
                emoji=emoji,
                voice_url=voice_url,
                drawing_url=drawing_url,
                date=on,
                season_day=day_index,
                created_at=self._now(),
            )
        except ValidationError as exc:
            return MutationResult.rejected(str(exc))
        return self._add_record(PendingActionType.ADD_MESSAGE, ActivityKind.MESSAGES, record)

    def add_memory(
        self,
        profile_id: str,
        photo_url: str,
        *,
        category: MemoryCategory | str = MemoryCategory.OTHER,
        caption: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
        day: Optional[int] = None,
    ) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        error = self._member(profile_id)
        if error:
            return MutationResult.rejected(error)
        if not photo_url:
            return MutationResult.rejected("A memory needs a photo.")
        if day is not None and not 1 <= day <= 30:
            return MutationResult.rejected(f"Invalid season day: {day!r}")
        try:
            memory = Memory(
                id=f"{LOCAL_ID_PREFIX}{uuid4()}",
                family_id=self.family.id,
                profile_id=profile_id,
                season_year=self.family.season_start_date.year,
                season_day=day,
                category=category,
                caption=caption,
                photo_url=photo_url,
                thumbnail_url=thumbnail_url,
                created_at=self._now(),
            )
        except ValidationError as exc:
            return MutationResult.rejected(str(exc))
        return self._add_record(PendingActionType.ADD_MEMORY, ActivityKind.MEMORIES, memory)

    def update_memory(self, memory_id: str, **updates: Any) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        memory = self._find(ActivityKind.MEMORIES, memory_id)
        if memory is None:
            return MutationResult.rejected(f"Unknown memory: {memory_id}")
        wire_updates = memory_updates_to_wire(updates)
        if not updates or len(wire_updates) != len(updates):
            return MutationResult.rejected("Only caption, category and favorite can change on a memory.")
        return self._edit_record(ActivityKind.MEMORIES, memory, updates, PendingActionType.UPDATE_MEMORY, wire_updates)

    def remove_memory(self, memory_id: str) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        memory = self._find(ActivityKind.MEMORIES, memory_id)
        if memory is None:
            return MutationResult.rejected(f"Unknown memory: {memory_id}")
        return self._delete_record(ActivityKind.MEMORIES, memory, PendingActionType.DELETE_MEMORY)

    def add_time_capsule(
        self,
        author_id: str,
        recipient_id: str,
        message: str,
        *,
        reveal_type: TimeCapsuleRevealType | str = TimeCapsuleRevealType.NEXT_RAMADAN,
        reveal_date: Optional[date | str] = None,
        voice_url: Optional[str] = None,
    ) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        for profile_id in (author_id, recipient_id):
            error = self._member(profile_id)
            if error:
                return MutationResult.rejected(error)
        if not message.strip():
            return MutationResult.rejected("Message cannot be empty.")
        try:
            reveal = TimeCapsuleRevealType(reveal_type)
            when = parse_season_date(reveal_date) if reveal_date is not None else None
        except (ValueError, InvalidDateError) as exc:
            return MutationResult.rejected(str(exc))
        if reveal is TimeCapsuleRevealType.SPECIFIC_DATE and when is None:
            return MutationResult.rejected("A specific-date capsule needs a reveal date.")
        capsule = TimeCapsule(
            id=f"{LOCAL_ID_PREFIX}{uuid4()}",
            family_id=self.family.id,
            author_id=author_id,
            recipient_id=recipient_id,
            written_year=self.family.season_start_date.year,
            message=message,
            voice_url=voice_url,
            reveal_type=reveal,
            reveal_date=when,
            created_at=self._now(),
        )
        return self._add_record(PendingActionType.ADD_TIME_CAPSULE, ActivityKind.TIME_CAPSULES, capsule)

    def reveal_time_capsule(self, capsule_id: str) -> MutationResult:
        rejected = self._guard()
        if rejected:
            return rejected
        capsule = self._find(ActivityKind.TIME_CAPSULES, capsule_id)
        if capsule is None:
            return MutationResult.rejected(f"Unknown time capsule: {capsule_id}")
        if capsule.is_revealed:
            return MutationResult(ok=True, record_id=capsule.id)
        revealed = capsule.model_copy(update={"is_revealed": True, "revealed_at": self._now()})
        return self._edit_record(
            ActivityKind.TIME_CAPSULES,
            capsule,
            {"is_revealed": True, "revealed_at": revealed.revealed_at},
            PendingActionType.REVEAL_TIME_CAPSULE,
            time_capsule_reveal_to_wire(revealed),
        )

    # Sync-facing entry points

    def set_online(self, online: bool) -> None:
        self.is_online = online

    def begin_sync(self) -> None:
        self.is_syncing = True
        self.sync_state = SyncState.SYNCING
        self.sync_error = None

    def end_sync(self, error: Optional[str] = None) -> None:
        self.is_syncing = False
        if error:
            self.sync_state = SyncState.SYNC_FAILED
            self.sync_error = error
        else:
            self.sync_state = SyncState.SYNCED
            self.sync_error = None

    def mark_loaded(self) -> None:
        """Stop waiting on the backend and serve local data."""
        self.has_initially_loaded = True
        self.is_syncing = False
        if self.sync_state in {SyncState.IDLE, SyncState.SYNCING}:
            self.sync_state = SyncState.SYNCED

    def _unconfirmed(self, kind: ActivityKind) -> List[BaseModel]:
        items = self.profiles if kind is ActivityKind.PROFILES else self._collection(kind)
        return [r for r in items if is_local_id(r.id)]

    def _pending_for(self, kind: ActivityKind) -> List[PendingAction]:
        return [a for a in self.pending_actions if a.kind is kind and a.type not in _ADD_ACTIONS]

    def _reapply_pending(self, kind: ActivityKind, items: List[BaseModel]) -> List[BaseModel]:
        """Layer queued edits and deletes over freshly pulled rows."""
        by_id = {r.id: r for r in items}
        for action in self._pending_for(kind):
            record = by_id.get(action.record_id)
            if record is None:
                continue
            if action.type.value.startswith("delete_"):
                del by_id[action.record_id]
                continue
            try:
                by_id[record.id] = type(record).model_validate(
                    {**record.model_dump(), **updates_to_domain(kind, action.payload)}
                )
            except ValidationError:
                logger.warning("Queued edit no longer applies", extra={"action_id": action.id})
        return list(by_id.values())

    def _merge(self, kind: ActivityKind, pulled: List[BaseModel]) -> List[BaseModel]:
        pulled = self._reapply_pending(kind, pulled)
        local = self._unconfirmed(kind)
        if kind is ActivityKind.STARS:
            # A server star with the same key is the confirmed duplicate of ours.
            keys = {natural_key(kind, r) for r in pulled}
            local = [r for r in local if natural_key(kind, r) not in keys]
        elif kind in ONCE_PER_DAY_KINDS:
            # Our queued upsert will overwrite the server row for that day.
            keys = {natural_key(kind, r) for r in local}
            pulled = [r for r in pulled if natural_key(kind, r) not in keys]
        return pulled + local

    def apply_pull(self, data: PullResult) -> None:
        """Replace collections with server state, keeping unresolved local work."""
        if data.family is not None:
            if self.family and self.family.id != data.family.id:
                logger.warning(
                    "Family changed on pull; dropping previous family data",
                    extra={"previous_family_id": self.family.id, "dropped_actions": len(self.pending_actions)},
                )
                self._reset_data()
            family = data.family
            for action in self._pending_for(ActivityKind.FAMILIES):
                family = Family.model_validate(
                    {**family.model_dump(), **updates_to_domain(ActivityKind.FAMILIES, action.payload)}
                )
            self.family = family
        self.profiles = self._merge(ActivityKind.PROFILES, list(data.profiles))
        for kind in ACTIVITY_KINDS:
            self._records[kind] = self._merge(kind, list(getattr(data, kind.value)))
        if self.active_profile_id and self._profile(self.active_profile_id) is None:
            self.active_profile_id = None
        if self.active_profile_id is None and self.profiles:
            self.active_profile_id = self.profiles[0].id
        self.last_synced_at = self._now()
        self.has_initially_loaded = True
        self._persist()

    def apply_remote_record(self, kind: ActivityKind | str, record: BaseModel) -> bool:
        """Merge one pushed record. Returns False when it was ignored."""
        kind = ActivityKind(kind)
        if self.family is None:
            return False
        if kind is ActivityKind.FAMILIES:
            if record.id != self.family.id:
                return False
            self.family = record
            self._persist()
            return True
        if getattr(record, "family_id", self.family.id) != self.family.id:
            return False
        if self._pending_delete(record.id):
            return False
        existing = self._find(kind, record.id)
        if existing is None and kind is not ActivityKind.PROFILES:
            key = natural_key(kind, record)
            if key is not None:
                existing = next(
                    (r for r in self._collection(kind) if natural_key(kind, r) == key),
                    None,
                )
        if existing is not None:
            if existing.id != record.id and is_local_id(existing.id):
                if kind in ONCE_PER_DAY_KINDS and self._pending_add(existing.id):
                    # Our queued write for that day is newer.
                    return False
                self._rewrite_id(existing.id, record.id)
            self._replace(kind, self._find(kind, record.id) or existing, record)
        elif kind is ActivityKind.PROFILES:
            self.profiles.append(record)
        else:
            self._collection(kind).append(record)
        self._persist()
        return True

    def _rewrite_id(self, old: str, new: str) -> None:
        for kind in (ActivityKind.PROFILES, *ACTIVITY_KINDS):
            items = self.profiles if kind is ActivityKind.PROFILES else self._collection(kind)
            for index, record in enumerate(items):
                changes = {"id": new} if record.id == old else {}
                for name in _REFERENCE_FIELDS:
                    if getattr(record, name, None) == old:
                        changes[name] = new
                if changes:
                    items[index] = record.model_copy(update=changes)
        for action in self.pending_actions:
            if action.record_id == old:
                action.record_id = new
            for name in _REFERENCE_FIELDS:
                if action.payload.get(name) == old:
                    action.payload[name] = new
        if self.active_profile_id == old:
            self.active_profile_id = new
        if self.locked_to_profile_id == old:
            self.locked_to_profile_id = new

    def confirm_action(self, action_id: str, record: Optional[BaseModel] = None) -> None:
        """The backend persisted this action; adopt the server id if one came back."""
        action = next((a for a in self.pending_actions if a.id == action_id), None)
        if action is None:
            return
        self.pending_actions.remove(action)
        if record is not None and action.type in _ADD_ACTIONS and record.id != action.record_id:
            items = self.profiles if action.kind is ActivityKind.PROFILES else self._collection(action.kind)
            if any(r.id == record.id for r in items):
                # Push already delivered the server copy; drop our local one.
                items[:] = [r for r in items if r.id != action.record_id]
            self._rewrite_id(action.record_id, record.id)
            if self._pending_delete(record.id):
                items[:] = [r for r in items if r.id != record.id]
        self._persist()

    def fail_action(self, action_id: str, error: str) -> Optional[PendingAction]:
        action = next((a for a in self.pending_actions if a.id == action_id), None)
        if action is None:
            return None
        action.retry_count += 1
        action.last_error = error
        if action.retry_count >= self.max_pending_retries:
            action.failed = True
            logger.warning(
                "Pending action exhausted retries",
                extra={"action_id": action.id, "type": action.type.value, "retry_count": action.retry_count},
            )
        self._persist()
        return action

    def retry_failed_actions(self) -> int:
        revived = 0
        for action in self.pending_actions:
            if action.failed:
                action.failed = False
                action.retry_count = 0
                revived += 1
        if revived:
            self._persist()
        return revived

    def discard_failed_actions(self) -> int:
        """Drop dead-lettered actions and the local records only they vouched for."""
        failed = [a for a in self.pending_actions if a.failed]
        if not failed:
            return 0
        orphaned = set()
        for action in failed:
            if action.type in _ADD_ACTIONS:
                items = self.profiles if action.kind is ActivityKind.PROFILES else self._collection(action.kind)
                items[:] = [r for r in items if r.id != action.record_id]
                if is_local_id(action.record_id):
                    orphaned.add(action.record_id)
        self.pending_actions = [
            a for a in self.pending_actions if not a.failed and a.record_id not in orphaned
        ]
        self._persist()
        return len(failed)

    # Derived reads

    def profile_types(self) -> List[ProfileType]:
        if not self.profiles:
            return list(self.default_profile_types)
        return [p.profile_type for p in self.profiles]

    def total_family_stars(self) -> Optional[int]:
        if not self.is_hydrated:
            return None
        return sum(s.count for s in self._records[ActivityKind.STARS])

    def profile_stars(self, profile_id: str) -> Optional[int]:
        if not self.is_hydrated:
            return None
        return sum(s.count for s in self._records[ActivityKind.STARS] if s.profile_id == profile_id)

    def has_completed_activity(
        self,
        profile_id: str,
        source: StarSource | str,
        day: Optional[int] = None,
    ) -> bool:
        star_source = StarSource(source)
        stars = self._records[ActivityKind.STARS]
        if day is not None:
            return any(
                s.profile_id == profile_id and s.source is star_source and s.season_day == day
                for s in stars
            )
        today = self.today()
        return any(s.profile_id == profile_id and s.source is star_source and s.date == today for s in stars)

    def daily_progress(self, profile_id: str, on: Optional[date] = None) -> Optional[DailyProgress]:
        if not self.is_hydrated:
            return None
        day = on or self.today()
        return DailyProgress(
            fasting_logged=any(
                l.profile_id == profile_id and l.date == day for l in self._records[ActivityKind.FASTING_LOGS]
            ),
            suhoor_logged=any(
                l.profile_id == profile_id and l.date == day for l in self._records[ActivityKind.SUHOOR_LOGS]
            ),
            messages_sent=sum(
                1 for m in self._records[ActivityKind.MESSAGES] if m.sender_id == profile_id and m.date == day
            ),
            total_stars=sum(
                s.count for s in self._records[ActivityKind.STARS] if s.profile_id == profile_id and s.date == day
            ),
        )

    def progress(self) -> Optional[ProgressionResult]:
        total = self.total_family_stars()
        if total is None:
            return None
        return compute_progress(total, self.profile_types(), self.progression_config)

    def monthly_stats(self, profile_id: str) -> Optional[MonthlyStats]:
        if not self.is_hydrated:
            return None
        logs = [l for l in self._records[ActivityKind.FASTING_LOGS] if l.profile_id == profile_id]
        stars = [s for s in self._records[ActivityKind.STARS] if s.profile_id == profile_id]

        def days_with(source: StarSource) -> int:
            return len({s.season_day for s in stars if s.source is source})

        full = sum(1 for l in logs if l.mode is FastingMode.FULL)
        partial = sum(1 for l in logs if l.mode is FastingMode.PARTIAL)
        tried = sum(1 for l in logs if l.mode is FastingMode.TRIED)
        return MonthlyStats(
            total_days_fasted=full + partial + tried,
            full_fast_days=full,
            partial_fast_days=partial,
            tried_fast_days=tried,
            quran_days=days_with(StarSource.QURAN),
            mission_days=days_with(StarSource.MISSION),
            story_days=days_with(StarSource.STORY),
            checkin_days=days_with(StarSource.CHECKIN),
            total_stars=sum(s.count for s in stars),
            milestones_unlocked=len(self.progress().unlocked),
        )

    def countdown(self, now: Optional[datetime] = None) -> Optional[CountdownInfo]:
        if not self.is_hydrated or self.family is None:
            return None
        return get_countdown_info(
            self.family.season_start_date,
            self.family.is_start_confirmed,
            now=now or self._now(),
            tz_name=self.family.timezone,
        )

    def premium(self) -> bool:
        return is_premium(self.family, self._now())

    def sync_status(self) -> SyncStatus:
        return SyncStatus(
            state=self.sync_state,
            is_hydrated=self.is_hydrated,
            has_initially_loaded=self.has_initially_loaded,
            is_syncing=self.is_syncing,
            is_online=self.is_online,
            last_synced_at=self.last_synced_at,
            pending_count=self.pending_count,
            failed_pending_count=self.failed_pending_count,
            error=self.sync_error,
        )
