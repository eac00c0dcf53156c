"""Row <-> domain mapping for backend tables.

Each entity gets a `*_to_domain` (backend row -> model) and a `*_to_wire`
(model -> insert payload) function. Nothing here touches the store or the
network, so schema drift stays a local concern.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel

from .schemas import (
    LOCAL_ID_PREFIX,
    ActivityKind,
    Family,
    FamilyMessage,
    FastingLog,
    Memory,
    Profile,
    Star,
    SuhoorLog,
    TimeCapsule,
)

Row = Dict[str, Any]


def _iso(value: Optional[date | datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _enum(value: Any) -> Any:
    return getattr(value, "value", value)


def _server_id(record_id: Optional[str]) -> Optional[str]:
    """Local placeholder ids never reach the backend."""
    if not record_id or record_id.startswith(LOCAL_ID_PREFIX):
        return None
    return record_id


def _drop_none(payload: Row) -> Row:
    return {key: value for key, value in payload.items() if value is not None}


# Families


def family_to_domain(row: Row, *, email: str = "") -> Family:
    return Family(
        id=row["id"],
        email=email or row.get("email") or "",
        family_name=row["family_name"],
        season_start_date=row["ramadan_start_date"],
        is_start_confirmed=bool(row.get("is_ramadan_date_confirmed")),
        timezone=row.get("timezone") or "UTC",
        suhoor_time=row.get("suhoor_time") or "04:30",
        iftar_time=row.get("iftar_time") or "18:30",
        use_profile_prayer_times=bool(row.get("use_profile_prayer_times")),
        enable_timezone_tracking=bool(row.get("enable_timezone_tracking")),
        subscription_tier=row.get("subscription_tier") or "free",
        subscription_status=row.get("subscription_status"),
        subscription_current_period_end=row.get("subscription_current_period_end"),
        subscription_cancel_at_period_end=bool(row.get("subscription_cancel_at_period_end")),
        family_code=row.get("family_code") or None,
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


FAMILY_FIELD_MAP = {
    "family_name": "family_name",
    "season_start_date": "ramadan_start_date",
    "is_start_confirmed": "is_ramadan_date_confirmed",
    "timezone": "timezone",
    "suhoor_time": "suhoor_time",
    "iftar_time": "iftar_time",
    "use_profile_prayer_times": "use_profile_prayer_times",
    "enable_timezone_tracking": "enable_timezone_tracking",
}


def family_to_wire(family: Family) -> Row:
    # Billing columns are owned by the payment webhooks, never written here.
    return family_updates_to_wire(family.model_dump(include=set(FAMILY_FIELD_MAP)))


def family_updates_to_wire(updates: Row) -> Row:
    payload: Row = {}
    for field, column in FAMILY_FIELD_MAP.items():
        if field in updates:
            value = updates[field]
            payload[column] = _iso(value) if isinstance(value, date) else value
    return payload


# Profiles

PROFILE_FIELD_MAP = {
    "nickname": "nickname",
    "avatar": "avatar",
    "profile_type": "profile_type",
    "age_range": "age_range",
    "is_active": "is_active",
    "timezone": "timezone",
    "location_label": "location_label",
}


def profile_to_domain(row: Row) -> Profile:
    return Profile(
        id=row["id"],
        family_id=row["family_id"],
        nickname=row["nickname"],
        avatar=row["avatar"],
        profile_type=row["profile_type"],
        age_range=row.get("age_range"),
        is_active=row.get("is_active", True),
        timezone=row.get("timezone"),
        location_label=row.get("location_label"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def profile_to_wire(profile: Profile) -> Row:
    payload = profile_updates_to_wire(profile.model_dump(include=set(PROFILE_FIELD_MAP)))
    payload["family_id"] = profile.family_id
    return _drop_none(payload)


def profile_updates_to_wire(updates: Row) -> Row:
    return {
        column: _enum(updates[field])
        for field, column in PROFILE_FIELD_MAP.items()
        if field in updates
    }


# Stars


def star_to_domain(row: Row) -> Star:
    return Star(
        id=row["id"],
        profile_id=row["profile_id"],
        family_id=row["family_id"],
        date=row["date"],
        season_day=row["ramadan_day"],
        source=row["source"],
        count=row["count"],
        created_at=row.get("created_at"),
    )


def star_to_wire(star: Star) -> Row:
    return _drop_none(
        {
            "id": _server_id(star.id),
            "profile_id": star.profile_id,
            "family_id": star.family_id,
            "date": _iso(star.date),
            "ramadan_day": star.season_day,
            "source": _enum(star.source),
            "count": star.count,
        }
    )


# Fasting logs


def fasting_log_to_domain(row: Row) -> FastingLog:
    return FastingLog(
        id=row["id"],
        profile_id=row["profile_id"],
        family_id=row.get("family_id"),
        date=row["date"],
        season_day=row["ramadan_day"],
        mode=row["mode"],
        partial_hours=row.get("partial_hours"),
        energy_level=row.get("energy_level") or None,
        notes=row.get("notes") or None,
        stars_earned=row.get("stars_earned") or 0,
        created_at=row.get("created_at"),
    )


def fasting_log_to_wire(log: FastingLog) -> Row:
    return _drop_none(
        {
            "profile_id": log.profile_id,
            "family_id": log.family_id,
            "date": _iso(log.date),
            "ramadan_day": log.season_day,
            "mode": _enum(log.mode),
            "partial_hours": log.partial_hours,
            "energy_level": _enum(log.energy_level),
            "notes": log.notes,
            "stars_earned": log.stars_earned,
        }
    )


# Suhoor logs


def suhoor_log_to_domain(row: Row) -> SuhoorLog:
    return SuhoorLog(
        id=row["id"],
        profile_id=row["profile_id"],
        family_id=row.get("family_id"),
        date=row["date"],
        season_day=row["ramadan_day"],
        food_groups=row.get("food_groups") or [],
        photo_url=row.get("photo_url") or None,
        stars_earned=row.get("stars_earned") or 0,
        created_at=row.get("created_at"),
    )


def suhoor_log_to_wire(log: SuhoorLog) -> Row:
    return _drop_none(
        {
            "profile_id": log.profile_id,
            "family_id": log.family_id,
            "date": _iso(log.date),
            "ramadan_day": log.season_day,
            "food_groups": [_enum(group) for group in log.food_groups],
            "photo_url": log.photo_url,
            "stars_earned": log.stars_earned,
        }
    )


# Messages


def message_to_domain(row: Row) -> FamilyMessage:
    return FamilyMessage(
        id=row["id"],
        family_id=row["family_id"],
        sender_id=row["sender_id"],
        recipient_id=row.get("recipient_id"),
        message=row["message"],
        message_type=row.get("message_type") or "text",
        voice_url=row.get("voice_url") or None,
        drawing_url=row.get("drawing_url") or None,
        emoji=row.get("emoji") or None,
        date=row["date"],
        season_day=row["ramadan_day"],
        is_delivered=bool(row.get("is_delivered")),
        delivered_at=row.get("delivered_at"),
        created_at=row.get("created_at"),
    )


def message_to_wire(message: FamilyMessage) -> Row:
    payload = _drop_none(
        {
            "id": _server_id(message.id),
            "family_id": message.family_id,
            "sender_id": message.sender_id,
            "message": message.message,
            "message_type": _enum(message.message_type),
            "voice_url": message.voice_url,
            "drawing_url": message.drawing_url,
            "emoji": message.emoji,
            "date": _iso(message.date),
            "ramadan_day": message.season_day,
            "is_delivered": message.is_delivered,
            "delivered_at": _iso(message.delivered_at),
        }
    )
    # NULL recipient means "whole family" and must be sent explicitly.
    payload["recipient_id"] = message.recipient_id
    return payload


# Memories


def memory_to_domain(row: Row) -> Memory:
    return Memory(
        id=row["id"],
        family_id=row["family_id"],
        profile_id=row["profile_id"],
        season_year=row["ramadan_year"],
        season_day=row.get("ramadan_day") or None,
        category=row.get("category") or "other",
        caption=row.get("caption") or None,
        photo_url=row["photo_url"],
        thumbnail_url=row.get("thumbnail_url") or None,
        is_favorite=bool(row.get("is_favorite")),
        created_at=row.get("created_at"),
    )


def memory_to_wire(memory: Memory) -> Row:
    return _drop_none(
        {
            "id": _server_id(memory.id),
            "family_id": memory.family_id,
            "profile_id": memory.profile_id,
            "ramadan_year": memory.season_year,
            "ramadan_day": memory.season_day,
            "category": _enum(memory.category),
            "caption": memory.caption,
            "photo_url": memory.photo_url,
            "thumbnail_url": memory.thumbnail_url,
            "is_favorite": memory.is_favorite,
        }
    )


MEMORY_MUTABLE_FIELDS = {"caption": "caption", "is_favorite": "is_favorite", "category": "category"}


def memory_updates_to_wire(updates: Row) -> Row:
    return {
        column: _enum(updates[field])
        for field, column in MEMORY_MUTABLE_FIELDS.items()
        if field in updates
    }


# Time capsules


def time_capsule_to_domain(row: Row) -> TimeCapsule:
    return TimeCapsule(
        id=row["id"],
        family_id=row["family_id"],
        author_id=row["author_id"],
        recipient_id=row["recipient_id"],
        written_year=row["written_year"],
        message=row["message"],
        voice_url=row.get("voice_url") or None,
        reveal_type=row.get("reveal_type") or "next_ramadan",
        reveal_date=row.get("reveal_date") or None,
        is_revealed=bool(row.get("is_revealed")),
        revealed_at=row.get("revealed_at"),
        created_at=row.get("created_at"),
    )


def time_capsule_to_wire(capsule: TimeCapsule) -> Row:
    return _drop_none(
        {
            "id": _server_id(capsule.id),
            "family_id": capsule.family_id,
            "author_id": capsule.author_id,
            "recipient_id": capsule.recipient_id,
            "written_year": capsule.written_year,
            "message": capsule.message,
            "voice_url": capsule.voice_url,
            "reveal_type": _enum(capsule.reveal_type),
            "reveal_date": _iso(capsule.reveal_date),
            "is_revealed": capsule.is_revealed,
        }
    )


def time_capsule_reveal_to_wire(capsule: TimeCapsule) -> Row:
    return {"is_revealed": True, "revealed_at": _iso(capsule.revealed_at)}


_TO_DOMAIN: Dict[ActivityKind, Callable[[Row], BaseModel]] = {
    ActivityKind.FAMILIES: family_to_domain,
    ActivityKind.PROFILES: profile_to_domain,
    ActivityKind.STARS: star_to_domain,
    ActivityKind.FASTING_LOGS: fasting_log_to_domain,
    ActivityKind.SUHOOR_LOGS: suhoor_log_to_domain,
    ActivityKind.MESSAGES: message_to_domain,
    ActivityKind.MEMORIES: memory_to_domain,
    ActivityKind.TIME_CAPSULES: time_capsule_to_domain,
}

_TO_WIRE: Dict[ActivityKind, Callable[[Any], Row]] = {
    ActivityKind.FAMILIES: family_to_wire,
    ActivityKind.PROFILES: profile_to_wire,
    ActivityKind.STARS: star_to_wire,
    ActivityKind.FASTING_LOGS: fasting_log_to_wire,
    ActivityKind.SUHOOR_LOGS: suhoor_log_to_wire,
    ActivityKind.MESSAGES: message_to_wire,
    ActivityKind.MEMORIES: memory_to_wire,
    ActivityKind.TIME_CAPSULES: time_capsule_to_wire,
}


def record_to_domain(kind: ActivityKind | str, row: Row) -> BaseModel:
    return _TO_DOMAIN[ActivityKind(kind)](row)


def record_to_wire(kind: ActivityKind | str, record: BaseModel) -> Row:
    return _TO_WIRE[ActivityKind(kind)](record)


def updates_to_domain(kind: ActivityKind | str, payload: Row) -> Row:
    """Reverse of the `*_updates_to_wire` helpers, for re-applying queued edits."""
    if ActivityKind(kind) is ActivityKind.FAMILIES:
        reverse = {column: field for field, column in FAMILY_FIELD_MAP.items()}
        return {reverse[column]: value for column, value in payload.items() if column in reverse}
    return dict(payload)
