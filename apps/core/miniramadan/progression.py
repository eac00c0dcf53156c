"""Progression engine: daily caps, composition-scaled milestones, unlocks.

Pure functions of (total points, profile types). Milestone base thresholds
and the composition scale factor are configuration data; this module only
applies them. A total exactly equal to a scaled threshold counts as unlocked.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from .schemas import (
    Family,
    FastingMode,
    ProfileType,
    SubscriptionStatus,
    SubscriptionTier,
)

SEASON_DAYS = 30
MAX_ADULT_PROFILES = 2

MAX_STARS_PER_DAY: Dict[ProfileType, int] = {
    # fasting(3) + suhoor(2) + wonder(1) + mission(1) + checkin(1)
    ProfileType.ADULT: 8,
    ProfileType.CHILD: 8,
    # helped + quran + kindness + dua + story + fasting_helper, one each
    ProfileType.LITTLE_STAR: 6,
}


class Milestone(BaseModel):
    name: str
    display_name: str
    base_threshold: int
    description: str


class ScaledMilestone(Milestone):
    threshold: int


MILESTONES: Tuple[Milestone, ...] = (
    Milestone(name="patience", display_name="Sabr", base_threshold=15,
              description="For those who wait with grace."),
    Milestone(name="generosity", display_name="Karam", base_threshold=35,
              description="For those who give freely."),
    Milestone(name="courage", display_name="Shuja'a", base_threshold=60,
              description="For those who keep trying when it is hard."),
    Milestone(name="forgiveness", display_name="Maghfira", base_threshold=90,
              description="For those who forgive with love."),
    Milestone(name="gratitude", display_name="Shukr", base_threshold=125,
              description="For those who say thank you."),
    Milestone(name="mercy", display_name="Rahma", base_threshold=165,
              description="For those who show compassion."),
    Milestone(name="kindness", display_name="Lutf", base_threshold=210,
              description="For those who are gentle with others."),
    Milestone(name="hope", display_name="Amal", base_threshold=260,
              description="For those who look forward with faith."),
    Milestone(name="unity", display_name="Wahda", base_threshold=300,
              description="The whole family, shining together."),
)


class FamilyComposition(BaseModel):
    adults: int = 0
    children: int = 0
    little_stars: int = 0

    @property
    def size(self) -> int:
        return self.adults + self.children + self.little_stars


def family_composition(profile_types: Iterable[ProfileType | str]) -> FamilyComposition:
    types = [ProfileType(t) for t in profile_types]
    return FamilyComposition(
        adults=sum(1 for t in types if t is ProfileType.ADULT),
        children=sum(1 for t in types if t is ProfileType.CHILD),
        little_stars=sum(1 for t in types if t is ProfileType.LITTLE_STAR),
    )


def max_season_points(
    composition: FamilyComposition,
    daily_caps: Optional[Dict[ProfileType, int]] = None,
) -> int:
    caps = daily_caps or MAX_STARS_PER_DAY
    return SEASON_DAYS * (
        composition.adults * caps[ProfileType.ADULT]
        + composition.children * caps[ProfileType.CHILD]
        + composition.little_stars * caps[ProfileType.LITTLE_STAR]
    )


# Two adults is the household the base thresholds were tuned for.
REFERENCE_COMPOSITION = FamilyComposition(adults=2)


def default_scale_factor(composition: FamilyComposition) -> float:
    """Season capacity relative to the reference household; 1.0 when empty."""
    if composition.size == 0:
        return 1.0
    return max_season_points(composition) / max_season_points(REFERENCE_COMPOSITION)


def _round_to_nearest_5(value: float) -> int:
    # Half-up, not banker's rounding.
    return int(math.floor(value / 5 + 0.5)) * 5


@dataclass(frozen=True)
class ProgressionConfig:
    milestones: Tuple[Milestone, ...] = MILESTONES
    daily_caps: Dict[ProfileType, int] = field(default_factory=lambda: dict(MAX_STARS_PER_DAY))
    scale_factor: Callable[[FamilyComposition], float] = default_scale_factor
    minimum_threshold: int = 5

    def scaled_threshold(self, base: int, factor: float) -> int:
        return max(self.minimum_threshold, _round_to_nearest_5(base * factor))


DEFAULT_CONFIG = ProgressionConfig()


class ProgressionResult(BaseModel):
    total_points: int
    scale_factor: float
    max_season_points: int
    milestones: List[ScaledMilestone]
    unlocked: List[ScaledMilestone]
    next: Optional[ScaledMilestone] = None
    remaining: Optional[int] = None

    @property
    def thresholds(self) -> List[int]:
        return [m.threshold for m in self.milestones]

    @property
    def is_complete(self) -> bool:
        return self.next is None


def daily_cap(profile_type: ProfileType | str, config: ProgressionConfig = DEFAULT_CONFIG) -> int:
    return config.daily_caps[ProfileType(profile_type)]


def scaled_milestones(
    profile_types: Sequence[ProfileType | str],
    config: ProgressionConfig = DEFAULT_CONFIG,
) -> List[ScaledMilestone]:
    composition = family_composition(profile_types)
    factor = config.scale_factor(composition)
    return [
        ScaledMilestone(**m.model_dump(), threshold=config.scaled_threshold(m.base_threshold, factor))
        for m in config.milestones
    ]


def _compute(
    total_points: int,
    profile_types: Tuple[ProfileType, ...],
    config: ProgressionConfig,
) -> ProgressionResult:
    composition = family_composition(profile_types)
    factor = config.scale_factor(composition)
    milestones = scaled_milestones(profile_types, config)
    unlocked = [m for m in milestones if m.threshold <= total_points]
    upcoming = next((m for m in milestones if m.threshold > total_points), None)
    return ProgressionResult(
        total_points=total_points,
        scale_factor=factor,
        max_season_points=max_season_points(composition, config.daily_caps),
        milestones=milestones,
        unlocked=unlocked,
        next=upcoming,
        remaining=upcoming.threshold - total_points if upcoming else None,
    )


@lru_cache(maxsize=256)
def _compute_default(total_points: int, profile_types: Tuple[ProfileType, ...]) -> ProgressionResult:
    return _compute(total_points, profile_types, DEFAULT_CONFIG)


def compute_progress(
    total_points: int,
    profile_types: Sequence[ProfileType | str],
    config: Optional[ProgressionConfig] = None,
) -> ProgressionResult:
    """Unlocked milestones and the next one for a family's total points."""
    if total_points < 0:
        raise ValueError("total_points cannot be negative.")
    types = tuple(ProfileType(t) for t in profile_types)
    if config is None or config is DEFAULT_CONFIG:
        # Copy so callers cannot mutate the memoized instance.
        return _compute_default(total_points, types).model_copy(deep=True)
    return _compute(total_points, types, config)


def milestone_by_name(name: str, config: ProgressionConfig = DEFAULT_CONFIG) -> Optional[Milestone]:
    return next((m for m in config.milestones if m.name == name), None)


def stars_for_fasting(mode: FastingMode | str) -> int:
    return {
        FastingMode.FULL: 3,
        FastingMode.PARTIAL: 2,
        FastingMode.TRIED: 1,
    }.get(FastingMode(mode), 0)


def stars_for_suhoor(food_groups: Sequence[str]) -> int:
    if not food_groups:
        return 0
    if len(food_groups) >= 4:
        return 2
    return 1


# Avatar gating reads the premium flag only; reward math never does.

class Avatar(BaseModel):
    id: str
    name: str
    profile_types: Tuple[ProfileType, ...]
    is_premium: bool = False


_ALL = (ProfileType.LITTLE_STAR, ProfileType.CHILD, ProfileType.ADULT)
_YOUNG = (ProfileType.LITTLE_STAR, ProfileType.CHILD)

AVATARS: Tuple[Avatar, ...] = (
    Avatar(id="moon", name="Crescent", profile_types=_ALL),
    Avatar(id="star", name="Star", profile_types=_ALL),
    Avatar(id="sparkles", name="Sparkles", profile_types=_ALL),
    Avatar(id="sun", name="Sun", profile_types=_ALL),
    Avatar(id="butterfly", name="Butterfly", profile_types=_YOUNG),
    Avatar(id="bunny", name="Bunny", profile_types=_YOUNG),
    Avatar(id="rocket", name="Rocket", profile_types=(ProfileType.CHILD,)),
    Avatar(id="lantern", name="Lantern", profile_types=(ProfileType.CHILD, ProfileType.ADULT)),
    Avatar(id="book", name="Book", profile_types=(ProfileType.CHILD, ProfileType.ADULT)),
    Avatar(id="tree", name="Tree", profile_types=(ProfileType.ADULT,)),
    Avatar(id="dove", name="Dove", profile_types=(ProfileType.ADULT,)),
    Avatar(id="mosque", name="Mosque", profile_types=_ALL, is_premium=True),
    Avatar(id="dates", name="Date palm", profile_types=_ALL, is_premium=True),
    Avatar(id="kaaba", name="Kaaba", profile_types=(ProfileType.CHILD, ProfileType.ADULT), is_premium=True),
    Avatar(id="night_stars", name="Starry night", profile_types=_ALL, is_premium=True),
)


def available_avatars(profile_type: ProfileType | str, premium: bool) -> List[Avatar]:
    kind = ProfileType(profile_type)
    return [a for a in AVATARS if kind in a.profile_types and (premium or not a.is_premium)]


def is_avatar_allowed(avatar_id: str, profile_type: ProfileType | str, premium: bool) -> bool:
    return any(a.id == avatar_id for a in available_avatars(profile_type, premium))


def is_premium(family: Optional[Family], now: Optional[datetime] = None) -> bool:
    """Opaque entitlement read: paid tier, active or trialing, period not ended."""
    if family is None:
        return False
    active = family.subscription_tier is SubscriptionTier.PAID and family.subscription_status in {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
    }
    period_end = family.subscription_current_period_end
    if period_end is not None:
        current = now or datetime.now(timezone.utc)
        if period_end.tzinfo is None:
            period_end = period_end.replace(tzinfo=timezone.utc)
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        if period_end < current:
            return False
    return active
