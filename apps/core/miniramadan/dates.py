"""Season calendar helpers: day index, countdown and moon-sighting window.

Predicted start dates vary by a day or two depending on moon sighting, so a
family can confirm the start date its community observed. Until then the
provisional date stays authoritative; nothing here advances or corrects it.

All day math is calendar-day based (local midnight), never elapsed 24h spans.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel

SEASON_DAYS = 30
# The window spans the start date plus 29 more calendar days.
SEASON_SPAN_DAYS = SEASON_DAYS - 1
CONFIRMATION_WINDOW_DAYS = 2
RETROACTIVE_LOOKBACK_DAYS = 3

EXPECTED_START_DATES: Dict[int, Dict[str, str]] = {
    2026: {"earliest": "2026-02-28", "expected": "2026-02-28", "latest": "2026-03-01"},
    2027: {"earliest": "2027-02-16", "expected": "2027-02-17", "latest": "2027-02-18"},
    2028: {"earliest": "2028-02-05", "expected": "2028-02-06", "latest": "2028-02-07"},
}
_FALLBACK_YEAR = 2026

PREPARATION_TIPS = [
    (30, "Start talking to your children about what Ramadan means", "learning"),
    (28, "Begin adjusting sleep schedules for suhoor", "planning"),
    (25, "Plan your Ramadan decorations with the family", "decorations"),
    (22, "Research age-appropriate fasting goals for your children", "planning"),
    (20, "Start a countdown calendar craft project", "decorations"),
    (18, "Practice the suhoor and iftar duas together", "learning"),
    (15, "Plan your iftar menu for the first week", "planning"),
    (12, "Set up your family's profiles", "planning"),
    (10, "Buy dates and special Ramadan treats", "shopping"),
    (8, "Try a practice fast with the kids (even just until lunch)", "spiritual"),
    (6, "Hang up your Ramadan decorations", "decorations"),
    (4, "Set individual Ramadan goals as a family", "spiritual"),
    (3, "Prepare your Ramadan corner or special space", "decorations"),
    (2, "Do a final grocery shop for suhoor essentials", "shopping"),
    (1, "Get to bed early - tomorrow begins your blessed journey!", "spiritual"),
    (0, "Ramadan Mubarak! Your journey begins today", "spiritual"),
]

DateInput = Union[str, date]


class InvalidDateError(ValueError):
    """Raised for season dates that are not valid YYYY-MM-DD calendar dates."""


class CountdownInfo(BaseModel):
    is_before: bool
    is_during: bool
    is_after: bool
    days_until: int
    hours_until: int
    minutes_until: int
    seconds_until: int
    current_day: int
    days_remaining: int
    season_year: int
    is_in_confirmation_window: bool
    needs_confirmation: bool
    expected_date: str
    earliest_date: str
    latest_date: str


class StartDateOption(BaseModel):
    date: str
    label: str


def parse_season_date(value: DateInput) -> date:
    """Parse a strict YYYY-MM-DD string (or pass a date through)."""
    if isinstance(value, datetime):
        raise InvalidDateError("Expected a calendar date, got a datetime.")
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise InvalidDateError(f"Invalid season date: {value!r}")
    text = value.strip()
    if len(text) != 10:
        raise InvalidDateError(f"Invalid season date: {value!r}")
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        raise InvalidDateError(f"Invalid season date: {value!r}") from exc


def _zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name) if tz_name else ZoneInfo("UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def today_in_timezone(tz_name: Optional[str], now: Optional[datetime] = None) -> date:
    """Calendar date for `now` in the family timezone (UTC when unknown)."""
    tz = _zone(tz_name)
    current = now or datetime.now(tz)
    if current.tzinfo is None:
        return current.date()
    return current.astimezone(tz).date()


def season_end(start: DateInput) -> date:
    return parse_season_date(start) + timedelta(days=SEASON_SPAN_DAYS)


def season_day(start: DateInput, today: DateInput) -> int:
    """1-indexed season day for a calendar date, clamped to [1, 30]."""
    start_date = parse_season_date(start)
    current = parse_season_date(today)
    diff = (current - start_date).days + 1
    return max(1, min(SEASON_DAYS, diff))


def date_for_day(start: DateInput, day: int) -> date:
    if not 1 <= day <= SEASON_DAYS:
        raise InvalidDateError(f"Season day must be between 1 and {SEASON_DAYS}, got {day}.")
    return parse_season_date(start) + timedelta(days=day - 1)


def is_season_active(start: DateInput, today: DateInput) -> bool:
    current = parse_season_date(today)
    return parse_season_date(start) <= current <= season_end(start)


def days_until_start(start: DateInput, today: DateInput) -> int:
    return max(0, (parse_season_date(start) - parse_season_date(today)).days)


def season_progress_percent(start: DateInput, today: DateInput) -> int:
    return round(season_day(start, today) / SEASON_DAYS * 100)


def is_in_confirmation_window(start: DateInput, today: DateInput) -> bool:
    """True from two calendar days before the start date up to the start date."""
    diff = (parse_season_date(start) - parse_season_date(today)).days
    return 0 <= diff <= CONFIRMATION_WINDOW_DAYS


def get_expected_dates(year: int) -> Dict[str, str]:
    return EXPECTED_START_DATES.get(year) or EXPECTED_START_DATES[_FALLBACK_YEAR]


def _day_label(day: date, today: date) -> str:
    diff = (day - today).days
    if diff == 0:
        return "Today"
    if diff == 1:
        return "Tomorrow"
    return f"{day:%A}, {day:%b} {day.day}"


def possible_start_dates(expected: DateInput, today: DateInput) -> List[StartDateOption]:
    """Start dates offered while the family confirms the moon sighting."""
    expected_date = parse_season_date(expected)
    current = parse_season_date(today)
    tomorrow = current + timedelta(days=1)
    day_after = current + timedelta(days=2)

    options: List[StartDateOption] = []
    if current >= expected_date:
        options.append(
            StartDateOption(date=current.isoformat(), label=f"Ramadan started {_day_label(current, current)}")
        )
    options.append(
        StartDateOption(date=tomorrow.isoformat(), label=f"Ramadan starts {_day_label(tomorrow, current)}")
    )
    if day_after <= expected_date + timedelta(days=CONFIRMATION_WINDOW_DAYS):
        options.append(
            StartDateOption(date=day_after.isoformat(), label=f"Ramadan starts {_day_label(day_after, current)}")
        )
    return options


def retroactive_start_dates(
    expected: DateInput,
    today: DateInput,
    *,
    lookback: int = RETROACTIVE_LOOKBACK_DAYS,
) -> List[StartDateOption]:
    """Recent calendar days selectable as day 1 after the window was missed."""
    expected_date = parse_season_date(expected)
    current = parse_season_date(today)

    options: List[StartDateOption] = []
    for offset in range(lookback, -1, -1):
        candidate = current - timedelta(days=offset)
        distance = (candidate - expected_date).days
        if -1 <= distance <= CONFIRMATION_WINDOW_DAYS:
            if offset == 0:
                ago = "Today"
            elif offset == 1:
                ago = "Yesterday"
            else:
                ago = f"{offset} days ago"
            options.append(
                StartDateOption(
                    date=candidate.isoformat(),
                    label=f"{candidate:%b} {candidate.day} ({ago})",
                )
            )
    return options


def get_countdown_info(
    start: DateInput,
    is_confirmed: bool = False,
    *,
    now: Optional[datetime] = None,
    tz_name: Optional[str] = None,
) -> CountdownInfo:
    """Countdown and season position for `now` (wall clock in the family timezone)."""
    start_date = parse_season_date(start)
    current = now or (datetime.now(_zone(tz_name)) if tz_name else datetime.now())
    if current.tzinfo is not None and tz_name:
        current = current.astimezone(_zone(tz_name))
    wall_now = current.replace(tzinfo=None)
    today = wall_now.date()
    end_date = season_end(start_date)

    start_midnight = datetime.combine(start_date, datetime.min.time())
    remaining = start_midnight - wall_now
    is_before = today < start_date
    is_after = today > end_date
    is_during = not is_before and not is_after

    if is_before:
        total_seconds = int(remaining.total_seconds())
        days_until = total_seconds // 86400
        hours_until = (total_seconds % 86400) // 3600
        minutes_until = (total_seconds % 3600) // 60
        seconds_until = total_seconds % 60
    else:
        days_until = hours_until = minutes_until = seconds_until = 0

    current_day = season_day(start_date, today) if is_during else 0
    days_remaining = SEASON_DAYS - current_day if is_during else 0

    in_window = is_before and is_in_confirmation_window(start_date, today)
    expected = get_expected_dates(start_date.year)

    return CountdownInfo(
        is_before=is_before,
        is_during=is_during,
        is_after=is_after,
        days_until=days_until,
        hours_until=hours_until,
        minutes_until=minutes_until,
        seconds_until=seconds_until,
        current_day=current_day,
        days_remaining=days_remaining,
        season_year=start_date.year,
        is_in_confirmation_window=in_window,
        needs_confirmation=in_window and not is_confirmed,
        expected_date=expected["expected"],
        earliest_date=expected["earliest"],
        latest_date=expected["latest"],
    )


def preparation_tip(days_until: int) -> Dict[str, str]:
    for min_days, tip, category in PREPARATION_TIPS:
        if days_until >= min_days:
            return {"tip": tip, "category": category}
    _, tip, category = PREPARATION_TIPS[-1]
    return {"tip": tip, "category": category}


def format_countdown(info: CountdownInfo) -> str:
    if info.is_during:
        return f"Day {info.current_day} of Ramadan"
    if info.is_after:
        return "Ramadan has ended - Eid Mubarak!"
    if info.days_until == 0:
        return f"{info.hours_until}h {info.minutes_until}m until Ramadan"
    if info.days_until == 1:
        return "Ramadan starts tomorrow!"
    return f"{info.days_until} days until Ramadan"
