"""
Vaccination validity windows.

Pure helpers: how long a vaccination protects (from a static name-fragment
table), when it expires, and how to phrase the remaining or overdue time for
the vaccination pass. Nothing here touches the store.
"""

import math
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

LIFELONG = "lifelong"
DEFAULT_VALIDITY_YEARS = 10
EXPIRING_SOON_DAYS = 90
SECONDS_PER_DAY = 86400

# First matching group wins, so the lifelong group must stay first.
VALIDITY_TABLE = (
    (
        (
            "masern", "measles", "mumps", "röteln", "rubella", "mmr",
            "windpocken", "varizellen", "varicella", "chickenpox",
            "polio", "kinderlähmung", "hepatitis b", "hpv", "papillom",
            "tuberkulose", "tuberculosis", "bcg",
        ),
        LIFELONG,
    ),
    (("grippe", "influenza", "flu"), 1),
    (("covid",), 1),
    (("fsme", "zecken", "tick-borne", "tbe"), 3),
    (
        (
            "tetanus", "diphtherie", "diphtheria", "keuchhusten",
            "pertussis", "whooping", "td", "tdap",
        ),
        10,
    ),
    (("hepatitis a",), 20),
    (("tollwut", "rabies"), 3),
    (("gelbfieber", "yellow fever"), 10),
    (("typhus", "typhoid"), 3),
    (("cholera",), 2),
    (("japanische", "japanese"), 2),
    (("herpes zoster", "gürtelrose", "shingles"), 5),
)

_STATE_PRIORITY = {"expired": 1, "expiring_soon": 2, "valid": 3, LIFELONG: 4}

DateLike = Union[str, date, datetime]


def validity_years(vaccine_name: str) -> Union[int, str]:
    """Years of protection for a vaccine name, or ``LIFELONG``."""
    name = (vaccine_name or "").lower()
    for fragments, years in VALIDITY_TABLE:
        if any(fragment in name for fragment in fragments):
            return years
    return DEFAULT_VALIDITY_YEARS


def parse_date(value: DateLike) -> datetime:
    """Normalize an ISO string, date or datetime to a naive UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        return datetime.combine(value, time())
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a date: {value!r}")
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _now(now: Optional[DateLike]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return parse_date(now)


def _add_years(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return date(day.year + years, 3, 1)


def expiry_date(vaccine_name: str, administered: DateLike) -> Optional[date]:
    """Expiry date of a vaccination; ``None`` means lifelong."""
    years = validity_years(vaccine_name)
    if years == LIFELONG:
        return None
    return _add_years(parse_date(administered).date(), years)


def days_until_expiry(vaccine_name: str, administered: DateLike, now: Optional[DateLike] = None) -> Optional[int]:
    expiry = expiry_date(vaccine_name, administered)
    if expiry is None:
        return None
    diff = datetime.combine(expiry, time()) - _now(now)
    return math.floor(diff.total_seconds() / SECONDS_PER_DAY)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def format_span(days: int) -> str:
    """Day-granularity span: days below 30, months below 365, else years and months."""
    if days < 30:
        return _plural(days, "day")
    if days < 365:
        return _plural(days // 30, "month")
    years = days // 365
    months = (days % 365) // 30
    if months == 0:
        return _plural(years, "year")
    return f"{_plural(years, 'year')} and {_plural(months, 'month')}"


def _state_for(days: Optional[int]) -> str:
    if days is None:
        return LIFELONG
    if days <= 0:
        return "expired"
    if days < EXPIRING_SOON_DAYS:
        return "expiring_soon"
    return "valid"


def status_text(vaccine_name: str, administered: DateLike, now: Optional[DateLike] = None) -> str:
    days = days_until_expiry(vaccine_name, administered, now)
    if days is None:
        return "Lifelong"
    # The expiry day itself no longer counts as protected ("Expired today"), so a
    # Tetanus shot from 2015-01-01 checked on 2025-01-01 is overdue. See DESIGN.md.
    if days <= 0:
        overdue = -days
        if overdue == 0:
            return "Expired today"
        return f"Expired {format_span(overdue)} ago"
    return f"Expires in {format_span(days)}"


def validity_status(vaccine_name: str, administered: DateLike, now: Optional[DateLike] = None) -> Dict[str, Any]:
    expiry = expiry_date(vaccine_name, administered)
    days = days_until_expiry(vaccine_name, administered, now)
    return {
        "state": _state_for(days),
        "validityYears": validity_years(vaccine_name),
        "expiresOn": expiry.isoformat() if expiry else None,
        "daysRemaining": days,
        "text": status_text(vaccine_name, administered, now),
    }


def status_priority(vaccine_name: str, administered: DateLike, now: Optional[DateLike] = None) -> int:
    return _STATE_PRIORITY[_state_for(days_until_expiry(vaccine_name, administered, now))]


def sort_by_status(vaccinations: Iterable[Dict[str, Any]], now: Optional[DateLike] = None) -> List[Dict[str, Any]]:
    """Expired first, then expiring soon, valid, lifelong; soonest expiry first, lifelong by name."""
    current = _now(now)

    def key(v):
        expiry = expiry_date(v["name"], v["date"])
        return (
            status_priority(v["name"], v["date"], current),
            expiry or date.max,
            (v.get("name") or "").lower(),
        )

    return sorted(vaccinations, key=key)


def sort_by_expiry(vaccinations: Iterable[Dict[str, Any]], now: Optional[DateLike] = None) -> List[Dict[str, Any]]:
    """Expired first, then soonest expiry; lifelong entries last, by name."""
    current = _now(now)

    def key(v):
        days = days_until_expiry(v["name"], v["date"], current)
        expiry = expiry_date(v["name"], v["date"])
        return (
            days is None,
            days is not None and days > 0,
            expiry or date.max,
            (v.get("name") or "").lower(),
        )

    return sorted(vaccinations, key=key)


def sort_by_name(vaccinations: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(vaccinations, key=lambda v: ((v.get("name") or "").casefold(), v.get("date") or ""))


def time_since(administered: DateLike, now: Optional[DateLike] = None) -> str:
    diff = abs((_now(now) - parse_date(administered)).total_seconds())
    return f"{format_span(math.floor(diff / SECONDS_PER_DAY))} ago"
