"""Text-level iCalendar (RFC 5545) handling for calendar imports.

Only the subset needed to import appointments is supported: VEVENT blocks,
line folding, TEXT unescaping and the three DATE/DATE-TIME shapes found in
real exports (UTC, all-day, floating local time with an optional TZID).
"""

from __future__ import annotations

import enum
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

FALLBACK_TZ = "Europe/Vienna"

# Outlook/Exchange exports use Windows zone names in TZID.
_WINDOWS_ZONE_ALIASES: dict[str, str] = {
    "W. Europe Standard Time": "Europe/Berlin",
    "Central Europe Standard Time": "Europe/Budapest",
    "Central European Standard Time": "Europe/Warsaw",
    "Romance Standard Time": "Europe/Paris",
    "GMT Standard Time": "Europe/London",
    "E. Europe Standard Time": "Europe/Chisinau",
    "FLE Standard Time": "Europe/Kiev",
    "Eastern Standard Time": "America/New_York",
    "Pacific Standard Time": "America/Los_Angeles",
    "UTC": "UTC",
}

_TEXT_ESCAPE_RE = re.compile(r"\\([\\,;nN])")
_LINE_BREAK_RE = re.compile(r"\r\n|\n|\r")
_DURATION_RE = re.compile(
    r"^(?P<sign>[+-])?P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
_HTML_SNIFF_RE = re.compile(r"<!doctype\s+html|<html[\s>]", re.IGNORECASE)


class DateShape(str, enum.Enum):
    utc = "UTC"
    all_day = "ALL_DAY"
    floating = "FLOATING"


_SHAPE_PATTERNS: tuple[tuple[DateShape, re.Pattern[str]], ...] = (
    (DateShape.utc, re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})Z$")),
    (DateShape.all_day, re.compile(r"^(\d{4})(\d{2})(\d{2})$")),
    (DateShape.floating, re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})$")),
)


@dataclass(frozen=True)
class ContentLine:
    name: str
    params: dict[str, str]
    value: str


@dataclass
class CalendarEvent:
    uid: str | None = None
    summary: str = ""
    description: str = ""
    location: str = ""
    dtstart: str | None = None
    dtend: str | None = None
    raw_dtstart: str | None = None
    duration: timedelta | None = None


@dataclass
class ParsedCalendar:
    events: list[CalendarEvent] = field(default_factory=list)
    default_tz: str = FALLBACK_TZ


# --- timezones -------------------------------------------------------------


@lru_cache(maxsize=128)
def get_zone(name: str | None) -> ZoneInfo | None:
    cleaned = (name or "").strip().strip('"')
    if not cleaned:
        return None
    cleaned = _WINDOWS_ZONE_ALIASES.get(cleaned, cleaned)
    # Some producers prefix TZIDs with a vendor path, e.g. /mozilla.org/20050126_1/Europe/Vienna.
    candidates = [cleaned]
    if cleaned.startswith("/"):
        parts = [part for part in cleaned.split("/") if part]
        candidates.extend("/".join(parts[idx:]) for idx in range(len(parts)))
    for candidate in candidates:
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return None


def resolve_zone_name(name: str | None, *, fallback: str = FALLBACK_TZ) -> str:
    """Return `name` when it is a known zone, else `fallback` (logged)."""
    zone = get_zone(name)
    if zone is not None:
        return zone.key
    if name:
        logger.warning("unknown_timezone", extra={"tz": name, "fallback": fallback})
    return fallback


def to_utc(local: datetime, zone_name: str) -> datetime | None:
    """Interpret a naive wall-clock time in `zone_name` and return the UTC instant.

    Nonexistent times (spring-forward gap) use the offset in force before the
    transition; ambiguous times (fall-back hour) resolve to the first occurrence.
    """
    zone = get_zone(zone_name)
    if zone is None:
        return None
    return local.replace(tzinfo=zone, fold=0).astimezone(timezone.utc)


def render_local(instant: datetime, zone_name: str) -> datetime | None:
    """Render a UTC instant as a naive wall-clock time in `zone_name`."""
    zone = get_zone(zone_name)
    if zone is None:
        return None
    return instant.astimezone(zone).replace(tzinfo=None)


def format_utc(instant: datetime) -> str:
    value = instant.astimezone(timezone.utc)
    return f"{value:%Y-%m-%dT%H:%M:%S}.{value.microsecond // 1000:03d}Z"


def parse_utc(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(timezone.utc)


# --- DATE / DATE-TIME values ---------------------------------------------


def _resolve_utc(parts: tuple[int, ...], zone_name: str) -> datetime | None:
    return datetime(*parts, tzinfo=timezone.utc)


def _resolve_local(parts: tuple[int, ...], zone_name: str) -> datetime | None:
    return to_utc(datetime(*parts), zone_name)


_RESOLVERS: dict[DateShape, Callable[[tuple[int, ...], str], datetime | None]] = {
    DateShape.utc: _resolve_utc,
    DateShape.all_day: _resolve_local,
    DateShape.floating: _resolve_local,
}


def detect_shape(raw: str | None) -> tuple[DateShape, tuple[int, ...]] | None:
    value = (raw or "").strip()
    for shape, pattern in _SHAPE_PATTERNS:
        match = pattern.match(value)
        if match:
            return shape, tuple(int(part) for part in match.groups())
    return None


def resolve_datetime_instant(raw: str | None, tzid: str | None, default_tz: str) -> datetime | None:
    detected = detect_shape(raw)
    if detected is None:
        return None
    shape, parts = detected
    zone_name = (tzid or "").strip() or default_tz
    try:
        return _RESOLVERS[shape](parts, zone_name)
    except ValueError:
        # Out-of-range components, e.g. 20250230 or hour 25.
        return None


def resolve_datetime(raw: str | None, tzid: str | None, default_tz: str) -> str | None:
    """Resolve an iCalendar DATE/DATE-TIME value to a UTC ISO string, or None."""
    instant = resolve_datetime_instant(raw, tzid, default_tz)
    return format_utc(instant) if instant is not None else None


def parse_duration(raw: str | None) -> timedelta | None:
    match = _DURATION_RE.match((raw or "").strip().upper())
    if not match or raw.strip().upper() in {"P", "PT"}:
        return None
    parts = {key: int(value) for key, value in match.groupdict().items() if value and key != "sign"}
    delta = timedelta(
        weeks=parts.get("weeks", 0),
        days=parts.get("days", 0),
        hours=parts.get("hours", 0),
        minutes=parts.get("minutes", 0),
        seconds=parts.get("seconds", 0),
    )
    return -delta if match.group("sign") == "-" else delta


# --- content lines -----------------------------------------------------------


def unfold_lines(text: str) -> list[str]:
    lines: list[str] = []
    for raw in _LINE_BREAK_RE.split(text.lstrip("\ufeff")):
        if raw[:1] in (" ", "\t") and lines:
            lines[-1] += raw[1:]
            continue
        lines.append(raw)
    return [line for line in lines if line.strip()]


def decode_text(value: str) -> str:
    return _TEXT_ESCAPE_RE.sub(lambda m: "\n" if m.group(1) in "nN" else m.group(1), value)


def parse_content_line(line: str) -> ContentLine | None:
    head, sep, value = line.partition(":")
    if not sep:
        return None
    name, *raw_params = head.split(";")
    params: dict[str, str] = {}
    for raw in raw_params:
        key, has_value, param_value = raw.partition("=")
        if has_value:
            params[key.strip().upper()] = param_value.strip().strip('"')
    return ContentLine(name=name.strip().upper(), params=params, value=value)


def looks_like_html(text: str) -> bool:
    return bool(_HTML_SNIFF_RE.search(text[:2048]))


def looks_like_calendar(text: str) -> bool:
    return "BEGIN:VCALENDAR" in text.upper()


# --- events ----------------------------------------------------------------


def _apply_property(event: CalendarEvent, prop: ContentLine, default_tz: str) -> None:
    if prop.name in {"DTSTART", "DTEND"}:
        resolved = resolve_datetime(prop.value, prop.params.get("TZID"), default_tz)
        if prop.name == "DTSTART":
            event.raw_dtstart = prop.value
            event.dtstart = resolved
        else:
            event.dtend = resolved
        return
    if prop.name == "DURATION":
        event.duration = parse_duration(prop.value)
        return
    text = decode_text(prop.value)
    if prop.name == "UID":
        event.uid = text.strip() or None
    elif prop.name == "SUMMARY":
        event.summary = text
    elif prop.name == "DESCRIPTION":
        event.description = text
    elif prop.name == "LOCATION":
        event.location = text


def _finish_event(event: CalendarEvent) -> CalendarEvent:
    if event.dtend is None and event.duration is not None:
        start = parse_utc(event.dtstart)
        if start is not None:
            event.dtend = format_utc(start + event.duration)
    return event


def parse_calendar(
    text: str, *, default_tz: str | None = None, fallback_tz: str = FALLBACK_TZ
) -> ParsedCalendar:
    """Parse every VEVENT block, in source order.

    Local times are resolved in their TZID, else `default_tz`, else the
    calendar's X-WR-TIMEZONE, else `fallback_tz`.
    """
    fallback = resolve_zone_name(fallback_tz)
    calendar = ParsedCalendar(default_tz=resolve_zone_name(default_tz, fallback=fallback) if default_tz else fallback)
    explicit_tz = bool(default_tz)
    current: CalendarEvent | None = None
    nested = 0

    for line in unfold_lines(text):
        prop = parse_content_line(line)
        if prop is None:
            continue
        marker = prop.value.strip().upper()
        if prop.name == "BEGIN":
            if current is None and marker == "VEVENT":
                current = CalendarEvent()
                nested = 0
            elif current is not None:
                nested += 1
            continue
        if prop.name == "END":
            if current is not None and nested:
                nested -= 1
            elif current is not None and marker == "VEVENT":
                calendar.events.append(_finish_event(current))
                current = None
            continue
        if current is None:
            if prop.name == "X-WR-TIMEZONE" and not explicit_tz and get_zone(prop.value) is not None:
                calendar.default_tz = resolve_zone_name(prop.value)
            continue
        if nested:
            continue
        _apply_property(current, prop, calendar.default_tz)

    if current is not None:
        logger.warning("ics_unterminated_event", extra={"uid": current.uid})
    return calendar


def parse_calendar_text(
    text: str, *, default_tz: str | None = None, fallback_tz: str = FALLBACK_TZ
) -> list[CalendarEvent]:
    return parse_calendar(text, default_tz=default_tz, fallback_tz=fallback_tz).events
