"""Calendar export helpers: ICS documents, provider deep links and description text.

All functions are pure. Datetimes are expected to be timezone-aware; naive
values are treated as UTC.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Iterable, Mapping
from urllib.parse import urlencode

import pytz

logger = logging.getLogger(__name__)

UID_DOMAIN = "race-team-planner"
PRODID = "-//Race Team Planner//EN"
CRLF = "\r\n"
MAX_LINE_LENGTH = 75

GOOGLE_CALENDAR_URL = "https://calendar.google.com/calendar/render"
OUTLOOK_CALENDAR_URL = "https://outlook.live.com/calendar/0/deeplink/compose"

TEMP_UNIT_LABELS = {0: "F", 1: "C"}


@dataclass
class CalendarEvent:
    uid: str
    title: str
    location: str
    start_time: datetime
    end_time: datetime
    description: str = ""


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ceil_to_15_minutes(value: datetime) -> datetime:
    """Round up to the next quarter hour; values already on a boundary are returned unchanged."""
    floored = value.replace(minute=value.minute - value.minute % 15, second=0, microsecond=0)
    if floored == value:
        return value
    return floored + timedelta(minutes=15)


def format_ics_date(value: datetime) -> str:
    return _as_utc(value).strftime("%Y%m%dT%H%M%SZ")


def fold_line(line: str) -> str:
    if len(line) <= MAX_LINE_LENGTH:
        return line
    parts = [line[:MAX_LINE_LENGTH]]
    step = MAX_LINE_LENGTH - 1
    for index in range(MAX_LINE_LENGTH, len(line), step):
        parts.append(" " + line[index : index + step])
    return CRLF.join(parts)


def escape_text(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def build_ics_string(event: CalendarEvent, now: datetime | None = None) -> str:
    stamp = now or datetime.now(timezone.utc)
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        fold_line(f"UID:{event.uid}@{UID_DOMAIN}"),
        fold_line(f"DTSTAMP:{format_ics_date(stamp)}"),
        fold_line(f"DTSTART:{format_ics_date(event.start_time)}"),
        fold_line(f"DTEND:{format_ics_date(ceil_to_15_minutes(event.end_time))}"),
        fold_line(f"SUMMARY:{escape_text(event.title)}"),
        fold_line(f"LOCATION:{escape_text(event.location)}"),
        fold_line(f"DESCRIPTION:{escape_text(event.description)}"),
        "END:VEVENT",
        "END:VCALENDAR",
        "",
    ]
    return CRLF.join(lines)


def build_google_calendar_url(event: CalendarEvent) -> str:
    end_time = ceil_to_15_minutes(event.end_time)
    params = {
        "action": "TEMPLATE",
        "text": event.title,
        "dates": f"{format_ics_date(event.start_time)}/{format_ics_date(end_time)}",
        "details": event.description,
        "location": event.location,
    }
    return f"{GOOGLE_CALENDAR_URL}?{urlencode(params)}"


def _iso_utc(value: datetime) -> str:
    return _as_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_outlook_calendar_url(event: CalendarEvent) -> str:
    params = {
        "subject": event.title,
        "startdt": _iso_utc(event.start_time),
        "enddt": _iso_utc(ceil_to_15_minutes(event.end_time)),
        "body": event.description,
        "location": event.location,
        "path": "/calendar/action/compose",
        "rru": "addevent",
    }
    return f"{OUTLOOK_CALENDAR_URL}?{urlencode(params)}"


def format_duration(minutes: int) -> str:
    hours, mins = divmod(int(minutes), 60)
    if hours and mins:
        return f"{hours}h {mins}m"
    if hours:
        return f"{hours}h"
    return f"{mins}m"


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def display_zone(name: str | None) -> tzinfo:
    try:
        return pytz.timezone(name or "UTC")
    except pytz.UnknownTimeZoneError:
        logger.warning("unknown display timezone %r, falling back to UTC", name)
        return pytz.utc


def format_local_start(value: datetime, timezone_name: str | None = None) -> str:
    """Render like ``Sat 1/10, 2:00 PM UTC``."""
    local = _as_utc(value).astimezone(display_zone(timezone_name))
    hour = local.hour % 12 or 12
    return f"{local:%a} {local.month}/{local.day}, {hour}:{local:%M} {local:%p} {local.tzname()}"


def build_calendar_description(
    *,
    event_name: str,
    track: str,
    start_time: datetime,
    app_url: str,
    track_config: str | None = None,
    duration_mins: int | None = None,
    temp_value: float | None = None,
    temp_units: int | None = None,
    rel_humidity: float | None = None,
    car_classes: Iterable[Mapping[str, str | None]] = (),
    discord_url: str | None = None,
    timezone_name: str | None = None,
) -> str:
    lines = [
        event_name,
        f"{track} - {track_config}" if track_config else track,
        format_local_start(start_time, timezone_name),
    ]

    meta: list[str] = []
    if duration_mins:
        meta.append(f"Duration: {format_duration(duration_mins)}")
    if temp_value is not None:
        meta.append(f"Temp: {_format_number(temp_value)}°{TEMP_UNIT_LABELS.get(temp_units or 0, 'F')}")
    if rel_humidity is not None:
        meta.append(f"Humidity: {_format_number(rel_humidity)}%")
    if meta:
        lines.append(" | ".join(meta))

    names = [str(item.get("short_name") or item.get("name") or "") for item in car_classes]
    names = [name for name in names if name]
    if names:
        lines.append(f"Classes: {', '.join(names)}")

    lines.append("")
    lines.append(f"Event page: {app_url}")
    if discord_url:
        lines.append(f"Discord: {discord_url}")
    return "\n".join(lines)
