from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

import requests

from raceplanner.calendar_utils import display_zone
from raceplanner.models import parse_iso_datetime

logger = logging.getLogger(__name__)

EMBED_COLOR = 0x3498DB
MAX_EMBEDS_PER_MESSAGE = 10
WEEKLY_WINDOW = timedelta(days=7)
WEEKLY_HEADER = "🏁 **Upcoming Races for this Weekend** 🏁"
NO_REGISTRATIONS = "• 👻 _No registrations yet, be the first!_"

_SERIES_SUFFIXES = (
    re.compile(r"\s[-–—]\s\d{4}.*$", re.IGNORECASE),
    re.compile(r"\s[-–—]\sSeason\s?\d+.*$", re.IGNORECASE),
    re.compile(r"\s[-–—]\sWeek\s?\d+.*$", re.IGNORECASE),
)


class NotificationError(Exception):
    pass


@dataclass
class Participant:
    name: str
    discord_id: str | None = None

    def mention(self) -> str:
        return f"<@{self.discord_id}>" if self.discord_id else self.name


@dataclass
class WeeklyScheduleEvent:
    name: str
    track: str
    start_time: datetime
    end_time: datetime
    event_url: str
    race_times: list[datetime] = field(default_factory=list)
    temp_value: float | None = None
    precip_chance: float | None = None
    car_classes: list[str] = field(default_factory=list)
    registered_users: list[Participant] = field(default_factory=list)


def normalize_series_name(name: str) -> str:
    for pattern in _SERIES_SUFFIXES:
        name = pattern.sub("", name)
    return name.strip()


def build_event_thread_name(event_name: str, first_start: datetime, timezone_name: str | None = None) -> str:
    local = first_start.astimezone(display_zone(timezone_name))
    return f"{normalize_series_name(event_name)} ({local.month}/{local.day})"


def build_discord_web_link(guild_id: str, thread_id: str) -> str:
    return f"https://discord.com/channels/{guild_id}/{thread_id}"


def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def weather_summary(temp_value: float | None, precip_chance: float | None) -> str:
    if temp_value is None:
        return "Unknown"
    summary = f"{_number(temp_value)}°F"
    if precip_chance is not None:
        summary += f", {_number(precip_chance)}% Rain"
    return summary


def dedupe_participants(registrations: Iterable[dict[str, Any]]) -> list[Participant]:
    """One entry per registered name; the latest registration's Discord id wins."""
    by_name: dict[str, Participant] = {}
    for registration in registrations:
        name = str(registration.get("user_name") or "").strip()
        if not name:
            continue
        by_name[name] = Participant(name=name, discord_id=registration.get("discord_id") or None)
    return list(by_name.values())


def build_event_notification(event: dict[str, Any], event_url: str) -> dict[str, Any]:
    """Summarize a stored event (as returned by ``StateStore.list_events``) for chat."""
    registrations = [reg for race in event.get("races", []) for reg in race.get("registrations", [])]
    return {
        "name": event["name"],
        "track": f"{event['track']} - {event['track_config']}" if event.get("track_config") else event["track"],
        "start_time": event["start_time"],
        "end_time": event["end_time"],
        "weather": weather_summary(event.get("temp_value"), event.get("precip_chance")),
        "car_classes": [item.get("short_name") or item["name"] for item in event.get("car_classes", [])],
        "participants": [participant.mention() for participant in dedupe_participants(registrations)],
        "url": event_url,
    }


def weekly_schedule_event(event: dict[str, Any], base_url: str) -> WeeklyScheduleEvent:
    class_names: set[str] = set()
    registrations: list[dict[str, Any]] = []
    race_times: list[datetime] = []
    for race in event.get("races", []):
        race_times.append(parse_iso_datetime(race["start_time"]))
        for registration in race.get("registrations", []):
            class_names.add(registration["car_class_name"])
            registrations.append(registration)
    class_names.update(item["name"] for item in event.get("car_classes", []))
    return WeeklyScheduleEvent(
        name=event["name"],
        track=event["track"],
        start_time=parse_iso_datetime(event["start_time"]),
        end_time=parse_iso_datetime(event["end_time"]),
        event_url=f"{base_url}/events/{event['id']}",
        race_times=race_times,
        temp_value=event.get("temp_value"),
        precip_chance=event.get("precip_chance"),
        car_classes=sorted(class_names),
        registered_users=dedupe_participants(registrations),
    )


def build_weekly_schedule_embeds(events: Iterable[WeeklyScheduleEvent]) -> list[dict[str, Any]]:
    embeds = []
    for event in events:
        race_times = "\n".join(f"• <t:{int(start.timestamp())}:F>" for start in sorted(event.race_times))
        classes = "\n".join(f"• {name}" for name in sorted(event.car_classes))
        if event.registered_users:
            users = "\n".join(
                f"• {user.mention()}" for user in sorted(event.registered_users, key=lambda user: user.name)
            )
        else:
            users = NO_REGISTRATIONS
        description = "\n".join(
            [
                f"🏟️ **Track:** {event.track}",
                f"🌤️ **Weather:** {weather_summary(event.temp_value, event.precip_chance)}",
                "",
                "🕐 **Race Times:**",
                race_times,
                "",
                "🏎️ **Classes:**",
                classes,
                "",
                "👥 **Registered Drivers:**",
                users,
            ]
        )
        embeds.append(
            {
                "title": f"📅 {event.name}",
                "url": event.event_url,
                "description": description,
                "color": EMBED_COLOR,
            }
        )
    return embeds


class DiscordWebhookNotifier:
    def __init__(self, webhook_url: str, timeout_seconds: int = 15) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self._session = requests.Session()

    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    def send_weekly_schedule(self, events: list[WeeklyScheduleEvent]) -> bool:
        if not self.is_configured():
            logger.warning("discord webhook_url not configured; skipping weekly schedule")
            return False
        if not events:
            return False

        embeds = build_weekly_schedule_embeds(events)
        chunks = [
            embeds[index : index + MAX_EMBEDS_PER_MESSAGE]
            for index in range(0, len(embeds), MAX_EMBEDS_PER_MESSAGE)
        ]
        for chunk_index, chunk in enumerate(chunks, start=1):
            payload: dict[str, Any] = {"embeds": chunk}
            if chunk_index == 1:
                payload["content"] = WEEKLY_HEADER
            try:
                response = self._session.post(self.webhook_url, json=payload, timeout=self.timeout_seconds)
            except requests.RequestException as exc:
                raise NotificationError(f"discord webhook request failed: {exc}") from exc
            if not response.ok:
                logger.error(
                    "weekly schedule chunk %d/%d rejected: HTTP %s", chunk_index, len(chunks), response.status_code
                )
                return False
            logger.info("weekly schedule chunk %d/%d sent", chunk_index, len(chunks))
        return True
