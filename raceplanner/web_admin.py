from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from raceplanner.calendar_utils import (
    CalendarEvent,
    build_calendar_description,
    build_google_calendar_url,
    build_ics_string,
    build_outlook_calendar_url,
)
from raceplanner.config_manager import SECRET_FIELDS, ConfigManager
from raceplanner.iracing_client import IRacingError
from raceplanner.models import AppConfig, SyncSource, UserRole, parse_iso_datetime, season_info, utc_now
from raceplanner.notifications import (
    WEEKLY_WINDOW,
    DiscordWebhookNotifier,
    build_discord_web_link,
    build_event_notification,
    build_event_thread_name,
    weekly_schedule_event,
)
from raceplanner.scheduler import SyncScheduler
from raceplanner.state_store import StateStore
from raceplanner.sync_engine import EVENTS_VIEW, ROSTER_VIEW, SyncEngine, user_view
from raceplanner.view_cache import ViewCache

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncStatsRequest(BaseModel):
    customer_id: str | None = None


class DiscordThreadRequest(BaseModel):
    thread_id: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.view_cache = ViewCache()
        self.sync_engine = SyncEngine(self.config_manager, self.state_store, self.view_cache)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Drop masked or blank secrets so an edit round-trip keeps the stored value."""
    sanitized = dict(payload)
    for section_name, key in SECRET_FIELDS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict):
            continue
        section = dict(section)
        value = section.get(key)
        if value is not None and str(value).strip() in {"", "***"}:
            if str(current.get(section_name, {}).get(key, "")):
                section.pop(key, None)
            else:
                section[key] = ""
        if section:
            sanitized[section_name] = section
        else:
            sanitized.pop(section_name, None)
    return sanitized


def _failure(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


def _cron_authorized(config: AppConfig, authorization: str | None, require_secret: bool = False) -> bool:
    secret = config.sync.cron_secret
    if not secret:
        return not require_secret
    return authorization == f"Bearer {secret}"


def _with_season(event: dict[str, Any]) -> dict[str, Any]:
    try:
        season = season_info(parse_iso_datetime(event["start_time"])).to_dict()
    except ValueError:
        season = None
    return {**event, "season": season}


def _upcoming(events: list[dict[str, Any]], now: datetime) -> list[dict[str, Any]]:
    return [event for event in events if parse_iso_datetime(event["start_time"]) >= now]


def _race_calendar_event(race: dict[str, Any], config: AppConfig) -> CalendarEvent:
    event = race["event"]
    discord_url = None
    if config.discord.guild_id and race.get("discord_thread_id"):
        discord_url = build_discord_web_link(config.discord.guild_id, race["discord_thread_id"])
    location = f"{event['track']} - {event['track_config']}" if event.get("track_config") else event["track"]
    start_time = parse_iso_datetime(race["start_time"])
    description = build_calendar_description(
        event_name=event["name"],
        track=event["track"],
        track_config=event.get("track_config"),
        start_time=start_time,
        duration_mins=event.get("duration_mins"),
        temp_value=event.get("temp_value"),
        temp_units=event.get("temp_units"),
        rel_humidity=event.get("rel_humidity"),
        car_classes=event.get("car_classes", []),
        app_url=f"{config.app.base_url}/events/{event['id']}",
        discord_url=discord_url,
        timezone_name=config.app.display_timezone,
    )
    return CalendarEvent(
        uid=race["external_id"],
        title=event["name"],
        location=location,
        start_time=start_time,
        end_time=parse_iso_datetime(race["end_time"]),
        description=description,
    )


def create_app() -> FastAPI:
    config_path = os.getenv("RACEPLANNER_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("RACEPLANNER_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Race Team Planner", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    def _require_user(user_id: str | None) -> dict[str, Any]:
        if not user_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        user = app.state.context.state_store.get_user(user_id)
        if user is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user

    def _is_admin(user: dict[str, Any]) -> bool:
        return user["role"] == UserRole.ADMIN.value

    def _get_race(race_id: int) -> dict[str, Any]:
        race = app.state.context.state_store.get_race(race_id)
        if race is None:
            raise HTTPException(status_code=404, detail="race not found")
        return race

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config(x_user_id: str | None = Header(default=None)) -> Any:
        if not _is_admin(_require_user(x_user_id)):
            return _failure(403, "Only admins can view the configuration.")
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest, x_user_id: str | None = Header(default=None)) -> Any:
        if not _is_admin(_require_user(x_user_id)):
            return _failure(403, "Only admins can change the configuration.")
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.post("/api/sync/run")
    def run_sync(x_user_id: str | None = Header(default=None)) -> Any:
        if not _is_admin(_require_user(x_user_id)):
            return _failure(403, "Only admins can trigger an iRacing sync.")
        result = app.state.context.sync_engine.run_once(source=SyncSource.MANUAL)
        return result.to_dict()

    @app.get("/api/cron/sync")
    def cron_sync(authorization: str | None = Header(default=None)) -> Any:
        config = app.state.context.config_manager.load()
        if not _cron_authorized(config, authorization):
            return _failure(401, "Unauthorized")
        result = app.state.context.sync_engine.run_once(source=SyncSource.CRON)
        if not result.success:
            return JSONResponse(status_code=500, content=result.to_dict())
        return result.to_dict()

    @app.post("/api/users/{user_id}/sync-stats")
    def sync_user_stats(
        user_id: str,
        request: SyncStatsRequest | None = None,
        x_user_id: str | None = Header(default=None),
    ) -> Any:
        caller = _require_user(x_user_id)
        if caller["id"] != user_id and not _is_admin(caller):
            return _failure(403, "You can only sync your own stats.")
        override = request.customer_id if request else None
        try:
            return app.state.context.sync_engine.sync_user_stats(user_id, override_customer_id=override)
        except IRacingError as exc:
            return _failure(400, str(exc))
        except Exception as exc:
            logger.exception("stats sync for user %s crashed", user_id)
            return _failure(500, str(exc) or type(exc).__name__)

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        logs = app.state.context.state_store.recent_sync_logs(limit=limit)
        return {"runs": [entry.to_dict() for entry in logs]}

    @app.get("/api/events")
    def list_events() -> dict[str, Any]:
        store = app.state.context.state_store
        cached = app.state.context.view_cache.get_or_compute(
            EVENTS_VIEW,
            lambda: {"events": [_with_season(event) for event in store.list_events(start=utc_now())]},
        )
        # The cached list only changes on sync; drop events that started since.
        return {"events": _upcoming(cached["events"], utc_now())}

    @app.get("/api/events/{event_id}")
    def get_event(event_id: int) -> dict[str, Any]:
        event = app.state.context.state_store.get_event(event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="event not found")
        config = app.state.context.config_manager.load()
        first_start = min(
            (parse_iso_datetime(race["start_time"]) for race in event["races"]),
            default=parse_iso_datetime(event["start_time"]),
        )
        for race in event["races"]:
            race["discord_url"] = None
            if config.discord.guild_id and race.get("discord_thread_id"):
                race["discord_url"] = build_discord_web_link(config.discord.guild_id, race["discord_thread_id"])
        return {
            "event": _with_season(event),
            "thread_name": build_event_thread_name(event["name"], first_start, config.app.display_timezone),
            "notification": build_event_notification(event, f"{config.app.base_url}/events/{event['id']}"),
        }

    @app.get("/api/roster")
    def roster() -> dict[str, Any]:
        store = app.state.context.state_store
        return app.state.context.view_cache.get_or_compute(ROSTER_VIEW, lambda: {"users": store.roster()})

    @app.get("/api/users/{user_id}")
    def get_user(user_id: str) -> dict[str, Any]:
        store = app.state.context.state_store
        if store.get_user(user_id) is None:
            raise HTTPException(status_code=404, detail="user not found")
        return app.state.context.view_cache.get_or_compute(
            user_view(user_id),
            lambda: {"user": store.get_user(user_id), "stats": store.racer_stats(user_id)},
        )

    @app.get("/api/races/{race_id}/calendar.ics")
    def race_ics(race_id: int) -> Response:
        race = _get_race(race_id)
        calendar_event = _race_calendar_event(race, app.state.context.config_manager.load())
        return Response(
            content=build_ics_string(calendar_event),
            media_type="text/calendar; charset=utf-8",
            headers={"Content-Disposition": f'attachment; filename="{race["external_id"]}.ics"'},
        )

    @app.get("/api/races/{race_id}/calendar-links")
    def race_calendar_links(race_id: int) -> dict[str, Any]:
        race = _get_race(race_id)
        calendar_event = _race_calendar_event(race, app.state.context.config_manager.load())
        return {
            "google": build_google_calendar_url(calendar_event),
            "outlook": build_outlook_calendar_url(calendar_event),
            "description": calendar_event.description,
        }

    @app.put("/api/races/{race_id}/discord-thread")
    def set_race_discord_thread(
        race_id: int,
        request: DiscordThreadRequest,
        x_user_id: str | None = Header(default=None),
    ) -> Any:
        if not _is_admin(_require_user(x_user_id)):
            return _failure(403, "Only admins can link Discord threads.")
        race = _get_race(race_id)
        app.state.context.state_store.set_race_discord_thread(race_id, request.thread_id)
        config = app.state.context.config_manager.load()
        discord_url = None
        if config.discord.guild_id and request.thread_id:
            discord_url = build_discord_web_link(config.discord.guild_id, request.thread_id)
        return {"success": True, "race_id": race["id"], "discord_url": discord_url}

    @app.get("/api/cron/weekly-notification")
    def weekly_notification(authorization: str | None = Header(default=None)) -> Any:
        config = app.state.context.config_manager.load()
        if not _cron_authorized(config, authorization, require_secret=True):
            return _failure(401, "Unauthorized")
        start = utc_now()
        end = start + WEEKLY_WINDOW
        try:
            stored = app.state.context.state_store.list_events(start=start, end=end)
            if not stored:
                logger.info("no events between %s and %s", start.isoformat(), end.isoformat())
                return {"message": "No events found", "count": 0}
            events = [weekly_schedule_event(event, config.app.base_url) for event in stored]
            success = DiscordWebhookNotifier(config.discord.webhook_url).send_weekly_schedule(events)
        except Exception as exc:
            logger.exception("weekly notification failed")
            return _failure(500, str(exc) or type(exc).__name__)
        return {
            "success": success,
            "count": len(events),
            "message": "Notification sent" if success else "Failed to send notification",
        }

    return app


app = create_app()
