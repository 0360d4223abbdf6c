from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


class UpstreamDataError(ValueError):
    """Raised when a provider record is missing data the pipeline depends on."""


class SyncStatus(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class SyncSource(str, enum.Enum):
    MANUAL = "MANUAL"
    CRON = "CRON"


class UserRole(str, enum.Enum):
    USER = "USER"
    ADMIN = "ADMIN"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _optional_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _required_int(data: dict[str, Any], key: str) -> int:
    value = _optional_int(data.get(key))
    if value is None:
        raise UpstreamDataError(f"missing or invalid '{key}'")
    return value


def _required_datetime(data: dict[str, Any], key: str) -> datetime:
    try:
        value = parse_iso_datetime(data.get(key))
    except (TypeError, ValueError) as exc:
        raise UpstreamDataError(f"invalid datetime in '{key}': {data.get(key)!r}") from exc
    if value is None:
        raise UpstreamDataError(f"missing '{key}'")
    return value


# ---------------------------------------------------------------------------
# Configuration


@dataclass
class AppSettings:
    mode: str = "production"
    base_url: str = "http://localhost:8080"
    title: str = "Race Team Planner"
    display_timezone: str = "UTC"
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppSettings":
        data = data or {}
        mode = str(data.get("mode", "production")).strip().lower()
        if mode not in {"development", "production"}:
            mode = "production"
        return cls(
            mode=mode,
            base_url=str(data.get("base_url", "http://localhost:8080")).strip().rstrip("/")
            or "http://localhost:8080",
            title=str(data.get("title", "Race Team Planner")).strip() or "Race Team Planner",
            display_timezone=str(data.get("display_timezone", "UTC")).strip() or "UTC",
            log_level=str(data.get("log_level", "INFO")).strip().upper() or "INFO",
        )

    @property
    def is_development(self) -> bool:
        return self.mode == "development"


@dataclass
class IRacingConfig:
    client_id: str = ""
    client_secret: str = ""
    username: str = ""
    password: str = ""
    auth_url: str = "https://oauth.iracing.com/oauth2/token"
    api_url: str = "https://members-ng.iracing.com"
    timeout_seconds: int = 30
    debug_dump: bool = False
    raw_data_dir: str = "raw_data"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "IRacingConfig":
        data = data or {}
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            auth_url=str(data.get("auth_url", "https://oauth.iracing.com/oauth2/token")).strip()
            or "https://oauth.iracing.com/oauth2/token",
            api_url=str(data.get("api_url", "https://members-ng.iracing.com")).strip().rstrip("/")
            or "https://members-ng.iracing.com",
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            debug_dump=bool(data.get("debug_dump", False)),
            raw_data_dir=str(data.get("raw_data_dir", "raw_data")).strip() or "raw_data",
        )

    def has_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret and self.username and self.password)


@dataclass
class SyncConfig:
    # None means "follow the presence of a provider client id".
    enabled: bool | None = None
    cron_secret: str = ""
    interval_seconds: int = 0
    window_days: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        enabled_raw = data.get("enabled")
        interval = int(data.get("interval_seconds", 0) or 0)
        return cls(
            enabled=None if enabled_raw is None else bool(enabled_raw),
            cron_secret=str(data.get("cron_secret", "")).strip(),
            interval_seconds=0 if interval <= 0 else max(60, interval),
            window_days=max(1, int(data.get("window_days", 30))),
        )


@dataclass
class DiscordConfig:
    webhook_url: str = ""
    guild_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DiscordConfig":
        data = data or {}
        return cls(
            webhook_url=str(data.get("webhook_url", "")).strip(),
            guild_id=str(data.get("guild_id", "")).strip(),
        )


@dataclass
class AppConfig:
    app: AppSettings = field(default_factory=AppSettings)
    iracing: IRacingConfig = field(default_factory=IRacingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    discord: DiscordConfig = field(default_factory=DiscordConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            app=AppSettings.from_dict(data.get("app")),
            iracing=IRacingConfig.from_dict(data.get("iracing")),
            sync=SyncConfig.from_dict(data.get("sync")),
            discord=DiscordConfig.from_dict(data.get("discord")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def sync_enabled(self) -> bool:
        if self.sync.enabled is None:
            return bool(self.iracing.client_id)
        return self.sync.enabled


def default_app_config() -> AppConfig:
    return AppConfig()


# ---------------------------------------------------------------------------
# Upstream provider payloads


@dataclass(frozen=True)
class RaceTimeDescriptor:
    session_minutes: int | None = None
    session_times: tuple[datetime, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RaceTimeDescriptor":
        times: list[datetime] = []
        for raw in data.get("session_times") or []:
            try:
                parsed = parse_iso_datetime(raw)
            except (TypeError, ValueError) as exc:
                raise UpstreamDataError(f"invalid session time: {raw!r}") from exc
            if parsed is not None:
                times.append(parsed)
        return cls(
            session_minutes=_optional_int(data.get("session_minutes")),
            session_times=tuple(times),
        )


@dataclass(frozen=True)
class RawWeek:
    race_week_num: int
    start_date: datetime
    week_end_time: datetime | None = None
    track_name: str = ""
    track_config: str | None = None
    temp_value: float | None = None
    temp_units: int | None = None
    rel_humidity: float | None = None
    skies: int | None = None
    precip_chance: float | None = None
    race_time_descriptors: tuple[RaceTimeDescriptor, ...] = ()
    race_time_limit: int | None = None

    @property
    def effective_end(self) -> datetime:
        return self.week_end_time or self.start_date

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawWeek":
        race_week_num = _required_int(data, "race_week_num")
        if race_week_num < 0:
            raise UpstreamDataError(f"negative race_week_num: {race_week_num}")
        start_date = _required_datetime(data, "start_date")
        try:
            week_end_time = parse_iso_datetime(data.get("week_end_time"))
        except (TypeError, ValueError) as exc:
            raise UpstreamDataError(f"invalid week_end_time: {data.get('week_end_time')!r}") from exc
        track = data.get("track") or {}
        weather = data.get("weather") or {}
        config_name = str(track.get("config_name") or "").strip() or None
        return cls(
            race_week_num=race_week_num,
            start_date=start_date,
            week_end_time=week_end_time,
            track_name=str(track.get("track_name") or "").strip(),
            track_config=config_name,
            temp_value=_optional_float(weather.get("temp_value")),
            temp_units=_optional_int(weather.get("temp_units")),
            rel_humidity=_optional_float(weather.get("rel_humidity")),
            skies=_optional_int(weather.get("skies")),
            precip_chance=_optional_float(weather.get("precip_chance")),
            race_time_descriptors=tuple(
                RaceTimeDescriptor.from_dict(item)
                for item in data.get("race_time_descriptors") or []
                if isinstance(item, dict)
            ),
            race_time_limit=_optional_int(data.get("race_time_limit")),
        )


@dataclass(frozen=True)
class RawSeason:
    series_id: int
    season_id: int
    season_name: str
    driver_changes: bool = False
    max_team_drivers: int = 1
    car_class_ids: tuple[int, ...] = ()
    license_group: int | None = None
    schedule_description: str = ""
    schedules: tuple[RawWeek, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawSeason":
        name = str(data.get("season_name") or "").strip()
        if not name:
            raise UpstreamDataError("missing 'season_name'")
        class_ids: list[int] = []
        for raw in data.get("car_class_ids") or []:
            parsed = _optional_int(raw)
            if parsed is not None and parsed not in class_ids:
                class_ids.append(parsed)
        return cls(
            series_id=_required_int(data, "series_id"),
            season_id=_required_int(data, "season_id"),
            season_name=name,
            driver_changes=bool(data.get("driver_changes", False)),
            max_team_drivers=_optional_int(data.get("max_team_drivers")) or 1,
            car_class_ids=tuple(class_ids),
            license_group=_optional_int(data.get("license_group")),
            schedule_description=str(data.get("schedule_description") or "").strip(),
            schedules=tuple(
                RawWeek.from_dict(item) for item in data.get("schedules") or [] if isinstance(item, dict)
            ),
        )


# ---------------------------------------------------------------------------
# Normalized records


@dataclass
class NormalizedRace:
    external_id: str
    start_time: datetime
    end_time: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "start_time": serialize_datetime(self.start_time),
            "end_time": serialize_datetime(self.end_time),
        }


@dataclass
class NormalizedEvent:
    external_id: str
    name: str
    start_time: datetime
    end_time: datetime
    track: str
    track_config: str | None = None
    description: str = ""
    car_class_ids: list[int] = field(default_factory=list)
    license_group: int | None = None
    temp_value: float | None = None
    temp_units: int | None = None
    rel_humidity: float | None = None
    skies: int | None = None
    precip_chance: float | None = None
    duration_mins: int | None = None
    races: list[NormalizedRace] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_time"] = serialize_datetime(self.start_time)
        payload["end_time"] = serialize_datetime(self.end_time)
        payload["races"] = [race.to_dict() for race in self.races]
        return payload


@dataclass
class CarClass:
    car_class_id: int
    name: str
    short_name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CarClass":
        name = str(data.get("name") or "").strip()
        if not name:
            raise UpstreamDataError("car class without name")
        return cls(
            car_class_id=_required_int(data, "car_class_id"),
            name=name,
            short_name=str(data.get("short_name") or "").strip(),
        )


@dataclass
class License:
    category_id: int
    category: str
    license_level: int = 0
    group_id: int = 0
    group_name: str = ""
    safety_rating: float = 0.0
    cpi: float = 0.0
    irating: int = 0
    tt_rating: int = 0
    mpr_num_races: int = 0
    color: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "License":
        return cls(
            category_id=_required_int(data, "category_id"),
            category=str(data.get("category") or "").strip(),
            license_level=_optional_int(data.get("license_level")) or 0,
            group_id=_optional_int(data.get("group_id")) or 0,
            group_name=str(data.get("group_name") or "").strip(),
            safety_rating=_optional_float(data.get("safety_rating")) or 0.0,
            cpi=_optional_float(data.get("cpi")) or 0.0,
            irating=_optional_int(data.get("irating")) or 0,
            tt_rating=_optional_int(data.get("tt_rating")) or 0,
            mpr_num_races=_optional_int(data.get("mpr_num_races")) or 0,
            color=str(data.get("color") or "").strip(),
        )


@dataclass
class MemberInfo:
    cust_id: int
    display_name: str
    licenses: dict[str, License] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MemberInfo":
        raw_licenses = data.get("licenses") or {}
        if isinstance(raw_licenses, list):
            items = [(str(item.get("category") or item.get("category_id")), item) for item in raw_licenses]
        else:
            items = list(raw_licenses.items())
        licenses: dict[str, License] = {}
        for key, item in items:
            if isinstance(item, dict):
                licenses[str(key)] = License.from_dict(item)
        return cls(
            cust_id=_required_int(data, "cust_id"),
            display_name=str(data.get("display_name") or "").strip(),
            licenses=licenses,
        )


# ---------------------------------------------------------------------------
# Sync bookkeeping


@dataclass
class SyncLogEntry:
    id: int
    status: SyncStatus
    source: SyncSource
    start_time: datetime
    end_time: datetime | None = None
    count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "source": self.source.value,
            "start_time": serialize_datetime(self.start_time),
            "end_time": serialize_datetime(self.end_time),
            "count": self.count,
            "error": self.error,
        }


@dataclass
class SyncResult:
    success: bool
    source: SyncSource = SyncSource.MANUAL
    error: str | None = None
    events_count: int = 0
    car_classes_count: int = 0
    users_count: int = 0
    users_failed: int = 0
    log_id: int | None = None
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "source": self.source.value,
            "run_at": serialize_datetime(self.run_at),
        }
        if self.success:
            payload.update(
                {
                    "events_count": self.events_count,
                    "car_classes_count": self.car_classes_count,
                    "users_count": self.users_count,
                    "users_failed": self.users_failed,
                }
            )
        else:
            payload["error"] = self.error
        if self.log_id is not None:
            payload["log_id"] = self.log_id
        return payload


# ---------------------------------------------------------------------------
# Season calendar math

SEASON_ANCHOR = datetime(2024, 12, 17, tzinfo=timezone.utc)
SEASON_ANCHOR_YEAR = 2025
SEASON_ANCHOR_QUARTER = 1
WEEKS_PER_SEASON = 13


@dataclass
class SeasonInfo:
    season_year: int
    season_quarter: int
    race_week: int
    week_start: datetime
    week_end: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "season_year": self.season_year,
            "season_quarter": self.season_quarter,
            "race_week": self.race_week,
            "week_start": serialize_datetime(self.week_start),
            "week_end": serialize_datetime(self.week_end),
        }


def season_info(value: datetime | date) -> SeasonInfo:
    """Locate the iRacing season and race week (1-13) containing ``value``.

    Seasons are thirteen weeks long, each week starting Tuesday 00:00 UTC.
    """
    if isinstance(value, datetime):
        moment = _ensure_tz(value)
    else:
        moment = datetime.combine(value, time.min, tzinfo=timezone.utc)
    diff = moment - SEASON_ANCHOR
    if diff < timedelta(0):
        raise ValueError("Dates before the season anchor are not supported.")
    total_weeks = diff // timedelta(weeks=1)
    total_seasons = total_weeks // WEEKS_PER_SEASON
    quarter_index = SEASON_ANCHOR_QUARTER - 1 + total_seasons
    week_start = SEASON_ANCHOR + timedelta(weeks=total_weeks)
    return SeasonInfo(
        season_year=SEASON_ANCHOR_YEAR + quarter_index // 4,
        season_quarter=quarter_index % 4 + 1,
        race_week=total_weeks % WEEKS_PER_SEASON + 1,
        week_start=week_start,
        week_end=week_start + timedelta(weeks=1) - timedelta(milliseconds=1),
    )
