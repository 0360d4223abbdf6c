"""Turn raw iRacing seasons into the team events the planner schedules.

Everything in here is pure: the caller supplies ``now`` so the output depends
only on the arguments.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from raceplanner.models import NormalizedEvent, NormalizedRace, RawSeason, RawWeek

DEFAULT_RACE_MINUTES = 60
LOOKAHEAD = timedelta(days=30)

SPECIAL_EVENT_KEYWORDS = ("special event", "roar before the 24")

# Named classics ("24 Hours of Daytona") qualify even without team flags.
CLASSIC_RACE_PREFIXES = ("24 hours of", "12 hours of")

ENDURANCE_KEYWORDS = (
    "24h",
    "24 hour",
    "12h",
    "12 hour",
    "10h",
    "8h",
    "6h",
    "6 hour",
    "endurance",
    "major",
    "daytona",
    "le mans",
    "sebring",
    "petit le mans",
    "bathurst",
    "spa",
    "nurburgring",
    "nürburgring",
    "suzuka",
    "watkins glen",
    "indianapolis",
    "road atlanta",
)


def resolve_race_duration(race_time_limit: int | None, session_minutes: int | None) -> int:
    """Minutes a race occupies on the calendar: full session first, then the race limit."""
    if session_minutes is not None:
        return session_minutes
    if race_time_limit is not None:
        return race_time_limit
    return DEFAULT_RACE_MINUTES


def resolve_display_duration(race_time_limit: int | None, session_minutes: int | None) -> int:
    """Minutes shown as the race length: race limit first, then the full session."""
    if race_time_limit is not None:
        return race_time_limit
    if session_minutes is not None:
        return session_minutes
    return DEFAULT_RACE_MINUTES


def is_team_eligible(season: RawSeason) -> bool:
    return season.driver_changes or season.max_team_drivers > 1


def is_team_event_season(season: RawSeason) -> bool:
    name = season.season_name.lower()
    if any(keyword in name for keyword in SPECIAL_EVENT_KEYWORDS):
        return True
    if any(prefix in name for prefix in CLASSIC_RACE_PREFIXES):
        return True
    if not is_team_eligible(season):
        return False
    return any(keyword in name for keyword in ENDURANCE_KEYWORDS)


def week_in_window(week: RawWeek, now: datetime, lookahead: timedelta = LOOKAHEAD) -> bool:
    return week.effective_end > now and week.start_date <= now + lookahead


def event_external_id(season: RawSeason, week: RawWeek) -> str:
    return f"ir_{season.series_id}_{season.season_id}_w{week.race_week_num}"


def race_external_id(season: RawSeason, week: RawWeek, session_index: int) -> str:
    return f"{event_external_id(season, week)}_s{session_index}"


def event_name(season: RawSeason, week: RawWeek) -> str:
    if week.race_week_num == 0:
        return season.season_name
    return f"{season.season_name} - Week {week.race_week_num + 1}"


def expand_sessions(season: RawSeason, week: RawWeek) -> list[NormalizedRace]:
    races: list[NormalizedRace] = []
    session_index = 0
    for descriptor in week.race_time_descriptors:
        if not descriptor.session_times:
            continue
        minutes = resolve_race_duration(week.race_time_limit, descriptor.session_minutes)
        for start in descriptor.session_times:
            races.append(
                NormalizedRace(
                    external_id=race_external_id(season, week, session_index),
                    start_time=start,
                    end_time=start + timedelta(minutes=minutes),
                )
            )
            session_index += 1
    if races:
        return races

    first_session_minutes = _first_session_minutes(week)
    minutes = resolve_race_duration(week.race_time_limit, first_session_minutes)
    return [
        NormalizedRace(
            external_id=race_external_id(season, week, 0),
            start_time=week.start_date,
            end_time=week.start_date + timedelta(minutes=minutes),
        )
    ]


def _first_session_minutes(week: RawWeek) -> int | None:
    if not week.race_time_descriptors:
        return None
    return week.race_time_descriptors[0].session_minutes


def build_event(season: RawSeason, week: RawWeek) -> NormalizedEvent:
    races = sorted(expand_sessions(season, week), key=lambda race: race.start_time)
    return NormalizedEvent(
        external_id=event_external_id(season, week),
        name=event_name(season, week),
        start_time=races[0].start_time,
        end_time=max(race.end_time for race in races),
        track=week.track_name,
        track_config=week.track_config,
        description=season.schedule_description,
        car_class_ids=list(season.car_class_ids),
        license_group=season.license_group,
        temp_value=week.temp_value,
        temp_units=week.temp_units,
        rel_humidity=week.rel_humidity,
        skies=week.skies,
        precip_chance=week.precip_chance,
        duration_mins=resolve_display_duration(week.race_time_limit, _first_session_minutes(week)),
        races=races,
    )


def transform_seasons_to_events(
    seasons: Iterable[RawSeason],
    now: datetime,
    lookahead: timedelta = LOOKAHEAD,
) -> list[NormalizedEvent]:
    events: list[NormalizedEvent] = []
    for season in seasons:
        if not is_team_event_season(season):
            continue
        for week in season.schedules:
            if week_in_window(week, now, lookahead):
                events.append(build_event(season, week))
    events.sort(key=lambda event: event.start_time)
    return events
