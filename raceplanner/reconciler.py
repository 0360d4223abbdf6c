from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from raceplanner.models import CarClass, NormalizedEvent, NormalizedRace, serialize_datetime
from raceplanner.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    event_id: int
    external_id: str
    race_ids: list[int] = field(default_factory=list)
    car_class_ids: list[int] = field(default_factory=list)
    dropped_car_class_ids: list[int] = field(default_factory=list)


# One field set per entity, shared by the insert and the update branch of the upsert.


def car_class_fields(car_class: CarClass) -> dict[str, Any]:
    return {
        "name": car_class.name,
        "short_name": car_class.short_name,
    }


def event_fields(event: NormalizedEvent) -> dict[str, Any]:
    return {
        "name": event.name,
        "start_time": serialize_datetime(event.start_time),
        "end_time": serialize_datetime(event.end_time),
        "track": event.track,
        "track_config": event.track_config,
        "description": event.description,
        "license_group": event.license_group,
        "temp_value": event.temp_value,
        "temp_units": event.temp_units,
        "rel_humidity": event.rel_humidity,
        "skies": event.skies,
        "precip_chance": event.precip_chance,
        "duration_mins": event.duration_mins,
    }


def race_fields(race: NormalizedRace, event_id: int) -> dict[str, Any]:
    return {
        "event_id": int(event_id),
        "start_time": serialize_datetime(race.start_time),
        "end_time": serialize_datetime(race.end_time),
    }


def reconcile_car_classes(store: StateStore, car_classes: Iterable[CarClass]) -> dict[int, int]:
    """Upsert every car class in one transaction and return provider id -> stored id."""
    id_map: dict[int, int] = {}
    with store.transaction() as unit:
        for car_class in car_classes:
            id_map[car_class.car_class_id] = unit.upsert_car_class(
                car_class.car_class_id, car_class_fields(car_class)
            )
    return id_map


def resolve_car_class_ids(
    provider_ids: Iterable[int],
    id_map: Mapping[int, int],
) -> tuple[list[int], list[int]]:
    resolved: list[int] = []
    dropped: list[int] = []
    for provider_id in provider_ids:
        internal_id = id_map.get(provider_id)
        if internal_id is None:
            dropped.append(provider_id)
        elif internal_id not in resolved:
            resolved.append(internal_id)
    return resolved, dropped


def reconcile_event(
    store: StateStore,
    event: NormalizedEvent,
    car_class_id_map: Mapping[int, int],
) -> ReconcileOutcome:
    """Upsert an event, its car-class set and its races inside one unit of work."""
    resolved, dropped = resolve_car_class_ids(event.car_class_ids, car_class_id_map)
    if dropped:
        logger.debug("event %s references unknown car classes %s", event.external_id, dropped)

    with store.transaction() as unit:
        event_id = unit.upsert_event(event.external_id, event_fields(event))
        unit.set_event_car_classes(event_id, resolved)
        race_ids = [unit.upsert_race(race.external_id, race_fields(race, event_id)) for race in event.races]

    return ReconcileOutcome(
        event_id=event_id,
        external_id=event.external_id,
        race_ids=race_ids,
        car_class_ids=resolved,
        dropped_car_class_ids=dropped,
    )
