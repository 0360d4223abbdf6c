from __future__ import annotations

import base64
import hashlib
import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import requests

from raceplanner.models import (
    AppSettings,
    CarClass,
    IRacingConfig,
    License,
    MemberInfo,
    NormalizedEvent,
    NormalizedRace,
    RawSeason,
    UpstreamDataError,
    utc_now,
)
from raceplanner.transform import transform_seasons_to_events

logger = logging.getLogger(__name__)

SEASONS_ENDPOINT = "/data/series/seasons"
CAR_CLASSES_ENDPOINT = "/data/carclass/get"
MEMBER_ENDPOINT = "/data/member/get"


class IRacingError(Exception):
    pass


class ConfigurationError(IRacingError):
    pass


class AuthenticationError(IRacingError):
    pass


class RequestError(IRacingError):
    pass


def mask_credential(plain: str, salt: str) -> str:
    """Hash a secret with its salt the way the iRacing OAuth server expects."""
    combined = plain + salt.strip().lower()
    digest = hashlib.sha256(combined.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def _mock_time(days: int, hour: int) -> datetime:
    return datetime(2026, 2, 7, hour, 0, tzinfo=timezone.utc) + timedelta(days=days)


def _mock_event(
    external_id: str,
    name: str,
    track: str,
    description: str,
    start: datetime,
    race_minutes: int,
    car_class_ids: list[int],
) -> NormalizedEvent:
    races = [
        NormalizedRace(
            external_id=f"{external_id}_s{index}",
            start_time=start + timedelta(hours=6 * index),
            end_time=start + timedelta(hours=6 * index, minutes=race_minutes),
        )
        for index in range(2)
    ]
    return NormalizedEvent(
        external_id=external_id,
        name=name,
        start_time=races[0].start_time,
        end_time=races[-1].end_time,
        track=track,
        description=description,
        car_class_ids=car_class_ids,
        license_group=4,
        temp_value=78.0,
        temp_units=0,
        rel_humidity=55.0,
        skies=1,
        precip_chance=0.0,
        duration_mins=race_minutes,
        races=races,
    )


def mock_special_events() -> list[NormalizedEvent]:
    return [
        _mock_event(
            "ir_12345",
            "iRacing Bathurst 12 Hour",
            "Mount Panorama Circuit",
            "The premier GT3 endurance event in the land down under.",
            _mock_time(0, 12),
            720,
            [2708],
        ),
        _mock_event(
            "ir_67890",
            "iRacing Nürburgring 24h",
            "Nürburgring Combined",
            "The ultimate test of man and machine on the Green Hell.",
            _mock_time(105, 14),
            1440,
            [2708, 4083],
        ),
        _mock_event(
            "ir_99999",
            "iRacing Petit Le Mans",
            "Road Atlanta",
            "10 hours of intense multi-class racing at the classic Road Atlanta.",
            _mock_time(245, 15),
            600,
            [2708, 4029, 4083],
        ),
    ]


def mock_car_classes() -> list[CarClass]:
    return [
        CarClass(car_class_id=2708, name="GT3 Class", short_name="GT3"),
        CarClass(car_class_id=4029, name="GTP Class", short_name="GTP"),
        CarClass(car_class_id=4083, name="LMP2 Class", short_name="LMP2"),
    ]


def mock_member_info(customer_id: int) -> MemberInfo:
    return MemberInfo(
        cust_id=customer_id,
        display_name=f"Mock Driver {customer_id}",
        licenses={
            "sports_car": License(
                category_id=5,
                category="sports_car",
                license_level=18,
                group_id=4,
                group_name="Class A",
                safety_rating=3.42,
                cpi=62.1,
                irating=2150,
                mpr_num_races=4,
                color="0153db",
            ),
            "formula_car": License(
                category_id=6,
                category="formula_car",
                license_level=14,
                group_id=3,
                group_name="Class B",
                safety_rating=2.87,
                cpi=41.5,
                irating=1640,
                mpr_num_races=4,
                color="00c702",
            ),
        },
    )


class IRacingClient:
    def __init__(self, config: IRacingConfig, app: AppSettings | None = None) -> None:
        self.config = config
        self.app = app or AppSettings()
        self._token: str | None = None
        self._token_lock = threading.Lock()
        self._session = requests.Session()

    def is_configured(self) -> bool:
        return self.config.has_credentials()

    def _api_endpoint(self, path: str) -> str:
        return f"{self.config.api_url}{path}"

    def _require_credentials(self, what: str) -> None:
        if not self.is_configured():
            raise ConfigurationError(
                f"iRacing credentials are not configured; cannot fetch {what} in production mode."
            )

    def _get_token(self) -> str:
        with self._token_lock:
            if self._token:
                return self._token
            data = {
                "grant_type": "password_limited",
                "username": self.config.username,
                "password": mask_credential(self.config.password, self.config.username),
                "client_id": self.config.client_id,
                "client_secret": mask_credential(self.config.client_secret, self.config.client_id),
                "scope": "iracing.auth",
            }
            try:
                response = self._session.post(
                    self.config.auth_url,
                    data=data,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    timeout=self.config.timeout_seconds,
                )
            except requests.RequestException as exc:
                raise AuthenticationError(f"iRacing token exchange failed: {exc}") from exc
            if not response.ok:
                raise AuthenticationError(
                    f"iRacing authentication failed: HTTP {response.status_code} {response.reason}"
                )
            token = str((response.json() or {}).get("access_token") or "")
            if not token:
                raise AuthenticationError("iRacing authentication response did not contain an access token.")
            self._token = token
            return token

    def _get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        token = self._get_token()
        try:
            response = self._session.get(
                self._api_endpoint(path),
                params=params,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise RequestError(f"iRacing API request to {path} failed: {exc}") from exc
        if not response.ok:
            raise RequestError(f"iRacing API request failed: HTTP {response.status_code} {response.reason}")
        payload = response.json()
        # Most data endpoints answer with a pointer to a pre-signed JSON document.
        if isinstance(payload, dict) and payload.get("link"):
            link = str(payload["link"])
            logger.debug("following iRacing data link for %s", path)
            try:
                linked = self._session.get(link, timeout=self.config.timeout_seconds)
            except requests.RequestException as exc:
                raise RequestError(f"iRacing link request for {path} failed: {exc}") from exc
            if not linked.ok:
                raise RequestError(f"iRacing link request failed: HTTP {linked.status_code} {linked.reason}")
            return linked.json()
        return payload

    def _dump_raw(self, name: str, payload: Any) -> None:
        target_dir = Path(self.config.raw_data_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / f"{name}.json"
        target.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info("wrote raw iRacing %s payload to %s", name, target)

    def fetch_seasons(self) -> list[RawSeason]:
        payload = self._get_json(SEASONS_ENDPOINT, params={"include_series": "true"})
        if self.config.debug_dump:
            self._dump_raw("seasons", payload)
        raw_items = payload if isinstance(payload, list) else (payload or {}).get("seasons", [])
        seasons: list[RawSeason] = []
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            try:
                seasons.append(RawSeason.from_dict(item))
            except UpstreamDataError as exc:
                logger.warning(
                    "skipping malformed season %s: %s", item.get("season_id", "<unknown>"), exc
                )
        return seasons

    def fetch_special_events(
        self,
        now: datetime | None = None,
        window_days: int = 30,
    ) -> list[NormalizedEvent]:
        if not self.is_configured():
            if self.app.is_development:
                logger.info("iRacing credentials missing; using mock special events")
                return mock_special_events()
            self._require_credentials("special events")
        seasons = self.fetch_seasons()
        return transform_seasons_to_events(seasons, now or utc_now(), timedelta(days=window_days))

    def fetch_car_classes(self) -> list[CarClass]:
        if not self.is_configured():
            if self.app.is_development:
                logger.info("iRacing credentials missing; using mock car classes")
                return mock_car_classes()
            self._require_credentials("car classes")
        payload = self._get_json(CAR_CLASSES_ENDPOINT)
        raw_items = payload if isinstance(payload, list) else []
        classes: list[CarClass] = []
        for item in raw_items:
            if not isinstance(item, dict):
                continue
            try:
                classes.append(CarClass.from_dict(item))
            except UpstreamDataError as exc:
                logger.warning("skipping malformed car class: %s", exc)
        return classes

    def fetch_driver_stats(self, customer_id: int) -> MemberInfo | None:
        if not self.is_configured():
            if self.app.is_development:
                return mock_member_info(customer_id)
            self._require_credentials("driver stats")
        try:
            payload = self._get_json(
                MEMBER_ENDPOINT,
                params={"cust_ids": str(customer_id), "include_licenses": "true"},
            )
        except AuthenticationError:
            if self.app.is_development:
                logger.warning("iRacing authentication failed; using mock profile for %s", customer_id)
                return mock_member_info(customer_id)
            raise
        members = payload.get("members", []) if isinstance(payload, dict) else []
        for item in members:
            if not isinstance(item, dict):
                continue
            try:
                member = MemberInfo.from_dict(item)
            except UpstreamDataError as exc:
                raise RequestError(f"malformed member record for {customer_id}: {exc}") from exc
            if member.cust_id == customer_id:
                return member
        return None
