from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable

from raceplanner.config_manager import ConfigManager
from raceplanner.iracing_client import ConfigurationError, IRacingClient, RequestError
from raceplanner.models import (
    AppSettings,
    IRacingConfig,
    MemberInfo,
    SyncResult,
    SyncSource,
    SyncStatus,
    utc_now,
)
from raceplanner.reconciler import reconcile_car_classes, reconcile_event
from raceplanner.state_store import StateStore
from raceplanner.view_cache import ViewCache

logger = logging.getLogger(__name__)

EVENTS_VIEW = "/events"
ROSTER_VIEW = "/roster"

ClientFactory = Callable[[IRacingConfig, AppSettings], IRacingClient]


def user_view(user_id: str) -> str:
    return f"/users/{user_id}"


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _parse_customer_id(value: Any) -> int:
    text = str(value).strip()
    if not text.isdigit():
        raise ConfigurationError("Invalid iRacing Customer ID.")
    return int(text)


def racer_stats_fields(member: MemberInfo) -> list[tuple[int, dict[str, Any]]]:
    rows: list[tuple[int, dict[str, Any]]] = []
    for license_info in member.licenses.values():
        rows.append(
            (
                license_info.category_id,
                {
                    "category": license_info.category,
                    "irating": license_info.irating,
                    "license_level": license_info.license_level,
                    "license_group": license_info.group_id,
                    "safety_rating": license_info.safety_rating,
                    "cpi": license_info.cpi,
                    "tt_rating": license_info.tt_rating,
                    "mpr_num_races": license_info.mpr_num_races,
                    "color": license_info.color,
                    "group_name": license_info.group_name,
                },
            )
        )
    return rows


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        view_cache: ViewCache | None = None,
        client_factory: ClientFactory = IRacingClient,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.view_cache = view_cache or ViewCache()
        self.client_factory = client_factory
        self._run_lock = threading.Lock()

    def _client(self) -> IRacingClient:
        config = self.config_manager.load()
        return self.client_factory(config.iracing, config.app)

    def run_once(self, source: SyncSource = SyncSource.MANUAL, now: datetime | None = None) -> SyncResult:
        config = self.config_manager.load()
        if not config.sync_enabled:
            logger.info("[sync][%s] skipped: iRacing sync is disabled", source.value)
            return SyncResult(success=False, source=source, error="iRacing sync is disabled.")

        with self._run_lock:
            return self._run(source, now or utc_now(), config.sync.window_days)

    def _run(self, source: SyncSource, now: datetime, window_days: int) -> SyncResult:
        prefix = f"[sync][{source.value}]"
        try:
            log_entry = self.state_store.create_sync_log(source=source, start_time=utc_now())
        except Exception as exc:
            logger.exception("%s could not open a sync log", prefix)
            return SyncResult(success=False, source=source, error=_error_message(exc))
        logger.info("%s started (log %s)", prefix, log_entry.id)

        try:
            client = self._client()
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="raceplanner-fetch") as pool:
                events_future = pool.submit(client.fetch_special_events, now, window_days)
                classes_future = pool.submit(client.fetch_car_classes)
                # Both fetches finish before any write starts.
                errors = [future.exception() for future in (events_future, classes_future)]
            for error in errors:
                if error is not None:
                    raise error
            events = events_future.result()
            car_classes = classes_future.result()
            logger.info("%s fetched %d events and %d car classes", prefix, len(events), len(car_classes))

            car_class_id_map = reconcile_car_classes(self.state_store, car_classes)
            logger.info("%s upserted %d car classes", prefix, len(car_class_id_map))

            for event in events:
                reconcile_event(self.state_store, event, car_class_id_map)
            logger.info("%s upserted %d events", prefix, len(events))

            users = self.state_store.users_with_customer_id()
            users_failed = 0
            for user in users:
                try:
                    self.sync_user_stats(user["id"], client=client)
                except Exception:
                    users_failed += 1
                    logger.exception("%s failed to sync stats for user %s", prefix, user["id"])
            logger.info(
                "%s synced stats for %d users (%d failed)",
                prefix,
                len(users) - users_failed,
                users_failed,
            )

            self.state_store.finish_sync_log(
                log_id=log_entry.id,
                status=SyncStatus.SUCCESS,
                count=len(events),
                end_time=utc_now(),
            )
        except Exception as exc:
            error_message = _error_message(exc)
            logger.error("%s failed: %s", prefix, error_message)
            self._record_failure(prefix, log_entry.id, error_message)
            return SyncResult(success=False, source=source, error=error_message, log_id=log_entry.id)

        self.view_cache.invalidate(EVENTS_VIEW, ROSTER_VIEW)
        logger.info("%s finished", prefix)
        return SyncResult(
            success=True,
            source=source,
            events_count=len(events),
            car_classes_count=len(car_classes),
            users_count=len(users),
            users_failed=users_failed,
            log_id=log_entry.id,
        )

    def _record_failure(self, prefix: str, log_id: int, error_message: str) -> None:
        try:
            self.state_store.finish_sync_log(
                log_id=log_id,
                status=SyncStatus.FAILURE,
                error=error_message,
                end_time=utc_now(),
            )
        except Exception:
            logger.exception("%s could not record failure on log %s", prefix, log_id)

    def sync_user_stats(
        self,
        user_id: str,
        override_customer_id: str | int | None = None,
        client: IRacingClient | None = None,
    ) -> dict[str, Any]:
        """Refresh one user's licenses and ratings from iRacing.

        ``override_customer_id`` wins over the stored customer id. Raises
        ``ConfigurationError`` when no usable id is known and ``RequestError``
        when iRacing has no member for it.
        """
        user = self.state_store.get_user(user_id)
        if user is None:
            raise ConfigurationError(f"Unknown user {user_id}.")
        raw_customer_id = override_customer_id
        if raw_customer_id is None or str(raw_customer_id).strip() == "":
            raw_customer_id = user.get("iracing_customer_id")
        if raw_customer_id is None or str(raw_customer_id).strip() == "":
            raise ConfigurationError("User does not have an iRacing Customer ID set.")
        customer_id = _parse_customer_id(raw_customer_id)

        member = (client or self._client()).fetch_driver_stats(customer_id)
        if member is None:
            raise RequestError("Failed to fetch stats from iRacing.")

        rows = racer_stats_fields(member)
        with self.state_store.transaction() as unit:
            if member.display_name:
                unit.set_user_iracing_name(user_id, member.display_name)
            for category_id, fields in rows:
                unit.upsert_racer_stats(user_id, category_id, fields)

        self.view_cache.invalidate(ROSTER_VIEW, user_view(user_id))
        return {"success": True, "count": len(rows)}
