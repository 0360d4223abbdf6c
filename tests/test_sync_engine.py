import sqlite3
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from raceplanner.iracing_client import ConfigurationError, RequestError, mock_car_classes, mock_member_info
from raceplanner.models import (
    AppConfig,
    NormalizedEvent,
    NormalizedRace,
    SyncSource,
    SyncStatus,
)
from raceplanner.state_store import StateStore
from raceplanner.sync_engine import EVENTS_VIEW, ROSTER_VIEW, SyncEngine, user_view
from raceplanner.view_cache import ViewCache

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


def _events() -> list[NormalizedEvent]:
    start = NOW + timedelta(days=3)
    return [
        NormalizedEvent(
            external_id="ir_1_2_w0",
            name="Daytona 24",
            start_time=start,
            end_time=start + timedelta(hours=24),
            track="Daytona International Speedway",
            car_class_ids=[2708, 4029, 31337],
            races=[NormalizedRace("ir_1_2_w0_s0", start, start + timedelta(hours=24))],
        )
    ]


class SyncEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.config_manager = mock.Mock()
        self.config_manager.load.return_value = AppConfig.from_dict(
            {"iracing": {"client_id": "planner"}, "sync": {"window_days": 14}}
        )
        self.client = mock.Mock()
        self.client.fetch_special_events.return_value = _events()
        self.client.fetch_car_classes.return_value = mock_car_classes()
        self.client.fetch_driver_stats.side_effect = mock_member_info
        self.view_cache = ViewCache()
        self.engine = SyncEngine(
            self.config_manager,
            self.store,
            self.view_cache,
            client_factory=lambda _config, _app: self.client,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_disabled_sync_returns_failure_without_log(self) -> None:
        self.config_manager.load.return_value = AppConfig.from_dict({})
        result = self.engine.run_once(source=SyncSource.CRON, now=NOW)

        self.assertFalse(result.success)
        self.assertIn("disabled", result.error)
        self.assertEqual(self.store.recent_sync_logs(), [])
        self.client.fetch_special_events.assert_not_called()

    def test_successful_run_persists_and_logs(self) -> None:
        self.view_cache.get_or_compute(EVENTS_VIEW, lambda: {"events": []})
        self.view_cache.get_or_compute(ROSTER_VIEW, lambda: {"users": []})

        result = self.engine.run_once(source=SyncSource.CRON, now=NOW)

        self.assertTrue(result.success)
        self.assertEqual(result.events_count, 1)
        self.assertEqual(result.car_classes_count, 3)
        self.client.fetch_special_events.assert_called_once_with(NOW, 14)
        stored = self.store.get_event_by_external_id("ir_1_2_w0")
        self.assertEqual(sorted(c["external_id"] for c in stored["car_classes"]), [2708, 4029])
        log = self.store.get_sync_log(result.log_id)
        self.assertEqual(log.status, SyncStatus.SUCCESS)
        self.assertEqual(log.source, SyncSource.CRON)
        self.assertEqual(log.count, 1)
        self.assertNotIn(EVENTS_VIEW, self.view_cache)
        self.assertNotIn(ROSTER_VIEW, self.view_cache)

    def test_fetch_failure_records_failure_and_writes_nothing(self) -> None:
        self.client.fetch_car_classes.side_effect = RequestError("iRacing API request failed: HTTP 503")
        self.view_cache.get_or_compute(EVENTS_VIEW, lambda: {"events": []})

        result = self.engine.run_once(now=NOW)

        self.assertFalse(result.success)
        self.assertEqual(result.error, "iRacing API request failed: HTTP 503")
        self.assertEqual(self.store.list_events(), [])
        self.assertEqual(self.store.car_class_ids_by_external(), {})
        log = self.store.get_sync_log(result.log_id)
        self.assertEqual(log.status, SyncStatus.FAILURE)
        self.assertEqual(log.error, "iRacing API request failed: HTTP 503")
        self.assertIn(EVENTS_VIEW, self.view_cache)

    def test_one_failing_user_does_not_abort_the_run(self) -> None:
        good = [self.store.create_user(name=f"Driver {n}", iracing_customer_id=100 + n) for n in range(3)]
        bad = self.store.create_user(name="Broken", iracing_customer_id=999)

        def fetch(customer_id: int):
            if customer_id == 999:
                raise RequestError("Failed to fetch stats from iRacing.")
            return mock_member_info(customer_id)

        self.client.fetch_driver_stats.side_effect = fetch

        with self.assertLogs("raceplanner.sync_engine", level="ERROR"):
            result = self.engine.run_once(now=NOW)

        self.assertTrue(result.success)
        self.assertEqual(result.users_count, 4)
        self.assertEqual(result.users_failed, 1)
        for user_id in good:
            self.assertEqual(len(self.store.racer_stats(user_id)), 2)
        self.assertEqual(self.store.racer_stats(bad), [])

    def test_store_error_while_finishing_becomes_failure_result(self) -> None:
        finish = self.store.finish_sync_log

        def flaky_finish(**kwargs):
            if kwargs["status"] == SyncStatus.SUCCESS:
                raise sqlite3.OperationalError("database is locked")
            return finish(**kwargs)

        with mock.patch.object(self.store, "finish_sync_log", side_effect=flaky_finish):
            result = self.engine.run_once(now=NOW)

        self.assertFalse(result.success)
        self.assertEqual(result.error, "database is locked")
        self.assertEqual(self.store.get_sync_log(result.log_id).status, SyncStatus.FAILURE)

    def test_unrecordable_failure_still_returns_a_result(self) -> None:
        self.client.fetch_special_events.side_effect = RequestError("HTTP 503")

        with mock.patch.object(self.store, "finish_sync_log", side_effect=sqlite3.OperationalError("disk I/O error")):
            with self.assertLogs("raceplanner.sync_engine", level="ERROR"):
                result = self.engine.run_once(now=NOW)

        self.assertFalse(result.success)
        self.assertEqual(result.error, "HTTP 503")


class SyncUserStatsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        config_manager = mock.Mock()
        config_manager.load.return_value = AppConfig.from_dict({"app": {"mode": "development"}})
        self.client = mock.Mock()
        self.client.fetch_driver_stats.side_effect = mock_member_info
        self.view_cache = ViewCache()
        self.engine = SyncEngine(
            config_manager,
            self.store,
            self.view_cache,
            client_factory=lambda _config, _app: self.client,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_missing_customer_id(self) -> None:
        user_id = self.store.create_user(name="Alice")
        with self.assertRaisesRegex(ConfigurationError, "does not have an iRacing Customer ID"):
            self.engine.sync_user_stats(user_id)

    def test_invalid_customer_id(self) -> None:
        user_id = self.store.create_user(name="Alice", iracing_customer_id="abc")
        with self.assertRaisesRegex(ConfigurationError, "Invalid iRacing Customer ID"):
            self.engine.sync_user_stats(user_id)

    def test_unknown_member(self) -> None:
        user_id = self.store.create_user(name="Alice", iracing_customer_id=123)
        self.client.fetch_driver_stats.side_effect = None
        self.client.fetch_driver_stats.return_value = None
        with self.assertRaises(RequestError):
            self.engine.sync_user_stats(user_id)

    def test_stats_are_upserted_per_category(self) -> None:
        user_id = self.store.create_user(name="Alice", iracing_customer_id=123)
        self.view_cache.get_or_compute(user_view(user_id), lambda: {})

        self.assertEqual(self.engine.sync_user_stats(user_id), {"success": True, "count": 2})
        self.assertEqual(self.engine.sync_user_stats(user_id, override_customer_id="456"), {"success": True, "count": 2})

        self.client.fetch_driver_stats.assert_called_with(456)
        stats = self.store.racer_stats(user_id)
        self.assertEqual([row["category_id"] for row in stats], [5, 6])
        self.assertEqual(stats[0]["irating"], 2150)
        self.assertEqual(self.store.get_user(user_id)["iracing_name"], "Mock Driver 456")
        self.assertNotIn(user_view(user_id), self.view_cache)


if __name__ == "__main__":
    unittest.main()
