import base64
import hashlib
import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

import requests

from raceplanner.iracing_client import (
    AuthenticationError,
    ConfigurationError,
    IRacingClient,
    RequestError,
    mask_credential,
)
from raceplanner.models import AppSettings, IRacingConfig

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)

SEASONS_PAYLOAD = [
    {
        "series_id": 10,
        "season_id": 20,
        "season_name": "IMSA Endurance Series",
        "driver_changes": True,
        "max_team_drivers": 4,
        "car_class_ids": [2708],
        "schedules": [
            {
                "race_week_num": 1,
                "start_date": "2026-01-13T00:00:00Z",
                "week_end_time": "2026-01-19T23:59:59Z",
                "track": {"track_name": "Sebring International Raceway"},
                "race_time_descriptors": [
                    {"session_minutes": 360, "session_times": ["2026-01-17T12:00:00Z"]},
                ],
            }
        ],
    },
    {"season_id": 99, "season_name": "Missing series id"},
]


def _response(status: int = 200, payload=None) -> mock.Mock:
    response = mock.Mock()
    response.ok = 200 <= status < 300
    response.status_code = status
    response.reason = "OK" if response.ok else "Error"
    response.json.return_value = payload
    return response


def _config(**overrides) -> IRacingConfig:
    values = {
        "client_id": "planner",
        "client_secret": "s3cret",
        "username": "Driver@Example.com",
        "password": "hunter2",
    }
    values.update(overrides)
    return IRacingConfig(**values)


class MaskCredentialTests(unittest.TestCase):
    def test_salt_is_trimmed_and_lowercased(self) -> None:
        expected = base64.b64encode(hashlib.sha256(b"hunter2driver@example.com").digest()).decode("ascii")
        self.assertEqual(mask_credential("hunter2", "  Driver@Example.com "), expected)


class IRacingClientTests(unittest.TestCase):
    def test_token_request_masks_both_secrets(self) -> None:
        client = IRacingClient(_config())
        with mock.patch.object(client._session, "post", return_value=_response(payload={"access_token": "tok"})) as post:
            with mock.patch.object(client._session, "get", return_value=_response(payload=[])):
                client.fetch_car_classes()
                client.fetch_car_classes()

        post.assert_called_once()
        data = post.call_args.kwargs["data"]
        self.assertEqual(data["grant_type"], "password_limited")
        self.assertEqual(data["scope"], "iracing.auth")
        self.assertEqual(data["password"], mask_credential("hunter2", "Driver@Example.com"))
        self.assertEqual(data["client_secret"], mask_credential("s3cret", "planner"))

    def test_link_pointer_is_followed(self) -> None:
        client = IRacingClient(_config())
        responses = [
            _response(payload={"link": "https://s3.example.com/seasons.json"}),
            _response(payload=SEASONS_PAYLOAD),
        ]
        with mock.patch.object(client._session, "post", return_value=_response(payload={"access_token": "tok"})):
            with mock.patch.object(client._session, "get", side_effect=responses) as get:
                events = client.fetch_special_events(now=NOW)

        self.assertEqual(get.call_args_list[0].kwargs["headers"], {"Authorization": "Bearer tok"})
        self.assertEqual(get.call_args_list[1].args[0], "https://s3.example.com/seasons.json")
        self.assertEqual([event.external_id for event in events], ["ir_10_20_w1"])
        self.assertEqual(events[0].races[0].external_id, "ir_10_20_w1_s0")

    def test_failed_token_exchange_raises_authentication_error(self) -> None:
        client = IRacingClient(_config())
        with mock.patch.object(client._session, "post", return_value=_response(status=401)):
            with self.assertRaises(AuthenticationError):
                client.fetch_car_classes()

    def test_network_failure_on_data_raises_request_error(self) -> None:
        client = IRacingClient(_config())
        with mock.patch.object(client._session, "post", return_value=_response(payload={"access_token": "tok"})):
            with mock.patch.object(client._session, "get", side_effect=requests.ConnectionError("down")):
                with self.assertRaises(RequestError):
                    client.fetch_car_classes()

    def test_non_2xx_data_response_raises_request_error(self) -> None:
        client = IRacingClient(_config())
        with mock.patch.object(client._session, "post", return_value=_response(payload={"access_token": "tok"})):
            with mock.patch.object(client._session, "get", return_value=_response(status=503)):
                with self.assertRaises(RequestError):
                    client.fetch_special_events(now=NOW)

    def test_missing_credentials_in_production_raise(self) -> None:
        client = IRacingClient(IRacingConfig(), AppSettings(mode="production"))
        with self.assertRaises(ConfigurationError):
            client.fetch_special_events(now=NOW)
        with self.assertRaises(ConfigurationError):
            client.fetch_car_classes()
        with self.assertRaises(ConfigurationError):
            client.fetch_driver_stats(123)

    def test_missing_credentials_in_development_use_mock_data(self) -> None:
        client = IRacingClient(IRacingConfig(), AppSettings(mode="development"))
        with mock.patch.object(client._session, "post") as post:
            events = client.fetch_special_events(now=NOW)
            classes = client.fetch_car_classes()
            member = client.fetch_driver_stats(123)

        post.assert_not_called()
        self.assertEqual([event.external_id for event in events], ["ir_12345", "ir_67890", "ir_99999"])
        self.assertEqual({car_class.car_class_id for car_class in classes}, {2708, 4029, 4083})
        self.assertEqual(member.cust_id, 123)

    def test_driver_stats_auth_failure_masked_only_in_development(self) -> None:
        dev_client = IRacingClient(_config(), AppSettings(mode="development"))
        with mock.patch.object(dev_client._session, "post", return_value=_response(status=401)):
            self.assertEqual(dev_client.fetch_driver_stats(42).cust_id, 42)

        prod_client = IRacingClient(_config(), AppSettings(mode="production"))
        with mock.patch.object(prod_client._session, "post", return_value=_response(status=401)):
            with self.assertRaises(AuthenticationError):
                prod_client.fetch_driver_stats(42)

    def test_driver_stats_unknown_member_returns_none(self) -> None:
        client = IRacingClient(_config())
        with mock.patch.object(client._session, "post", return_value=_response(payload={"access_token": "tok"})):
            with mock.patch.object(client._session, "get", return_value=_response(payload={"members": []})):
                self.assertIsNone(client.fetch_driver_stats(42))

    def test_debug_dump_writes_raw_seasons(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            client = IRacingClient(_config(debug_dump=True, raw_data_dir=temp_dir))
            with mock.patch.object(client._session, "post", return_value=_response(payload={"access_token": "tok"})):
                with mock.patch.object(client._session, "get", return_value=_response(payload=SEASONS_PAYLOAD)):
                    client.fetch_seasons()

            dumped = json.loads((Path(temp_dir) / "seasons.json").read_text(encoding="utf-8"))
            self.assertEqual(dumped, SEASONS_PAYLOAD)


if __name__ == "__main__":
    unittest.main()
