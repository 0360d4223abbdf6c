import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from raceplanner.config_manager import ConfigManager
from raceplanner.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path), environ={})

            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load().app.mode, "production")

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path), environ={})
            config = AppConfig.from_dict(
                {
                    "iracing": {"client_id": "planner", "client_secret": "s"},
                    "sync": {"cron_secret": "cron"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(Path(str(config_path) + ".tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["iracing"]["client_id"], "planner")
            self.assertEqual(data["sync"]["cron_secret"], "cron")

    def test_environment_overrides_are_not_persisted(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            environ = {"IRACING_PASSWORD": "from-env", "CRON_SECRET": "env-cron", "APP_MODE": "development"}
            manager = ConfigManager(str(config_path), environ=environ)

            loaded = manager.update({"iracing": {"username": "driver@example.com"}})

            self.assertEqual(loaded.iracing.password, "from-env")
            self.assertEqual(loaded.sync.cron_secret, "env-cron")
            self.assertTrue(loaded.app.is_development)
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["iracing"]["username"], "driver@example.com")
            self.assertEqual(data["iracing"]["password"], "")
            self.assertEqual(data["sync"]["cron_secret"], "")

    def test_masked_hides_secrets(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"), environ={})
            manager.update(
                {
                    "iracing": {"client_id": "planner", "client_secret": "s", "password": ""},
                    "discord": {"webhook_url": "https://discord.com/api/webhooks/1/abc"},
                }
            )

            masked = manager.masked()
            self.assertEqual(masked["iracing"]["client_id"], "planner")
            self.assertEqual(masked["iracing"]["client_secret"], "***")
            self.assertEqual(masked["iracing"]["password"], "")
            self.assertEqual(masked["discord"]["webhook_url"], "***")


if __name__ == "__main__":
    unittest.main()
