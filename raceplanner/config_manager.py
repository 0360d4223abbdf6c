from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from raceplanner.models import AppConfig, default_app_config


# (section, key) pairs that may be supplied through the environment instead of the file.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "IRACING_CLIENT_ID": ("iracing", "client_id"),
    "IRACING_CLIENT_SECRET": ("iracing", "client_secret"),
    "IRACING_USERNAME": ("iracing", "username"),
    "IRACING_PASSWORD": ("iracing", "password"),
    "CRON_SECRET": ("sync", "cron_secret"),
    "DISCORD_WEBHOOK_URL": ("discord", "webhook_url"),
    "DISCORD_GUILD_ID": ("discord", "guild_id"),
    "APP_MODE": ("app", "mode"),
    "LOG_LEVEL": ("app", "log_level"),
}

SECRET_FIELDS: tuple[tuple[str, str], ...] = (
    ("iracing", "client_secret"),
    ("iracing", "password"),
    ("sync", "cron_secret"),
    ("discord", "webhook_url"),
)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = str(environ.get(env_name, "")).strip()
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


class ConfigManager:
    def __init__(
        self,
        config_path: str | os.PathLike[str],
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def _read_file(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle) or {}

    def load(self) -> AppConfig:
        with self._lock:
            data = self._read_file()
            return AppConfig.from_dict(_deep_merge(data, _env_overrides(self.environ)))

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self._write(config.to_dict())

    def _write(self, config_dict: dict[str, Any]) -> None:
        tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(
                config_dict,
                handle,
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )
        try:
            tmp_path.replace(self.config_path)
        except OSError as exc:
            # Some bind-mounted single files in containers cannot be atomically replaced.
            if exc.errno != errno.EBUSY:
                raise
            with self.config_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(
                    config_dict,
                    handle,
                    sort_keys=False,
                    allow_unicode=True,
                    default_flow_style=False,
                )
            if tmp_path.exists():
                tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        # Merge against the file contents so environment secrets never get persisted.
        with self._lock:
            current = AppConfig.from_dict(self._read_file()).to_dict()
            merged = _deep_merge(current, payload)
            self.save(AppConfig.from_dict(merged))
            return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = "***"
        return config
