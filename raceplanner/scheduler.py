from __future__ import annotations

import logging
import threading
from typing import Optional

from raceplanner.config_manager import ConfigManager
from raceplanner.models import SyncSource
from raceplanner.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

# How often an idle scheduler re-reads the config to see whether an interval was set.
IDLE_POLL_SECONDS = 60


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="raceplanner-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _run(self, source: SyncSource) -> None:
        try:
            result = self.sync_engine.run_once(source=source)
        except Exception:
            logger.exception("scheduled sync crashed")
            return
        if not result.success:
            logger.warning("scheduled sync did not succeed: %s", result.error)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            interval_seconds = int(self.config_manager.load().sync.interval_seconds)
            wait_seconds = interval_seconds if interval_seconds > 0 else IDLE_POLL_SECONDS
            manual = self._manual_trigger_event.wait(timeout=wait_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            if manual:
                self._run(SyncSource.MANUAL)
            elif interval_seconds > 0:
                self._run(SyncSource.CRON)
