from __future__ import annotations

import logging
import os
import sys

import uvicorn

from raceplanner.config_manager import ConfigManager

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(numeric_level)
    # Keep request logging readable at DEBUG.
    logging.getLogger("urllib3").setLevel(max(numeric_level, logging.INFO))


def main() -> None:
    config_path = os.getenv("RACEPLANNER_CONFIG_PATH", "config.yaml")
    configure_logging(ConfigManager(config_path).load().app.log_level)
    host = os.getenv("RACEPLANNER_HOST", "0.0.0.0")
    port = int(os.getenv("RACEPLANNER_PORT", "8080"))
    uvicorn.run("raceplanner.web_admin:app", host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
