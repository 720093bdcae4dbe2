from __future__ import annotations

import logging
import os

import uvicorn

from medsync.config_manager import ConfigManager


def configure_logging(level: str | None = None) -> None:
    if level is None:
        config_path = os.getenv("MEDSYNC_CONFIG_PATH", "config.yaml")
        level = os.getenv("MEDSYNC_LOG_LEVEL") or ConfigManager(config_path).load().logging.level
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    configure_logging()
    host = os.getenv("MEDSYNC_HOST", "0.0.0.0")
    port = int(os.getenv("MEDSYNC_PORT", "8080"))
    uvicorn.run("medsync.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
