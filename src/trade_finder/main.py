from __future__ import annotations

import time

from loguru import logger

from .db import initialize_database
from .logging_config import configure_logging
from .scheduler import FinderScheduler
from .services import build_services
from .settings import settings


def run_once() -> dict:
    configure_logging(settings.log_level, settings.log_file_path)
    initialize_database()
    services = build_services()
    report = services.finder.find_trades()
    services.lifecycle.expire_trades()
    return report.to_dict()


def run_service() -> None:
    configure_logging(settings.log_level, settings.log_file_path)
    initialize_database()

    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; every trade finder call will fail validation")

    scheduler = FinderScheduler()
    scheduler.start()

    logger.info("Trade finder service running for {}", ", ".join(settings.symbols))
    logger.info("Press Ctrl+C to stop")

    try:
        while True:
            time.sleep(settings.service_heartbeat_seconds)
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")
        scheduler.stop()


if __name__ == "__main__":
    run_service()