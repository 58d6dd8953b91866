from __future__ import annotations

from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .services import FinderServices, build_services
from .settings import settings


class FinderScheduler:
    def __init__(self, services: FinderServices | None = None) -> None:
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.services = services or build_services()

    def jobs(self) -> dict[str, tuple[Callable[[], object], IntervalTrigger]]:
        return {
            "trade_finder_cycle": (
                self.run_finder_cycle,
                IntervalTrigger(seconds=settings.trade_finder_interval_seconds),
            ),
            "trade_expiry_sweep": (
                self.services.lifecycle.expire_trades,
                IntervalTrigger(minutes=settings.expiry_sweep_minutes),
            ),
            "trade_statistics_sweep": (
                self.services.lifecycle.log_statistics,
                IntervalTrigger(minutes=settings.statistics_sweep_minutes),
            ),
            "conversation_cleanup": (
                self.services.conversations.cleanup_expired,
                IntervalTrigger(minutes=settings.conversation_cleanup_minutes),
            ),
        }

    def run_finder_cycle(self) -> None:
        try:
            self.services.finder.find_trades()
        except Exception as exc:
            logger.exception("Scheduled trade finder cycle failed: {}", exc)

    def start(self) -> None:
        for job_id, (func, trigger) in self.jobs().items():
            # One instance per job: a slow cycle is skipped, not stacked.
            self.scheduler.add_job(
                func,
                trigger=trigger,
                id=job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self.scheduler.start()
        logger.info(
            "Scheduler started. Trade finder every {}s for {} ({})",
            settings.trade_finder_interval_seconds,
            ", ".join(settings.symbols),
            settings.timezone,
        )

    def stop(self) -> None:
        self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
