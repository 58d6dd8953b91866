from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

from loguru import logger

from .errors import StaleTradeError
from .models import IdentifiedTrade, TradeStatus
from .operation_log import OperationContext, OperationLogService
from .settings import settings
from .trade_statistics import TradeStatistics, TradeStatisticsService
from .trade_store import TradeRepository


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TradeLifecycleManager:
    def __init__(
        self,
        repository: TradeRepository,
        statistics: TradeStatisticsService | None = None,
        operation_log: OperationLogService | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.repository = repository
        self.statistics = statistics or TradeStatisticsService(repository)
        self.operation_log = operation_log or OperationLogService(repository.db_path)
        self.clock = clock

    def expire_trades(self, ctx: OperationContext | None = None) -> int:
        """Move IDENTIFIED trades whose window has passed to EXPIRED.

        Each trade is saved on its own; one failed write does not stop the
        rest of the batch.
        """
        now = self.clock()
        ctx = ctx or OperationContext(source="scheduler")
        operation_id = self.operation_log.start_or_reuse(ctx, "TRADE_EXPIRY_SWEEP", "Expire stale trades", "scheduler")
        expired = 0
        try:
            candidates = self.repository.find_expired(now)
        except Exception as exc:
            logger.exception("Expiry sweep could not load trades: {}", exc)
            self.operation_log.complete_failure(operation_id, exc)
            return 0

        for trade in candidates:
            try:
                if self._expire_one(trade, now):
                    expired += 1
            except Exception as exc:
                logger.error("Failed to expire trade {} ({}): {}", trade.id, trade.dedupe_key, exc)
                self.operation_log.add_event(operation_id, "ERROR", f"Trade {trade.id} not expired: {exc}")

        if expired:
            logger.info("Expired {} of {} stale trades", expired, len(candidates))
        self.operation_log.complete_success(operation_id, {"candidates": len(candidates), "expired": expired})
        return expired

    def _expire_one(self, trade: IdentifiedTrade, now: datetime) -> bool:
        try:
            self.repository.transition(trade, TradeStatus.EXPIRED, now)
            return True
        except StaleTradeError:
            latest = self.repository.get(trade.id)
            if latest is None or latest.status != TradeStatus.IDENTIFIED or latest.expires_at >= now:
                logger.debug("Trade {} no longer eligible for expiry", trade.id)
                return False
            self.repository.transition(latest, TradeStatus.EXPIRED, now)
            return True

    def log_statistics(self, hours: int | None = None) -> TradeStatistics | None:
        hours = hours or settings.statistics_window_hours
        try:
            stats = self.statistics.get_statistics(hours, now=self.clock())
        except Exception as exc:
            logger.exception("Statistics sweep failed: {}", exc)
            return None
        logger.info(
            "Trade statistics ({}h): total={} identified={} expired={} alerted={} avg_confidence={}",
            hours,
            stats.total,
            stats.active,
            stats.expired,
            stats.alerted,
            stats.average_confidence if stats.average_confidence is not None else "n/a",
        )
        return stats
