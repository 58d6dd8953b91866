from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from .models import IdentifiedTrade, TradeStatus
from .trade_store import TradeRepository


@dataclass
class TradeStatistics:
    period_hours: int
    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    alerted: int = 0
    average_confidence: float | None = None
    by_symbol: dict[str, int] = field(default_factory=dict)
    by_direction: dict[str, int] = field(default_factory=dict)

    @property
    def active(self) -> int:
        return self.by_status.get(TradeStatus.IDENTIFIED.value, 0)

    @property
    def expired(self) -> int:
        return self.by_status.get(TradeStatus.EXPIRED.value, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "period_hours": self.period_hours,
            "total": self.total,
            "active": self.active,
            "expired": self.expired,
            "alerted": self.alerted,
            "average_confidence": self.average_confidence,
            "by_status": self.by_status,
            "by_symbol": self.by_symbol,
            "by_direction": self.by_direction,
        }


def summarize_trades(trades: list[IdentifiedTrade], period_hours: int) -> TradeStatistics:
    confidences = [trade.confidence for trade in trades if trade.confidence is not None]
    return TradeStatistics(
        period_hours=period_hours,
        total=len(trades),
        by_status=dict(Counter(trade.status.value for trade in trades)),
        alerted=sum(1 for trade in trades if trade.alert_sent),
        average_confidence=round(sum(confidences) / len(confidences), 1) if confidences else None,
        by_symbol=dict(Counter(trade.symbol for trade in trades)),
        by_direction=dict(Counter(trade.direction for trade in trades)),
    )


class TradeStatisticsService:
    def __init__(self, repository: TradeRepository) -> None:
        self.repository = repository

    def get_statistics(self, hours: int = 24, now: datetime | None = None) -> TradeStatistics:
        now = now or datetime.now(timezone.utc)
        trades = self.repository.find_identified_after(now - timedelta(hours=hours))
        return summarize_trades(trades, hours)
