from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from loguru import logger
import requests

from .errors import StaleTradeError
from .models import AlertType, IdentifiedTrade
from .settings import settings
from .trade_store import TradeRepository


class AlertRouter:
    """Forwards alert intent to an optional webhook; delivery lives on the other side."""

    def __init__(
        self,
        webhook_url: str | None = None,
        timeout: int | None = None,
        event_types_csv: str | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.webhook_url = (settings.alert_webhook_url if webhook_url is None else webhook_url).strip()
        self.timeout = timeout or settings.alert_webhook_timeout_seconds
        csv = settings.alert_event_types_csv if event_types_csv is None else event_types_csv
        self.allowed_event_types = {item.strip() for item in csv.split(",") if item.strip()}
        self.session = session or requests.Session()

    def should_send(self, event_type: str) -> bool:
        if not self.webhook_url:
            return False
        return event_type in self.allowed_event_types

    def send(self, event_type: str, message: str, metadata: dict[str, Any]) -> bool:
        if not self.should_send(event_type):
            return False

        payload = {
            "event_type": event_type,
            "message": message,
            "metadata": metadata,
        }
        response = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        return True


def alert_type_for(confidence: int | None, high_threshold: int, medium_threshold: int) -> AlertType:
    score = confidence or 0
    if score >= high_threshold:
        return AlertType.CALL_SMS_TELEGRAM
    if score >= medium_threshold:
        return AlertType.SMS_TELEGRAM
    return AlertType.LOG_ONLY


class AlertDispatcher:
    def __init__(
        self,
        repository: TradeRepository,
        router: AlertRouter | None = None,
        high_threshold: int | None = None,
        medium_threshold: int | None = None,
    ) -> None:
        self.repository = repository
        self.router = router or AlertRouter()
        self.high_threshold = settings.confidence_threshold_high if high_threshold is None else high_threshold
        self.medium_threshold = settings.confidence_threshold_medium if medium_threshold is None else medium_threshold

    def decide(self, confidence: int | None) -> AlertType:
        return alert_type_for(confidence, self.high_threshold, self.medium_threshold)

    def dispatch(self, trade: IdentifiedTrade, now: datetime | None = None) -> IdentifiedTrade:
        """Record the alert decision on the trade and hand it to the router.

        The decision is persisted for every tier, including log-only, so that
        a trade with ``alert_sent`` unset was never evaluated. A failed write
        is logged and left alone: the trade itself is already stored.
        """
        now = now or datetime.now(timezone.utc)
        alert_type = self.decide(trade.confidence)
        self._mark(trade, alert_type, now)
        try:
            trade = self._save(trade, alert_type, now)
        except Exception as exc:
            logger.error("Failed to record alert for trade {} ({}): {}", trade.id, trade.dedupe_key, exc)
            return trade

        message = (
            f"{trade.symbol} {trade.direction} setup, confidence {trade.confidence}, "
            f"entry {trade.entry_zone or 'n/a'} ({trade.entry_zone_type or 'n/a'})"
        )
        if alert_type == AlertType.LOG_ONLY:
            logger.info("Log-only alert: {}", message)
            return trade

        logger.info("Alert {} via {}: {}", alert_type.value, ", ".join(alert_type.channels), message)
        try:
            self.router.send(
                "trade_identified",
                message,
                {
                    "trade_id": trade.id,
                    "alert_type": alert_type.value,
                    "channels": list(alert_type.channels),
                    "dedupe_key": trade.dedupe_key,
                    "expires_at": trade.expires_at.isoformat(),
                },
            )
        except Exception as exc:
            logger.warning("Alert routing failed for trade {}: {}", trade.id, exc)
        return trade

    @staticmethod
    def _mark(trade: IdentifiedTrade, alert_type: AlertType, now: datetime) -> None:
        trade.alert_sent = True
        trade.alert_sent_at = now
        trade.alert_type = alert_type

    def _save(self, trade: IdentifiedTrade, alert_type: AlertType, now: datetime) -> IdentifiedTrade:
        try:
            return self.repository.update(trade, now)
        except StaleTradeError:
            latest = self.repository.get(trade.id)
            if latest is None:
                raise
            logger.info("Trade {} changed underneath alert dispatch, re-applying on version {}", trade.id, latest.version)
            self._mark(latest, alert_type, now)
            return self.repository.update(latest, now)
