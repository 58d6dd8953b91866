from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import sqlite3
from typing import Any

from .db import dumps, from_db_time, get_connection, loads, to_db_time
from .errors import DuplicateTradeError, InvalidStatusTransitionError, StaleTradeError, TradeNotFoundError
from .models import AlertType, IdentifiedTrade, TradeStatus


def _row_to_trade(row: sqlite3.Row) -> IdentifiedTrade:
    return IdentifiedTrade(
        id=int(row["id"]),
        symbol=row["symbol"],
        direction=row["direction"],
        identified_at=from_db_time(row["identified_at"]),
        expires_at=from_db_time(row["expires_at"]),
        dedupe_key=row["dedupe_key"],
        confidence=row["confidence"],
        status=TradeStatus(row["status"]),
        entry_zone_type=row["entry_zone_type"],
        entry_zone=row["entry_zone"],
        entry_price=row["entry_price"],
        stop_placement=row["stop_placement"],
        targets=loads(row["targets_json"], []),
        rr_hint=row["rr_hint"],
        narrative=row["narrative"],
        trigger_conditions=loads(row["trigger_conditions_json"], []),
        invalidations=loads(row["invalidations_json"], []),
        session_label=row["session_label"],
        timeframe=row["timeframe"],
        alert_sent=bool(row["alert_sent"]),
        alert_sent_at=from_db_time(row["alert_sent_at"]),
        alert_type=AlertType(row["alert_type"]) if row["alert_type"] else None,
        created_at=from_db_time(row["created_at"]),
        updated_at=from_db_time(row["updated_at"]),
        ai_request_id=row["ai_request_id"],
        ai_full_response=row["ai_full_response"],
        version=int(row["version"]),
    )


def _mutable_columns(trade: IdentifiedTrade) -> dict[str, Any]:
    return {
        "confidence": trade.confidence,
        "status": trade.status.value,
        "entry_zone_type": trade.entry_zone_type,
        "entry_zone": trade.entry_zone,
        "entry_price": trade.entry_price,
        "stop_placement": trade.stop_placement,
        "targets_json": dumps(trade.targets),
        "rr_hint": trade.rr_hint,
        "narrative": trade.narrative,
        "trigger_conditions_json": dumps(trade.trigger_conditions),
        "invalidations_json": dumps(trade.invalidations),
        "session_label": trade.session_label,
        "timeframe": trade.timeframe,
        "alert_sent": int(trade.alert_sent),
        "alert_sent_at": to_db_time(trade.alert_sent_at),
        "alert_type": trade.alert_type.value if trade.alert_type else None,
        "updated_at": to_db_time(trade.updated_at),
        "ai_request_id": trade.ai_request_id,
        "ai_full_response": trade.ai_full_response,
    }


class TradeRepository:
    """Persistence for identified trades.

    Every row carries a ``version``. Updates only apply when the caller still
    holds the latest version; otherwise ``StaleTradeError`` is raised and the
    caller is expected to reload and re-apply its change.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path

    def insert(self, trade: IdentifiedTrade) -> IdentifiedTrade:
        now = datetime.now(timezone.utc)
        trade.created_at = trade.created_at or now
        trade.updated_at = trade.updated_at or now
        columns = _mutable_columns(trade)
        columns.update(
            {
                "symbol": trade.symbol,
                "direction": trade.direction,
                "identified_at": to_db_time(trade.identified_at),
                "expires_at": to_db_time(trade.expires_at),
                "dedupe_key": trade.dedupe_key,
                "created_at": to_db_time(trade.created_at),
                "version": 1,
            }
        )
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        try:
            with get_connection(self.db_path) as conn:
                cursor = conn.execute(
                    f"INSERT INTO identified_trades ({names}) VALUES ({placeholders})",
                    tuple(columns.values()),
                )
                conn.commit()
        except sqlite3.IntegrityError as exc:
            raise DuplicateTradeError(trade.dedupe_key) from exc
        trade.id = int(cursor.lastrowid)
        trade.version = 1
        return trade

    def update(self, trade: IdentifiedTrade, now: datetime | None = None) -> IdentifiedTrade:
        if trade.id is None:
            raise ValueError("Cannot update a trade that has not been inserted")
        trade.updated_at = now or datetime.now(timezone.utc)
        columns = _mutable_columns(trade)
        assignments = ", ".join(f"{name} = ?" for name in columns)
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                f"UPDATE identified_trades SET {assignments}, version = version + 1 WHERE id = ? AND version = ?",
                (*columns.values(), trade.id, trade.version),
            )
            conn.commit()
        if cursor.rowcount == 0:
            raise StaleTradeError(trade.id, trade.version)
        trade.version += 1
        return trade

    def transition(
        self,
        trade: IdentifiedTrade,
        status: TradeStatus,
        now: datetime | None = None,
        alert_sent: bool | None = None,
        alert_type: AlertType | None = None,
    ) -> IdentifiedTrade:
        if status == TradeStatus.IDENTIFIED and trade.status != TradeStatus.IDENTIFIED:
            raise InvalidStatusTransitionError(f"Trade {trade.id} cannot return to IDENTIFIED from {trade.status.value}")
        now = now or datetime.now(timezone.utc)
        trade.status = status
        if alert_sent is not None:
            trade.alert_sent = alert_sent
            trade.alert_sent_at = now if alert_sent else None
        if alert_type is not None:
            trade.alert_type = alert_type
        return self.update(trade, now)

    def update_status(
        self,
        trade_id: int,
        status: TradeStatus,
        now: datetime | None = None,
        alert_sent: bool | None = None,
        alert_type: AlertType | None = None,
    ) -> IdentifiedTrade:
        trade = self.get(trade_id)
        if trade is None:
            raise TradeNotFoundError(trade_id)
        try:
            return self.transition(trade, status, now, alert_sent, alert_type)
        except StaleTradeError:
            latest = self.get(trade_id)
            if latest is None:
                raise TradeNotFoundError(trade_id)
            return self.transition(latest, status, now, alert_sent, alert_type)

    def get(self, trade_id: int) -> IdentifiedTrade | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM identified_trades WHERE id = ?", (trade_id,)).fetchone()
        return _row_to_trade(row) if row else None

    def find_by_dedupe_key(self, dedupe_key: str) -> IdentifiedTrade | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM identified_trades WHERE dedupe_key = ?", (dedupe_key,)).fetchone()
        return _row_to_trade(row) if row else None

    def exists_by_dedupe_key(self, dedupe_key: str) -> bool:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT 1 FROM identified_trades WHERE dedupe_key = ? LIMIT 1", (dedupe_key,)).fetchone()
        return row is not None

    def find_expired(self, now: datetime) -> list[IdentifiedTrade]:
        return self._select(
            "WHERE status = ? AND expires_at < ? ORDER BY expires_at ASC",
            (TradeStatus.IDENTIFIED.value, to_db_time(now)),
        )

    def find_identified_after(self, cutoff: datetime) -> list[IdentifiedTrade]:
        return self._select("WHERE identified_at > ? ORDER BY identified_at DESC", (to_db_time(cutoff),))

    def find_by_symbol(self, symbol: str, limit: int = 100) -> list[IdentifiedTrade]:
        return self._select("WHERE symbol = ? ORDER BY identified_at DESC LIMIT ?", (symbol.upper(), limit))

    def find_by_symbol_and_status(self, symbol: str, status: TradeStatus) -> list[IdentifiedTrade]:
        return self._select(
            "WHERE symbol = ? AND status = ? ORDER BY identified_at DESC",
            (symbol.upper(), status.value),
        )

    def find_by_status(self, status: TradeStatus) -> list[IdentifiedTrade]:
        return self._select("WHERE status = ? ORDER BY identified_at DESC", (status.value,))

    def find_recent(self, limit: int = 50) -> list[IdentifiedTrade]:
        return self._select("ORDER BY identified_at DESC LIMIT ?", (limit,))

    def count(self) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT COUNT(1) AS n FROM identified_trades").fetchone()
        return int(row["n"] if row else 0)

    def _select(self, clause: str, params: tuple) -> list[IdentifiedTrade]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(f"SELECT * FROM identified_trades {clause}", params).fetchall()
        return [_row_to_trade(row) for row in rows]
