from __future__ import annotations

from typing import Any

from ..db import from_db_time, get_connection, to_db_time
from .base import DataSource, DataSourceConfig, DataSourceType


class OHLCDataSource(DataSource):
    source_type = DataSourceType.OHLC
    description = "OHLC candlestick data with open, high, low, close prices and volume at various timeframes"
    supported_symbols = frozenset(
        {
            "NQ", "ES", "YM", "RTY", "CL", "GC",
            "AAPL", "TSLA", "MSFT", "GOOGL", "AMZN", "META", "NVDA",
            "SPY", "QQQ", "IWM", "DIA",
        }
    )
    supported_timeframes = frozenset({"1m", "5m", "15m", "30m", "1h", "4h", "1d"})

    def _table_name(self) -> str:
        return "ohlc_data"

    def _source_label(self, config: DataSourceConfig) -> str:
        return "external" if config.use_external_source else "internal"

    def _query(self, symbol: str, timeframe: str | None, config: DataSourceConfig) -> list[dict[str, Any]]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT ts, open, high, low, close, volume, source
                FROM ohlc_data
                WHERE symbol = ? AND timeframe = ? AND ts >= ? AND ts <= ?
                ORDER BY ts ASC
                """,
                (symbol, timeframe, to_db_time(config.from_time), to_db_time(config.to_time)),
            ).fetchall()
        return [dict(row) for row in rows]

    def _to_record(self, row: dict[str, Any]) -> dict[str, Any]:
        record: dict[str, Any] = {
            "time": from_db_time(row["ts"]).isoformat(),
            "open": row.get("open"),
            "high": row.get("high"),
            "low": row.get("low"),
            "close": row.get("close"),
        }
        if row.get("volume") is not None:
            record["volume"] = int(row["volume"])
        if row.get("source"):
            record["source"] = row["source"]
        return record

    def _summarize(self, rows: list[dict[str, Any]]) -> dict[str, Any]:
        if not rows:
            return {}
        first, last = rows[0], rows[-1]
        highs = [float(row["high"]) for row in rows if row.get("high") is not None]
        lows = [float(row["low"]) for row in rows if row.get("low") is not None]
        summary: dict[str, Any] = {
            "period_start": from_db_time(first["ts"]).isoformat(),
            "period_end": from_db_time(last["ts"]).isoformat(),
            "open_price": first.get("open"),
            "close_price": last.get("close"),
        }
        if highs:
            summary["period_high"] = max(highs)
        if lows:
            summary["period_low"] = min(lows)
        if first.get("open") and last.get("close") is not None:
            change = (float(last["close"]) - float(first["open"])) / float(first["open"]) * 100
            summary["price_change_percent"] = round(change, 4)
        return summary
