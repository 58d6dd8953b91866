from __future__ import annotations

from typing import Any

from ..db import from_db_time, get_connection, loads, to_db_time
from .base import DataSource, DataSourceConfig, DataSourceType, RecordPredicate, truthy


def _indicator(row: dict[str, Any], values: set[str]) -> bool:
    return row.get("indicator_name") in values


def _queued(row: dict[str, Any], values: set[str]) -> bool:
    return bool(row.get("queued")) == truthy(next(iter(values)))


class CoreMarketEventDataSource(DataSource):
    """Raw indicator alerts as they were ingested, before transformation."""

    source_type = DataSourceType.CORE_MARKET_EVENT
    description = "Raw market event messages from indicator alerts, newest first"
    supported_symbols = frozenset(
        {"NQ", "ES", "YM", "RTY", "GC", "CL", "AAPL", "TSLA", "MSFT", "GOOGL", "AMZN", "META", "NVDA", "SPY", "QQQ"}
    )
    supported_timeframes = frozenset({"1m", "5m", "15m", "30m", "1h", "4h", "1d"})

    def _table_name(self) -> str:
        return "core_market_events"

    def _query(self, symbol: str, timeframe: str | None, config: DataSourceConfig) -> list[dict[str, Any]]:
        sql = """
            SELECT * FROM core_market_events
            WHERE symbol = ? AND ingested_ts >= ? AND ingested_ts <= ?
        """
        params: list[Any] = [symbol, to_db_time(config.from_time), to_db_time(config.to_time)]
        if timeframe:
            sql += " AND timeframe = ?"
            params.append(timeframe)
        sql += " ORDER BY ingested_ts DESC"
        with get_connection(self.db_path) as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def _filter_predicates(self) -> dict[str, RecordPredicate]:
        return {"indicator": _indicator, "queued": _queued}

    def _to_record(self, row: dict[str, Any]) -> dict[str, Any]:
        record: dict[str, Any] = {
            "ingested_ts": from_db_time(row["ingested_ts"]).isoformat(),
            "indicator": row.get("indicator_name"),
            "message": row.get("raw_message"),
            "queued": bool(row.get("queued")),
            "transform_attempts": int(row.get("transform_attempts") or 0),
        }
        meta = loads(row.get("meta_json"), {})
        if meta:
            record["metadata"] = meta
        return record
