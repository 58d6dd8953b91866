from __future__ import annotations

from typing import Any

from ..db import from_db_time, get_connection, loads, to_db_time
from .base import DataSource, DataSourceConfig, DataSourceType, RecordPredicate, truthy


def _upper_in(column: str) -> RecordPredicate:
    def predicate(row: dict[str, Any], values: set[str]) -> bool:
        value = row.get(column)
        return value is not None and str(value).upper() in {item.upper() for item in values}

    return predicate


def _trade_signal(row: dict[str, Any], values: set[str]) -> bool:
    wanted = truthy(next(iter(values)))
    return bool(row.get("is_trade_signal")) == wanted


def _unique_event_code(row: dict[str, Any], values: set[str]) -> bool:
    value = row.get("unique_event_code")
    return value is not None and str(value).upper() in {item.upper() for item in values}


class TransformedEventDataSource(DataSource):
    source_type = DataSourceType.TRANSFORMED_EVENT
    description = (
        "Enriched market events decoded into indicator, direction and action codes, "
        "newest first"
    )
    supported_symbols = frozenset(
        {"NQ", "ES", "YM", "RTY", "GC", "CL", "AAPL", "TSLA", "MSFT", "GOOGL", "AMZN", "META", "NVDA", "SPY", "QQQ"}
    )
    supported_timeframes = frozenset({"1m", "5m", "15m", "30m", "1h", "4h", "1d"})

    def _table_name(self) -> str:
        return "transformed_events"

    def _query(self, symbol: str, timeframe: str | None, config: DataSourceConfig) -> list[dict[str, Any]]:
        sql = """
            SELECT * FROM transformed_events
            WHERE symbol = ? AND event_ts >= ? AND event_ts <= ?
        """
        params: list[Any] = [symbol, to_db_time(config.from_time), to_db_time(config.to_time)]
        if timeframe:
            sql += " AND timeframe = ?"
            params.append(timeframe)
        sql += " ORDER BY event_ts DESC"
        with get_connection(self.db_path) as conn:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

    def _filter_predicates(self) -> dict[str, RecordPredicate]:
        action = _upper_in("action_code")
        direction = _upper_in("direction_code")
        indicator = _upper_in("indicator_short_code")
        return {
            "actioncode": action,
            "action_code": action,
            "directioncode": direction,
            "direction_code": direction,
            "istradesignal": _trade_signal,
            "is_trade_signal": _trade_signal,
            "tradesignal": _trade_signal,
            "indicatorshortcode": indicator,
            "indicator_short_code": indicator,
            "indicator": indicator,
            "uniqueeventcode": _unique_event_code,
            "unique_event_code": _unique_event_code,
            "uec": _unique_event_code,
        }

    def _to_record(self, row: dict[str, Any]) -> dict[str, Any]:
        record: dict[str, Any] = {
            "event_ts": from_db_time(row["event_ts"]).isoformat(),
            "timeframe": row.get("timeframe"),
            "unique_event_code": row.get("unique_event_code"),
            "uec_description": row.get("uec_description"),
            "indicator_short_code": row.get("indicator_short_code"),
            "direction_code": row.get("direction_code"),
            "action_code": row.get("action_code"),
            "is_trade_signal": bool(row.get("is_trade_signal")),
            "is_trigger_reasoner": bool(row.get("is_trigger_reasoner")),
        }
        if row.get("approx_price") is not None:
            record["approx_price"] = str(row["approx_price"])
        extras = loads(row.get("extras_json"), {})
        if extras:
            record["extras"] = extras
        return record
