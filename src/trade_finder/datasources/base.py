from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable

from loguru import logger

from ..db import get_connection, to_db_time


class DataSourceType(str, Enum):
    CORE_MARKET_EVENT = "core_market_event"
    OHLC = "ohlc"
    VOLUME_PROFILE = "volume_profile"
    ORDER_BOOK = "order_book"
    TRANSFORMED_EVENT = "transformed_event"

    @property
    def code(self) -> str:
        return self.value

    @property
    def display_name(self) -> str:
        return {
            DataSourceType.CORE_MARKET_EVENT: "Core Market Events",
            DataSourceType.OHLC: "OHLC Data",
            DataSourceType.VOLUME_PROFILE: "Volume Profile",
            DataSourceType.ORDER_BOOK: "Order Book Data",
            DataSourceType.TRANSFORMED_EVENT: "Transformed Events",
        }[self]

    @classmethod
    def from_code(cls, code: str) -> "DataSourceType":
        wanted = (code or "").strip().lower()
        for item in cls:
            if item.value == wanted or item.name.lower() == wanted:
                return item
        raise ValueError(f"Unknown data source type: {code}")


@dataclass
class DataSourceConfig:
    data_source_type: DataSourceType
    from_time: datetime
    to_time: datetime
    enabled: bool = True
    max_records: int | None = None
    use_external_source: bool = False
    filter_criteria: str | None = None


@dataclass
class DataSourceResult:
    data_source_type: DataSourceType
    symbol: str
    timeframe: str | None
    record_count: int = 0
    data: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error_message: str | None = None

    @classmethod
    def failure(
        cls,
        data_source_type: DataSourceType,
        symbol: str,
        timeframe: str | None,
        message: str,
    ) -> "DataSourceResult":
        return cls(
            data_source_type=data_source_type,
            symbol=symbol,
            timeframe=timeframe,
            success=False,
            error_message=message,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_source_type": self.data_source_type.value,
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "record_count": self.record_count,
            "data": self.data,
            "metadata": self.metadata,
            "success": self.success,
            "error_message": self.error_message,
        }


def parse_filter_criteria(criteria: str | None) -> list[tuple[str, set[str]]]:
    """Split ``key:a|b,key2:c`` into ``[(key, {a, b}), (key2, {c})]``.

    Malformed pairs are dropped; keys are lower-cased, values kept as written.
    """
    if not criteria or not criteria.strip():
        return []
    parsed: list[tuple[str, set[str]]] = []
    for chunk in criteria.split(","):
        parts = chunk.split(":")
        if len(parts) != 2:
            continue
        key = parts[0].strip().lower()
        values = {value.strip() for value in parts[1].split("|") if value.strip()}
        if key and values:
            parsed.append((key, values))
    return parsed


def truthy(value: str) -> bool:
    return value.strip().lower() == "true"


RecordPredicate = Callable[[dict[str, Any], set[str]], bool]


class DataSource(ABC):
    """One adapter per data category.

    ``fetch`` never raises: storage errors come back as a failed result so the
    caller can carry on with whatever other sources produced.
    """

    source_type: DataSourceType
    description: str = ""
    supported_symbols: frozenset[str] = frozenset()
    supported_timeframes: frozenset[str] = frozenset()

    def __init__(self, db_path: Path | None = None, supported_symbols: Iterable[str] | None = None) -> None:
        self.db_path = db_path
        if supported_symbols is not None:
            self.supported_symbols = frozenset(item.strip().upper() for item in supported_symbols if item.strip())

    @property
    def type_id(self) -> DataSourceType:
        return self.source_type

    def supports_symbol(self, symbol: str) -> bool:
        if not self.supported_symbols:
            return True
        return (symbol or "").upper() in self.supported_symbols

    def supports_timeframe(self, timeframe: str) -> bool:
        if not self.supported_timeframes:
            return True
        return (timeframe or "").lower() in self.supported_timeframes

    def describe(self) -> str:
        return self.description

    def fetch(self, symbol: str, timeframe: str | None, config: DataSourceConfig) -> DataSourceResult:
        logger.debug("Fetching {} for {} {}", self.source_type.display_name, symbol, timeframe)
        try:
            rows = self._query(symbol, timeframe, config)
            available = len(rows)
            limit_applied = bool(config.max_records) and config.max_records < available
            if limit_applied:
                rows = rows[: config.max_records]
            rows = self._apply_filters(rows, config.filter_criteria)
            records = [self._to_record(row) for row in rows]
            metadata = {
                "source": self._source_label(config),
                "time_range": f"{to_db_time(config.from_time)} to {to_db_time(config.to_time)}",
                "limit_applied": limit_applied,
            }
            metadata.update(self._summarize(rows))
            return DataSourceResult(
                data_source_type=self.source_type,
                symbol=symbol,
                timeframe=timeframe,
                record_count=len(records),
                data=records,
                metadata=metadata,
            )
        except Exception as exc:
            logger.error("Error fetching {} for {} {}: {}", self.source_type.display_name, symbol, timeframe, exc)
            return DataSourceResult.failure(self.source_type, symbol, timeframe, f"Failed to fetch data: {exc}")

    def health_check(self) -> bool:
        try:
            with get_connection(self.db_path) as conn:
                conn.execute(f"SELECT COUNT(1) FROM {self._table_name()}").fetchone()
            return True
        except Exception as exc:
            logger.warning("{} health check failed: {}", self.source_type.display_name, exc)
            return False

    def _apply_filters(self, rows: list[dict[str, Any]], criteria: str | None) -> list[dict[str, Any]]:
        predicates = self._filter_predicates()
        for key, values in parse_filter_criteria(criteria):
            predicate = predicates.get(key)
            if predicate is None:
                logger.warning("Unknown filter key for {}: {}", self.source_type.code, key)
                continue
            rows = [row for row in rows if predicate(row, values)]
        return rows

    def _filter_predicates(self) -> dict[str, RecordPredicate]:
        return {}

    def _source_label(self, config: DataSourceConfig) -> str:
        return self._table_name()

    def _summarize(self, rows: list[dict[str, Any]]) -> dict[str, Any]:
        return {}

    @abstractmethod
    def _table_name(self) -> str:
        ...

    @abstractmethod
    def _query(self, symbol: str, timeframe: str | None, config: DataSourceConfig) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    def _to_record(self, row: dict[str, Any]) -> dict[str, Any]:
        ...
