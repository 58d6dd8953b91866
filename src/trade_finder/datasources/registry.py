from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

from loguru import logger

from ..errors import DataSourceNotFoundError
from .base import DataSource, DataSourceType
from .core_market_event import CoreMarketEventDataSource
from .ohlc import OHLCDataSource
from .placeholders import OrderBookDataSource, VolumeProfileDataSource
from .transformed_event import TransformedEventDataSource


class DataSourceRegistry:
    """Maps each data category to the adapter that serves it.

    Built once from explicit instances. A second adapter for a category that is
    already registered is a wiring mistake: it is logged and ignored.
    """

    def __init__(self, sources: Iterable[DataSource]) -> None:
        self._sources: dict[DataSourceType, DataSource] = {}
        for source in sources:
            if source.type_id in self._sources:
                logger.warning(
                    "Duplicate data source for {}: keeping {}, ignoring {}",
                    source.type_id.code,
                    type(self._sources[source.type_id]).__name__,
                    type(source).__name__,
                )
                continue
            self._sources[source.type_id] = source
        logger.info(
            "Data source registry initialized with {} sources: {}",
            len(self._sources),
            ", ".join(item.code for item in self._sources),
        )

    def get(self, source_type: DataSourceType) -> DataSource:
        source = self._sources.get(source_type)
        if source is None:
            raise DataSourceNotFoundError(f"No data source registered for type: {source_type.code}")
        return source

    def get_by_code(self, code: str) -> DataSource:
        try:
            source_type = DataSourceType.from_code(code)
        except ValueError as exc:
            raise DataSourceNotFoundError(str(exc)) from exc
        return self.get(source_type)

    def is_available(self, source_type: DataSourceType) -> bool:
        return source_type in self._sources

    def available_types(self) -> list[DataSourceType]:
        return list(self._sources)

    def types_for_symbol(self, symbol: str) -> list[DataSourceType]:
        return [item for item, source in self._sources.items() if source.supports_symbol(symbol)]

    def types_for_timeframe(self, timeframe: str) -> list[DataSourceType]:
        return [item for item, source in self._sources.items() if source.supports_timeframe(timeframe)]

    def describe_all(self) -> dict[str, dict[str, Any]]:
        return {
            item.code: {"name": item.display_name, "description": source.describe()}
            for item, source in self._sources.items()
        }

    def health_status(self) -> dict[str, bool]:
        status: dict[str, bool] = {}
        for item, source in self._sources.items():
            try:
                status[item.code] = bool(source.health_check())
            except Exception as exc:
                logger.warning("Health check raised for {}: {}", item.code, exc)
                status[item.code] = False
        return status


def build_default_registry(db_path: Path | None = None) -> DataSourceRegistry:
    return DataSourceRegistry(
        [
            CoreMarketEventDataSource(db_path),
            TransformedEventDataSource(db_path),
            OHLCDataSource(db_path),
            VolumeProfileDataSource(db_path),
            OrderBookDataSource(db_path),
        ]
    )
