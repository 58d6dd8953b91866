from __future__ import annotations

from typing import Any

from .base import DataSource, DataSourceConfig, DataSourceResult, DataSourceType


class UncollectedDataSource(DataSource):
    """Category that is registered for discovery but has no backing table yet."""

    def fetch(self, symbol: str, timeframe: str | None, config: DataSourceConfig) -> DataSourceResult:
        return DataSourceResult.failure(
            self.source_type,
            symbol,
            timeframe,
            f"{self.source_type.display_name} is not collected yet",
        )

    def health_check(self) -> bool:
        return False

    def _table_name(self) -> str:
        return self.source_type.value

    def _query(self, symbol: str, timeframe: str | None, config: DataSourceConfig) -> list[dict[str, Any]]:
        return []

    def _to_record(self, row: dict[str, Any]) -> dict[str, Any]:
        return row


class VolumeProfileDataSource(UncollectedDataSource):
    source_type = DataSourceType.VOLUME_PROFILE
    description = "Volume at price distribution (not collected yet)"


class OrderBookDataSource(UncollectedDataSource):
    source_type = DataSourceType.ORDER_BOOK
    description = "Level 2 order book depth (not collected yet)"
