from .base import DataSource, DataSourceConfig, DataSourceResult, DataSourceType, parse_filter_criteria
from .core_market_event import CoreMarketEventDataSource
from .ohlc import OHLCDataSource
from .placeholders import OrderBookDataSource, VolumeProfileDataSource
from .registry import DataSourceRegistry, build_default_registry
from .transformed_event import TransformedEventDataSource

__all__ = [
    "CoreMarketEventDataSource",
    "DataSource",
    "DataSourceConfig",
    "DataSourceRegistry",
    "DataSourceResult",
    "DataSourceType",
    "OHLCDataSource",
    "OrderBookDataSource",
    "TransformedEventDataSource",
    "VolumeProfileDataSource",
    "build_default_registry",
    "parse_filter_criteria",
]
