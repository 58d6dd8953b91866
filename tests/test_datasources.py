from datetime import timedelta

from conftest import insert_candle, insert_core_event, insert_transformed_event, ny
from trade_finder.datasources import (
    CoreMarketEventDataSource,
    DataSourceConfig,
    DataSourceType,
    OHLCDataSource,
    OrderBookDataSource,
    TransformedEventDataSource,
    VolumeProfileDataSource,
    parse_filter_criteria,
)

NOW = ny(2024, 1, 1, 14, 0)


def _config(source_type, minutes=90, **kwargs):
    return DataSourceConfig(source_type, from_time=NOW - timedelta(minutes=minutes), to_time=NOW, **kwargs)


def _seed_events(db_path, count=5):
    for index in range(count):
        insert_transformed_event(
            db_path,
            "NQ",
            NOW - timedelta(minutes=10 * (index + 1)),
            unique_event_code=f"UEC_{index}",
            direction_code="BULL" if index % 2 == 0 else "BEAR",
        )


def test_transformed_events_newest_first_inside_window(db_path):
    _seed_events(db_path)
    insert_transformed_event(db_path, "NQ", NOW - timedelta(hours=5), unique_event_code="TOO_OLD")
    insert_transformed_event(db_path, "ES", NOW - timedelta(minutes=5), unique_event_code="OTHER_SYMBOL")

    result = TransformedEventDataSource(db_path).fetch("NQ", None, _config(DataSourceType.TRANSFORMED_EVENT))

    assert result.success
    assert result.record_count == 5
    codes = [record["unique_event_code"] for record in result.data]
    assert codes == ["UEC_0", "UEC_1", "UEC_2", "UEC_3", "UEC_4"]
    first = result.data[0]
    assert first["approx_price"] == "21790.5"
    assert first["is_trade_signal"] is False
    assert result.metadata["source"] == "transformed_events"
    assert result.metadata["limit_applied"] is False


def test_record_cap_below_available_sets_limit_flag(db_path):
    _seed_events(db_path)
    source = TransformedEventDataSource(db_path)

    capped = source.fetch("NQ", None, _config(DataSourceType.TRANSFORMED_EVENT, max_records=3))
    assert len(capped.data) == 3
    assert capped.metadata["limit_applied"] is True

    uncapped = source.fetch("NQ", None, _config(DataSourceType.TRANSFORMED_EVENT, max_records=5))
    assert len(uncapped.data) == 5
    assert uncapped.metadata["limit_applied"] is False


def test_filter_criteria_on_transformed_events(db_path):
    _seed_events(db_path)
    source = TransformedEventDataSource(db_path)

    bulls = source.fetch(
        "NQ", None, _config(DataSourceType.TRANSFORMED_EVENT, filter_criteria="directionCode:bull")
    )
    assert {record["direction_code"] for record in bulls.data} == {"BULL"}
    assert bulls.record_count == 3

    picked = source.fetch(
        "NQ", None, _config(DataSourceType.TRANSFORMED_EVENT, filter_criteria="uec:UEC_1|UEC_3,nonsense:1")
    )
    assert [record["unique_event_code"] for record in picked.data] == ["UEC_1", "UEC_3"]


def test_query_failure_becomes_failed_result(tmp_path):
    source = TransformedEventDataSource(tmp_path / "no_schema.sqlite3")

    result = source.fetch("NQ", None, _config(DataSourceType.TRANSFORMED_EVENT))

    assert result.success is False
    assert result.record_count == 0
    assert result.data == []
    assert result.error_message.startswith("Failed to fetch data")
    assert source.health_check() is False


def test_ohlc_summary_and_ascending_order(db_path):
    for index in range(5):
        insert_candle(db_path, "NQ", "5m", NOW - timedelta(minutes=5 * (5 - index)), close=100 + index)

    result = OHLCDataSource(db_path).fetch("NQ", "5m", _config(DataSourceType.OHLC, minutes=60))

    assert result.success
    assert [record["close"] for record in result.data] == [100, 101, 102, 103, 104]
    meta = result.metadata
    assert meta["source"] == "internal"
    assert meta["open_price"] == 99
    assert meta["close_price"] == 104
    assert meta["period_high"] == 106
    assert meta["period_low"] == 97
    assert meta["price_change_percent"] == round((104 - 99) / 99 * 100, 4)
    assert meta["period_start"] < meta["period_end"]


def test_ohlc_external_label(db_path):
    insert_candle(db_path, "NQ", "1h", NOW - timedelta(minutes=30), close=100)
    result = OHLCDataSource(db_path).fetch(
        "NQ", "1h", _config(DataSourceType.OHLC, use_external_source=True)
    )
    assert result.metadata["source"] == "external"


def test_core_market_event_records(db_path):
    insert_core_event(db_path, "NQ", NOW - timedelta(minutes=3), meta_json='{"alert": "smt"}')
    insert_core_event(db_path, "NQ", NOW - timedelta(minutes=6), indicator_name="CISD", queued=1)

    source = CoreMarketEventDataSource(db_path)
    result = source.fetch("NQ", None, _config(DataSourceType.CORE_MARKET_EVENT))
    assert [record["indicator"] for record in result.data] == ["SMT", "CISD"]
    assert result.data[0]["metadata"] == {"alert": "smt"}

    queued = source.fetch("NQ", None, _config(DataSourceType.CORE_MARKET_EVENT, filter_criteria="queued:true"))
    assert [record["indicator"] for record in queued.data] == ["CISD"]


def test_uncollected_sources_report_failure(db_path):
    for source in (VolumeProfileDataSource(db_path), OrderBookDataSource(db_path)):
        result = source.fetch("NQ", "5m", _config(source.source_type))
        assert result.success is False
        assert "not collected yet" in result.error_message
        assert source.health_check() is False


def test_parse_filter_criteria_drops_malformed_pairs():
    assert parse_filter_criteria(None) == []
    assert parse_filter_criteria("  ") == []
    parsed = parse_filter_criteria("ActionCode:CREATED|MITIGATED, broken, a:b:c")
    assert parsed == [("actioncode", {"CREATED", "MITIGATED"})]


def test_supported_symbols_and_timeframes(db_path):
    source = OHLCDataSource(db_path)
    assert source.supports_symbol("nq")
    assert not source.supports_symbol("BTC")
    assert source.supports_timeframe("4H")
    assert not source.supports_timeframe("2h")
