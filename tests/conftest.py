from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import pytest
import requests

from trade_finder.db import get_connection, initialize_database, to_db_time
from trade_finder.models import IdentifiedTrade, TradeStatus

NEW_YORK = ZoneInfo("America/New_York")


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._json = json_data
        self.text = text if text is not None else json.dumps(json_data)

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Stands in for ``requests.Session``; replays queued responses in order."""

    def __init__(self, responses: list[Any] | None = None) -> None:
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    def post(self, url: str, headers: dict | None = None, json: Any = None, timeout: Any = None) -> FakeResponse:
        self.calls.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if not self.responses:
            raise AssertionError(f"Unexpected POST to {url}")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def ny(year: int, month: int, day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=NEW_YORK).astimezone(timezone.utc)


def responses_payload(
    text: str,
    response_id: str = "resp_1",
    model: str = "gpt-4.1",
    total_tokens: int = 120,
    **extra: Any,
) -> dict[str, Any]:
    payload = {
        "id": response_id,
        "object": "response",
        "model": model,
        "status": "completed",
        "output": [
            {
                "type": "message",
                "role": "assistant",
                "content": [{"type": "output_text", "text": text}],
            }
        ],
        "usage": {"input_tokens": total_tokens - 20, "output_tokens": 20, "total_tokens": total_tokens},
    }
    payload.update(extra)
    return payload


def trade_signal_json(
    status: str = "TRADE_IDENTIFIED",
    direction: str = "LONG",
    zone: str = "21780-21800",
    confidence: int = 85,
) -> str:
    return json.dumps(
        {
            "status": status,
            "direction": direction,
            "symbol": "NQ",
            "timeframe": "5m",
            "confidence": confidence,
            "entry": {"zone_type": "FVG_CE", "zone": zone, "price": "21790.25"},
            "stop": {"placement": "below 21765 swing low", "price": 21765},
            "targets": [{"level": "21850", "description": "buy-side liquidity"}, "21900"],
            "risk_reward": "1:2.5",
            "narrative": "Sell-side sweep into a 5m FVG during the PM session.",
            "trigger_conditions": ["5m close above 21800"],
            "invalidations": ["15m close below 21765"],
            "session_label": "NY_PM",
        }
    )


def insert_transformed_event(db_path: Path, symbol: str, event_ts: datetime, **fields: Any) -> None:
    row = {
        "symbol": symbol,
        "timeframe": "5m",
        "event_ts": to_db_time(event_ts),
        "unique_event_code": "FVG_BULL_CREATED",
        "uec_description": "Bullish fair value gap created",
        "indicator_short_code": "FVG",
        "direction_code": "BULL",
        "action_code": "CREATED",
        "approx_price": 21790.5,
        "is_trade_signal": 0,
        "is_trigger_reasoner": 0,
        "extras_json": None,
        "created_ts": to_db_time(event_ts),
    }
    row.update(fields)
    _insert(db_path, "transformed_events", row)


def insert_core_event(db_path: Path, symbol: str, ingested_ts: datetime, **fields: Any) -> None:
    row = {
        "symbol": symbol,
        "timeframe": "5m",
        "indicator_name": "SMT",
        "raw_message": "NQ SMT divergence bullish",
        "queued": 0,
        "transform_attempts": 0,
        "meta_json": None,
        "ingested_ts": to_db_time(ingested_ts),
    }
    row.update(fields)
    _insert(db_path, "core_market_events", row)


def insert_candle(db_path: Path, symbol: str, timeframe: str, ts: datetime, close: float, **fields: Any) -> None:
    row = {
        "symbol": symbol,
        "timeframe": timeframe,
        "ts": to_db_time(ts),
        "open": close - 1,
        "high": close + 2,
        "low": close - 3,
        "close": close,
        "volume": 1000,
        "source": "internal",
    }
    row.update(fields)
    _insert(db_path, "ohlc_data", row)


def _insert(db_path: Path, table: str, row: dict[str, Any]) -> None:
    names = ", ".join(row)
    placeholders = ", ".join("?" for _ in row)
    with get_connection(db_path) as conn:
        conn.execute(f"INSERT INTO {table} ({names}) VALUES ({placeholders})", tuple(row.values()))
        conn.commit()


def make_trade(
    now: datetime,
    symbol: str = "NQ",
    direction: str = "LONG",
    dedupe_key: str | None = None,
    expiry_hours: int = 4,
    **fields: Any,
) -> IdentifiedTrade:
    trade = IdentifiedTrade(
        symbol=symbol,
        direction=direction,
        identified_at=now,
        expires_at=now + timedelta(hours=expiry_hours),
        dedupe_key=dedupe_key or f"{symbol}_{direction}_{now.timestamp()}",
        confidence=fields.pop("confidence", 85),
        entry_zone_type=fields.pop("entry_zone_type", "FVG_CE"),
        entry_zone=fields.pop("entry_zone", "21780-21800"),
        entry_price=fields.pop("entry_price", 21790.25),
        session_label=fields.pop("session_label", "NY_PM"),
        timeframe=fields.pop("timeframe", "5m"),
        status=fields.pop("status", TradeStatus.IDENTIFIED),
        created_at=now,
        updated_at=now,
    )
    for key, value in fields.items():
        setattr(trade, key, value)
    return trade


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "trade_finder_test.sqlite3"
    initialize_database(path)
    return path


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(ny(2024, 1, 1, 14, 0))

