"""Clock helpers for the New York trading day.

Session bands, hour buckets and timeframe lengths are all evaluated in the
exchange reference zone, never in the host's local time.
"""
from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

REFERENCE_TZ = ZoneInfo("America/New_York")

TIMEFRAME_MINUTES = {
    "1m": 1,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "60m": 60,
    "4h": 240,
    "1d": 1440,
}
DEFAULT_TIMEFRAME_MINUTES = 5


def to_reference(now: datetime) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(REFERENCE_TZ)


def session_label(now: datetime) -> str:
    hour = to_reference(now).hour
    if hour >= 18 or hour < 3:
        return "ASIA"
    if hour < 8:
        return "LONDON"
    if hour < 12:
        return "NY_AM"
    if hour < 14:
        return "NY_LUNCH"
    return "NY_PM"


def hour_bucket(now: datetime) -> str:
    return to_reference(now).strftime("%Y%m%d_%H")


def normalize_zone(zone: str | None) -> str:
    if not zone:
        return "UNKNOWN"
    return zone.replace("-", "").replace(" ", "")


def dedupe_key(symbol: str, direction: str, entry_zone: str | None, now: datetime) -> str:
    return f"{symbol}_{direction}_{normalize_zone(entry_zone)}_{hour_bucket(now)}"


def timeframe_minutes(timeframe: str | None) -> int:
    if not timeframe:
        return DEFAULT_TIMEFRAME_MINUTES
    return TIMEFRAME_MINUTES.get(timeframe.strip().lower(), DEFAULT_TIMEFRAME_MINUTES)


def indicator_category(indicator_code: str | None) -> str:
    if indicator_code is None:
        return "unknown"
    code = indicator_code.lower()
    if "cisd" in code:
        return "cisd"
    if "smt" in code:
        return "smt"
    if "fvg" in code or "imbalance" in code:
        return "fvg"
    if "sweep" in code or "liquidity" in code:
        return "sweep"
    if "rsi" in code or "macd" in code:
        return "oscillator"
    return "other"


def direction_code(raw: str | None) -> str:
    value = (raw or "").strip().upper()
    if value in {"B", "BULL", "BULLISH", "UP"}:
        return "B"
    if value in {"S", "BEAR", "BEARISH", "DOWN"}:
        return "S"
    return "N"
