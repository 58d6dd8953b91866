from __future__ import annotations

import json
import math
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator


def _lenient_price(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(str(value).replace(",", ""))
    except ValueError:
        return None


LenientPrice = Annotated[float | None, BeforeValidator(_lenient_price)]


def _lenient_confidence(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip().rstrip("%").strip())
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return max(0, min(100, int(round(number))))


LenientConfidence = Annotated[int | None, BeforeValidator(_lenient_confidence)]


class SignalEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    zone_type: str | None = None
    zone: str | None = None
    price: LenientPrice = None
    method: str | None = None


class SignalStop(BaseModel):
    model_config = ConfigDict(extra="ignore")

    placement: str | None = None
    price: LenientPrice = None
    reasoning: str | None = None


class SignalTarget(BaseModel):
    model_config = ConfigDict(extra="ignore")

    level: str | None = None
    price: LenientPrice = None
    description: str | None = None

    @model_validator(mode="before")
    @classmethod
    def from_plain_level(cls, data: Any) -> Any:
        if isinstance(data, (str, int, float)):
            return {"level": str(data)}
        return data


class TradeSignalResponse(BaseModel):
    """Shape the reasoning model is asked to answer with."""

    model_config = ConfigDict(extra="ignore")

    status: str
    direction: str | None = None
    symbol: str | None = None
    timeframe: str | None = None
    confidence: LenientConfidence = None
    entry: SignalEntry | None = None
    stop: SignalStop | None = None
    targets: list[SignalTarget] = Field(default_factory=list)
    risk_reward: str | None = None
    narrative: str | None = None
    trigger_conditions: list[str] = Field(default_factory=list)
    invalidations: list[str] = Field(default_factory=list)
    session_label: str | None = None
    analysis_timestamp: str | None = None
    notes: str | None = None


class PayloadMeta(BaseModel):
    symbol: str
    date: str
    now_ts: str
    session_label: str
    run_context: str = "SCHEDULED_TRADE_FINDER"
    requested_timeframes: list[str] = Field(default_factory=list)


class EventInfo(BaseModel):
    ts: str
    indicator: str | None = None
    indicator_short_code: str | None = None
    category: str | None = None
    direction: str | None = None
    tf: str | None = None
    price: str | None = None
    details: str | None = None
    action_code: str | None = None
    uec: str | None = None
    is_trigger_reasoner: bool | None = None


class CandleInfo(BaseModel):
    ts: str
    open: str | None = None
    high: str | None = None
    low: str | None = None
    close: str | None = None
    volume: int | None = None


class TradeFinderPayload(BaseModel):
    meta: PayloadMeta
    analysis_profile: str
    task: str
    event_stream: list[EventInfo] = Field(default_factory=list)
    ohlc_context: dict[str, list[CandleInfo]] = Field(default_factory=dict)
    daily_context: dict[str, Any] | None = None
    key_levels: list[dict[str, Any]] | None = None
    kb_snippets: dict[str, str] | None = None

    def to_json(self) -> str:
        return json.dumps(self.model_dump(exclude_none=True), indent=2)


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()
