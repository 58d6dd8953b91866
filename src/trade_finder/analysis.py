from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any, Callable, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .openai_client import AIRequest, OpenAIClient
from .operation_log import OperationContext, OperationLogService
from .trade_signal import LenientConfidence, LenientPrice, TradeSignalResponse

TRADE_ANALYSIS_INSTRUCTIONS = (
    "You are an expert trading AI using Smart Money Concepts. "
    "Analyze the provided market data and return a structured JSON response with trade signals. "
    "Include: status, direction, confidence, entry zones, stops, targets, and narrative explanation."
)
ANALYSIS_MAX_TOKENS = 4000
ANALYSIS_TEMPERATURE = 0.7


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MarketAnalysis(BaseModel):
    model_config = ConfigDict(extra="ignore")

    symbol: str
    timeframe: str
    trend: str = Field(description="bullish, bearish, neutral or sideways")
    trend_strength: LenientConfidence = None
    sentiment: str | None = Field(default=None, description="fear, greed or neutral")
    volatility: str = Field(description="low, medium or high")
    support_levels: list[float] = Field(default_factory=list)
    resistance_levels: list[float] = Field(default_factory=list)
    analysis: str | None = None
    key_observations: list[str] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    opportunities: list[str] = Field(default_factory=list)
    recommendation: str | None = Field(default=None, description="buy, sell, hold or wait")
    confidence: LenientConfidence = None


class RiskAssessment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    risk_level: str = Field(description="very_low, low, medium, high or very_high")
    risk_score: LenientConfidence = None
    position_size_percent: LenientPrice = None
    max_loss_percent: LenientPrice = None
    win_probability: LenientConfidence = None
    risk_reward_ratio: LenientPrice = None
    risk_factors: list[str] = Field(default_factory=list)
    mitigation_strategies: list[str] = Field(default_factory=list)
    market_conditions: list[str] = Field(default_factory=list)
    narrative: str | None = None
    recommendation: str = Field(description="yes, no or maybe")
    notes: str | None = None


ANALYSIS_SCHEMAS: dict[str, type[BaseModel]] = {
    "trade_signal": TradeSignalResponse,
    "market_analysis": MarketAnalysis,
    "risk_assessment": RiskAssessment,
}


class AnalyzeTradeRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    symbol: str = Field(min_length=1)
    timeframe: str | None = None
    market_data: dict[str, Any] = Field(default_factory=dict)
    indicators: list[str] = Field(default_factory=list)


class StructuredAnalysisRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    analysis_type: Literal["trade_signal", "market_analysis", "risk_assessment"]
    input: str = Field(min_length=1)
    system_instructions: str | None = None
    max_tokens: int | None = Field(default=None, ge=64, le=128000)
    temperature: float | None = Field(default=None, ge=0, le=2)


class StructuredAnalyzer:
    """One-shot analyses whose answers are decoded against a fixed schema."""

    def __init__(
        self,
        ai_client: OpenAIClient,
        operation_log: OperationLogService | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.ai_client = ai_client
        self.operation_log = operation_log or OperationLogService()
        self.clock = clock

    def analyze_trade(self, request: AnalyzeTradeRequest, ctx: OperationContext | None = None) -> TradeSignalResponse:
        symbol = request.symbol.strip().upper()
        ai_request = AIRequest(
            input=json.dumps(request.model_dump() | {"symbol": symbol}, default=str),
            system_instructions=TRADE_ANALYSIS_INSTRUCTIONS,
            temperature=ANALYSIS_TEMPERATURE,
            max_tokens=ANALYSIS_MAX_TOKENS,
            request_id=f"TRADE_ANALYSIS_{int(self.clock().timestamp() * 1000)}",
            metadata={"symbol": symbol, "timeframe": request.timeframe or ""},
        )
        return self._run(
            ctx or OperationContext(source="api"),
            "AI_ANALYZE_TRADE",
            f"AI analyze trade: {symbol}",
            {"symbol": symbol, "timeframe": request.timeframe},
            ai_request,
            TradeSignalResponse,
        )

    def analyze(self, request: StructuredAnalysisRequest, ctx: OperationContext | None = None) -> BaseModel:
        ai_request = AIRequest(
            input=request.input,
            system_instructions=request.system_instructions,
            temperature=ANALYSIS_TEMPERATURE if request.temperature is None else request.temperature,
            max_tokens=request.max_tokens or ANALYSIS_MAX_TOKENS,
            metadata={"analysis_type": request.analysis_type},
        )
        return self._run(
            ctx or OperationContext(source="api"),
            "AI_ANALYZE",
            f"AI structured analysis: {request.analysis_type}",
            {"analysis_type": request.analysis_type},
            ai_request,
            ANALYSIS_SCHEMAS[request.analysis_type],
        )

    def _run(
        self,
        ctx: OperationContext,
        operation_type: str,
        title: str,
        metadata: dict[str, Any],
        ai_request: AIRequest,
        schema: type[BaseModel],
    ) -> BaseModel:
        operation_id = self.operation_log.start_or_reuse(ctx, operation_type, title, metadata=metadata)
        try:
            result = self.ai_client.send_structured_request(ai_request, schema)
        except Exception as exc:
            logger.error("{} failed: {}", title, exc)
            self.operation_log.complete_failure(operation_id, exc)
            raise
        self.operation_log.complete_success(operation_id, {"schema": schema.__name__})
        return result
