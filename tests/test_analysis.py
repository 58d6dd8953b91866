import json

import pytest

from conftest import FakeResponse, FakeSession, responses_payload, trade_signal_json
from trade_finder.analysis import (
    AnalyzeTradeRequest,
    MarketAnalysis,
    StructuredAnalysisRequest,
    StructuredAnalyzer,
)
from trade_finder.errors import AIRequestValidationError
from trade_finder.openai_client import OpenAIClient
from trade_finder.operation_log import OperationContext, OperationLogService


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def analyzer(db_path, session, clock):
    client = OpenAIClient(session=session, api_key="test-key", max_retries=0, sleep=lambda _: None)
    return StructuredAnalyzer(client, OperationLogService(db_path), clock=clock)


def test_trade_analysis_request_shape(analyzer, session, clock):
    session.queue(FakeResponse(200, responses_payload(trade_signal_json(confidence="72.4%"))))
    ctx = OperationContext(source="test")

    signal = analyzer.analyze_trade(AnalyzeTradeRequest(symbol=" es ", timeframe="15m"), ctx)

    assert signal.confidence == 72
    body = session.calls[0]["json"]
    assert body["temperature"] == 0.7
    assert body["max_output_tokens"] == 4000
    assert "Smart Money Concepts" in body["instructions"]
    assert json.loads(body["input"]) == {"symbol": "ES", "timeframe": "15m", "market_data": {}, "indicators": []}
    log = analyzer.operation_log.get_log(ctx.operation_id)
    assert log["operation_type"] == "AI_ANALYZE_TRADE"
    assert log["title"] == "AI analyze trade: ES"
    assert log["result"] == {"schema": "TradeSignalResponse"}


def test_market_analysis_uses_request_overrides(analyzer, session):
    answer = {
        "symbol": "NQ",
        "timeframe": "1h",
        "trend": "bullish",
        "trend_strength": 70.6,
        "volatility": "medium",
        "support_levels": [21700, 21650.5],
        "recommendation": "buy",
    }
    session.queue(FakeResponse(200, responses_payload(json.dumps(answer))))

    result = analyzer.analyze(
        StructuredAnalysisRequest(
            analysis_type="market_analysis",
            input="NQ 1h structure",
            system_instructions="Be brief.",
            max_tokens=800,
            temperature=0.2,
        )
    )

    assert isinstance(result, MarketAnalysis)
    assert result.trend_strength == 71
    assert result.support_levels == [21700.0, 21650.5]
    body = session.calls[0]["json"]
    assert (body["instructions"], body["max_output_tokens"], body["temperature"]) == ("Be brief.", 800, 0.2)
    assert body["metadata"] == {"analysis_type": "market_analysis"}


def test_rejected_request_marks_operation_failed(analyzer, session):
    analyzer.ai_client.api_key = ""
    ctx = OperationContext()

    with pytest.raises(AIRequestValidationError):
        analyzer.analyze(StructuredAnalysisRequest(analysis_type="trade_signal", input="NQ"), ctx)

    assert session.calls == []
    assert analyzer.operation_log.get_log(ctx.operation_id)["status"] == "FAILED"
