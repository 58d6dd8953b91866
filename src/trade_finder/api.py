from __future__ import annotations

from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db import initialize_database
from .analysis import AnalyzeTradeRequest, StructuredAnalysisRequest
from .errors import (
    AIClientError,
    ConversationNotFoundError,
    InvalidStatusTransitionError,
    TradeNotFoundError,
    WorkflowError,
)
from .models import AlertType, TradeStatus
from .operation_log import OperationContext
from .services import FinderServices, build_services
from .settings import settings
from .state import finder_state
from .workflow import AIWorkflowRequest


class ErrorResponse(BaseModel):
    timestamp: str
    status: int
    error: str
    message: str
    path: str
    request_id: str | None = None


class TriggerPayload(BaseModel):
    symbols: list[str] | None = None


class FollowUpPayload(BaseModel):
    question: str | None = Field(default=None, max_length=4000)
    user_id: str | None = None


class TradeStatusPayload(BaseModel):
    status: str
    alert_sent: bool | None = None
    alert_type: AlertType | None = None


def _parse_status(status: str) -> TradeStatus:
    try:
        return TradeStatus(status.strip().upper())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown trade status: {status}")


def _error_response(request: Request, status_code: int, message: str, request_id: str | None = None) -> JSONResponse:
    body = ErrorResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        status=status_code,
        error=HTTPStatus(status_code).phrase,
        message=message,
        path=request.url.path,
        request_id=request_id,
    )
    return JSONResponse(status_code=status_code, content=body.model_dump())


class TradeFinderController:
    def __init__(self, services: FinderServices | None = None) -> None:
        self._services = services

    @property
    def services(self) -> FinderServices:
        if self._services is None:
            self._services = build_services()
        return self._services

    @services.setter
    def services(self, value: FinderServices) -> None:
        self._services = value

    def trigger(self, symbols: list[str] | None) -> dict[str, Any]:
        report = self.services.finder.find_trades(symbols, OperationContext(source="api"))
        return report.to_dict()

    def trades(self, symbol: str, status: str, limit: int) -> list[dict[str, Any]]:
        repository = self.services.trades
        if status:
            wanted = _parse_status(status)
            if symbol:
                items = repository.find_by_symbol_and_status(symbol, wanted)
            else:
                items = repository.find_by_status(wanted)
            items = items[:limit]
        elif symbol:
            items = repository.find_by_symbol(symbol, limit)
        else:
            items = repository.find_recent(limit)
        return [trade.to_dict() for trade in items]

    def trade(self, trade_id: int) -> dict[str, Any]:
        trade = self.services.trades.get(trade_id)
        if trade is None:
            raise TradeNotFoundError(trade_id)
        return trade.to_dict(include_raw=True)

    def update_trade_status(self, trade_id: int, payload: TradeStatusPayload) -> dict[str, Any]:
        ctx = OperationContext(source="api")
        operation_id = self.services.operation_log.start_or_reuse(
            ctx,
            "TRADE_STATUS_UPDATE",
            f"Update trade status: {trade_id}",
            metadata={"trade_id": trade_id, "new_status": payload.status},
        )
        try:
            if not payload.status.strip():
                raise HTTPException(status_code=400, detail="status is required")
            trade = self.services.trades.update_status(
                trade_id,
                _parse_status(payload.status),
                alert_sent=payload.alert_sent,
                alert_type=payload.alert_type,
            )
        except Exception as exc:
            self.services.operation_log.complete_failure(operation_id, exc)
            raise
        self.services.operation_log.complete_success(operation_id, {"trade_id": trade.id, "status": trade.status.value})
        logger.info("Trade {} moved to {}", trade.id, trade.status.value)
        return trade.to_dict()

    def statistics(self, hours: int) -> dict[str, Any]:
        return self.services.statistics.get_statistics(hours).to_dict()

    def health(self) -> dict[str, Any]:
        finder = self.services.finder
        return {
            "enabled": finder.enabled,
            "symbols": finder.symbols,
            "ai_configured": self.services.ai_client.is_configured(),
            "data_sources": self.services.registry.health_status(),
            "data_source_descriptions": self.services.registry.describe_all(),
            "last_cycle": finder_state.snapshot(),
        }

    def prompts(self) -> dict[str, str]:
        return self.services.workflow.available_prompts()

    def analyze_trade(self, payload: AnalyzeTradeRequest) -> dict[str, Any]:
        return self.services.analyzer.analyze_trade(payload, OperationContext(source="api")).model_dump()

    def analyze(self, payload: StructuredAnalysisRequest) -> dict[str, Any]:
        return self.services.analyzer.analyze(payload, OperationContext(source="api")).model_dump()

    def execute_workflow(self, payload: AIWorkflowRequest) -> dict[str, Any]:
        return self.services.workflow.execute(payload, OperationContext(source="api")).to_dict()

    def trade_conversation(self, trade_id: int, payload: FollowUpPayload) -> dict[str, Any]:
        conversations = self.services.conversations
        if payload.question and payload.question.strip():
            conversation, response = conversations.ask_about_trade(trade_id, payload.question.strip(), payload.user_id)
            return {"conversation": conversation.to_dict(), "response": response.to_dict()}

        trade = self.services.trades.get(trade_id)
        if trade is None:
            raise TradeNotFoundError(trade_id)
        conversation = conversations.get_or_create_trade_conversation(trade, payload.user_id)
        return {"conversation": conversation.to_dict(), "response": None}

    def conversation(self, conversation_id: str) -> dict[str, Any]:
        conversation = self.services.conversations.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        data = conversation.to_dict()
        data["stats"] = self.services.conversations.get_conversation_stats(conversation_id)
        return data

    def complete_conversation(self, conversation_id: str) -> dict[str, Any]:
        return self.services.conversations.complete_conversation(conversation_id).to_dict()

    def operation(self, operation_id: str) -> dict[str, Any]:
        log = self.services.operation_log.get_log(operation_id)
        if log is None:
            raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
        return log


controller = TradeFinderController()


app = FastAPI(title="Trade Finder API", version="1.0.0")


@app.on_event("startup")
def on_startup() -> None:
    initialize_database(settings.db_path)
    logger.info("Trade finder API ready on {}:{}", settings.api_host, settings.api_port)


@app.exception_handler(StarletteHTTPException)
def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(request, exc.status_code, str(exc.detail))


@app.exception_handler(TradeNotFoundError)
@app.exception_handler(ConversationNotFoundError)
def handle_not_found(request: Request, exc: LookupError) -> JSONResponse:
    return _error_response(request, 404, str(exc))


@app.exception_handler(InvalidStatusTransitionError)
def handle_invalid_transition(request: Request, exc: InvalidStatusTransitionError) -> JSONResponse:
    return _error_response(request, 409, str(exc))


@app.exception_handler(WorkflowError)
def handle_workflow_error(request: Request, exc: WorkflowError) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.message, exc.request_id)


@app.exception_handler(AIClientError)
def handle_ai_error(request: Request, exc: AIClientError) -> JSONResponse:
    logger.error("AI call failed for {}: {}", request.url.path, exc.message)
    status_code = 400 if exc.status_code == 400 else 502
    return _error_response(request, status_code, exc.message, exc.request_id)


@app.post("/api/v1/trade-finder/trigger")
def post_trigger(payload: TriggerPayload | None = None) -> dict[str, Any]:
    return controller.trigger(payload.symbols if payload else None)


@app.get("/api/v1/trade-finder/trades")
def get_trades(
    symbol: str = Query(default=""),
    status: str = Query(default=""),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[dict[str, Any]]:
    return controller.trades(symbol=symbol, status=status, limit=limit)


@app.get("/api/v1/trade-finder/trades/{trade_id}")
def get_trade(trade_id: int) -> dict[str, Any]:
    return controller.trade(trade_id)


@app.patch("/api/v1/trade-finder/trades/{trade_id}/status")
def patch_trade_status(trade_id: int, payload: TradeStatusPayload) -> dict[str, Any]:
    return controller.update_trade_status(trade_id, payload)


@app.get("/api/v1/trade-finder/statistics")
def get_statistics(hours: int = Query(default=24, ge=1, le=720)) -> dict[str, Any]:
    return controller.statistics(hours)


@app.get("/api/v1/trade-finder/health")
def get_finder_health() -> dict[str, Any]:
    return controller.health()


@app.get("/api/v1/workflow/prompts")
def get_workflow_prompts() -> dict[str, str]:
    return controller.prompts()


@app.post("/api/v1/workflow/execute")
def post_workflow_execute(payload: AIWorkflowRequest) -> dict[str, Any]:
    return controller.execute_workflow(payload)


@app.post("/api/v2/ai/analyze/trade")
def post_analyze_trade(payload: AnalyzeTradeRequest) -> dict[str, Any]:
    return controller.analyze_trade(payload)


@app.post("/api/v2/ai/analyze")
def post_analyze(payload: StructuredAnalysisRequest) -> dict[str, Any]:
    return controller.analyze(payload)


@app.post("/api/v1/conversations/trade/{trade_id}")
def post_trade_conversation(trade_id: int, payload: FollowUpPayload | None = None) -> dict[str, Any]:
    return controller.trade_conversation(trade_id, payload or FollowUpPayload())


@app.get("/api/v1/conversations/{conversation_id}")
def get_conversation(conversation_id: str) -> dict[str, Any]:
    return controller.conversation(conversation_id)


@app.post("/api/v1/conversations/{conversation_id}/complete")
def post_complete_conversation(conversation_id: str) -> dict[str, Any]:
    return controller.complete_conversation(conversation_id)


@app.get("/api/v1/operations/{operation_id}")
def get_operation(operation_id: str) -> dict[str, Any]:
    return controller.operation(operation_id)


@app.get("/healthz")
def healthz() -> JSONResponse:
    return JSONResponse({"ok": True, "time": datetime.now(timezone.utc).isoformat()})
