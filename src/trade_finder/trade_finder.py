from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from loguru import logger
from pydantic import ValidationError

from .alerts import AlertDispatcher
from .datasources import DataSourceConfig, DataSourceRegistry, DataSourceType
from .errors import DuplicateTradeError
from .market_time import (
    dedupe_key,
    direction_code,
    indicator_category,
    session_label,
    timeframe_minutes,
    to_reference,
)
from .models import TRADE_SIGNAL_IDENTIFIED, IdentifiedTrade
from .openai_client import AIRequest, AIResponse, OpenAIClient
from .operation_log import OperationContext, OperationLogService
from .prompts import load_system_prompt
from .settings import settings
from .state import FinderState, finder_state
from .trade_signal import (
    CandleInfo,
    EventInfo,
    PayloadMeta,
    TradeFinderPayload,
    TradeSignalResponse,
    strip_code_fences,
)
from .trade_store import TradeRepository

REQUESTED_TIMEFRAMES = ["5m", "15m", "1h", "4h"]
RUN_CONTEXT = "SCHEDULED_TRADE_FINDER"
ANALYSIS_TASK = (
    "Analyze recent market events and identify high-confluence trade setup with entry, stop, and targets."
)
VALID_DIRECTIONS = {"LONG", "SHORT"}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_trade_signal(text: str | None) -> TradeSignalResponse | None:
    """Decode the model's answer, tolerating a markdown fence around the JSON."""
    if not text:
        return None
    try:
        return TradeSignalResponse.model_validate_json(strip_code_fences(text))
    except ValidationError as exc:
        logger.error("Could not parse AI trade signal ({} errors). Raw output: {}", exc.error_count(), text)
        return None


def _status_code(status: str) -> str:
    # "trade identified", "Trade-Identified" and "TRADE_IDENTIFIED" are the same answer.
    return "_".join(status.replace("-", " ").upper().split())


@dataclass
class SymbolOutcome:
    symbol: str
    result: str
    trade_id: int | None = None
    dedupe_key: str | None = None
    alert_type: str | None = None
    confidence: int | None = None
    reason: str | None = None


@dataclass
class CycleReport:
    started_at: datetime
    operation_id: str | None = None
    finished_at: datetime | None = None
    outcomes: list[SymbolOutcome] = field(default_factory=list)

    @property
    def trades_identified(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.result == "IDENTIFIED")

    @property
    def errors(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.result == "ERROR")

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "symbols_processed": len(self.outcomes),
            "trades_identified": self.trades_identified,
            "errors": self.errors,
            "outcomes": [asdict(outcome) for outcome in self.outcomes],
        }


class TradeFinderService:
    """Per-symbol pipeline: payload, AI call, parse, dedupe, persist, alert.

    Symbols are processed one after another. Any failure inside one symbol is
    logged and recorded as an ``ERROR`` outcome; the next symbol still runs.
    """

    def __init__(
        self,
        registry: DataSourceRegistry,
        ai_client: OpenAIClient,
        repository: TradeRepository,
        dispatcher: AlertDispatcher,
        operation_log: OperationLogService | None = None,
        clock: Callable[[], datetime] = _utc_now,
        state: FinderState | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.registry = registry
        self.ai_client = ai_client
        self.repository = repository
        self.dispatcher = dispatcher
        self.operation_log = operation_log or OperationLogService(repository.db_path)
        self.clock = clock
        self.state = state or finder_state
        self.system_prompt = system_prompt or load_system_prompt()

        self.enabled = settings.trade_finder_enabled
        self.symbols = settings.symbols
        self.lookback_minutes = settings.event_lookback_minutes
        self.candle_count = settings.ohlc_candle_count
        self.candle_lookback_minutes = settings.candle_lookback_minutes
        self.expiry_hours = settings.trade_expiry_hours
        self.analysis_profile = settings.analysis_profile

    def find_trades(
        self,
        symbols: list[str] | None = None,
        ctx: OperationContext | None = None,
    ) -> CycleReport:
        report = CycleReport(started_at=self.clock())
        if not self.enabled:
            logger.info("Trade finder is disabled, skipping cycle")
            report.finished_at = self.clock()
            return report

        ctx = ctx or OperationContext(source="scheduler")
        targets = [item.strip().upper() for item in (symbols or self.symbols) if item.strip()]
        report.operation_id = self.operation_log.start_or_reuse(
            ctx,
            "TRADE_FINDER_CYCLE",
            f"Trade finder cycle for {len(targets)} symbols",
            source=ctx.source,
            metadata={"symbols": targets, "profile": self.analysis_profile},
        )
        self.state.mark_start()

        with logger.contextualize(operation_id=report.operation_id):
            logger.info("Trade finder cycle started for {}", ", ".join(targets))
            try:
                for symbol in targets:
                    report.outcomes.append(self._process_symbol_safely(symbol, ctx))
            except Exception as exc:
                logger.exception("Trade finder cycle failed: {}", exc)
                self.operation_log.complete_failure(report.operation_id, exc)
                report.finished_at = self.clock()
                self.state.mark_finish(report.to_dict(), failed=True)
                raise

            report.finished_at = self.clock()
            summary = report.to_dict()
            self.operation_log.complete_success(report.operation_id, summary)
            self.state.mark_finish(summary, failed=report.errors == len(targets) and bool(targets))
            logger.info(
                "Trade finder cycle finished: {} symbols, {} trades, {} errors",
                len(report.outcomes),
                report.trades_identified,
                report.errors,
            )
        return report

    def _process_symbol_safely(self, symbol: str, ctx: OperationContext) -> SymbolOutcome:
        try:
            outcome = self.process_symbol(symbol)
        except Exception as exc:
            logger.exception("Trade finder failed for {}: {}", symbol, exc)
            outcome = SymbolOutcome(symbol=symbol, result="ERROR", reason=str(exc))
            self.operation_log.add_event(ctx.operation_id, "ERROR", f"{symbol} failed: {exc}")
            return outcome
        self.operation_log.add_event(ctx.operation_id, "INFO", f"{symbol}: {outcome.result}", asdict(outcome))
        return outcome

    def process_symbol(self, symbol: str) -> SymbolOutcome:
        now = self.clock()
        payload = self.build_payload(symbol, now)
        response = self.call_ai(payload, now)
        if response.status == "failed":
            return SymbolOutcome(symbol=symbol, result="NO_TRADE", reason=response.error_message or "AI call failed")

        signal = parse_trade_signal(response.output)
        if signal is None:
            return SymbolOutcome(symbol=symbol, result="NO_TRADE", reason="unparseable AI response")
        if _status_code(signal.status) != TRADE_SIGNAL_IDENTIFIED:
            logger.info("No setup for {}: {}", symbol, signal.status)
            return SymbolOutcome(symbol=symbol, result="NO_TRADE", reason=signal.status)

        direction = (signal.direction or "").strip().upper()
        if direction not in VALID_DIRECTIONS:
            logger.warning("AI signalled a trade for {} without a usable direction: {}", symbol, signal.direction)
            return SymbolOutcome(symbol=symbol, result="NO_TRADE", reason=f"invalid direction {signal.direction!r}")

        zone = signal.entry.zone if signal.entry else None
        key = dedupe_key(symbol, direction, zone, now)
        if self.repository.exists_by_dedupe_key(key):
            logger.info("Duplicate setup {} already recorded, skipping", key)
            return SymbolOutcome(symbol=symbol, result="DUPLICATE", dedupe_key=key, confidence=signal.confidence)

        trade = self._build_trade(symbol, direction, key, signal, response, now)
        try:
            trade = self.repository.insert(trade)
        except DuplicateTradeError:
            logger.info("Setup {} was recorded by an overlapping run, skipping", key)
            return SymbolOutcome(symbol=symbol, result="DUPLICATE", dedupe_key=key, confidence=signal.confidence)

        logger.info(
            "Trade identified: {} {} zone={} confidence={} id={}",
            symbol,
            direction,
            zone,
            trade.confidence,
            trade.id,
        )
        trade = self.dispatcher.dispatch(trade, now)
        return SymbolOutcome(
            symbol=symbol,
            result="IDENTIFIED",
            trade_id=trade.id,
            dedupe_key=key,
            alert_type=trade.alert_type.value if trade.alert_type else None,
            confidence=trade.confidence,
        )

    def build_payload(self, symbol: str, now: datetime) -> TradeFinderPayload:
        cutoff = now - timedelta(minutes=self.lookback_minutes)
        events = self.registry.get(DataSourceType.TRANSFORMED_EVENT).fetch(
            symbol,
            None,
            DataSourceConfig(DataSourceType.TRANSFORMED_EVENT, from_time=cutoff, to_time=now),
        )
        if not events.success:
            logger.warning("No event data for {}: {}", symbol, events.error_message)

        ohlc_source = self.registry.get(DataSourceType.OHLC)
        ohlc_context: dict[str, list[CandleInfo]] = {}
        for timeframe in REQUESTED_TIMEFRAMES:
            window = self.candle_lookback_minutes or self.candle_count * timeframe_minutes(timeframe)
            candles = ohlc_source.fetch(
                symbol,
                timeframe,
                DataSourceConfig(DataSourceType.OHLC, from_time=now - timedelta(minutes=window), to_time=now),
            )
            if not candles.success:
                logger.warning("No {} candles for {}: {}", timeframe, symbol, candles.error_message)
                ohlc_context[timeframe] = []
                continue
            ohlc_context[timeframe] = [_candle_info(record) for record in candles.data[-self.candle_count:]]

        logger.debug(
            "Payload for {}: {} events, candles {}",
            symbol,
            events.record_count,
            {tf: len(items) for tf, items in ohlc_context.items()},
        )
        return TradeFinderPayload(
            meta=PayloadMeta(
                symbol=symbol,
                date=to_reference(now).date().isoformat(),
                now_ts=now.astimezone(timezone.utc).isoformat(),
                session_label=session_label(now),
                run_context=RUN_CONTEXT,
                requested_timeframes=list(REQUESTED_TIMEFRAMES),
            ),
            analysis_profile=self.analysis_profile,
            task=ANALYSIS_TASK,
            event_stream=[_event_info(record) for record in events.data] if events.success else [],
            ohlc_context=ohlc_context,
        )

    def call_ai(self, payload: TradeFinderPayload, now: datetime) -> AIResponse:
        symbol = payload.meta.symbol
        request = AIRequest(
            input=payload.to_json(),
            system_instructions=self.system_prompt,
            temperature=settings.openai_temperature,
            max_tokens=settings.openai_max_output_tokens,
            store=settings.openai_store_responses,
            request_id=f"TRADE_FINDER_{symbol}_{int(now.timestamp() * 1000)}",
            metadata={"symbol": symbol, "run_context": RUN_CONTEXT, "profile": self.analysis_profile},
        )
        logger.debug("Calling AI for {} ({})", symbol, request.request_id)
        return self.ai_client.send_reasoning_request(request)

    def _build_trade(
        self,
        symbol: str,
        direction: str,
        key: str,
        signal: TradeSignalResponse,
        response: AIResponse,
        now: datetime,
    ) -> IdentifiedTrade:
        entry = signal.entry
        return IdentifiedTrade(
            symbol=symbol,
            direction=direction,
            identified_at=now,
            expires_at=now + timedelta(hours=self.expiry_hours),
            dedupe_key=key,
            confidence=signal.confidence,
            entry_zone_type=entry.zone_type if entry else None,
            entry_zone=entry.zone if entry else None,
            entry_price=entry.price if entry else None,
            stop_placement=signal.stop.placement if signal.stop else None,
            targets=[target.level for target in signal.targets if target.level],
            rr_hint=signal.risk_reward,
            narrative=signal.narrative,
            trigger_conditions=list(signal.trigger_conditions),
            invalidations=list(signal.invalidations),
            session_label=signal.session_label or session_label(now),
            timeframe=signal.timeframe,
            created_at=now,
            updated_at=now,
            ai_request_id=response.request_id,
            ai_full_response=response.output,
        )


def _event_info(record: dict[str, Any]) -> EventInfo:
    code = record.get("indicator_short_code")
    return EventInfo(
        ts=record["event_ts"],
        indicator=code,
        indicator_short_code=code,
        category=indicator_category(code),
        direction=direction_code(record.get("direction_code")),
        tf=record.get("timeframe"),
        price=record.get("approx_price"),
        details=record.get("uec_description"),
        action_code=record.get("action_code"),
        uec=record.get("unique_event_code"),
        is_trigger_reasoner=record.get("is_trigger_reasoner"),
    )


def _candle_info(record: dict[str, Any]) -> CandleInfo:
    def text(value: Any) -> str | None:
        return None if value is None else str(value)

    return CandleInfo(
        ts=record["time"],
        open=text(record.get("open")),
        high=text(record.get("high")),
        low=text(record.get("low")),
        close=text(record.get("close")),
        volume=record.get("volume"),
    )
