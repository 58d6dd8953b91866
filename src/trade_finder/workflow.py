from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Callable, Literal
import uuid

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .conversations import ConversationManager
from .datasources import DataSourceConfig, DataSourceRegistry, DataSourceType
from .errors import AIClientError, AIRequestValidationError, DataSourceNotFoundError, WorkflowError
from .openai_client import AIRequest, OpenAIClient
from .operation_log import OperationContext, OperationLogService
from .prompts import WorkflowPrompt, load_workflow_prompts
from .settings import settings

ANALYST_INSTRUCTIONS = (
    "You are an expert trading analyst. Analyze the provided market data and provide actionable insights."
)
WORKFLOW_TEMPERATURE = 0.7


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowSourceConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    enabled: bool = True
    max_records: int | None = Field(default=None, ge=1)
    filter_criteria: str | None = None
    use_external_source: bool = False
    lookback_minutes: int | None = Field(default=None, ge=1)
    from_time: datetime | None = None
    to_time: datetime | None = None


class TimeFrameConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = True
    data_sources: list[WorkflowSourceConfig] = Field(default_factory=list)


class AIWorkflowRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    symbol: str = Field(min_length=1)
    prompt_type: Literal["PREDEFINED", "CUSTOM"] = "PREDEFINED"
    selected_predefined_prompt: str | None = None
    custom_prompt_text: str | None = None
    additional_context: str | None = None
    timeframe_settings: dict[str, TimeFrameConfig] = Field(default_factory=dict)
    dry_run: bool = False
    manual_dataset: Any = None
    conversation_id: str | None = None


@dataclass
class WorkflowResult:
    request_id: str
    status: str
    model: str
    output: str
    prompt: str
    response_id: str | None = None
    conversation_id: str | None = None
    total_tokens: int = 0
    processing_time_ms: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "status": self.status,
            "model": self.model,
            "output": self.output,
            "prompt": self.prompt,
            "response_id": self.response_id,
            "conversation_id": self.conversation_id,
            "total_tokens": self.total_tokens,
            "processing_time_ms": self.processing_time_ms,
            "metadata": self.metadata,
        }


class WorkflowExecutor:
    """Ad-hoc analysis: assemble a sectioned prompt from chosen sources and run it once."""

    def __init__(
        self,
        registry: DataSourceRegistry,
        ai_client: OpenAIClient,
        conversations: ConversationManager | None = None,
        operation_log: OperationLogService | None = None,
        prompts: dict[str, WorkflowPrompt] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.registry = registry
        self.ai_client = ai_client
        self.conversations = conversations
        self.operation_log = operation_log or OperationLogService()
        self.prompts = load_workflow_prompts() if prompts is None else prompts
        self.clock = clock

    def available_prompts(self) -> dict[str, str]:
        return {key: prompt.name for key, prompt in self.prompts.items()}

    def build_prompt(self, request: AIWorkflowRequest, now: datetime | None = None) -> str:
        now = now or self.clock()
        symbol = request.symbol.strip().upper()
        parts = ["### SYSTEM INSTRUCTIONS ###", self._instructions(request)]

        if request.additional_context and request.additional_context.strip():
            parts.append("\n### USER PROVIDED CONTEXT ###\n")
            parts.append(request.additional_context.strip())

        if request.manual_dataset is not None:
            parts.append("\n### MANUAL INPUT DATA ###\n")
            parts.append(json.dumps(request.manual_dataset, indent=2, default=str))

        parts.append(f"\n### MARKET DATA FOR ANALYSIS ({symbol}) ###\n")
        for timeframe, tf_config in request.timeframe_settings.items():
            if not tf_config.enabled:
                continue
            parts.append(f"\n--- TIMEFRAME: {timeframe} ---\n")
            for source_config in tf_config.data_sources:
                if source_config.enabled:
                    parts.append(self._source_section(symbol, timeframe, source_config, now))

        return "\n".join(parts)

    def execute(self, request: AIWorkflowRequest, ctx: OperationContext | None = None) -> WorkflowResult:
        request_id = str(uuid.uuid4())
        symbol = request.symbol.strip().upper()
        ctx = ctx or OperationContext(source="api")
        operation_id = self.operation_log.start_or_reuse(
            ctx,
            "AI_WORKFLOW",
            f"Workflow analysis for {symbol}",
            metadata={"symbol": symbol, "prompt_type": request.prompt_type, "dry_run": request.dry_run},
        )
        try:
            result = self._execute(request, request_id, symbol)
        except WorkflowError as exc:
            logger.error("Workflow {} failed: {}", request_id, exc.message)
            self.operation_log.complete_failure(operation_id, exc)
            raise
        except Exception as exc:
            logger.exception("Workflow {} failed unexpectedly", request_id)
            self.operation_log.complete_failure(operation_id, exc)
            raise WorkflowError(f"Workflow failed: {exc}", request_id, status_code=500) from exc
        self.operation_log.complete_success(operation_id, {"request_id": request_id, "status": result.status})
        return result

    def _execute(self, request: AIWorkflowRequest, request_id: str, symbol: str) -> WorkflowResult:
        now = self.clock()
        try:
            prompt = self.build_prompt(request, now)
        except ValueError as exc:
            raise WorkflowError(str(exc), request_id, status_code=400) from exc

        if request.dry_run:
            logger.info("Workflow dry run {} for {} ({} chars)", request_id, symbol, len(prompt))
            return WorkflowResult(
                request_id=request_id,
                status="dry_run",
                model="N/A",
                output=prompt,
                prompt=prompt,
                conversation_id=request.conversation_id,
            )

        previous_response_id = None
        if request.conversation_id and self.conversations is not None:
            previous_response_id = self.conversations.get_latest_response_id(request.conversation_id)

        ai_request = AIRequest(
            input=prompt,
            system_instructions=ANALYST_INSTRUCTIONS,
            temperature=WORKFLOW_TEMPERATURE,
            max_tokens=settings.workflow_max_output_tokens,
            previous_response_id=previous_response_id,
            store=True,
            request_id=request_id,
            metadata={
                "symbol": symbol,
                "workflow_type": "market_analysis",
                "timestamp": now.isoformat(),
                "prompt_type": request.prompt_type,
            },
        )
        try:
            response = self.ai_client.send_reasoning_request(ai_request)
        except AIRequestValidationError as exc:
            raise WorkflowError(f"AI request rejected: {exc.message}", request_id, status_code=400) from exc
        except AIClientError as exc:
            raise WorkflowError(f"AI request failed: {exc.message}", request_id, status_code=502) from exc
        if response.status == "failed":
            raise WorkflowError(f"AI request failed: {response.error_message or 'unknown error'}", request_id, status_code=502)

        if request.conversation_id and self.conversations is not None:
            self.conversations.add_turn(request.conversation_id, response, request_id, f"Market analysis for {symbol}")

        return WorkflowResult(
            request_id=request_id,
            status=response.status,
            model=response.model or "unknown",
            output=response.output,
            prompt=prompt,
            response_id=response.id,
            conversation_id=request.conversation_id,
            total_tokens=response.usage.total_tokens,
            processing_time_ms=response.processing_time_ms,
            metadata=response.metadata,
        )

    def _instructions(self, request: AIWorkflowRequest) -> str:
        if request.prompt_type == "CUSTOM":
            if not request.custom_prompt_text or not request.custom_prompt_text.strip():
                raise ValueError("Custom prompt text is required for CUSTOM prompt type")
            return request.custom_prompt_text.strip()

        key = (request.selected_predefined_prompt or "").strip()
        if not key:
            raise ValueError("A predefined prompt must be selected for PREDEFINED prompt type")
        prompt = self.prompts.get(key)
        if prompt is None or not prompt.instructions:
            return f"Analyze the market data for {key} strategy."
        return prompt.instructions

    def _source_section(
        self,
        symbol: str,
        timeframe: str,
        source_config: WorkflowSourceConfig,
        now: datetime,
    ) -> str:
        try:
            source_type = DataSourceType.from_code(source_config.type)
        except ValueError as exc:
            return f"\n{source_config.type}:\nError: {exc}"
        display = source_type.display_name

        try:
            source = self.registry.get(source_type)
            result = source.fetch(symbol, timeframe, self._fetch_config(source_type, source_config, now))
        except DataSourceNotFoundError as exc:
            return f"\n{display}:\nError fetching {display}: {exc}"
        except Exception as exc:
            logger.exception("Workflow fetch of {} for {} {} failed", display, symbol, timeframe)
            return f"\n{display}:\nError fetching {display}: {exc}"

        lines = [f"\n{display}:"]
        if not result.success:
            lines.append(f"Error: {result.error_message}")
        elif not result.data:
            lines.append("No data available for this timeframe.")
        else:
            lines.append("Metadata:")
            lines.append(json.dumps(result.metadata, indent=2, default=str))
            lines.append(f"Data ({result.record_count} records):")
            lines.append(json.dumps(result.data, indent=2, default=str))
        return "\n".join(lines)

    @staticmethod
    def _fetch_config(
        source_type: DataSourceType,
        source_config: WorkflowSourceConfig,
        now: datetime,
    ) -> DataSourceConfig:
        to_time = source_config.to_time or now
        if source_config.from_time is not None:
            from_time = source_config.from_time
        else:
            minutes = source_config.lookback_minutes or settings.event_lookback_minutes
            from_time = to_time - timedelta(minutes=minutes)
        return DataSourceConfig(
            data_source_type=source_type,
            from_time=from_time,
            to_time=to_time,
            max_records=source_config.max_records,
            use_external_source=source_config.use_external_source,
            filter_criteria=source_config.filter_criteria,
        )
