from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import time
from typing import Any, Callable, TypeVar
import uuid

from loguru import logger
from pydantic import BaseModel, ValidationError
import requests

from .errors import AIClientError, AIRequestValidationError, AIResponseParsingError
from .settings import settings

NO_TEXT_CONTENT = "Response received but no text content available"
NO_OUTPUT = "Response received but no output available"

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class AIRequest:
    input: str
    system_instructions: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    previous_response_id: str | None = None
    store: bool | None = None
    request_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class AIResponse:
    id: str | None
    request_id: str | None
    model: str | None
    output: str
    status: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    processing_time_ms: int = 0
    previous_response_id: str | None = None
    created_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_successful(self) -> bool:
        return self.status == "completed" and bool(self.output and self.output.strip())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "model": self.model,
            "output": self.output,
            "status": self.status,
            "usage": {
                "input_tokens": self.usage.input_tokens,
                "output_tokens": self.usage.output_tokens,
                "total_tokens": self.usage.total_tokens,
            },
            "processing_time_ms": self.processing_time_ms,
            "previous_response_id": self.previous_response_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


def extract_output_text(payload: dict[str, Any]) -> str:
    """Join every ``output_text`` segment of every message item in a Responses payload."""
    items = payload.get("output") or []
    if not items:
        return NO_OUTPUT
    chunks: list[str] = []
    for item in items:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for part in item.get("content") or []:
            if isinstance(part, dict) and part.get("type") == "output_text" and part.get("text"):
                chunks.append(str(part["text"]))
    text = "\n".join(chunks).strip()
    return text or NO_TEXT_CONTENT


class OpenAIClient:
    def __init__(
        self,
        session: requests.Session | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_seconds: int | None = None,
        max_retries: int | None = None,
        retry_base_delay_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session or requests.Session()
        self.api_key = settings.openai_api_key if api_key is None else api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.openai_model
        self.timeout_seconds = timeout_seconds or settings.openai_timeout_seconds
        self.max_retries = settings.openai_max_retries if max_retries is None else max_retries
        self.retry_base_delay_seconds = (
            settings.openai_retry_base_delay_seconds if retry_base_delay_seconds is None else retry_base_delay_seconds
        )
        self._sleep = sleep

    def is_configured(self) -> bool:
        return bool(self.api_key.strip())

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def send_reasoning_request(self, request: AIRequest) -> AIResponse:
        request_id = self._validate(request)
        body = self._build_body(request)
        start = time.perf_counter()
        payload = self._post(body, request_id)
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        response = self._to_response(payload, request, request_id, elapsed_ms)
        if settings.openai_logging_enabled:
            logger.info(
                "AI response {} for request {}: status={} tokens={} in {}ms",
                response.id,
                request_id,
                response.status,
                response.usage.total_tokens,
                elapsed_ms,
            )
        return response

    def send_structured_request(
        self,
        request: AIRequest,
        schema_model: type[ModelT],
        schema_name: str | None = None,
    ) -> ModelT:
        request_id = self._validate(request)
        text_format = {
            "format": {
                "type": "json_schema",
                "name": schema_name or schema_model.__name__,
                "schema": schema_model.model_json_schema(),
                "strict": False,
            }
        }
        body = self._build_body(request, text_format)
        start = time.perf_counter()
        payload = self._post(body, request_id)
        response = self._to_response(payload, request, request_id, int((time.perf_counter() - start) * 1000))
        if response.status == "failed":
            raise AIClientError(
                response.error_message or "Structured request failed",
                error_code=response.error_code,
                request_id=request_id,
            )
        try:
            return schema_model.model_validate_json(response.output)
        except ValidationError as exc:
            raise AIResponseParsingError(
                f"Could not map structured output to {schema_model.__name__}: {exc}",
                raw_response=response.output,
                request_id=request_id,
            ) from exc

    def _validate(self, request: AIRequest) -> str:
        request_id = request.request_id or str(uuid.uuid4())
        if not request.input or not request.input.strip():
            raise AIRequestValidationError("Input text must not be empty", request_id=request_id)
        if not self.is_configured():
            raise AIRequestValidationError("OpenAI API key is not configured", request_id=request_id)
        return request_id

    def _build_body(self, request: AIRequest, text_format: dict | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model or self.model,
            "input": request.input,
        }
        if request.system_instructions:
            body["instructions"] = request.system_instructions
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens:
            body["max_output_tokens"] = request.max_tokens
        if request.previous_response_id:
            body["previous_response_id"] = request.previous_response_id
        if request.store is not None:
            body["store"] = request.store
        if request.metadata:
            body["metadata"] = {str(key): str(value) for key, value in request.metadata.items()}
        if text_format:
            body["text"] = text_format
        return body

    def _post(self, body: dict[str, Any], request_id: str) -> dict[str, Any]:
        attempt = 0
        while True:
            try:
                return self._post_once(body, request_id)
            except AIClientError as exc:
                if not exc.retryable or attempt >= self.max_retries:
                    raise
                delay = self.retry_base_delay_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "Retryable AI error for {} ({}), attempt {}/{} in {:.1f}s",
                    request_id,
                    exc.message,
                    attempt,
                    self.max_retries,
                    delay,
                )
                self._sleep(delay)

    def _post_once(self, body: dict[str, Any], request_id: str) -> dict[str, Any]:
        try:
            response = self.session.post(
                f"{self.base_url}/responses",
                headers=self._headers(),
                json=body,
                timeout=self.timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise AIClientError(
                f"Transport failure calling reasoning service: {exc}",
                error_code="TRANSPORT_ERROR",
                request_id=request_id,
                retryable=True,
            ) from exc
        except requests.RequestException as exc:
            raise AIClientError(f"Request to reasoning service failed: {exc}", request_id=request_id) from exc

        if response.status_code >= 400:
            message, code = _error_details(response)
            raise AIClientError.from_status(response.status_code, message, code, request_id)

        try:
            payload = response.json()
        except ValueError as exc:
            raise AIResponseParsingError(
                "Reasoning service returned a non-JSON body",
                raw_response=response.text,
                request_id=request_id,
            ) from exc
        if not isinstance(payload, dict):
            raise AIResponseParsingError(
                "Reasoning service returned an unexpected body",
                raw_response=response.text,
                request_id=request_id,
            )
        return payload

    def _to_response(
        self,
        payload: dict[str, Any],
        request: AIRequest,
        request_id: str,
        elapsed_ms: int,
    ) -> AIResponse:
        usage = payload.get("usage") or {}
        created = payload.get("created_at")
        response = AIResponse(
            id=payload.get("id"),
            request_id=request_id,
            model=payload.get("model"),
            output=extract_output_text(payload),
            status=str(payload.get("status") or "completed"),
            usage=TokenUsage(
                input_tokens=int(usage.get("input_tokens") or 0),
                output_tokens=int(usage.get("output_tokens") or 0),
                total_tokens=int(usage.get("total_tokens") or 0),
            ),
            processing_time_ms=elapsed_ms,
            previous_response_id=payload.get("previous_response_id") or request.previous_response_id,
            created_at=datetime.fromtimestamp(created, tz=timezone.utc) if isinstance(created, (int, float)) else None,
            metadata=dict(request.metadata),
        )
        error = payload.get("error")
        if error:
            response.status = "failed"
            if isinstance(error, dict):
                response.error_code = error.get("code")
                response.error_message = error.get("message")
            else:
                response.error_message = str(error)
            logger.warning("AI response {} reported error: {}", response.id, response.error_message)
        return response


def _error_details(response: requests.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:500]}", None
    error = body.get("error") if isinstance(body, dict) else body
    if not error:
        return f"HTTP {response.status_code}", None
    if isinstance(error, dict):
        return str(error.get("message") or f"HTTP {response.status_code}"), error.get("code") or error.get("type")
    return str(error), None
