from __future__ import annotations


class AIClientError(Exception):
    """Failure talking to the reasoning service."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        request_id: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.request_id = request_id
        self.retryable = retryable

    @classmethod
    def from_status(
        cls,
        status_code: int,
        message: str,
        error_code: str | None = None,
        request_id: str | None = None,
    ) -> "AIClientError":
        retryable = status_code >= 500 or status_code == 429
        return cls(message, status_code, error_code, request_id, retryable)


class AIRequestValidationError(AIClientError):
    def __init__(self, message: str, request_id: str | None = None) -> None:
        super().__init__(message, status_code=400, error_code="VALIDATION_ERROR", request_id=request_id)


class AIResponseParsingError(AIClientError):
    def __init__(self, message: str, raw_response: str | None = None, request_id: str | None = None) -> None:
        super().__init__(message, error_code="PARSING_ERROR", request_id=request_id)
        self.raw_response = raw_response


class DataSourceNotFoundError(LookupError):
    pass


class DuplicateTradeError(Exception):
    def __init__(self, dedupe_key: str) -> None:
        super().__init__(f"Trade with dedupe key {dedupe_key} already exists")
        self.dedupe_key = dedupe_key


class StaleTradeError(Exception):
    """Raised when a trade row changed since it was read."""

    def __init__(self, trade_id: int, expected_version: int) -> None:
        super().__init__(f"Trade {trade_id} was modified concurrently (expected version {expected_version})")
        self.trade_id = trade_id
        self.expected_version = expected_version


class InvalidStatusTransitionError(ValueError):
    pass


class WorkflowError(Exception):
    def __init__(self, message: str, request_id: str | None = None, status_code: int = 500) -> None:
        super().__init__(message)
        self.message = message
        self.request_id = request_id
        self.status_code = status_code


class TradeNotFoundError(LookupError):
    def __init__(self, trade_id: int) -> None:
        super().__init__(f"Trade {trade_id} not found")
        self.trade_id = trade_id


class ConversationNotFoundError(LookupError):
    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id
