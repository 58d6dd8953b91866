from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
import traceback
from typing import Any
import uuid

from loguru import logger

from .db import dumps, from_db_time, get_connection, loads, to_db_time

MAX_STACK_CHARS = 12000


class OperationStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class OperationContext:
    """Correlation handle for one cycle or request.

    Passed down the call chain explicitly; nested calls that receive a context
    with ``operation_id`` set append to the same audit record instead of
    opening a new one.
    """

    operation_id: str | None = None
    source: str | None = None


class OperationLogService:
    """Append-only audit trail. Never raises into the caller."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path

    def start_or_reuse(
        self,
        ctx: OperationContext,
        operation_type: str,
        title: str,
        source: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        if ctx.operation_id:
            self.add_event(ctx.operation_id, "INFO", f"Reusing operation for {title}", metadata)
            return ctx.operation_id

        operation_id = str(uuid.uuid4())
        ctx.operation_id = operation_id
        ctx.source = ctx.source or source
        try:
            with get_connection(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO operation_logs (operation_id, operation_type, title, source, status, metadata_json, started_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        operation_id,
                        operation_type,
                        title,
                        ctx.source,
                        OperationStatus.IN_PROGRESS.value,
                        dumps(metadata or {}),
                        to_db_time(datetime.now(timezone.utc)),
                    ),
                )
                conn.commit()
        except Exception as exc:
            logger.debug("Could not record operation start {}: {}", operation_id, exc)
        return operation_id

    def add_event(
        self,
        operation_id: str | None,
        level: str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        if not operation_id:
            return
        try:
            with get_connection(self.db_path) as conn:
                conn.execute(
                    "INSERT INTO operation_events (operation_id, level, message, data_json, created_at) VALUES (?, ?, ?, ?, ?)",
                    (operation_id, level.upper(), message, dumps(data), to_db_time(datetime.now(timezone.utc))),
                )
                conn.commit()
        except Exception as exc:
            logger.debug("Could not record operation event for {}: {}", operation_id, exc)

    def complete_success(self, operation_id: str | None, result: dict[str, Any] | None = None) -> None:
        self._complete(operation_id, OperationStatus.SUCCESS, result=result)

    def complete_failure(self, operation_id: str | None, error: BaseException) -> None:
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        self._complete(
            operation_id,
            OperationStatus.FAILED,
            error_message=str(error),
            stack_trace=stack[:MAX_STACK_CHARS],
        )

    def get_log(self, operation_id: str) -> dict[str, Any] | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM operation_logs WHERE operation_id = ?", (operation_id,)).fetchone()
            if row is None:
                return None
            events = conn.execute(
                "SELECT level, message, data_json, created_at FROM operation_events WHERE operation_id = ? ORDER BY id ASC",
                (operation_id,),
            ).fetchall()
        return {
            "operation_id": row["operation_id"],
            "operation_type": row["operation_type"],
            "title": row["title"],
            "source": row["source"],
            "status": row["status"],
            "metadata": loads(row["metadata_json"], {}),
            "error_message": row["error_message"],
            "stack_trace": row["stack_trace"],
            "result": loads(row["result_json"]),
            "started_at": row["started_at"],
            "ended_at": row["ended_at"],
            "duration_ms": row["duration_ms"],
            "events": [
                {
                    "level": event["level"],
                    "message": event["message"],
                    "data": loads(event["data_json"]),
                    "created_at": event["created_at"],
                }
                for event in events
            ],
        }

    def _complete(
        self,
        operation_id: str | None,
        status: OperationStatus,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
        stack_trace: str | None = None,
    ) -> None:
        if not operation_id:
            return
        ended = datetime.now(timezone.utc)
        try:
            with get_connection(self.db_path) as conn:
                row = conn.execute(
                    "SELECT started_at FROM operation_logs WHERE operation_id = ?", (operation_id,)
                ).fetchone()
                started = from_db_time(row["started_at"]) if row else None
                duration_ms = int((ended - started).total_seconds() * 1000) if started else None
                conn.execute(
                    """
                    UPDATE operation_logs
                    SET status = ?, result_json = ?, error_message = ?, stack_trace = ?, ended_at = ?, duration_ms = ?
                    WHERE operation_id = ?
                    """,
                    (
                        status.value,
                        dumps(result),
                        error_message,
                        stack_trace,
                        to_db_time(ended),
                        duration_ms,
                        operation_id,
                    ),
                )
                conn.commit()
        except Exception as exc:
            logger.debug("Could not complete operation {}: {}", operation_id, exc)
