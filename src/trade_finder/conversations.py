from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
import sqlite3
from typing import Any, Callable
import uuid

from loguru import logger

from .db import dumps, from_db_time, get_connection, loads, to_db_time
from .errors import ConversationNotFoundError, TradeNotFoundError
from .models import (
    AIConversation,
    ConversationStatus,
    ConversationTurn,
    ConversationType,
    EntityType,
    EntryZoneType,
    IdentifiedTrade,
)
from .openai_client import AIRequest, AIResponse, OpenAIClient
from .settings import settings
from .trade_store import TradeRepository

SUMMARY_MAX_CHARS = 200

FOLLOWUP_INSTRUCTIONS = (
    "You are assisting a futures trader with a trade that was already identified. "
    "Answer questions about this setup using the trade context below. Be concise and specific.\n\n"
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def summarize(text: str | None, max_chars: int = SUMMARY_MAX_CHARS) -> str | None:
    if text is None:
        return None
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def trade_snapshot(trade: IdentifiedTrade) -> dict[str, Any]:
    """Decision fields of a trade frozen at the moment a conversation starts."""
    return {
        "trade_id": trade.id,
        "symbol": trade.symbol,
        "direction": trade.direction,
        "confidence": trade.confidence,
        "entry_zone": trade.entry_zone,
        "entry_price": trade.entry_price,
        "entry_zone_type": trade.entry_zone_type,
        "stop_placement": trade.stop_placement,
        "targets": list(trade.targets),
        "rr_hint": trade.rr_hint,
        "timeframe": trade.timeframe,
        "session_label": trade.session_label,
        "narrative": trade.narrative,
        "trigger_conditions": list(trade.trigger_conditions),
        "invalidations": list(trade.invalidations),
        "identified_at": trade.identified_at.isoformat() if trade.identified_at else None,
    }


def trade_context(trade: IdentifiedTrade) -> dict[str, Any]:
    context: dict[str, Any] = {
        "market_direction": trade.direction,
        "active_session": trade.session_label,
        "primary_timeframe": trade.timeframe,
    }
    if trade.entry_price is not None:
        context["entry_level"] = trade.entry_price
    if trade.entry_zone_type:
        context["setup_type"] = trade.entry_zone_type
        context["setup_description"] = EntryZoneType.describe(trade.entry_zone_type)
    context["ready_for_questions"] = True
    return context


def trade_tags(trade: IdentifiedTrade, high_threshold: int | None = None, medium_threshold: int | None = None) -> list[str]:
    high = settings.confidence_threshold_high if high_threshold is None else high_threshold
    medium = settings.confidence_threshold_medium if medium_threshold is None else medium_threshold
    tags = [trade.symbol.lower(), trade.direction.lower()]
    confidence = trade.confidence or 0
    if confidence >= high:
        tags.append("high-confidence")
    elif confidence >= medium:
        tags.append("medium-confidence")
    if trade.entry_zone_type:
        tags.append(trade.entry_zone_type.lower().replace("_", "-"))
    if trade.session_label:
        tags.append(trade.session_label.lower().replace("_", "-"))
    if trade.timeframe:
        tags.append("tf-" + trade.timeframe.lower())
    return tags


def _row_to_conversation(row: sqlite3.Row, turns: list[ConversationTurn]) -> AIConversation:
    return AIConversation(
        conversation_id=row["conversation_id"],
        conversation_type=ConversationType(row["conversation_type"]),
        status=ConversationStatus(row["status"]),
        created_at=from_db_time(row["created_at"]),
        last_activity_at=from_db_time(row["last_activity_at"]),
        expires_at=from_db_time(row["expires_at"]),
        symbol=row["symbol"],
        user_id=row["user_id"],
        trade_id=row["trade_id"],
        entity_type=EntityType(row["entity_type"]) if row["entity_type"] else None,
        entity_id=row["entity_id"],
        entity_snapshot=loads(row["entity_snapshot_json"], {}),
        context_data=loads(row["context_data_json"], {}),
        tags=loads(row["tags_json"], []),
        turns=turns,
    )


def _row_to_turn(row: sqlite3.Row) -> ConversationTurn:
    return ConversationTurn(
        id=int(row["id"]),
        response_id=row["response_id"],
        request_id=row["request_id"],
        user_message=row["user_message"],
        ai_response_summary=row["ai_response_summary"],
        model=row["model"],
        tokens_used=row["tokens_used"],
        created_at=from_db_time(row["created_at"]),
    )


class ConversationRepository:
    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path

    def insert(self, conversation: AIConversation) -> AIConversation:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO ai_conversations (
                    conversation_id, conversation_type, symbol, user_id, trade_id, entity_type, entity_id,
                    entity_snapshot_json, context_data_json, tags_json, status, created_at, last_activity_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.conversation_id,
                    conversation.conversation_type.value,
                    conversation.symbol,
                    conversation.user_id,
                    conversation.trade_id,
                    conversation.entity_type.value if conversation.entity_type else None,
                    conversation.entity_id,
                    dumps(conversation.entity_snapshot),
                    dumps(conversation.context_data),
                    dumps(conversation.tags),
                    conversation.status.value,
                    to_db_time(conversation.created_at),
                    to_db_time(conversation.last_activity_at),
                    to_db_time(conversation.expires_at),
                ),
            )
            conn.commit()
        return conversation

    def update(self, conversation: AIConversation) -> AIConversation:
        # The entity snapshot is written once at insert and never rewritten.
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE ai_conversations
                SET context_data_json = ?, tags_json = ?, status = ?, last_activity_at = ?, expires_at = ?
                WHERE conversation_id = ?
                """,
                (
                    dumps(conversation.context_data),
                    dumps(conversation.tags),
                    conversation.status.value,
                    to_db_time(conversation.last_activity_at),
                    to_db_time(conversation.expires_at),
                    conversation.conversation_id,
                ),
            )
            conn.commit()
        return conversation

    def add_turn(self, conversation_id: str, turn: ConversationTurn, last_activity_at: datetime) -> ConversationTurn:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO conversation_turns (
                    conversation_id, response_id, request_id, user_message, ai_response_summary, model, tokens_used, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    turn.response_id,
                    turn.request_id,
                    turn.user_message,
                    turn.ai_response_summary,
                    turn.model,
                    turn.tokens_used,
                    to_db_time(turn.created_at),
                ),
            )
            conn.execute(
                "UPDATE ai_conversations SET last_activity_at = ? WHERE conversation_id = ?",
                (to_db_time(last_activity_at), conversation_id),
            )
            conn.commit()
        turn.id = int(cursor.lastrowid)
        return turn

    def get(self, conversation_id: str) -> AIConversation | None:
        found = self._select("WHERE conversation_id = ?", (conversation_id,))
        return found[0] if found else None

    def find_active_for_trade(self, trade_id: int) -> AIConversation | None:
        found = self._select(
            "WHERE trade_id = ? AND status = ? ORDER BY last_activity_at DESC LIMIT 1",
            (trade_id, ConversationStatus.ACTIVE.value),
        )
        return found[0] if found else None

    def find_for_trade(self, trade_id: int) -> list[AIConversation]:
        return self._select("WHERE trade_id = ? ORDER BY created_at DESC", (trade_id,))

    def find_active_for_symbol(self, symbol: str) -> list[AIConversation]:
        return self._select(
            "WHERE symbol = ? AND status = ? ORDER BY last_activity_at DESC",
            (symbol.upper(), ConversationStatus.ACTIVE.value),
        )

    def find_by_entity_type(self, entity_type: EntityType) -> list[AIConversation]:
        return self._select("WHERE entity_type = ? ORDER BY created_at DESC", (entity_type.value,))

    def find_by_tag(self, tag: str) -> list[AIConversation]:
        pattern = tag.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        candidates = self._select(
            "WHERE tags_json LIKE ? ESCAPE '\\' ORDER BY created_at DESC",
            (f'%"{pattern}"%',),
        )
        return [conversation for conversation in candidates if tag in conversation.tags]

    def find_expired_active(self, now: datetime) -> list[AIConversation]:
        return self._select(
            "WHERE status = ? AND expires_at IS NOT NULL AND expires_at < ?",
            (ConversationStatus.ACTIVE.value, to_db_time(now)),
        )

    def _select(self, clause: str, params: tuple) -> list[AIConversation]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(f"SELECT * FROM ai_conversations {clause}", params).fetchall()
            conversations = []
            for row in rows:
                turn_rows = conn.execute(
                    "SELECT * FROM conversation_turns WHERE conversation_id = ? ORDER BY id ASC",
                    (row["conversation_id"],),
                ).fetchall()
                conversations.append(_row_to_conversation(row, [_row_to_turn(t) for t in turn_rows]))
        return conversations


class ConversationManager:
    """Multi-turn AI sessions anchored to a trade or another entity.

    Continuity is provider-side: only the latest response id is threaded
    into the next request, never the full history.
    """

    def __init__(
        self,
        repository: ConversationRepository,
        trade_repository: TradeRepository | None = None,
        ai_client: OpenAIClient | None = None,
        clock: Callable[[], datetime] = _utc_now,
        expiry_hours: int | None = None,
    ) -> None:
        self.repository = repository
        self.trade_repository = trade_repository or TradeRepository(repository.db_path)
        self.ai_client = ai_client
        self.clock = clock
        self.expiry_hours = expiry_hours or settings.conversation_expiry_hours

    def get_or_create_trade_conversation(self, trade: IdentifiedTrade, user_id: str | None = None) -> AIConversation:
        existing = self.repository.find_active_for_trade(trade.id)
        if existing is not None:
            logger.debug("Reusing conversation {} for trade {}", existing.conversation_id, trade.id)
            return existing
        return self.create_trade_conversation(trade, user_id)

    def create_trade_conversation(self, trade: IdentifiedTrade, user_id: str | None = None) -> AIConversation:
        now = self.clock()
        conversation = AIConversation(
            conversation_id=str(uuid.uuid4()),
            conversation_type=ConversationType.TRADE_FOLLOWUP,
            status=ConversationStatus.ACTIVE,
            created_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(hours=self.expiry_hours),
            symbol=trade.symbol,
            user_id=user_id,
            trade_id=trade.id,
            entity_type=EntityType.TRADE,
            entity_id=str(trade.id),
            entity_snapshot=trade_snapshot(trade),
            context_data=trade_context(trade),
            tags=trade_tags(trade),
        )
        self.repository.insert(conversation)
        logger.info(
            "Created conversation {} for trade {} ({} {})",
            conversation.conversation_id,
            trade.id,
            trade.symbol,
            trade.direction,
        )
        return conversation

    def create_conversation(
        self,
        conversation_type: ConversationType,
        symbol: str | None = None,
        user_id: str | None = None,
        expiry_hours: int | None = None,
    ) -> AIConversation:
        now = self.clock()
        conversation = AIConversation(
            conversation_id=str(uuid.uuid4()),
            conversation_type=conversation_type,
            status=ConversationStatus.ACTIVE,
            created_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(hours=expiry_hours or self.expiry_hours),
            symbol=symbol.upper() if symbol else None,
            user_id=user_id,
            entity_type=EntityType.SYMBOL if symbol else None,
            entity_id=symbol.upper() if symbol else None,
        )
        return self.repository.insert(conversation)

    def add_turn(
        self,
        conversation_id: str,
        response: AIResponse,
        request_id: str | None,
        user_message: str | None,
    ) -> AIConversation | None:
        conversation = self.repository.get(conversation_id)
        if conversation is None:
            logger.warning("Cannot add turn: conversation {} not found", conversation_id)
            return None

        now = self.clock()
        turn = ConversationTurn(
            response_id=response.id,
            request_id=request_id,
            user_message=summarize(user_message),
            ai_response_summary=summarize(response.output),
            model=response.model,
            tokens_used=response.usage.total_tokens,
            created_at=now,
        )
        self.repository.add_turn(conversation_id, turn, now)
        conversation.turns.append(turn)
        conversation.last_activity_at = now
        logger.debug("Added turn {} to conversation {}", response.id, conversation_id)
        return conversation

    def get_latest_response_id(self, conversation_id: str) -> str | None:
        conversation = self.repository.get(conversation_id)
        return conversation.latest_response_id if conversation else None

    def get_conversation(self, conversation_id: str) -> AIConversation | None:
        return self.repository.get(conversation_id)

    def complete_conversation(self, conversation_id: str) -> AIConversation:
        conversation = self.repository.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        conversation.status = ConversationStatus.COMPLETED
        conversation.last_activity_at = self.clock()
        self.repository.update(conversation)
        logger.info("Completed conversation {}", conversation_id)
        return conversation

    def find_active_for_symbol(self, symbol: str) -> list[AIConversation]:
        return self.repository.find_active_for_symbol(symbol)

    def find_for_trade(self, trade_id: int) -> list[AIConversation]:
        return self.repository.find_for_trade(trade_id)

    def find_active_for_trade(self, trade_id: int) -> AIConversation | None:
        return self.repository.find_active_for_trade(trade_id)

    def find_by_entity_type(self, entity_type: EntityType) -> list[AIConversation]:
        return self.repository.find_by_entity_type(entity_type)

    def find_by_tag(self, tag: str) -> list[AIConversation]:
        return self.repository.find_by_tag(tag.lower())

    def update_context_data(self, conversation_id: str, updates: dict[str, Any]) -> AIConversation:
        conversation = self.repository.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        conversation.context_data.update(updates)
        conversation.last_activity_at = self.clock()
        return self.repository.update(conversation)

    def get_conversation_stats(self, conversation_id: str) -> dict[str, Any] | None:
        conversation = self.repository.get(conversation_id)
        if conversation is None:
            return None
        return {
            "conversation_id": conversation.conversation_id,
            "turn_count": len(conversation.turns),
            "created_at": conversation.created_at.isoformat(),
            "last_activity_at": conversation.last_activity_at.isoformat(),
            "status": conversation.status.value,
            "total_tokens": sum(turn.tokens_used or 0 for turn in conversation.turns),
        }

    def get_context_summary(self, conversation_id: str) -> str:
        conversation = self.repository.get(conversation_id)
        if conversation is None:
            return ""
        lines: list[str] = []
        if conversation.entity_snapshot:
            lines.append("=== Trade Context ===")
            for key, value in conversation.entity_snapshot.items():
                lines.append(f"{key}: {value}")
        if conversation.context_data:
            lines.append("")
            lines.append("=== Additional Context ===")
            for key, value in conversation.context_data.items():
                lines.append(f"{key}: {value}")
        return "\n".join(lines)

    def cleanup_expired(self) -> int:
        now = self.clock()
        expired = 0
        for conversation in self.repository.find_expired_active(now):
            conversation.status = ConversationStatus.EXPIRED
            try:
                self.repository.update(conversation)
                expired += 1
            except sqlite3.Error as exc:
                logger.error("Could not expire conversation {}: {}", conversation.conversation_id, exc)
        if expired:
            logger.info("Expired {} idle conversations", expired)
        return expired

    def ask_about_trade(
        self,
        trade_id: int,
        question: str,
        user_id: str | None = None,
    ) -> tuple[AIConversation, AIResponse]:
        """Send a follow-up question about a stored trade, continuing its conversation."""
        if self.ai_client is None:
            raise RuntimeError("ConversationManager was built without an AI client")
        trade = self.trade_repository.get(trade_id)
        if trade is None:
            raise TradeNotFoundError(trade_id)

        conversation = self.get_or_create_trade_conversation(trade, user_id)
        previous_response_id = conversation.latest_response_id
        request_id = f"TRADE_FOLLOWUP_{trade_id}_{int(self.clock().timestamp() * 1000)}"
        instructions = None
        if previous_response_id is None:
            # First turn carries the context; later turns rely on the provider's memory.
            instructions = FOLLOWUP_INSTRUCTIONS + self.get_context_summary(conversation.conversation_id)

        response = self.ai_client.send_reasoning_request(
            AIRequest(
                input=question,
                system_instructions=instructions,
                previous_response_id=previous_response_id,
                store=True,
                request_id=request_id,
                metadata={"trade_id": trade_id, "conversation_id": conversation.conversation_id},
            )
        )
        updated = self.add_turn(conversation.conversation_id, response, request_id, question)
        return updated or conversation, response
