from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TradeStatus(str, Enum):
    IDENTIFIED = "IDENTIFIED"
    ALERTED = "ALERTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    TAKEN = "TAKEN"
    INVALIDATED = "INVALIDATED"


class AlertType(str, Enum):
    CALL_SMS_TELEGRAM = "CALL_SMS_TELEGRAM"
    SMS_TELEGRAM = "SMS_TELEGRAM"
    LOG_ONLY = "LOG_ONLY"

    @property
    def channels(self) -> tuple[str, ...]:
        return {
            AlertType.CALL_SMS_TELEGRAM: ("call", "sms", "telegram"),
            AlertType.SMS_TELEGRAM: ("sms", "telegram"),
            AlertType.LOG_ONLY: (),
        }[self]


class EntryZoneType(str, Enum):
    FVG_CE = "FVG_CE"
    IFVG = "IFVG"
    OB = "OB"
    BREAKER = "BREAKER"
    MITIGATION = "MITIGATION"

    @classmethod
    def describe(cls, value: str | None) -> str | None:
        try:
            return cls(value).description
        except ValueError:
            return value

    @property
    def description(self) -> str:
        return {
            EntryZoneType.FVG_CE: "Fair Value Gap at Consequent Encroachment (50% level)",
            EntryZoneType.IFVG: "Inverted Fair Value Gap",
            EntryZoneType.OB: "Order Block (institutional demand/supply zone)",
            EntryZoneType.BREAKER: "Breaker Block (failed order block turned trap)",
            EntryZoneType.MITIGATION: "Mitigation Block (unfilled inefficiency)",
        }[self]


class ConversationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


class ConversationType(str, Enum):
    TRADE_FOLLOWUP = "TRADE_FOLLOWUP"
    TRADE_ANALYSIS = "TRADE_ANALYSIS"
    MARKET_ANALYSIS = "MARKET_ANALYSIS"
    WORKFLOW = "WORKFLOW"


class EntityType(str, Enum):
    TRADE = "TRADE"
    SYMBOL = "SYMBOL"
    PATTERN = "PATTERN"


TRADE_SIGNAL_IDENTIFIED = "TRADE_IDENTIFIED"


@dataclass
class IdentifiedTrade:
    symbol: str
    direction: str
    identified_at: datetime
    expires_at: datetime
    dedupe_key: str
    confidence: int | None = None
    status: TradeStatus = TradeStatus.IDENTIFIED
    entry_zone_type: str | None = None
    entry_zone: str | None = None
    entry_price: float | None = None
    stop_placement: str | None = None
    targets: list[str] = field(default_factory=list)
    rr_hint: str | None = None
    narrative: str | None = None
    trigger_conditions: list[str] = field(default_factory=list)
    invalidations: list[str] = field(default_factory=list)
    session_label: str | None = None
    timeframe: str | None = None
    alert_sent: bool = False
    alert_sent_at: datetime | None = None
    alert_type: AlertType | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    ai_request_id: str | None = None
    ai_full_response: str | None = None
    id: int | None = None
    version: int = 1

    def to_dict(self, include_raw: bool = False) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["alert_type"] = self.alert_type.value if self.alert_type else None
        for key in ("identified_at", "expires_at", "alert_sent_at", "created_at", "updated_at"):
            value = data.get(key)
            data[key] = value.isoformat() if value else None
        if not include_raw:
            data.pop("ai_full_response", None)
        return data


@dataclass
class ConversationTurn:
    response_id: str | None
    request_id: str | None
    user_message: str | None
    ai_response_summary: str | None
    model: str | None
    tokens_used: int | None
    created_at: datetime
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


@dataclass
class AIConversation:
    conversation_id: str
    conversation_type: ConversationType
    status: ConversationStatus
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime | None = None
    symbol: str | None = None
    user_id: str | None = None
    trade_id: int | None = None
    entity_type: EntityType | None = None
    entity_id: str | None = None
    entity_snapshot: dict[str, Any] = field(default_factory=dict)
    context_data: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    turns: list[ConversationTurn] = field(default_factory=list)

    @property
    def latest_response_id(self) -> str | None:
        for turn in reversed(self.turns):
            if turn.response_id:
                return turn.response_id
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "conversation_type": self.conversation_type.value,
            "status": self.status.value,
            "symbol": self.symbol,
            "user_id": self.user_id,
            "trade_id": self.trade_id,
            "entity_type": self.entity_type.value if self.entity_type else None,
            "entity_id": self.entity_id,
            "entity_snapshot": self.entity_snapshot,
            "context_data": self.context_data,
            "tags": self.tags,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "turns": [turn.to_dict() for turn in self.turns],
        }
