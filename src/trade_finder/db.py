import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .settings import settings


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS core_market_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    timeframe TEXT,
    indicator_name TEXT,
    raw_message TEXT,
    queued INTEGER NOT NULL DEFAULT 0,
    transform_attempts INTEGER NOT NULL DEFAULT 0,
    meta_json TEXT,
    ingested_ts TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_core_events_symbol_ts ON core_market_events(symbol, ingested_ts);

CREATE TABLE IF NOT EXISTS transformed_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    timeframe TEXT,
    event_ts TEXT NOT NULL,
    unique_event_code TEXT,
    uec_description TEXT,
    indicator_short_code TEXT,
    direction_code TEXT,
    action_code TEXT,
    approx_price REAL,
    is_trade_signal INTEGER NOT NULL DEFAULT 0,
    is_trigger_reasoner INTEGER NOT NULL DEFAULT 0,
    extras_json TEXT,
    created_ts TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transformed_events_symbol_ts ON transformed_events(symbol, event_ts);

CREATE TABLE IF NOT EXISTS ohlc_data (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    timeframe TEXT NOT NULL,
    ts TEXT NOT NULL,
    open REAL,
    high REAL,
    low REAL,
    close REAL,
    volume INTEGER,
    source TEXT,
    UNIQUE(symbol, timeframe, ts)
);

CREATE TABLE IF NOT EXISTS identified_trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    direction TEXT NOT NULL,
    identified_at TEXT NOT NULL,
    confidence INTEGER,
    status TEXT NOT NULL,
    entry_zone_type TEXT,
    entry_zone TEXT,
    entry_price REAL,
    stop_placement TEXT,
    targets_json TEXT,
    rr_hint TEXT,
    narrative TEXT,
    trigger_conditions_json TEXT,
    invalidations_json TEXT,
    session_label TEXT,
    timeframe TEXT,
    dedupe_key TEXT NOT NULL,
    alert_sent INTEGER NOT NULL DEFAULT 0,
    alert_sent_at TEXT,
    alert_type TEXT,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    ai_request_id TEXT,
    ai_full_response TEXT,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_identified_trades_dedupe ON identified_trades(dedupe_key);
CREATE INDEX IF NOT EXISTS idx_identified_trades_status_expiry ON identified_trades(status, expires_at);

CREATE TABLE IF NOT EXISTS ai_conversations (
    conversation_id TEXT PRIMARY KEY,
    conversation_type TEXT NOT NULL,
    symbol TEXT,
    user_id TEXT,
    trade_id INTEGER,
    entity_type TEXT,
    entity_id TEXT,
    entity_snapshot_json TEXT,
    context_data_json TEXT,
    tags_json TEXT,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_activity_at TEXT NOT NULL,
    expires_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_conversations_trade ON ai_conversations(trade_id, status);

CREATE TABLE IF NOT EXISTS conversation_turns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id TEXT NOT NULL,
    response_id TEXT,
    request_id TEXT,
    user_message TEXT,
    ai_response_summary TEXT,
    model TEXT,
    tokens_used INTEGER,
    created_at TEXT NOT NULL,
    FOREIGN KEY(conversation_id) REFERENCES ai_conversations(conversation_id)
);

CREATE TABLE IF NOT EXISTS operation_logs (
    operation_id TEXT PRIMARY KEY,
    operation_type TEXT NOT NULL,
    title TEXT,
    source TEXT,
    status TEXT NOT NULL,
    metadata_json TEXT,
    error_message TEXT,
    stack_trace TEXT,
    result_json TEXT,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    duration_ms INTEGER
);

CREATE TABLE IF NOT EXISTS operation_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation_id TEXT NOT NULL,
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    data_json TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY(operation_id) REFERENCES operation_logs(operation_id)
);
"""


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    path = Path(db_path or settings.db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    return conn


def initialize_database(db_path: Path | None = None) -> None:
    with get_connection(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        conn.commit()


def to_db_time(value: datetime | None) -> str | None:
    """Normalize to a UTC ISO string so text ordering matches time ordering."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


def loads(value: str | None, fallback: Any = None) -> Any:
    if not value:
        return fallback
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return fallback
