from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from .datasources import DataSourceRegistry, DataSourceType, build_default_registry
from .db import from_db_time, get_connection, to_db_time
from .settings import settings
from .trade_statistics import TradeStatisticsService
from .trade_store import TradeRepository

# Sources the scheduled pipeline cannot run without.
REQUIRED_SOURCES = (DataSourceType.TRANSFORMED_EVENT, DataSourceType.OHLC)


@dataclass
class HealthThresholds:
    max_failed_operations_24h: int = 2
    max_event_age_minutes: int = 120
    min_cycles_24h: int = 1


def generate_health_report(
    db_path: Path | None = None,
    registry: DataSourceRegistry | None = None,
    ai_configured: bool | None = None,
    thresholds: HealthThresholds | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    t = thresholds or HealthThresholds()
    now = now or datetime.now(timezone.utc)
    path = Path(db_path or settings.db_path)

    report: dict[str, Any] = {
        "generated_at": now.isoformat(),
        "score": 100,
        "status": "healthy",
        "data_sources": {},
        "ai_configured": bool(settings.openai_api_key) if ai_configured is None else ai_configured,
        "trades": {},
        "operations": {},
        "issues": [],
        "recommendations": [],
    }

    if not path.exists():
        report["score"] = 0
        report["status"] = "no_data"
        report["issues"].append("Database not found")
        report["recommendations"].append("Start the trade finder service to create the database")
        return report

    registry = registry or build_default_registry(path)
    report["data_sources"] = registry.health_status()
    report["trades"] = TradeStatisticsService(TradeRepository(path)).get_statistics(24, now=now).to_dict()

    cutoff = to_db_time(now - timedelta(hours=24))
    with get_connection(path) as conn:
        op_rows = conn.execute(
            """
            SELECT operation_type, status, COUNT(1) AS n
            FROM operation_logs
            WHERE started_at >= ?
            GROUP BY operation_type, status
            """,
            (cutoff,),
        ).fetchall()
        last_event = conn.execute("SELECT MAX(event_ts) AS ts FROM transformed_events").fetchone()

    operations: dict[str, dict[str, int]] = {}
    for row in op_rows:
        operations.setdefault(str(row["operation_type"]), {})[str(row["status"])] = int(row["n"])
    report["operations"] = operations

    failed = sum(counts.get("FAILED", 0) for counts in operations.values())
    cycles = sum(operations.get("TRADE_FINDER_CYCLE", {}).values())
    latest_event_ts = last_event["ts"] if last_event else None
    report["latest_event_ts"] = latest_event_ts

    score = 100

    if not report["ai_configured"]:
        score -= 40
        report["issues"].append("OpenAI API key is not configured")

    for source_type in REQUIRED_SOURCES:
        if not report["data_sources"].get(source_type.code, False):
            score -= 20
            report["issues"].append(f"{source_type.display_name} source is unhealthy")

    if failed > t.max_failed_operations_24h:
        score -= min(30, failed * 5)
        report["issues"].append(f"failed operations in 24h: {failed}")

    if cycles < t.min_cycles_24h:
        score -= 10
        report["issues"].append("no trade finder cycles recorded in 24h")

    event_age_minutes = None
    if latest_event_ts:
        event_age_minutes = (now - from_db_time(latest_event_ts)).total_seconds() / 60
    if event_age_minutes is None or event_age_minutes > t.max_event_age_minutes:
        score -= 10
        report["issues"].append("no recent transformed events; check the event feed")

    score = max(0, min(100, int(score)))
    report["score"] = score
    report["status"] = "healthy" if score >= 80 else ("watch" if score >= 60 else "needs_attention")

    if not report["ai_configured"]:
        report["recommendations"].append("Set OPENAI_API_KEY in .env")
    if failed > t.max_failed_operations_24h:
        report["recommendations"].append("Inspect failed entries in operation_logs and the service log")
    if event_age_minutes is None or event_age_minutes > t.max_event_age_minutes:
        report["recommendations"].append("Verify the upstream event transformer is writing transformed_events")
    if not report["recommendations"]:
        report["recommendations"].append("No urgent changes required; keep monitoring")

    return report


def save_health_report(report: dict[str, Any], out_path: Path) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(report, indent=2), encoding="utf-8")
