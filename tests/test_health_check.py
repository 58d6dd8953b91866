from datetime import datetime, timezone

from conftest import insert_transformed_event
from trade_finder.health_check import HealthThresholds, generate_health_report, save_health_report
from trade_finder.operation_log import OperationContext, OperationLogService


def _record(db_path, operation_type, failed=False):
    log = OperationLogService(db_path)
    operation_id = log.start_or_reuse(OperationContext(source="test"), operation_type, operation_type)
    if failed:
        log.complete_failure(operation_id, RuntimeError("boom"))
    else:
        log.complete_success(operation_id, {})


def test_missing_database_reports_no_data(tmp_path):
    report = generate_health_report(db_path=tmp_path / "absent.sqlite3", ai_configured=True)

    assert report["status"] == "no_data"
    assert report["score"] == 0


def test_active_pipeline_is_healthy(db_path):
    now = datetime.now(timezone.utc)
    insert_transformed_event(db_path, "NQ", now)
    _record(db_path, "TRADE_FINDER_CYCLE")

    report = generate_health_report(db_path=db_path, ai_configured=True, now=now)

    assert report["score"] == 100
    assert report["status"] == "healthy"
    assert report["operations"]["TRADE_FINDER_CYCLE"] == {"SUCCESS": 1}
    assert report["recommendations"] == ["No urgent changes required; keep monitoring"]


def test_deductions_accumulate(db_path):
    for _ in range(3):
        _record(db_path, "AI_WORKFLOW", failed=True)

    report = generate_health_report(db_path=db_path, ai_configured=False, now=datetime.now(timezone.utc))

    # key -40, failures -15, no cycle -10, stale feed -10
    assert report["score"] == 25
    assert report["status"] == "needs_attention"
    assert "OpenAI API key is not configured" in report["issues"]
    assert "failed operations in 24h: 3" in report["issues"]
    assert "Set OPENAI_API_KEY in .env" in report["recommendations"]


def test_thresholds_are_configurable(db_path):
    _record(db_path, "AI_WORKFLOW", failed=True)
    thresholds = HealthThresholds(max_failed_operations_24h=0, min_cycles_24h=0)

    report = generate_health_report(db_path=db_path, ai_configured=True, thresholds=thresholds)

    # failures -5, stale feed -10
    assert report["score"] == 85


def test_save_health_report(tmp_path):
    out = tmp_path / "reports" / "health.json"

    save_health_report({"score": 90}, out)

    assert out.read_text(encoding="utf-8") == '{\n  "score": 90\n}'
