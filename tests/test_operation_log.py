from trade_finder.operation_log import MAX_STACK_CHARS, OperationContext, OperationLogService


def test_start_then_complete_success(db_path):
    service = OperationLogService(db_path)
    ctx = OperationContext(source="test")

    operation_id = service.start_or_reuse(ctx, "TRADE_FINDER_CYCLE", "cycle", metadata={"symbols": ["NQ"]})
    service.add_event(operation_id, "info", "NQ: IDENTIFIED", {"trade_id": 1})
    service.complete_success(operation_id, {"trades": 1})

    log = service.get_log(operation_id)
    assert ctx.operation_id == operation_id
    assert log["status"] == "SUCCESS"
    assert log["source"] == "test"
    assert log["metadata"] == {"symbols": ["NQ"]}
    assert log["result"] == {"trades": 1}
    assert log["duration_ms"] is not None
    event = log["events"][0]
    assert (event["level"], event["message"], event["data"]) == ("INFO", "NQ: IDENTIFIED", {"trade_id": 1})


def test_nested_call_reuses_the_operation(db_path):
    service = OperationLogService(db_path)
    ctx = OperationContext()
    outer = service.start_or_reuse(ctx, "API", "outer")

    inner = service.start_or_reuse(ctx, "TRADE_FINDER_CYCLE", "inner")

    assert inner == outer
    log = service.get_log(outer)
    assert log["operation_type"] == "API"
    assert log["events"][0]["message"] == "Reusing operation for inner"


def test_failure_keeps_a_truncated_stack(db_path):
    service = OperationLogService(db_path)
    operation_id = service.start_or_reuse(OperationContext(), "TRADE_EXPIRY_SWEEP", "sweep")

    try:
        raise ValueError("x" * (MAX_STACK_CHARS * 2))
    except ValueError as exc:
        service.complete_failure(operation_id, exc)

    log = service.get_log(operation_id)
    assert log["status"] == "FAILED"
    assert log["error_message"].startswith("xxx")
    assert len(log["stack_trace"]) == MAX_STACK_CHARS


def test_audit_failures_never_raise(tmp_path):
    service = OperationLogService(tmp_path / "no_schema.sqlite3")
    ctx = OperationContext()

    operation_id = service.start_or_reuse(ctx, "TRADE_FINDER_CYCLE", "cycle")
    service.add_event(operation_id, "INFO", "ignored")
    service.complete_success(operation_id)

    assert operation_id


def test_unknown_operation(db_path):
    assert OperationLogService(db_path).get_log("missing") is None
