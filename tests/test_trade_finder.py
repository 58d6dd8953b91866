from datetime import timedelta
import json

import pytest

from conftest import (
    FakeResponse,
    FakeSession,
    insert_candle,
    insert_transformed_event,
    ny,
    responses_payload,
    trade_signal_json,
)
from trade_finder.alerts import AlertDispatcher, AlertRouter
from trade_finder.db import get_connection
from trade_finder.datasources import build_default_registry
from trade_finder.models import AlertType, TradeStatus
from trade_finder.openai_client import OpenAIClient
from trade_finder.operation_log import OperationLogService
from trade_finder.state import FinderState
from trade_finder.trade_finder import TradeFinderService, parse_trade_signal
from trade_finder.trade_store import TradeRepository


@pytest.fixture
def finder(db_path, fake_session, clock):
    repository = TradeRepository(db_path)
    service = TradeFinderService(
        registry=build_default_registry(db_path),
        ai_client=OpenAIClient(session=fake_session, api_key="test-key", max_retries=0, sleep=lambda _: None),
        repository=repository,
        dispatcher=AlertDispatcher(repository, AlertRouter(webhook_url="", session=FakeSession()), 80, 60),
        operation_log=OperationLogService(db_path),
        clock=clock,
        state=FinderState(),
        system_prompt="You find trades.",
    )
    service.enabled = True
    service.expiry_hours = 4
    return service


def _ai_answer(session, text):
    session.queue(FakeResponse(200, responses_payload(text)))


def test_trade_identified_at_two_pm(finder, fake_session, clock):
    _ai_answer(fake_session, trade_signal_json(status="trade identified", confidence=85))

    report = finder.find_trades(["NQ"])

    outcome = report.outcomes[0]
    assert outcome.result == "IDENTIFIED"
    assert outcome.dedupe_key == "NQ_LONG_2178021800_20240101_14"
    assert outcome.alert_type == AlertType.CALL_SMS_TELEGRAM.value

    trade = finder.repository.get(outcome.trade_id)
    assert trade.status == TradeStatus.IDENTIFIED
    assert trade.alert_sent is True
    assert trade.alert_type == AlertType.CALL_SMS_TELEGRAM
    assert trade.identified_at == clock.now
    assert trade.expires_at == trade.identified_at + timedelta(hours=4)
    assert trade.entry_price == 21790.25
    assert trade.targets == ["21850", "21900"]
    assert trade.session_label == "NY_PM"
    assert trade.ai_request_id.startswith("TRADE_FINDER_NQ_")


def test_same_setup_later_in_the_hour_is_a_duplicate(finder, fake_session, clock):
    _ai_answer(fake_session, trade_signal_json())
    first = finder.find_trades(["NQ"]).outcomes[0]
    original = finder.repository.get(first.trade_id)

    clock.advance(minutes=45)
    _ai_answer(fake_session, trade_signal_json())
    second = finder.find_trades(["NQ"]).outcomes[0]

    assert second.result == "DUPLICATE"
    assert second.dedupe_key == first.dedupe_key
    assert finder.repository.count() == 1
    unchanged = finder.repository.get(first.trade_id)
    assert unchanged.alert_sent_at == original.alert_sent_at
    assert unchanged.version == original.version


def test_low_confidence_is_log_only_but_recorded(finder, fake_session):
    _ai_answer(fake_session, trade_signal_json(confidence=55))

    outcome = finder.find_trades(["NQ"]).outcomes[0]

    trade = finder.repository.get(outcome.trade_id)
    assert trade.alert_type == AlertType.LOG_ONLY
    assert trade.alert_sent is True
    assert trade.status == TradeStatus.IDENTIFIED


def test_fenced_json_parses_like_plain_json():
    plain = trade_signal_json()
    fenced = f"```json\n{plain}\n```"
    bare_fence = f"```\n{plain}\n```"
    assert parse_trade_signal(fenced) == parse_trade_signal(plain)
    assert parse_trade_signal(bare_fence) == parse_trade_signal(plain)


def test_no_setup_is_not_an_error(finder, fake_session):
    _ai_answer(fake_session, json.dumps({"status": "NO_SETUP", "narrative": "chop"}))

    outcome = finder.find_trades(["NQ"]).outcomes[0]

    assert outcome.result == "NO_TRADE"
    assert outcome.reason == "NO_SETUP"
    assert finder.repository.count() == 0


def test_unparseable_answer_is_no_trade(finder, fake_session):
    _ai_answer(fake_session, "I think NQ looks bullish today.")
    outcome = finder.find_trades(["NQ"]).outcomes[0]
    assert outcome.result == "NO_TRADE"
    assert finder.repository.count() == 0


def test_trade_without_direction_is_rejected(finder, fake_session):
    _ai_answer(fake_session, trade_signal_json(direction="FLAT"))
    outcome = finder.find_trades(["NQ"]).outcomes[0]
    assert outcome.result == "NO_TRADE"
    assert finder.repository.count() == 0


def test_one_failing_symbol_does_not_stop_the_batch(finder, fake_session, db_path):
    fake_session.queue(FakeResponse(401, {"error": {"message": "bad key"}}))
    _ai_answer(fake_session, trade_signal_json())

    report = finder.find_trades(["NQ", "ES"])

    assert [(item.symbol, item.result) for item in report.outcomes] == [("NQ", "ERROR"), ("ES", "IDENTIFIED")]
    assert report.errors == 1
    log = OperationLogService(db_path).get_log(report.operation_id)
    assert log["status"] == "SUCCESS"
    messages = [event["message"] for event in log["events"]]
    assert any(message.startswith("NQ failed") for message in messages)
    assert "ES: IDENTIFIED" in messages
    assert finder.state.consecutive_failures == 0


def test_every_symbol_failing_counts_as_a_failed_cycle(finder, fake_session):
    fake_session.queue(FakeResponse(401, {"error": {"message": "bad key"}}))
    finder.find_trades(["NQ"])
    assert finder.state.consecutive_failures == 1


def test_failed_ai_status_is_no_trade(finder, fake_session):
    fake_session.queue(FakeResponse(200, responses_payload("", error={"message": "overloaded"})))
    outcome = finder.find_trades(["NQ"]).outcomes[0]
    assert outcome.result == "NO_TRADE"
    assert outcome.reason == "overloaded"


def test_disabled_finder_skips_the_cycle(finder, fake_session):
    finder.enabled = False
    report = finder.find_trades(["NQ"])
    assert report.outcomes == []
    assert fake_session.calls == []


def test_payload_carries_events_and_latest_candles(finder, db_path, clock):
    now = clock.now
    insert_transformed_event(db_path, "NQ", now - timedelta(minutes=10), indicator_short_code="SMT")
    insert_transformed_event(db_path, "NQ", now - timedelta(minutes=20), direction_code="BEAR")
    insert_transformed_event(db_path, "NQ", now - timedelta(minutes=120))
    for index in range(5):
        insert_candle(db_path, "NQ", "5m", now - timedelta(minutes=5 * (5 - index)), close=21700 + index)
    finder.candle_count = 3

    payload = finder.build_payload("NQ", now)

    assert payload.meta.symbol == "NQ"
    assert payload.meta.date == "2024-01-01"
    assert payload.meta.session_label == "NY_PM"
    assert payload.meta.requested_timeframes == ["5m", "15m", "1h", "4h"]
    assert [event.category for event in payload.event_stream] == ["smt", "fvg"]
    assert [event.direction for event in payload.event_stream] == ["B", "S"]
    assert [candle.close for candle in payload.ohlc_context["5m"]] == ["21702.0", "21703.0", "21704.0"]
    assert payload.ohlc_context["4h"] == []


def test_candle_window_can_be_decoupled_from_count(finder, db_path, clock):
    now = clock.now
    for minutes_ago in (5, 30, 300):
        insert_candle(db_path, "NQ", "5m", now - timedelta(minutes=minutes_ago), close=21000 + minutes_ago)

    finder.candle_count = 100
    finder.candle_lookback_minutes = 60
    payload = finder.build_payload("NQ", now)

    assert [candle.close for candle in payload.ohlc_context["5m"]] == ["21030.0", "21005.0"]


def test_request_carries_system_prompt_and_payload(finder, fake_session):
    _ai_answer(fake_session, json.dumps({"status": "NO_SETUP"}))
    finder.find_trades(["NQ"])

    body = fake_session.calls[0]["json"]
    assert body["instructions"] == "You find trades."
    sent = json.loads(body["input"])
    assert sent["meta"]["symbol"] == "NQ"
    assert sent["meta"]["run_context"] == "SCHEDULED_TRADE_FINDER"
    assert sent["analysis_profile"] == finder.analysis_profile
    assert body["metadata"]["symbol"] == "NQ"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(85.5, 86), (72.4, 72), ("85%", 85), (" 64 % ", 64), ("120", 100), (-3, 0), ("high", None), (None, None)],
)
def test_confidence_is_read_leniently(raw, expected):
    answer = json.loads(trade_signal_json())
    answer["confidence"] = raw

    signal = parse_trade_signal(json.dumps(answer))

    assert signal is not None
    assert signal.confidence == expected


def test_fractional_confidence_still_identifies_a_trade(finder, fake_session):
    answer = json.loads(trade_signal_json())
    answer["confidence"] = "85.5%"
    _ai_answer(fake_session, json.dumps(answer))

    outcome = finder.find_trades(["NQ"]).outcomes[0]

    assert outcome.result == "IDENTIFIED"
    assert outcome.confidence == 86
    assert outcome.alert_type == AlertType.CALL_SMS_TELEGRAM.value


def test_failing_event_source_still_runs_the_analysis(finder, fake_session, db_path):
    with get_connection(db_path) as conn:
        conn.execute("DROP TABLE transformed_events")
        conn.commit()
    _ai_answer(fake_session, trade_signal_json())

    outcome = finder.find_trades(["NQ"]).outcomes[0]

    assert len(fake_session.calls) == 1
    assert json.loads(fake_session.calls[0]["json"]["input"])["event_stream"] == []
    assert outcome.result == "IDENTIFIED"
    assert finder.repository.count() == 1


def test_overlapping_run_insert_clash_is_a_duplicate(finder, fake_session, monkeypatch):
    _ai_answer(fake_session, trade_signal_json())
    first = finder.find_trades(["NQ"]).outcomes[0]
    stored = finder.repository.get(first.trade_id)

    dispatched = []
    original_dispatch = finder.dispatcher.dispatch

    def counting_dispatch(trade, now=None):
        dispatched.append(trade.id)
        return original_dispatch(trade, now)

    # Another run stored the row between the existence check and the insert.
    monkeypatch.setattr(finder.repository, "exists_by_dedupe_key", lambda key: False)
    monkeypatch.setattr(finder.dispatcher, "dispatch", counting_dispatch)
    _ai_answer(fake_session, trade_signal_json())

    second = finder.find_trades(["NQ"]).outcomes[0]

    assert second.result == "DUPLICATE"
    assert second.dedupe_key == first.dedupe_key
    assert dispatched == []
    assert finder.repository.count() == 1
    unchanged = finder.repository.get(first.trade_id)
    assert (unchanged.version, unchanged.alert_sent_at) == (stored.version, stored.alert_sent_at)
