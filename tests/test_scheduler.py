from apscheduler.triggers.interval import IntervalTrigger

from trade_finder.scheduler import FinderScheduler
from trade_finder.services import build_services
from trade_finder.settings import settings


def test_jobs_are_named_and_bound_to_services(db_path, fake_session):
    services = build_services(db_path, session=fake_session)
    scheduler = FinderScheduler(services)

    jobs = scheduler.jobs()

    assert list(jobs) == [
        "trade_finder_cycle",
        "trade_expiry_sweep",
        "trade_statistics_sweep",
        "conversation_cleanup",
    ]
    func, trigger = jobs["trade_finder_cycle"]
    assert func == scheduler.run_finder_cycle
    assert isinstance(trigger, IntervalTrigger)
    assert trigger.interval.total_seconds() == settings.trade_finder_interval_seconds
    assert jobs["conversation_cleanup"][0] == services.conversations.cleanup_expired


def test_failed_cycle_does_not_escape(db_path, fake_session, monkeypatch):
    services = build_services(db_path, session=fake_session)

    def explode(*args, **kwargs):
        raise RuntimeError("database locked")

    monkeypatch.setattr(services.finder, "find_trades", explode)

    FinderScheduler(services).run_finder_cycle()
