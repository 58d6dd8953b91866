"""Run one trade finder cycle immediately and print what it found.

Exercises the full pipeline:
  events + candles -> payload -> reasoning model -> dedupe -> trade store -> alert tier
"""
import json
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT / "src") not in sys.path:
    sys.path.insert(0, str(ROOT / "src"))

from trade_finder.db import initialize_database
from trade_finder.logging_config import configure_logging
from trade_finder.services import build_services
from trade_finder.settings import settings


def main():
    print("=" * 60)
    print("TRADE FINDER SMOKE TEST")
    print(f"Symbols: {', '.join(settings.symbols)}")
    print(f"Profile: {settings.analysis_profile}")
    print(f"Model:   {settings.openai_model}")
    print("=" * 60)

    configure_logging(settings.log_level)
    initialize_database()
    services = build_services()

    print(f"\nStarting cycle at {time.strftime('%H:%M:%S')}...")
    t0 = time.time()
    report = services.finder.find_trades()
    print(f"\nCycle completed in {time.time() - t0:.0f}s")

    for outcome in report.outcomes:
        line = f"  {outcome.symbol:5s} {outcome.result:10s}"
        if outcome.trade_id:
            line += f" trade={outcome.trade_id} conf={outcome.confidence} alert={outcome.alert_type}"
        elif outcome.reason:
            line += f" ({outcome.reason})"
        print(line)

    recent = services.trades.find_recent(10)
    if recent:
        print(f"\nRecent trades ({len(recent)}):")
        for trade in recent:
            print(
                f"  #{trade.id:<4d} {trade.symbol:5s} {trade.direction:5s} zone={trade.entry_zone} "
                f"conf={trade.confidence} [{trade.status.value}]"
            )
    else:
        print("\nNo trades recorded.")

    print(json.dumps({"operation_id": report.operation_id, "trades": report.trades_identified}, indent=2))


if __name__ == "__main__":
    main()
