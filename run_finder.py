"""
  ============================================
   TRADE FINDER -- Launcher
  ============================================

  Usage:
    python run_finder.py             # scheduler: finder cycle, expiry, statistics, cleanup
    python run_finder.py --once      # one finder cycle and one expiry sweep, then exit
    python run_finder.py --api       # HTTP API (uvicorn)

  Each finder cycle, per symbol:
    1. Collect recent transformed events and multi-timeframe candles
    2. Ask the reasoning model for a setup
    3. Drop duplicates of a setup already seen this hour
    4. Persist the trade and record the alert tier
"""

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent
if str(ROOT / "src") not in sys.path:
    sys.path.insert(0, str(ROOT / "src"))

from trade_finder.main import run_once, run_service
from trade_finder.settings import settings


def run_api() -> None:
    import uvicorn

    uvicorn.run("trade_finder.api:app", host=settings.api_host, port=settings.api_port)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Trade Finder -- Launcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_finder.py             # continuous, every TRADE_FINDER_INTERVAL_SECONDS
  python run_finder.py --once      # single cycle then exit
  python run_finder.py --api       # serve /api/v1 on API_HOST:API_PORT
        """,
    )
    parser.add_argument("--once", action="store_true", help="Run a single cycle then exit")
    parser.add_argument("--api", action="store_true", help="Serve the HTTP API instead of the scheduler")
    args = parser.parse_args()

    if args.once:
        print(json.dumps(run_once(), indent=2))
    elif args.api:
        run_api()
    else:
        run_service()


if __name__ == "__main__":
    main()
