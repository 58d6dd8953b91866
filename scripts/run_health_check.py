from __future__ import annotations

import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT / "src") not in sys.path:
    sys.path.insert(0, str(ROOT / "src"))

from trade_finder.health_check import generate_health_report, save_health_report
from trade_finder.settings import settings

OUT_PATH = ROOT / "runtime" / "health_report_latest.json"


def main() -> None:
    report = generate_health_report(settings.db_path)
    save_health_report(report, OUT_PATH)

    trades = report.get("trades", {})
    sources = report.get("data_sources", {})

    print(f"Health Score: {report.get('score', 0)}/100 ({report.get('status', 'unknown')})")
    print(
        f"Trades 24h: {trades.get('total', 0)} | active={trades.get('active', 0)} "
        f"expired={trades.get('expired', 0)} alerted={trades.get('alerted', 0)}"
    )
    print("Data sources: " + ", ".join(f"{code}={'ok' if ok else 'down'}" for code, ok in sources.items()))

    issues = report.get("issues", [])
    if issues:
        print("Issues:")
        for item in issues[:8]:
            print(f"- {item}")

    recs = report.get("recommendations", [])
    if recs:
        print("Recommendations:")
        for item in recs[:8]:
            print(f"- {item}")

    print(f"Saved: {OUT_PATH}")
    print(json.dumps({"score": report.get("score"), "status": report.get("status")}, indent=2))


if __name__ == "__main__":
    main()
