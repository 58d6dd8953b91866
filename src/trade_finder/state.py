from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class FinderState:
    last_cycle_started_at: datetime | None = None
    last_cycle_finished_at: datetime | None = None
    last_cycle_summary: dict[str, Any] = field(default_factory=dict)
    consecutive_failures: int = 0

    def mark_start(self) -> None:
        self.last_cycle_started_at = datetime.now(timezone.utc)

    def mark_finish(self, summary: dict[str, Any], failed: bool) -> None:
        self.last_cycle_finished_at = datetime.now(timezone.utc)
        self.last_cycle_summary = summary
        self.consecutive_failures = self.consecutive_failures + 1 if failed else 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "last_cycle_started_at": self.last_cycle_started_at.isoformat() if self.last_cycle_started_at else None,
            "last_cycle_finished_at": self.last_cycle_finished_at.isoformat() if self.last_cycle_finished_at else None,
            "last_cycle_summary": self.last_cycle_summary,
            "consecutive_failures": self.consecutive_failures,
        }


finder_state = FinderState()
