from __future__ import annotations

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime

from .models import utc_now


@dataclass
class StageRecord:
    runs: int = 0
    skipped: int = 0
    consecutive_failures: int = 0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_status: str = "never_run"
    last_error: str | None = None
    last_summary: dict = field(default_factory=dict)


class RuntimeState:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.started_at = utc_now()
        self.stages: dict[str, StageRecord] = {}

    def _record(self, stage: str) -> StageRecord:
        return self.stages.setdefault(stage, StageRecord())

    def mark_success(self, stage: str, started_at: datetime, summary: dict) -> None:
        with self._lock:
            record = self._record(stage)
            record.runs += 1
            record.consecutive_failures = 0
            record.last_started_at = started_at
            record.last_finished_at = utc_now()
            record.last_status = "ok"
            record.last_error = None
            record.last_summary = summary

    def mark_failure(self, stage: str, started_at: datetime, error: str) -> None:
        with self._lock:
            record = self._record(stage)
            record.runs += 1
            record.consecutive_failures += 1
            record.last_started_at = started_at
            record.last_finished_at = utc_now()
            record.last_status = "failed"
            record.last_error = error

    def mark_skipped(self, stage: str) -> None:
        with self._lock:
            self._record(stage).skipped += 1

    def snapshot(self) -> dict:
        with self._lock:
            stages = {
                name: {
                    **asdict(record),
                    "last_started_at": record.last_started_at.isoformat() if record.last_started_at else None,
                    "last_finished_at": record.last_finished_at.isoformat() if record.last_finished_at else None,
                }
                for name, record in self.stages.items()
            }
        return {"started_at": self.started_at.isoformat(), "stages": stages}
