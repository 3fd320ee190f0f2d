from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Mapping


class CrawlState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class StageProgress:
    processed: int = 0
    total: int | None = None


@dataclass(frozen=True)
class CrawlStatus:
    """Snapshot of one source's crawl. Replaced, never mutated."""

    source_name: str
    state: CrawlState = CrawlState.IDLE
    start_time: datetime | None = None
    end_time: datetime | None = None
    last_error: str | None = None
    progress: Mapping[str, StageProgress] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_name": self.source_name,
            "state": self.state.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "last_error": self.last_error,
            "progress": {k: {"processed": v.processed, "total": v.total} for k, v in self.progress.items()},
        }


@dataclass(frozen=True)
class CrawlCursor:
    source_name: str
    sub_source_id: str
    last_timestamp: datetime | None = None
    last_day: date | None = None
    updated_at: datetime | None = None


@dataclass
class RetryAttempt:
    attempt_number: int
    max_attempts: int
    last_error: BaseException | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempt_number >= self.max_attempts


@dataclass
class RunRecord:
    run_id: str
    source_name: str
    status: str
    started_at: datetime | None = None
    ended_at: datetime | None = None
    progress: Dict[str, Any] = field(default_factory=dict)
    error_text: str | None = None
