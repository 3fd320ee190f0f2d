from __future__ import annotations

import json
from typing import Any, Optional

from .models import RunRecord
from .storage import Transaction
from .utils import now_utc

RUNS_TABLE = "crawl_runs"
RUNS_KEYS = ("run_id",)


def start_run(tx: Transaction, run_id: str, source_name: str) -> None:
    tx.upsert(
        RUNS_TABLE,
        {
            "run_id": run_id,
            "source_name": source_name,
            "status": "running",
            "started_at": now_utc(),
            "progress_json": "{}",
        },
        RUNS_KEYS,
    )


def finish_run(tx: Transaction, run_id: str, source_name: str, status: str, progress: dict, error_text: str | None) -> None:
    tx.upsert(
        RUNS_TABLE,
        {
            "run_id": run_id,
            "source_name": source_name,
            "status": status,
            "ended_at": now_utc(),
            "progress_json": json.dumps(progress, default=str, ensure_ascii=False),
            "error_text": error_text,
        },
        RUNS_KEYS,
    )


def last_run(tx: Transaction, source_name: str) -> Optional[RunRecord]:
    rows = tx.select(RUNS_TABLE, {"source_name": source_name})
    if not rows:
        return None
    row = max(rows, key=lambda r: r["started_at"])
    return _to_record(row)


def _to_record(row: dict[str, Any]) -> RunRecord:
    progress = row.get("progress_json") or "{}"
    if isinstance(progress, str):
        progress = json.loads(progress)
    return RunRecord(
        run_id=row["run_id"],
        source_name=row["source_name"],
        status=row["status"],
        started_at=row.get("started_at"),
        ended_at=row.get("ended_at"),
        progress=progress,
        error_text=row.get("error_text"),
    )
