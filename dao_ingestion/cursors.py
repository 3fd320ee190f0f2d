from __future__ import annotations

from datetime import date, datetime

from .models import CrawlCursor
from .storage import Store, Transaction
from .utils import now_utc

CURSOR_TABLE = "crawl_cursor"
CURSOR_KEYS = ("source_name", "sub_source_id")


def get_cursor(tx: Transaction, source_name: str, sub_source_id: str) -> CrawlCursor:
    row = tx.select_one(CURSOR_TABLE, {"source_name": source_name, "sub_source_id": sub_source_id})
    if not row:
        return CrawlCursor(source_name=source_name, sub_source_id=sub_source_id)
    last_day = row.get("last_day")
    if isinstance(last_day, datetime):
        last_day = last_day.date()
    elif isinstance(last_day, str):
        last_day = date.fromisoformat(last_day)
    return CrawlCursor(
        source_name=source_name,
        sub_source_id=sub_source_id,
        last_timestamp=row.get("last_timestamp"),
        last_day=last_day,
        updated_at=row.get("updated_at"),
    )


def set_cursor(tx: Transaction, cursor: CrawlCursor) -> None:
    tx.upsert(
        CURSOR_TABLE,
        {
            "source_name": cursor.source_name,
            "sub_source_id": cursor.sub_source_id,
            "last_timestamp": cursor.last_timestamp,
            "last_day": cursor.last_day,
            "updated_at": now_utc(),
        },
        CURSOR_KEYS,
    )


async def load_cursor(store: Store, source_name: str, sub_source_id: str) -> CrawlCursor:
    return await store.transaction(lambda tx: get_cursor(tx, source_name, sub_source_id))


async def advance_timestamp(store: Store, cursor: CrawlCursor, newest: datetime | None) -> bool:
    """Persist ``newest`` only if it moves the timestamp cursor forward."""
    if newest is None:
        return False
    if cursor.last_timestamp is not None and newest <= cursor.last_timestamp:
        return False

    def write(tx: Transaction) -> bool:
        # Re-read inside the transaction; another run may have moved it.
        current = get_cursor(tx, cursor.source_name, cursor.sub_source_id)
        if current.last_timestamp is not None and newest <= current.last_timestamp:
            return False
        set_cursor(
            tx,
            CrawlCursor(
                source_name=cursor.source_name,
                sub_source_id=cursor.sub_source_id,
                last_timestamp=newest,
                last_day=current.last_day,
            ),
        )
        return True

    return await store.transaction(write)
