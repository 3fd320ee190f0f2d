from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Generic, List, Mapping, Optional, Sequence, TypeVar

from .cursors import advance_timestamp, get_cursor, load_cursor, set_cursor
from .errors import FatalSourceError
from .events import ProgressEvent, ProgressSink, null_sink
from .logging_utils import get_logger, log_json
from .models import CrawlCursor
from .storage import Store, Transaction
from .utils import day_bounds

logger = get_logger(__name__)

Item = TypeVar("Item")


@dataclass
class Page(Generic[Item]):
    items: List[Item]
    end_cursor: Any = None


@dataclass
class PaginationResult:
    pages: int = 0
    fetched: int = 0
    persisted: int = 0
    newest: Optional[datetime] = None
    cursor_advanced: bool = False


def is_newer(ts: Optional[datetime], since: Optional[datetime]) -> bool:
    if ts is None:
        return False
    return since is None or ts > since


def next_offset(page_size: int) -> Callable[[Any, Page], Any]:
    return lambda token, page: token + page_size


def next_end_cursor(token: Any, page: Page) -> Any:
    return page.end_cursor


async def paginate_new_items(
    *,
    store: Store,
    cursor: CrawlCursor,
    page_size: int,
    fetch_page: Callable[[Any], Awaitable[Page]],
    created_at: Callable[[Any], Optional[datetime]],
    persist: Callable[[List[Any]], Awaitable[None]],
    start_token: Any = 0,
    advance: Optional[Callable[[Any, Page], Any]] = None,
    page_delay_sec: float = 1.0,
    emit: ProgressSink = null_sink,
    stage: str = "items",
) -> PaginationResult:
    """Newest-first page walk that stops at the first page with nothing new.

    Pages are fetched strictly one after another. A page ends the walk when it
    is empty, holds no item newer than the timestamp cursor, or is shorter than
    ``page_size``. New items of a page are persisted before the next page is
    requested. The cursor is committed once, after the walk, and only if it
    moved forward; an exception (or cancellation) leaves it untouched.
    """
    advance = advance or next_offset(page_size)
    since = cursor.last_timestamp
    result = PaginationResult(newest=since)
    token = start_token

    while True:
        emit(
            ProgressEvent(
                source_name=cursor.source_name,
                stage=stage,
                message=f"fetching page {result.pages + 1}",
                processed=result.persisted,
            )
        )
        page = await fetch_page(token)
        result.pages += 1
        result.fetched += len(page.items)
        log_json(
            logger,
            logging.DEBUG,
            "page_fetched",
            source=cursor.source_name,
            stage=stage,
            token=token,
            size=len(page.items),
        )

        if not page.items:
            break

        new_items = [item for item in page.items if is_newer(created_at(item), since)]
        if not new_items:
            break

        await persist(new_items)
        result.persisted += len(new_items)
        for item in new_items:
            ts = created_at(item)
            if result.newest is None or ts > result.newest:
                result.newest = ts
        emit(
            ProgressEvent(
                source_name=cursor.source_name,
                stage=stage,
                message=f"persisted {len(new_items)} new of {len(page.items)} on page {result.pages}",
                processed=result.persisted,
            )
        )

        if len(page.items) < page_size:
            break

        next_token = advance(token, page)
        if next_token is None or next_token == token:
            break
        token = next_token
        await asyncio.sleep(page_delay_sec)

    result.cursor_advanced = await advance_timestamp(store, cursor, result.newest)
    if result.cursor_advanced:
        log_json(
            logger,
            logging.INFO,
            "cursor_advanced",
            source=cursor.source_name,
            sub_source=cursor.sub_source_id,
            previous=since,
            current=result.newest,
        )
    return result


@dataclass
class DayRangeResult:
    days_processed: List[date] = field(default_factory=list)
    rows_inserted: int = 0
    stopped_at: Optional[date] = None
    error: Optional[BaseException] = None


def next_day_to_process(last_processed: Optional[date], window_start: date) -> date:
    if last_processed is None:
        return window_start
    return max(last_processed + timedelta(days=1), window_start)


async def crawl_days(
    *,
    store: Store,
    source_name: str,
    sub_source_id: str,
    window_start: date,
    today: date,
    fetch_day: Callable[[datetime, datetime], Awaitable[Any]],
    rows_for_day: Callable[[date, Any], Sequence[Mapping[str, Any]]],
    table: str,
    conflict_keys: Sequence[str],
    force_refresh: bool = False,
    emit: ProgressSink = null_sink,
    stage: str = "days",
) -> DayRangeResult:
    """Process one calendar day at a time, oldest first, up to ``today``.

    A day's rows and the advanced day cursor are written in the same
    transaction, so a later failure can never leave a gap: the next run
    resumes at the first unprocessed day. Fatal source errors propagate; any
    other error ends this run at the failing day.
    """
    cursor = await load_cursor(store, source_name, sub_source_id)
    last = None if force_refresh else cursor.last_day
    current = next_day_to_process(last, window_start)
    result = DayRangeResult()

    log_json(
        logger,
        logging.INFO,
        "day_range_started",
        source=source_name,
        sub_source=sub_source_id,
        last_processed=last,
        start=current,
        today=today,
        force_refresh=force_refresh,
    )

    while current <= today:
        day_start, day_end = day_bounds(current)
        try:
            data = await fetch_day(day_start, day_end)
            rows = list(rows_for_day(current, data))

            def write(tx: Transaction, day: date = current) -> int:
                inserted = sum(1 for r in rows if tx.upsert(table, r, conflict_keys))
                previous = get_cursor(tx, source_name, sub_source_id)
                set_cursor(
                    tx,
                    CrawlCursor(
                        source_name=source_name,
                        sub_source_id=sub_source_id,
                        last_timestamp=previous.last_timestamp,
                        last_day=day,
                    ),
                )
                return inserted

            result.rows_inserted += await store.transaction(write)
        except FatalSourceError as e:
            log_json(logger, logging.ERROR, "day_range_aborted", source=source_name, day=current, error=str(e))
            raise
        except Exception as e:
            log_json(logger, logging.ERROR, "day_failed", source=source_name, day=current, error=str(e))
            result.stopped_at = current
            result.error = e
            return result

        result.days_processed.append(current)
        emit(
            ProgressEvent(
                source_name=source_name,
                stage=stage,
                message=f"processed {current.isoformat()} ({len(rows)} rows)",
                processed=len(result.days_processed),
            )
        )
        current = current + timedelta(days=1)

    log_json(
        logger,
        logging.INFO,
        "day_range_done",
        source=source_name,
        sub_source=sub_source_id,
        days=len(result.days_processed),
        rows_inserted=result.rows_inserted,
    )
    return result
