from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..errors import ConfigurationError
from ..events import ProgressSink, null_sink
from ..logging_utils import get_logger, log_json
from ..pagination import DayRangeResult, crawl_days
from ..storage import Store
from ..utils import today_utc
from .base import SourceCrawler

logger = get_logger(__name__)

MARKET_TABLE = "token_market_data"
MARKET_KEYS = ("forum_name", "coingecko_id", "timestamp")


def market_rows(forum_name: str, coingecko_id: str, data: Optional[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Merge the price, market cap and volume series into one row per timestamp (ms)."""
    if not data:
        return []
    series = {
        "price": data.get("prices"),
        "market_cap": data.get("market_caps"),
        "volume": data.get("total_volumes"),
    }
    if any(not isinstance(points, list) for points in series.values()):
        return []

    merged: Dict[int, Dict[str, Any]] = {}
    for column, points in series.items():
        for ts, value in points:
            ts = int(ts)
            row = merged.setdefault(
                ts,
                {
                    "forum_name": forum_name,
                    "coingecko_id": coingecko_id,
                    "timestamp": ts,
                    "date": datetime.fromtimestamp(ts / 1000, tz=timezone.utc).date().isoformat(),
                    "price": None,
                    "market_cap": None,
                    "volume": None,
                },
            )
            row[column] = value
    return [merged[ts] for ts in sorted(merged)]


class MarketDataCrawler(SourceCrawler):
    """Daily CoinGecko market data for one token, one UTC day at a time."""

    stage = "market"

    def __init__(
        self,
        source_name: str,
        coingecko_id: str | None,
        client: Any,
        store: Store,
        *,
        base_url: str = "https://pro-api.coingecko.com/api/v3",
        api_key: str | None = None,
        backfill_days: int = 30,
        today: Callable[[], date] = today_utc,
        force_refresh: bool = False,
        emit: ProgressSink = null_sink,
    ):
        super().__init__(source_name, client, store, emit=emit)
        self.coingecko_id = coingecko_id
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.backfill_days = backfill_days
        self.today = today
        self.force_refresh = force_refresh
        self.last_result: DayRangeResult | None = None

    @property
    def name(self) -> str:
        return f"{self.source_name}:market"

    @property
    def sub_source_id(self) -> str:
        return f"market:{self.coingecko_id}"

    async def run(self) -> None:
        if not self.coingecko_id:
            log_json(logger, logging.INFO, "market_skipped", source=self.source_name, reason="no coingecko id")
            return
        if not self.api_key:
            raise ConfigurationError("Missing COINGECKO_PRO_API_KEY.")

        today = self.today()
        self.last_result = await crawl_days(
            store=self.store,
            source_name=self.source_name,
            sub_source_id=self.sub_source_id,
            window_start=today - timedelta(days=self.backfill_days),
            today=today,
            fetch_day=self.fetch_day,
            rows_for_day=lambda day, data: market_rows(self.source_name, self.coingecko_id, data),
            table=MARKET_TABLE,
            conflict_keys=MARKET_KEYS,
            force_refresh=self.force_refresh,
            emit=self.emit,
            stage=self.stage,
        )
        result = self.last_result
        if result.error is not None:
            self.progress(
                f"stopped at {result.stopped_at}; next run resumes there",
                processed=len(result.days_processed),
            )
        else:
            self.progress(
                f"caught up through {today.isoformat()} ({result.rows_inserted} new rows)",
                processed=len(result.days_processed),
            )

    async def fetch_day(self, day_start: datetime, day_end: datetime) -> Any:
        return await self.client.get_json(
            f"{self.base_url}/coins/{self.coingecko_id}/market_chart/range",
            params={
                "vs_currency": "usd",
                "from": int(day_start.timestamp()),
                "to": int(day_end.timestamp()),
            },
            headers={"x-cg-pro-api-key": self.api_key},
        )
