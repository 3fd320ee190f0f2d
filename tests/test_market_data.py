import unittest
from datetime import date, datetime, timezone

from dao_ingestion.cursors import load_cursor
from dao_ingestion.errors import AuthenticationError, ConfigurationError, IngestionError
from dao_ingestion.sources.market import MARKET_TABLE, MarketDataCrawler, market_rows
from dao_ingestion.storage import MemoryStore

from fakes import FakeClient

BASE = "https://cg.example/api/v3"
CHART_URL = f"{BASE}/coins/uniswap/market_chart/range"
TODAY = date(2024, 1, 10)


def day_of(params):
    return datetime.fromtimestamp(params["from"], tz=timezone.utc).date()


class MarketApi:
    """Two data points per requested day; can fail on chosen days."""

    def __init__(self, failures=None):
        self.failures = dict(failures or {})
        self.days = []

    def __call__(self, params=None, headers=None, **kwargs):
        day = day_of(params)
        self.days.append(day)
        if day in self.failures:
            return self.failures.pop(day)
        start_ms = params["from"] * 1000
        points = [start_ms, start_ms + 12 * 3600 * 1000]
        return {
            "prices": [[ts, 5.0] for ts in points],
            "market_caps": [[ts, 1e9] for ts in points],
            "total_volumes": [[ts, 1e6] for ts in points],
        }


def make_crawler(store, api, force_refresh=False, api_key="key"):
    return MarketDataCrawler(
        "UNISWAP",
        "uniswap",
        FakeClient({CHART_URL: api}),
        store,
        base_url=BASE,
        api_key=api_key,
        backfill_days=9,
        today=lambda: TODAY,
        force_refresh=force_refresh,
    )


class TestMarketRows(unittest.TestCase):
    def test_series_merged_by_timestamp(self):
        rows = market_rows(
            "UNISWAP",
            "uniswap",
            {"prices": [[1000, 1.0], [2000, 2.0]], "market_caps": [[1000, 10.0]], "total_volumes": [[2000, 7.0]]},
        )
        self.assertEqual([r["timestamp"] for r in rows], [1000, 2000])
        self.assertEqual(rows[0]["market_cap"], 10.0)
        self.assertIsNone(rows[0]["volume"])
        self.assertEqual(rows[1]["volume"], 7.0)
        self.assertEqual(rows[0]["date"], "1970-01-01")

    def test_invalid_payload_gives_no_rows(self):
        self.assertEqual(market_rows("A", "a", {"prices": []}), [])
        self.assertEqual(market_rows("A", "a", None), [])


class TestMarketDataCrawler(unittest.IsolatedAsyncioTestCase):
    async def test_backfills_every_day_through_today(self):
        store = MemoryStore()
        api = MarketApi()
        crawler = make_crawler(store, api)
        await crawler.run()

        self.assertEqual(api.days, [date(2024, 1, d) for d in range(1, 11)])
        self.assertEqual(len(store.rows(MARKET_TABLE)), 20)
        cursor = await load_cursor(store, "UNISWAP", crawler.sub_source_id)
        self.assertEqual(cursor.last_day, TODAY)
        self.assertEqual(crawler.client.calls[0][1]["headers"], {"x-cg-pro-api-key": "key"})

    async def test_redelivery_is_idempotent(self):
        store = MemoryStore()
        await make_crawler(store, MarketApi()).run()
        before = store.rows(MARKET_TABLE)

        again = make_crawler(store, MarketApi(), force_refresh=True)
        await again.run()
        self.assertEqual(again.last_result.rows_inserted, 0)
        self.assertEqual(len(again.last_result.days_processed), 10)
        self.assertEqual(len(store.rows(MARKET_TABLE)), len(before))

    async def test_caught_up_run_fetches_nothing(self):
        store = MemoryStore()
        await make_crawler(store, MarketApi()).run()
        api = MarketApi()
        await make_crawler(store, api).run()
        self.assertEqual(api.days, [])

    async def test_auth_failure_on_day_five_keeps_first_four(self):
        store = MemoryStore()
        api = MarketApi({date(2024, 1, 5): AuthenticationError("HTTP 401")})
        crawler = make_crawler(store, api)
        with self.assertRaises(AuthenticationError):
            await crawler.run()

        rows = store.rows(MARKET_TABLE)
        self.assertEqual(sorted({r["date"] for r in rows}), [f"2024-01-0{d}" for d in range(1, 5)])
        cursor = await load_cursor(store, "UNISWAP", crawler.sub_source_id)
        self.assertEqual(cursor.last_day, date(2024, 1, 4))

        resumed = MarketApi()
        await make_crawler(store, resumed).run()
        self.assertEqual(resumed.days[0], date(2024, 1, 5))
        self.assertEqual(resumed.days[-1], TODAY)

    async def test_other_error_stops_run_without_gap(self):
        store = MemoryStore()
        api = MarketApi({date(2024, 1, 3): IngestionError("bad gateway")})
        crawler = make_crawler(store, api)
        await crawler.run()

        self.assertEqual(crawler.last_result.stopped_at, date(2024, 1, 3))
        self.assertEqual(api.days[-1], date(2024, 1, 3))
        cursor = await load_cursor(store, "UNISWAP", crawler.sub_source_id)
        self.assertEqual(cursor.last_day, date(2024, 1, 2))

        resumed = MarketApi()
        await make_crawler(store, resumed).run()
        self.assertEqual(resumed.days[0], date(2024, 1, 3))

    async def test_missing_api_key_is_configuration_error(self):
        with self.assertRaises(ConfigurationError):
            await make_crawler(MemoryStore(), MarketApi(), api_key=None).run()


if __name__ == "__main__":
    unittest.main()
