import unittest
from datetime import datetime, timedelta, timezone

from dao_ingestion.cursors import CURSOR_TABLE, advance_timestamp, load_cursor
from dao_ingestion.models import CrawlCursor
from dao_ingestion.pagination import Page, next_end_cursor, paginate_new_items
from dao_ingestion.storage import MemoryStore

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def items(n, start, step_minutes):
    return [{"id": i, "created_at": start + timedelta(minutes=step_minutes * i)} for i in range(n)]


class Recorder:
    def __init__(self, pages):
        self.pages = pages
        self.tokens = []
        self.persisted = []

    async def fetch(self, token):
        self.tokens.append(token)
        return self.pages.get(token, Page(items=[]))

    async def persist(self, batch):
        self.persisted.extend(batch)


class TestOffsetPagination(unittest.IsolatedAsyncioTestCase):
    async def run_pages(self, store, pages, page_size=30, since=T0, **kwargs):
        rec = Recorder(pages)
        cursor = CrawlCursor(source_name="demo", sub_source_id="items", last_timestamp=since)
        result = await paginate_new_items(
            store=store,
            cursor=cursor,
            page_size=page_size,
            fetch_page=rec.fetch,
            created_at=lambda item: item["created_at"],
            persist=rec.persist,
            page_delay_sec=0,
            **kwargs,
        )
        return rec, result

    async def test_demo_scenario(self):
        store = MemoryStore()
        new = sorted(items(30, T0 + timedelta(minutes=1), 1), key=lambda i: i["created_at"], reverse=True)
        old = items(12, T0 - timedelta(days=1), 5)
        rec, result = await self.run_pages(store, {0: Page(items=new), 30: Page(items=old)})

        self.assertEqual(rec.tokens, [0, 30])
        self.assertEqual(result.persisted, 30)
        self.assertEqual(len(rec.persisted), 30)
        cursor = await load_cursor(store, "demo", "items")
        self.assertEqual(cursor.last_timestamp, max(i["created_at"] for i in new))

    async def test_short_page_stops_even_with_new_items(self):
        store = MemoryStore()
        page = items(10, T0 + timedelta(hours=1), 1)
        rec, result = await self.run_pages(store, {0: Page(items=page), 30: Page(items=items(30, T0 + timedelta(days=1), 1))})

        self.assertEqual(rec.tokens, [0])
        self.assertEqual(result.persisted, 10)

    async def test_page_with_only_old_items_stops(self):
        store = MemoryStore()
        rec, result = await self.run_pages(store, {0: Page(items=items(30, T0 - timedelta(days=2), 1))})
        self.assertEqual(rec.tokens, [0])
        self.assertEqual(result.persisted, 0)
        self.assertFalse(result.cursor_advanced)
        self.assertEqual(store.rows(CURSOR_TABLE), [])

    async def test_only_new_items_of_mixed_page_are_persisted(self):
        store = MemoryStore()
        mixed = items(20, T0 - timedelta(minutes=10), 1)
        rec, result = await self.run_pages(store, {0: Page(items=mixed)})
        self.assertEqual(result.persisted, 9)
        self.assertTrue(all(i["created_at"] > T0 for i in rec.persisted))

    async def test_end_cursor_that_does_not_move_stops(self):
        store = MemoryStore()
        page = Page(items=items(2, T0 + timedelta(minutes=1), 1), end_cursor="abc")
        pages = {None: page, "abc": page}
        rec, result = await self.run_pages(store, pages, page_size=2, start_token=None, advance=next_end_cursor)
        self.assertEqual(rec.tokens, [None, "abc"])
        self.assertEqual(result.persisted, 4)

    async def test_failure_leaves_cursor_untouched(self):
        store = MemoryStore()
        cursor = CrawlCursor(source_name="demo", sub_source_id="items", last_timestamp=T0)

        async def fetch(token):
            if token == 0:
                return Page(items=items(30, T0 + timedelta(minutes=1), 1))
            raise RuntimeError("network down")

        async def persist(batch):
            return None

        with self.assertRaises(RuntimeError):
            await paginate_new_items(
                store=store,
                cursor=cursor,
                page_size=30,
                fetch_page=fetch,
                created_at=lambda item: item["created_at"],
                persist=persist,
                page_delay_sec=0,
            )
        self.assertEqual(store.rows(CURSOR_TABLE), [])


class TestMonotonicCursor(unittest.IsolatedAsyncioTestCase):
    async def test_cursor_never_moves_backwards(self):
        store = MemoryStore()
        start = CrawlCursor(source_name="demo", sub_source_id="items")
        seen = []
        for ts in (T0, T0 + timedelta(hours=2), T0 + timedelta(hours=1), T0 - timedelta(days=1), T0 + timedelta(hours=3)):
            await advance_timestamp(store, start, ts)
            seen.append((await load_cursor(store, "demo", "items")).last_timestamp)

        self.assertEqual(seen, sorted(seen))
        self.assertEqual(seen[-1], T0 + timedelta(hours=3))

    async def test_stale_cursor_object_does_not_rewind(self):
        store = MemoryStore()
        stale = CrawlCursor(source_name="demo", sub_source_id="items")
        await advance_timestamp(store, stale, T0 + timedelta(hours=5))
        moved = await advance_timestamp(store, stale, T0)
        self.assertFalse(moved)
        self.assertEqual((await load_cursor(store, "demo", "items")).last_timestamp, T0 + timedelta(hours=5))


if __name__ == "__main__":
    unittest.main()
