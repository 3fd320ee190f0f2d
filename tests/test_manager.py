import asyncio
import unittest

from dao_ingestion.config import Settings, SourceConfig
from dao_ingestion.errors import (
    AuthenticationError,
    CrawlAlreadyRunningError,
    CrawlStoppedError,
    IngestionError,
    NoActiveCrawlError,
    UnknownSourceError,
)
from dao_ingestion.events import CrawlObserver, Observers
from dao_ingestion.manager import STOPPED_BY_USER, CrawlManager
from dao_ingestion.models import CrawlState
from dao_ingestion.runs import RUNS_TABLE, last_run
from dao_ingestion.storage import MemoryStore

from fakes import RecordingEvaluator, ScriptedCrawler, pipeline_factory


class RecordingObserver(CrawlObserver):
    def __init__(self):
        self.events = []

    def on_start(self, source_name):
        self.events.append(("start", source_name))

    def on_progress(self, event):
        self.events.append(("progress", event.stage))

    def on_error(self, source_name, error):
        self.events.append(("error", str(error)))

    def on_done(self, status):
        self.events.append(("done", status.state))


class BrokenObserver(CrawlObserver):
    def on_start(self, source_name):
        raise RuntimeError("observer broke")


def settings():
    return Settings(sources=(SourceConfig(name="DEMO"), SourceConfig(name="OTHER")), max_concurrent_sources=2)


class TestCrawlManager(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.evaluator = RecordingEvaluator()
        self.observer = RecordingObserver()
        self.order = []
        self.crawlers = {}

    def manager(self, **crawler_overrides):
        def parts(source_name):
            made = {
                "forum": ScriptedCrawler(source_name, "forum", log=self.order),
                "market": ScriptedCrawler(source_name, "market", log=self.order),
                "news": ScriptedCrawler(source_name, "news", evaluations=("news_articles",), log=self.order),
                "snapshot": ScriptedCrawler(source_name, "snapshot", evaluations=("snapshot_proposals",), log=self.order),
                "tally": None,
            }
            made.update(crawler_overrides.get(source_name, {}))
            self.crawlers[source_name] = made
            return made

        observers = Observers()
        observers.register(self.observer)
        return CrawlManager(
            settings(),
            self.store,
            evaluator=self.evaluator,
            observers=observers,
            pipeline_factory=pipeline_factory(parts),
        )

    async def test_successful_run_walks_every_stage(self):
        manager = self.manager()
        await manager.start_crawl("DEMO")

        status = manager.get_status("DEMO")
        self.assertEqual(status.state, CrawlState.COMPLETED)
        self.assertIsNone(status.last_error)
        self.assertIsNotNone(status.end_time)
        self.assertEqual(status.progress["forum"].processed, 3)
        self.assertEqual(self.order, ["forum", "market", "news", "snapshot"])
        self.assertEqual(
            [kind for _, kind in self.evaluator.calls],
            ["news_articles", "topics", "posts", "threads", "snapshot_proposals"],
        )
        self.assertNotIn("DEMO", manager.heartbeat.tracked())
        self.assertTrue(all(c.client.closed for c in self.crawlers["DEMO"].values() if c is not None))

        runs = self.store.rows(RUNS_TABLE)
        self.assertEqual(len(runs), 1)
        self.assertEqual(runs[0]["status"], "completed")
        record = await self.store.transaction(lambda tx: last_run(tx, "DEMO"))
        self.assertEqual(record.status, "completed")
        self.assertEqual(record.progress["forum"]["processed"], 3)
        self.assertEqual(self.observer.events[0], ("start", "DEMO"))
        self.assertEqual(self.observer.events[-1], ("done", CrawlState.COMPLETED))

    async def test_start_while_running_is_rejected(self):
        gate = asyncio.Event()
        forum = ScriptedCrawler("DEMO", "forum", gate=gate)
        manager = self.manager(DEMO={"forum": forum})

        first = asyncio.create_task(manager.start_crawl("DEMO"))
        await forum.entered.wait()
        self.assertEqual(manager.get_status("DEMO").state, CrawlState.RUNNING)
        with self.assertRaises(CrawlAlreadyRunningError):
            await manager.start_crawl("DEMO")

        gate.set()
        await first
        self.assertEqual(manager.get_status("DEMO").state, CrawlState.COMPLETED)

    async def test_ancillary_failure_does_not_fail_run(self):
        manager = self.manager(
            DEMO={"market": ScriptedCrawler("DEMO", "market", error=IngestionError("coingecko down"), log=self.order)}
        )
        await manager.start_crawl("DEMO")

        status = manager.get_status("DEMO")
        self.assertEqual(status.state, CrawlState.COMPLETED)
        self.assertIsNone(status.last_error)
        self.assertIn("news", self.order)
        self.assertIn(("error", "coingecko down"), self.observer.events)

    async def test_evaluation_failure_fails_run_and_clears_heartbeat(self):
        self.evaluator.fail_on = "posts"
        manager = self.manager()
        with self.assertRaises(RuntimeError):
            await manager.start_crawl("DEMO")

        status = manager.get_status("DEMO")
        self.assertEqual(status.state, CrawlState.FAILED)
        self.assertIn("posts", status.last_error)
        self.assertFalse(manager.heartbeat.is_stalled("DEMO"))
        self.assertNotIn("DEMO", manager.heartbeat.get_all_stalled())
        self.assertNotIn("DEMO", manager.heartbeat.tracked())
        self.assertNotIn("snapshot", self.order)
        self.assertEqual(self.store.rows(RUNS_TABLE)[0]["status"], "failed")

    async def test_fatal_forum_error_fails_run(self):
        manager = self.manager(
            DEMO={"forum": ScriptedCrawler("DEMO", "forum", error=AuthenticationError("HTTP 401"), log=self.order)}
        )
        with self.assertRaises(AuthenticationError):
            await manager.start_crawl("DEMO")
        self.assertEqual(manager.get_status("DEMO").state, CrawlState.FAILED)
        self.assertEqual(self.order, ["forum"])

    async def test_failed_source_can_be_restarted(self):
        manager = self.manager(
            DEMO={"forum": ScriptedCrawler("DEMO", "forum", error=AuthenticationError("HTTP 401"))}
        )
        with self.assertRaises(AuthenticationError):
            await manager.start_crawl("DEMO")

        manager.pipeline_factory = self.manager().pipeline_factory
        await manager.start_crawl("DEMO")
        self.assertEqual(manager.get_status("DEMO").state, CrawlState.COMPLETED)
        self.assertIsNone(manager.get_status("DEMO").last_error)

    async def test_stop_cancels_and_goes_idle(self):
        forum = ScriptedCrawler("DEMO", "forum", gate=asyncio.Event())
        manager = self.manager(DEMO={"forum": forum})

        run = asyncio.create_task(manager.start_crawl("DEMO"))
        await forum.entered.wait()
        await manager.stop_crawl("DEMO")

        with self.assertRaises(CrawlStoppedError):
            await run
        status = manager.get_status("DEMO")
        self.assertEqual(status.state, CrawlState.IDLE)
        self.assertEqual(status.last_error, STOPPED_BY_USER)
        self.assertNotIn("DEMO", manager.heartbeat.tracked())
        self.assertTrue(forum.client.closed)
        self.assertEqual(self.store.rows(RUNS_TABLE)[0]["status"], "stopped")

    async def test_restart_right_after_stop_keeps_new_run(self):
        first = ScriptedCrawler("DEMO", "forum", gate=asyncio.Event())
        second = ScriptedCrawler("DEMO", "forum", gate=asyncio.Event())
        manager = self.manager(DEMO={"forum": first})
        restart_factory = self.manager(DEMO={"forum": second}).pipeline_factory

        async def supervisor():
            try:
                await manager.start_crawl("DEMO")
            except CrawlStoppedError:
                manager.pipeline_factory = restart_factory
                await manager.start_crawl("DEMO")

        supervised = asyncio.create_task(supervisor())
        await first.entered.wait()
        await manager.stop_crawl("DEMO")
        await second.entered.wait()

        status = manager.get_status("DEMO")
        self.assertEqual(status.state, CrawlState.RUNNING)
        self.assertIsNone(status.last_error)
        self.assertIn("DEMO", manager.heartbeat.tracked())
        with self.assertRaises(CrawlAlreadyRunningError):
            await manager.start_crawl("DEMO")

        second.gate.set()
        await supervised
        self.assertEqual(manager.get_status("DEMO").state, CrawlState.COMPLETED)
        self.assertEqual([r["status"] for r in self.store.rows(RUNS_TABLE)].count("stopped"), 1)

    async def test_stop_without_active_crawl(self):
        manager = self.manager()
        with self.assertRaises(NoActiveCrawlError):
            await manager.stop_crawl("DEMO")

    async def test_unknown_source(self):
        manager = self.manager()
        with self.assertRaises(UnknownSourceError):
            await manager.start_crawl("NOPE")
        self.assertIsNone(manager.get_status("NOPE"))

    async def test_crawl_all_isolates_failures(self):
        manager = self.manager(
            OTHER={"forum": ScriptedCrawler("OTHER", "forum", error=AuthenticationError("HTTP 401"))}
        )
        results = await manager.crawl_all()

        self.assertEqual(results["DEMO"], "completed")
        self.assertTrue(results["OTHER"].startswith("failed"))
        states = {s.source_name: s.state for s in manager.get_all_statuses()}
        self.assertEqual(states, {"DEMO": CrawlState.COMPLETED, "OTHER": CrawlState.FAILED})

    async def test_broken_observer_does_not_break_crawl(self):
        manager = self.manager()
        manager.observers.register(BrokenObserver())
        await manager.start_crawl("DEMO")
        self.assertEqual(manager.get_status("DEMO").state, CrawlState.COMPLETED)

    async def test_run_history_failure_is_not_fatal(self):
        manager = self.manager()

        async def broken_transaction(fn):
            raise RuntimeError("db down")

        self.store.transaction = broken_transaction
        with self.assertLogs("dao_ingestion.manager", level="WARNING") as logs:
            await manager.start_crawl("DEMO")
        self.assertEqual(manager.get_status("DEMO").state, CrawlState.COMPLETED)
        self.assertTrue(any("run_history_failed" in line for line in logs.output))


if __name__ == "__main__":
    unittest.main()
