from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from .collaborators import FORUM_EVALUATIONS, Evaluator, LoggingEvaluator, LoggingVectorizer, Vectorizer
from .config import Settings
from .errors import CrawlAlreadyRunningError, CrawlStoppedError, NoActiveCrawlError, UnknownSourceError
from .events import Observers, ProgressEvent
from .heartbeat import HeartbeatMonitor, StallChecker
from .logging_utils import get_logger, log_json
from .models import CrawlState, CrawlStatus, StageProgress
from .registry import SourcePipeline, build_pipeline
from .runs import finish_run, start_run
from .sources.base import SourceCrawler
from .storage import Store, Transaction
from .utils import now_utc

logger = get_logger(__name__)

STOPPED_BY_USER = "stopped by user"

PipelineFactory = Callable[..., SourcePipeline]


class CrawlManager:
    """Runs crawls per source and owns their status.

    Status is one immutable ``CrawlStatus`` per source, replaced on every
    change. The check-and-set in ``start_crawl`` has no suspension point in
    between, so two racing starts cannot both get through.
    """

    def __init__(
        self,
        settings: Settings,
        store: Store,
        *,
        evaluator: Evaluator | None = None,
        vectorizer: Vectorizer | None = None,
        observers: Observers | None = None,
        heartbeat: HeartbeatMonitor | None = None,
        pipeline_factory: PipelineFactory = build_pipeline,
    ):
        self.settings = settings
        self.store = store
        self.evaluator = evaluator or LoggingEvaluator()
        self.vectorizer = vectorizer or LoggingVectorizer()
        self.observers = observers or Observers()
        self.heartbeat = heartbeat or HeartbeatMonitor(settings.heartbeat_threshold_sec)
        self.pipeline_factory = pipeline_factory
        self._statuses: Dict[str, CrawlStatus] = {s.name: CrawlStatus(source_name=s.name) for s in settings.sources}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop_requested: set[str] = set()

    # -- status -------------------------------------------------------------

    def get_status(self, source_name: str) -> Optional[CrawlStatus]:
        return self._statuses.get(source_name)

    def get_all_statuses(self) -> List[CrawlStatus]:
        return list(self._statuses.values())

    def _update(self, source_name: str, **changes) -> CrawlStatus:
        status = replace(self._statuses[source_name], **changes)
        self._statuses[source_name] = status
        return status

    def _on_progress(self, event: ProgressEvent) -> None:
        self.heartbeat.update_heartbeat(event.source_name)
        if event.processed is not None and event.source_name in self._statuses:
            progress = dict(self._statuses[event.source_name].progress)
            progress[event.stage] = StageProgress(processed=event.processed, total=event.total)
            self._update(event.source_name, progress=progress)
        self.observers.progress(event)

    def stall_checker(self) -> StallChecker:
        return StallChecker(self.heartbeat, self.settings.stall_check_interval_sec)

    # -- lifecycle ----------------------------------------------------------

    async def start_crawl(self, source_name: str) -> None:
        status = self._statuses.get(source_name)
        if status is None:
            raise UnknownSourceError(f"Unknown source: {source_name}")
        if status.state is CrawlState.RUNNING:
            raise CrawlAlreadyRunningError(f"Crawl already running for {source_name}")

        self._update(
            source_name,
            state=CrawlState.RUNNING,
            start_time=now_utc(),
            end_time=None,
            last_error=None,
            progress={},
        )
        task = asyncio.create_task(self._run(source_name, str(uuid4())), name=f"crawl:{source_name}")
        self._tasks[source_name] = task
        try:
            await task
        except asyncio.CancelledError:
            if source_name in self._stop_requested and task.cancelled():
                raise CrawlStoppedError(f"Crawl for {source_name} was stopped by user") from None
            raise
        finally:
            self._stop_requested.discard(source_name)
            if self._tasks.get(source_name) is task:
                del self._tasks[source_name]

    async def stop_crawl(self, source_name: str) -> None:
        task = self._tasks.get(source_name)
        if task is None or task.done():
            raise NoActiveCrawlError(f"No active crawl for {source_name}")

        self._stop_requested.add(source_name)
        task.cancel()
        await asyncio.wait({task})
        # _run settles the status itself; only a task cancelled before it ever
        # started leaves RUNNING behind. A restart may already own the slot.
        still_ours = self._tasks.get(source_name) in (None, task)
        if still_ours and self._statuses[source_name].state is CrawlState.RUNNING:
            self.heartbeat.clear(source_name)
            self._update(source_name, state=CrawlState.IDLE, end_time=now_utc(), last_error=STOPPED_BY_USER)
        log_json(logger, logging.INFO, "crawl_stopped", source=source_name)

    async def crawl_all(self, source_names: Iterable[str] | None = None) -> Dict[str, str]:
        """Crawl several sources concurrently. Never raises for one source's failure."""
        names = list(source_names) if source_names is not None else list(self._statuses)
        limit = asyncio.Semaphore(max(self.settings.max_concurrent_sources, 1))

        async def one(name: str) -> str:
            async with limit:
                status = self._statuses.get(name)
                if status is not None and status.state is CrawlState.RUNNING:
                    log_json(logger, logging.INFO, "crawl_skipped", source=name, reason="already running")
                    return "skipped"
                try:
                    await self.start_crawl(name)
                except CrawlAlreadyRunningError:
                    return "skipped"
                except CrawlStoppedError:
                    return "stopped"
                except Exception as e:
                    return f"failed: {e}"
                return "completed"

        results = await asyncio.gather(*(one(n) for n in names))
        return dict(zip(names, results))

    # -- run ----------------------------------------------------------------

    async def _run(self, source_name: str, run_id: str) -> None:
        self.heartbeat.update_heartbeat(source_name)
        self.observers.start(source_name)

        try:
            await self._record_run(lambda tx: start_run(tx, run_id, source_name))
            pipeline = self.pipeline_factory(
                self.settings,
                source_name,
                self.store,
                vectorizer=self.vectorizer,
                emit=self._on_progress,
            )
            try:
                await self._run_stages(source_name, pipeline)
            finally:
                pipeline.close()
        except asyncio.CancelledError:
            self.heartbeat.clear(source_name)
            status = self._update(source_name, state=CrawlState.IDLE, end_time=now_utc(), last_error=STOPPED_BY_USER)
            await self._finish_run(run_id, status, "stopped")
            self.observers.done(status)
            raise
        except Exception as e:
            self.heartbeat.clear(source_name)
            status = self._update(source_name, state=CrawlState.FAILED, end_time=now_utc(), last_error=str(e))
            log_json(logger, logging.ERROR, "crawl_failed", source=source_name, run_id=run_id, error=str(e))
            self.observers.error(source_name, e)
            await self._finish_run(run_id, status, "failed")
            self.observers.done(status)
            raise

        self.heartbeat.clear(source_name)
        status = self._update(source_name, state=CrawlState.COMPLETED, end_time=now_utc())
        await self._finish_run(run_id, status, "completed")
        self.observers.done(status)

    async def _run_stages(self, source_name: str, pipeline: SourcePipeline) -> None:
        await pipeline.forum.run()

        for crawler in (pipeline.market, pipeline.news):
            if crawler is not None:
                await self._run_ancillary(source_name, crawler)

        await self._evaluate(source_name, FORUM_EVALUATIONS)

        for crawler in (pipeline.snapshot, pipeline.tally):
            if crawler is not None:
                await crawler.run()
                await self._evaluate(source_name, crawler.evaluations)

    async def _run_ancillary(self, source_name: str, crawler: SourceCrawler) -> None:
        try:
            await crawler.run()
            await self._evaluate(source_name, crawler.evaluations)
        except Exception as e:
            log_json(
                logger,
                logging.ERROR,
                "ancillary_stage_failed",
                source=source_name,
                stage=crawler.stage,
                error=str(e),
            )
            self.heartbeat.update_heartbeat(source_name)
            self.observers.error(source_name, e)

    async def _evaluate(self, source_name: str, kinds: Iterable[str]) -> None:
        for kind in kinds:
            self._on_progress(ProgressEvent(source_name=source_name, stage="evaluation", message=f"evaluating {kind}"))
            await self.evaluator.evaluate_unanalyzed(source_name, kind)

    # -- run history --------------------------------------------------------

    async def _record_run(self, fn: Callable[[Transaction], None]) -> None:
        try:
            await self.store.transaction(fn)
        except Exception as e:
            log_json(logger, logging.WARNING, "run_history_failed", error=str(e))

    async def _finish_run(self, run_id: str, status: CrawlStatus, outcome: str) -> None:
        progress = status.to_dict()["progress"]
        await self._record_run(
            lambda tx: finish_run(tx, run_id, status.source_name, outcome, progress, status.last_error)
        )
