from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List

from .logging_utils import get_logger, log_json
from .models import CrawlStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    source_name: str
    stage: str
    message: str
    processed: int | None = None
    total: int | None = None


ProgressSink = Callable[[ProgressEvent], None]


def null_sink(event: ProgressEvent) -> None:
    return None


class CrawlObserver:
    """Lifecycle notifications from the Crawl Manager. Override what you need."""

    def on_start(self, source_name: str) -> None:
        pass

    def on_progress(self, event: ProgressEvent) -> None:
        pass

    def on_error(self, source_name: str, error: BaseException) -> None:
        pass

    def on_done(self, status: CrawlStatus) -> None:
        pass


class LoggingObserver(CrawlObserver):
    def __init__(self, log: logging.Logger | None = None):
        self.log = log or get_logger("dao_ingestion.crawl")

    def on_start(self, source_name: str) -> None:
        log_json(self.log, logging.INFO, "crawl_started", source=source_name)

    def on_progress(self, event: ProgressEvent) -> None:
        log_json(
            self.log,
            logging.INFO,
            "crawl_progress",
            source=event.source_name,
            stage=event.stage,
            message=event.message,
            processed=event.processed,
            total=event.total,
        )

    def on_error(self, source_name: str, error: BaseException) -> None:
        log_json(self.log, logging.ERROR, "crawl_error", source=source_name, error=str(error))

    def on_done(self, status: CrawlStatus) -> None:
        log_json(self.log, logging.INFO, "crawl_done", **status.to_dict())


class Observers:
    """Explicit observer registry. A failing observer is logged and skipped."""

    def __init__(self) -> None:
        self._observers: List[CrawlObserver] = []

    def register(self, observer: CrawlObserver) -> None:
        self._observers.append(observer)

    def unregister(self, observer: CrawlObserver) -> None:
        self._observers.remove(observer)

    def _each(self, method: str, *args) -> None:
        for obs in list(self._observers):
            try:
                getattr(obs, method)(*args)
            except Exception as e:
                log_json(logger, logging.WARNING, "observer_failed", observer=type(obs).__name__, hook=method, error=str(e))

    def start(self, source_name: str) -> None:
        self._each("on_start", source_name)

    def progress(self, event: ProgressEvent) -> None:
        self._each("on_progress", event)

    def error(self, source_name: str, error: BaseException) -> None:
        self._each("on_error", source_name, error)

    def done(self, status: CrawlStatus) -> None:
        self._each("on_done", status)
