from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from ..events import ProgressEvent, ProgressSink, null_sink
from ..storage import Store


class SourceCrawler(ABC):
    """One external source for one logical source name.

    ``run`` fetches everything new since the crawler's own cursor, persists it
    and advances the cursor. It owns its client; ``async with crawler`` makes
    sure the client is released on success, failure and cancellation.
    """

    stage: str = "source"
    # Content kinds handed to the evaluator after a successful run.
    evaluations: tuple = ()

    def __init__(self, source_name: str, client: Any, store: Store, *, emit: ProgressSink = null_sink):
        self.source_name = source_name
        self.client = client
        self.store = store
        self.emit = emit

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def run(self) -> None:
        ...

    def progress(self, message: str, processed: int | None = None, total: int | None = None) -> None:
        self.emit(
            ProgressEvent(
                source_name=self.source_name,
                stage=self.stage,
                message=message,
                processed=processed,
                total=total,
            )
        )

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if close is not None:
            close()

    async def __aenter__(self) -> "SourceCrawler":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.close()
