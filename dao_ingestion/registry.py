from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from .collaborators import LoggingVectorizer, Vectorizer
from .config import Settings, SourceConfig
from .errors import UnknownSourceError
from .events import ProgressSink, null_sink
from .http_client import RetryingClient
from .sources.base import SourceCrawler
from .sources.forum import ForumCrawler
from .sources.market import MarketDataCrawler
from .sources.news import NewsCrawler
from .sources.snapshot import SnapshotCrawler
from .sources.tally import TallyCrawler
from .storage import Store


@dataclass
class SourcePipeline:
    """Every crawler for one source name, in crawl order."""

    source_name: str
    forum: ForumCrawler
    market: Optional[MarketDataCrawler] = None
    news: Optional[NewsCrawler] = None
    snapshot: Optional[SnapshotCrawler] = None
    tally: Optional[TallyCrawler] = None

    def crawlers(self) -> List[SourceCrawler]:
        return [c for c in (self.forum, self.market, self.news, self.snapshot, self.tally) if c is not None]

    def close(self) -> None:
        for c in self.crawlers():
            c.close()


def forum_client(settings: Settings, source: SourceConfig) -> RetryingClient:
    headers = {}
    if source.api_key:
        headers["Api-Key"] = source.api_key
    if source.api_username:
        headers["Api-Username"] = source.api_username
    return RetryingClient(f"{source.name}:forum", settings.limits("forum"), user_agent=settings.user_agent, headers=headers)


def build_market_crawler(
    settings: Settings,
    source: SourceConfig,
    store: Store,
    *,
    force_refresh: bool = False,
    emit: ProgressSink = null_sink,
) -> Optional[MarketDataCrawler]:
    if not source.coingecko_id:
        return None
    return MarketDataCrawler(
        source.name,
        source.coingecko_id,
        RetryingClient(f"{source.name}:coingecko", settings.limits("coingecko"), user_agent=settings.user_agent),
        store,
        base_url=settings.coingecko_url,
        api_key=settings.coingecko_api_key,
        backfill_days=settings.market_backfill_days,
        force_refresh=force_refresh,
        emit=emit,
    )


def build_pipeline(
    settings: Settings,
    source_name: str,
    store: Store,
    *,
    vectorizer: Vectorizer | None = None,
    emit: ProgressSink = null_sink,
) -> SourcePipeline:
    source = settings.source(source_name)
    if source is None:
        known = ", ".join(s.name for s in settings.sources)
        raise UnknownSourceError(f"Unknown source: {source_name}. Available: {known}")

    ua = settings.user_agent
    pipeline = SourcePipeline(
        source_name=source.name,
        forum=ForumCrawler(
            source,
            forum_client(settings, source),
            store,
            vectorizer or LoggingVectorizer(),
            page_delay_sec=settings.page_delay_sec,
            user_lookup_concurrency=settings.user_lookup_concurrency,
            emit=emit,
        ),
        market=build_market_crawler(settings, source, store, emit=emit),
        news=NewsCrawler(
            source.name,
            RetryingClient(f"{source.name}:news", settings.limits("news"), user_agent=ua),
            store,
            api_key=settings.news_api_key,
            url=settings.news_url,
            page_size=settings.news_page_size,
            emit=emit,
        ),
    )
    if source.snapshot_space_id:
        pipeline.snapshot = SnapshotCrawler(
            source.name,
            source.snapshot_space_id,
            RetryingClient(f"{source.name}:snapshot", settings.limits("snapshot"), user_agent=ua),
            store,
            url=settings.snapshot_url,
            page_size=settings.snapshot_page_size,
            page_delay_sec=settings.page_delay_sec,
            emit=emit,
        )
    if source.tally_organization_id:
        pipeline.tally = TallyCrawler(
            source.name,
            source.tally_organization_id,
            RetryingClient(f"{source.name}:tally", settings.limits("tally"), user_agent=ua),
            store,
            api_key=settings.tally_api_key,
            url=settings.tally_url,
            page_size=settings.tally_page_size,
            page_delay_sec=settings.page_delay_sec,
            emit=emit,
        )
    return pipeline
