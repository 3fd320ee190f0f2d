from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..collaborators import NEWS_EVALUATIONS
from ..cursors import advance_timestamp, load_cursor
from ..errors import ConfigurationError, IngestionError
from ..events import ProgressSink, null_sink
from ..logging_utils import get_logger, log_json
from ..storage import Store
from ..utils import parse_iso
from .base import SourceCrawler

logger = get_logger(__name__)

NEWS_TABLE = "news_articles"
NEWS_KEYS = ("forum_name", "url")
NEWS_CURSOR = "news"

INCLUDED_TERMS = ("DAO", "governance", "crypto", "token", "protocol", "ethereum", "blockchain")
EXCLUDED_TERMS = (
    "rental",
    "flight",
    "airline",
    "property",
    "cruise",
    "vacation",
    "cooking",
    "food",
    "gardening",
    "bank",
)


def build_query(name: str) -> str:
    return f'"{name}" AND ({" OR ".join(INCLUDED_TERMS)}) NOT ({" OR ".join(EXCLUDED_TERMS)})'


def article_record(article: Dict[str, Any], forum_name: str) -> Dict[str, Any]:
    source = article.get("source") or {}
    return {
        "forum_name": forum_name,
        "url": article.get("url"),
        "source_id": source.get("id"),
        "source_name": source.get("name"),
        "author": article.get("author"),
        "title": article.get("title"),
        "description": article.get("description"),
        "url_to_image": article.get("urlToImage"),
        "published_at": parse_iso(article.get("publishedAt")),
        "content": article.get("content"),
    }


class NewsCrawler(SourceCrawler):
    stage = "news"
    evaluations = NEWS_EVALUATIONS

    def __init__(
        self,
        source_name: str,
        client: Any,
        store: Store,
        *,
        api_key: str | None,
        url: str = "https://newsapi.org/v2/everything",
        page_size: int = 100,
        emit: ProgressSink = null_sink,
    ):
        super().__init__(source_name, client, store, emit=emit)
        self.api_key = api_key
        self.url = url
        self.page_size = page_size
        self.articles_stored = 0

    @property
    def name(self) -> str:
        return f"{self.source_name}:news"

    async def run(self) -> None:
        if not self.api_key:
            raise ConfigurationError("Missing NEWS_API_KEY.")

        cursor = await load_cursor(self.store, self.source_name, NEWS_CURSOR)
        params: Dict[str, Any] = {
            "q": build_query(self.source_name),
            "searchIn": "title,description",
            "sortBy": "publishedAt",
            "pageSize": self.page_size,
        }
        if cursor.last_timestamp is not None:
            params["from"] = cursor.last_timestamp.isoformat()

        self.progress(f"fetching articles since {cursor.last_timestamp}", processed=0)
        data = await self.client.get_json(self.url, params=params, headers={"X-Api-Key": self.api_key})
        if data.get("status") != "ok":
            raise IngestionError(f"NewsAPI returned error status: {data.get('status')} - {data.get('message')}")

        articles = data.get("articles") or []
        newest = await self.persist(articles)
        await advance_timestamp(self.store, cursor, newest)
        self.progress(f"stored {self.articles_stored} of {len(articles)} articles", processed=self.articles_stored)

    async def persist(self, articles: List[Dict[str, Any]]) -> Optional[datetime]:
        newest = None
        for article in articles:
            record = article_record(article, self.source_name)
            try:
                await self.store.upsert(NEWS_TABLE, record, NEWS_KEYS)
            except Exception as e:
                log_json(
                    logger,
                    logging.ERROR,
                    "article_insert_failed",
                    source=self.source_name,
                    url=record.get("url"),
                    error=str(e),
                )
                continue
            self.articles_stored += 1
            published = record["published_at"]
            if published is not None and (newest is None or published > newest):
                newest = published
        return newest
