from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from ..collaborators import Vectorizer
from ..config import SourceConfig
from ..cursors import load_cursor
from ..errors import ConfigurationError, FatalSourceError, HttpStatusError, NotFoundError
from ..events import ProgressSink, null_sink
from ..logging_utils import get_logger, log_json
from ..pagination import Page, PaginationResult, paginate_new_items
from ..storage import Store, Transaction
from ..utils import html_to_text, parse_iso
from .base import SourceCrawler

logger = get_logger(__name__)

TOPICS_TABLE = "topics"
POSTS_TABLE = "posts"
USERS_TABLE = "users"
CONTENT_KEYS = ("id", "forum_name")

TOPICS_CURSOR = "topics"

# Discourse serves /latest.json in fixed pages of 30 topics.
DISCOURSE_PAGE_SIZE = 30


def normalize_avatar(template: str | None) -> str:
    if not template:
        return ""
    return template.replace("{size}", "360")


def topic_record(topic: Dict[str, Any], forum_name: str) -> Dict[str, Any]:
    updated = topic.get("updated_at") or topic.get("last_posted_at") or topic.get("bumped_at") or topic.get("created_at")
    return {
        "id": topic["id"],
        "forum_name": forum_name,
        "title": topic.get("title"),
        "slug": topic.get("slug"),
        "posts_count": topic.get("posts_count"),
        "reply_count": topic.get("reply_count"),
        "created_at": parse_iso(topic.get("created_at")),
        "updated_at": parse_iso(updated),
    }


def post_record(post: Dict[str, Any], forum_name: str) -> Dict[str, Any]:
    return {
        "id": post["id"],
        "forum_name": forum_name,
        "topic_id": post.get("topic_id"),
        "username": post.get("username"),
        "plain_text": html_to_text(post.get("cooked")),
        "cooked": post.get("cooked"),
        "created_at": parse_iso(post.get("created_at")),
        "updated_at": parse_iso(post.get("updated_at") or post.get("created_at")),
    }


def user_record(user: Dict[str, Any], forum_name: str) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "forum_name": forum_name,
        "username": user.get("username"),
        "name": user.get("name"),
        "avatar_template": normalize_avatar(user.get("avatar_template")),
        "created_at": parse_iso(user.get("created_at")),
        "updated_at": parse_iso(user.get("updated_at") or user.get("created_at")),
        "last_seen_at": parse_iso(user.get("last_seen_at")),
        "website": user.get("website"),
        "location": user.get("location"),
        "bio": user.get("bio_raw"),
        "moderator": user.get("moderator"),
        "admin": user.get("admin"),
    }


def fallback_user_record(post: Dict[str, Any], forum_name: str) -> Optional[Dict[str, Any]]:
    """Minimal user row built from what the post itself tells us."""
    if post.get("user_id") is None:
        return None
    return {
        "id": post["user_id"],
        "forum_name": forum_name,
        "username": post.get("username"),
        "name": post.get("name"),
        "avatar_template": normalize_avatar(post.get("avatar_template")),
    }


class ForumCrawler(SourceCrawler):
    """Discourse forum: latest topics newest-first, their new posts and authors."""

    stage = "topics"

    def __init__(
        self,
        config: SourceConfig,
        client: Any,
        store: Store,
        vectorizer: Vectorizer,
        *,
        page_delay_sec: float = 1.0,
        user_lookup_concurrency: int = 4,
        emit: ProgressSink = null_sink,
    ):
        super().__init__(config.name, client, store, emit=emit)
        self.config = config
        self.vectorizer = vectorizer
        self.page_size = DISCOURSE_PAGE_SIZE
        self.page_delay_sec = page_delay_sec
        self.user_lookup_concurrency = max(user_lookup_concurrency, 1)
        self.topics_processed = 0
        self.posts_processed = 0
        self.last_result: PaginationResult | None = None
        self._since = None

    @property
    def name(self) -> str:
        return f"{self.source_name}:forum"

    @property
    def base_url(self) -> str:
        if not self.config.discourse_url:
            raise ConfigurationError(f"[{self.source_name}] discourse URL is not configured")
        return self.config.discourse_url.rstrip("/")

    async def run(self) -> None:
        if not self.config.discourse_url:
            raise ConfigurationError(f"[{self.source_name}] discourse URL is not configured")
        cursor = await load_cursor(self.store, self.source_name, TOPICS_CURSOR)
        self._since = cursor.last_timestamp
        self.progress(f"crawling topics newer than {self._since}", processed=0)

        self.last_result = await paginate_new_items(
            store=self.store,
            cursor=cursor,
            page_size=self.page_size,
            fetch_page=self.fetch_topics,
            created_at=lambda t: parse_iso(t.get("created_at")),
            persist=self.persist_topics,
            page_delay_sec=self.page_delay_sec,
            emit=self.emit,
            stage=self.stage,
        )
        self.progress(
            f"done: {self.topics_processed} topics, {self.posts_processed} posts",
            processed=self.topics_processed,
        )

    async def fetch_topics(self, skip: int) -> Page:
        # Discourse pages by page number, not offset.
        data = await self.client.get_json(
            f"{self.base_url}/latest.json",
            params={"no_definitions": "true", "page": skip // self.page_size, "order": "created"},
        )
        topics = (data.get("topic_list") or {}).get("topics") or []
        return Page(items=topics)

    async def fetch_new_posts(self, topic_id: int) -> List[Dict[str, Any]]:
        try:
            data = await self.client.get_json(f"{self.base_url}/t/{topic_id}.json")
        except (NotFoundError, HttpStatusError) as e:
            log_json(logger, logging.WARNING, "posts_unavailable", source=self.source_name, topic_id=topic_id, error=str(e))
            return []
        posts = (data.get("post_stream") or {}).get("posts") or []
        since = self._since
        return [p for p in posts if (ts := parse_iso(p.get("created_at"))) is not None and (since is None or ts > since)]

    async def fetch_user(self, post: Dict[str, Any], limit: asyncio.Semaphore) -> Optional[Dict[str, Any]]:
        username = post.get("username")
        async with limit:
            try:
                data = await self.client.get_json(f"{self.base_url}/u/{username}.json")
                return user_record(data["user"], self.source_name)
            except FatalSourceError:
                raise
            except Exception as e:
                log_json(
                    logger,
                    logging.WARNING,
                    "user_lookup_failed",
                    source=self.source_name,
                    username=username,
                    error=str(e),
                )
                self.progress(f"user lookup failed for {username}; using fallback")
                return fallback_user_record(post, self.source_name)

    async def lookup_users(self, posts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        first_post_by_user: Dict[str, Dict[str, Any]] = {}
        for p in posts:
            if p.get("username"):
                first_post_by_user.setdefault(p["username"], p)

        limit = asyncio.Semaphore(self.user_lookup_concurrency)
        results = await asyncio.gather(
            *(self.fetch_user(p, limit) for p in first_post_by_user.values()),
            return_exceptions=True,
        )
        for r in results:
            if isinstance(r, BaseException):
                raise r
        return [r for r in results if r is not None]

    async def persist_topics(self, topics: List[Dict[str, Any]]) -> None:
        topic_rows: List[Dict[str, Any]] = []
        post_rows: List[Dict[str, Any]] = []
        user_rows: List[Dict[str, Any]] = []

        for topic in topics:
            self.progress(f"processing topic {topic.get('title')!r} (id {topic['id']})", processed=self.topics_processed)
            posts = await self.fetch_new_posts(topic["id"])
            users = await self.lookup_users(posts)
            topic_rows.append(topic_record(topic, self.source_name))
            post_rows.extend(post_record(p, self.source_name) for p in posts)
            user_rows.extend(users)

        def write(tx: Transaction) -> None:
            for row in topic_rows:
                tx.upsert(TOPICS_TABLE, row, CONTENT_KEYS)
            for row in post_rows:
                tx.upsert(POSTS_TABLE, row, CONTENT_KEYS)
            for row in user_rows:
                tx.upsert(USERS_TABLE, row, CONTENT_KEYS)

        await self.store.transaction(write)

        for row in topic_rows:
            await self.vectorizer.vectorize("topic", row["id"], self.source_name)
        for row in post_rows:
            await self.vectorizer.vectorize("post", row["id"], self.source_name)

        self.topics_processed += len(topic_rows)
        self.posts_processed += len(post_rows)
        self.progress(
            f"stored {len(topic_rows)} topics, {len(post_rows)} posts, {len(user_rows)} users",
            processed=self.topics_processed,
        )
