from __future__ import annotations

from typing import Any, Dict, List

from ..collaborators import SNAPSHOT_EVALUATIONS
from ..cursors import load_cursor
from ..errors import ConfigurationError
from ..events import ProgressSink, null_sink
from ..pagination import Page, PaginationResult, paginate_new_items
from ..storage import Store
from ..utils import from_epoch, json_text
from .base import SourceCrawler

PROPOSALS_TABLE = "snapshot_proposals"
PROPOSAL_KEYS = ("id", "forum_name")

PROPOSALS_QUERY = """
query ($spaceId: String!, $first: Int!, $skip: Int!) {
  proposals(
    first: $first,
    skip: $skip,
    where: { space: $spaceId },
    orderBy: "created",
    orderDirection: desc
  ) {
    id
    title
    body
    choices
    created
    start
    end
    snapshot
    state
    author
    space { id name }
    scores
    scores_total
  }
}
"""


def proposal_record(p: Dict[str, Any], forum_name: str) -> Dict[str, Any]:
    space = p.get("space") or {}
    return {
        "id": p["id"],
        "forum_name": forum_name,
        "title": p.get("title"),
        "body": p.get("body"),
        "choices": json_text(p.get("choices")),
        "created": from_epoch(p.get("created")),
        "start": from_epoch(p.get("start")),
        "end": from_epoch(p.get("end")),
        "snapshot": p.get("snapshot"),
        "state": p.get("state"),
        "author": p.get("author"),
        "space_id": space.get("id"),
        "space_name": space.get("name"),
        "scores": json_text(p.get("scores")),
        "scores_total": str(p.get("scores_total") or 0),
    }


class SnapshotCrawler(SourceCrawler):
    """Off-chain governance proposals of one Snapshot space, newest first."""

    stage = "snapshot"
    evaluations = SNAPSHOT_EVALUATIONS

    def __init__(
        self,
        source_name: str,
        space_id: str | None,
        client: Any,
        store: Store,
        *,
        url: str = "https://hub.snapshot.org/graphql",
        page_size: int = 1000,
        page_delay_sec: float = 1.0,
        emit: ProgressSink = null_sink,
    ):
        super().__init__(source_name, client, store, emit=emit)
        self.space_id = space_id
        self.url = url
        self.page_size = page_size
        self.page_delay_sec = page_delay_sec
        self.proposals_stored = 0
        self.last_result: PaginationResult | None = None

    @property
    def name(self) -> str:
        return f"{self.source_name}:snapshot"

    @property
    def sub_source_id(self) -> str:
        return f"snapshot:{self.space_id}"

    async def run(self) -> None:
        if not self.space_id:
            raise ConfigurationError(f"[{self.source_name}] no snapshot space configured")

        cursor = await load_cursor(self.store, self.source_name, self.sub_source_id)
        self.progress(f"crawling snapshot space {self.space_id}", processed=0)
        self.last_result = await paginate_new_items(
            store=self.store,
            cursor=cursor,
            page_size=self.page_size,
            fetch_page=self.fetch_proposals,
            created_at=lambda p: from_epoch(p.get("created")),
            persist=self.persist,
            page_delay_sec=self.page_delay_sec,
            emit=self.emit,
            stage=self.stage,
        )
        self.progress(f"finished snapshot space {self.space_id}", processed=self.proposals_stored)

    async def fetch_proposals(self, skip: int) -> Page:
        data = await self.client.graphql(
            self.url,
            PROPOSALS_QUERY,
            {"spaceId": self.space_id, "first": self.page_size, "skip": skip},
        )
        return Page(items=data.get("proposals") or [])

    async def persist(self, proposals: List[Dict[str, Any]]) -> None:
        rows = [proposal_record(p, self.source_name) for p in proposals]
        await self.store.upsert_many(PROPOSALS_TABLE, rows, PROPOSAL_KEYS)
        self.proposals_stored += len(rows)
        self.progress(f"stored {len(rows)} proposals", processed=self.proposals_stored)
