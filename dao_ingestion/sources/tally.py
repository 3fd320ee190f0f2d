from __future__ import annotations

from typing import Any, Dict, List

from ..collaborators import TALLY_EVALUATIONS
from ..cursors import load_cursor
from ..errors import ConfigurationError
from ..events import ProgressSink, null_sink
from ..pagination import Page, PaginationResult, next_end_cursor, paginate_new_items
from ..storage import Store
from ..utils import json_text, parse_iso
from .base import SourceCrawler

PROPOSALS_TABLE = "tally_proposals"
PROPOSAL_KEYS = ("id", "forum_name")

PROPOSALS_QUERY = """
query GovernanceProposals($input: ProposalsInput!) {
  proposals(input: $input) {
    nodes {
      ... on Proposal {
        id
        onchainId
        status
        originalId
        createdAt
        voteStats { votesCount percent type votersCount }
        metadata { title description eta ipfsHash previousEnd timelockId txHash discourseURL snapshotURL }
        start {
          ... on Block { timestamp }
          ... on BlocklessTimestamp { timestamp }
        }
        block { timestamp }
        governor { id quorum name timelockId token { decimals } }
      }
    }
    pageInfo { firstCursor lastCursor count }
  }
}
"""


def proposal_record(node: Dict[str, Any], forum_name: str) -> Dict[str, Any]:
    metadata = node.get("metadata") or {}
    governor = node.get("governor") or {}
    start = (node.get("start") or {}).get("timestamp") or (node.get("block") or {}).get("timestamp")
    return {
        "id": node["id"],
        "forum_name": forum_name,
        "onchain_id": node.get("onchainId"),
        "original_id": node.get("originalId"),
        "status": node.get("status"),
        "created_at": parse_iso(node.get("createdAt")),
        "title": metadata.get("title"),
        "description": metadata.get("description"),
        "start_timestamp": parse_iso(start),
        "governor_id": governor.get("id"),
        "governor_name": governor.get("name"),
        "quorum": governor.get("quorum"),
        "timelock_id": governor.get("timelockId"),
        "token_decimals": (governor.get("token") or {}).get("decimals"),
        "vote_stats": json_text(node.get("voteStats")),
    }


class TallyCrawler(SourceCrawler):
    """On-chain governance proposals of one Tally organization.

    Tally pages forward with an opaque ``afterCursor``; the walk also stops
    when the returned end cursor does not move.
    """

    stage = "tally"
    evaluations = TALLY_EVALUATIONS

    def __init__(
        self,
        source_name: str,
        organization_id: str | None,
        client: Any,
        store: Store,
        *,
        api_key: str | None,
        url: str = "https://api.tally.xyz/query",
        page_size: int = 20,
        page_delay_sec: float = 1.0,
        emit: ProgressSink = null_sink,
    ):
        super().__init__(source_name, client, store, emit=emit)
        self.organization_id = organization_id
        self.api_key = api_key
        self.url = url
        self.page_size = page_size
        self.page_delay_sec = page_delay_sec
        self.proposals_stored = 0
        self.last_result: PaginationResult | None = None

    @property
    def name(self) -> str:
        return f"{self.source_name}:tally"

    @property
    def sub_source_id(self) -> str:
        return f"tally:{self.organization_id}"

    async def run(self) -> None:
        if not self.organization_id:
            raise ConfigurationError(f"[{self.source_name}] no tally organization configured")
        if not self.api_key:
            raise ConfigurationError("Missing TALLY_API_KEY.")

        cursor = await load_cursor(self.store, self.source_name, self.sub_source_id)
        self.progress(f"crawling tally organization {self.organization_id}", processed=0)
        self.last_result = await paginate_new_items(
            store=self.store,
            cursor=cursor,
            page_size=self.page_size,
            fetch_page=self.fetch_proposals,
            created_at=lambda n: parse_iso(n.get("createdAt")),
            persist=self.persist,
            start_token=None,
            advance=next_end_cursor,
            page_delay_sec=self.page_delay_sec,
            emit=self.emit,
            stage=self.stage,
        )
        self.progress(f"finished tally organization {self.organization_id}", processed=self.proposals_stored)

    async def fetch_proposals(self, after: str | None) -> Page:
        page: Dict[str, Any] = {"limit": self.page_size}
        if after:
            page["afterCursor"] = after
        variables = {
            "input": {
                "filters": {"organizationId": self.organization_id},
                "page": page,
                "sort": {"isDescending": True, "sortBy": "id"},
            }
        }
        data = await self.client.graphql(self.url, PROPOSALS_QUERY, variables, headers={"Api-Key": self.api_key})
        proposals = data.get("proposals") or {}
        nodes = [n for n in proposals.get("nodes") or [] if n.get("id")]
        nodes.sort(key=lambda n: n.get("createdAt") or "", reverse=True)
        return Page(items=nodes, end_cursor=(proposals.get("pageInfo") or {}).get("lastCursor"))

    async def persist(self, nodes: List[Dict[str, Any]]) -> None:
        rows = [proposal_record(n, self.source_name) for n in nodes]
        await self.store.upsert_many(PROPOSALS_TABLE, rows, PROPOSAL_KEYS)
        self.proposals_stored += len(rows)
        self.progress(f"stored {len(rows)} proposals", processed=self.proposals_stored)
