from __future__ import annotations

import logging
from typing import Protocol, Union

from .logging_utils import get_logger, log_json

logger = get_logger(__name__)

# Content kinds handed to the evaluation collaborator, in hand-off order.
FORUM_EVALUATIONS = ("topics", "posts", "threads")
SNAPSHOT_EVALUATIONS = ("snapshot_proposals",)
TALLY_EVALUATIONS = ("tally_proposals",)
NEWS_EVALUATIONS = ("news_articles",)


class Evaluator(Protocol):
    async def evaluate_unanalyzed(self, source_name: str, kind: str) -> None:
        """Evaluate every stored ``kind`` record of ``source_name`` not yet evaluated."""
        ...


class Vectorizer(Protocol):
    async def vectorize(self, kind: str, item_id: Union[int, str], source_name: str) -> None: ...


class LoggingEvaluator:
    """Stand-in used when no evaluation backend is wired in."""

    async def evaluate_unanalyzed(self, source_name: str, kind: str) -> None:
        log_json(logger, logging.INFO, "evaluation_skipped", source=source_name, kind=kind)


class LoggingVectorizer:
    async def vectorize(self, kind: str, item_id: Union[int, str], source_name: str) -> None:
        log_json(logger, logging.DEBUG, "vectorize_skipped", source=source_name, kind=kind, id=item_id)
