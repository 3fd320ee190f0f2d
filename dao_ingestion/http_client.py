from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Mapping, Optional

import requests

from .config import ClientLimits
from .errors import (
    AuthenticationError,
    GraphQLError,
    HttpStatusError,
    NotFoundError,
    RetryExhaustedError,
)
from .logging_utils import get_logger, log_json
from .models import RetryAttempt
from .rate_limit import TokenBucket

RETRY_STATUS = {408, 429}

logger = get_logger(__name__)


def is_retryable_status(status: int) -> bool:
    return status in RETRY_STATUS or 500 <= status < 600


class RetryingClient:
    """Rate-limited, retrying HTTP client for one crawler instance.

    Every attempt first takes a token from the bucket, then runs the blocking
    ``requests`` call in a worker thread under a hard timeout. 404 and 401 are
    never retried; 401 is fatal for the owning crawl. 408/429/5xx, transport
    errors and timeouts are retried with capped exponential backoff plus
    jitter until ``max_retries`` retries have failed.
    """

    def __init__(
        self,
        name: str,
        limits: ClientLimits,
        *,
        user_agent: str = "DaoIngestion/1.0",
        headers: Optional[Mapping[str, str]] = None,
        bucket: TokenBucket | None = None,
    ):
        self.name = name
        self.limits = limits
        self.bucket = bucket or TokenBucket.per_interval(limits.tokens_per_interval, limits.interval_sec)
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": user_agent, "Accept": "application/json"})
        if headers:
            self.session.headers.update(dict(headers))

    async def __aenter__(self) -> "RetryingClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def backoff_delay(self, retry_index: int, retry_after: str | None = None) -> float:
        base = self.limits.backoff_base_sec
        wait = min(self.limits.backoff_max_sec, base * (2 ** retry_index)) + random.uniform(0, base)
        if retry_after:
            try:
                wait = max(wait, min(float(retry_after), self.limits.backoff_max_sec))
            except ValueError:
                pass
        return wait

    async def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        attempt = RetryAttempt(attempt_number=0, max_attempts=self.limits.max_retries + 1)
        timeout = self.limits.timeout_sec

        while True:
            attempt.attempt_number += 1
            await self.bucket.acquire()

            retry_after = None
            try:
                resp = await asyncio.wait_for(
                    asyncio.to_thread(self.session.request, method, url, timeout=timeout, **kwargs),
                    timeout=timeout,
                )
            except (requests.RequestException, asyncio.TimeoutError) as e:
                attempt.last_error = e
            else:
                status = resp.status_code
                if status < 400:
                    return resp
                if status == 404:
                    raise NotFoundError(url)
                if status == 401:
                    raise AuthenticationError(f"[{self.name}] HTTP 401 on {url}; check the API key")
                if not is_retryable_status(status):
                    raise HttpStatusError(url, status, resp.text)
                attempt.last_error = HttpStatusError(url, status, resp.text)
                retry_after = resp.headers.get("Retry-After")

            if attempt.exhausted:
                raise RetryExhaustedError(url, attempt.attempt_number, attempt.last_error)

            delay = self.backoff_delay(attempt.attempt_number - 1, retry_after)
            log_json(
                logger,
                logging.WARNING,
                "retry_scheduled",
                client=self.name,
                url=url,
                attempt=attempt.attempt_number,
                max_attempts=attempt.max_attempts,
                delay_sec=round(delay, 3),
                error=str(attempt.last_error),
            )
            await asyncio.sleep(delay)

    async def get_json(self, url: str, **kwargs: Any) -> Any:
        resp = await self.request("GET", url, **kwargs)
        return resp.json()

    async def graphql(self, url: str, query: str, variables: Mapping[str, Any], **kwargs: Any) -> dict:
        resp = await self.request("POST", url, json={"query": query, "variables": dict(variables)}, **kwargs)
        body = resp.json()
        if body.get("errors"):
            raise GraphQLError(url, body["errors"])
        return body.get("data") or {}
