from __future__ import annotations


class IngestionError(RuntimeError):
    """Base error for the crawl engine."""


class FatalSourceError(IngestionError):
    """Aborts the current run of a source. Never retried."""


class AuthenticationError(FatalSourceError):
    """The source rejected our credentials (HTTP 401)."""


class ConfigurationError(FatalSourceError):
    """Required configuration (URL, API key) is missing."""


class RetryExhaustedError(FatalSourceError):
    def __init__(self, url: str, attempts: int, last_error: BaseException | None):
        self.url = url
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed to fetch {url} after {attempts} attempts: {last_error}")


class NotFoundError(IngestionError):
    """HTTP 404. Reported to the caller, never retried."""

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"Not found: {url}")


class HttpStatusError(IngestionError):
    def __init__(self, url: str, status: int, body: str = ""):
        self.url = url
        self.status = status
        super().__init__(f"HTTP {status} on {url}: {body[:200]}")


class GraphQLError(IngestionError):
    def __init__(self, url: str, errors: list):
        self.url = url
        self.errors = errors
        messages = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
        super().__init__(f"GraphQL errors from {url}: {messages}")


class UnknownSourceError(IngestionError):
    pass


class CrawlAlreadyRunningError(IngestionError):
    pass


class NoActiveCrawlError(IngestionError):
    pass


class CrawlStoppedError(IngestionError):
    """The crawl was stopped by a user before it finished."""
