from __future__ import annotations

import os
from dataclasses import dataclass

from .errors import ConfigurationError


def env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    return v if v is not None and v != "" else default


def env_int(name: str, default: int) -> int:
    v = env(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {v!r}") from None


def env_float(name: str, default: float) -> float:
    v = env(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {v!r}") from None


@dataclass(frozen=True)
class ClientLimits:
    """Rate limit and retry bounds for one outbound client."""

    tokens_per_interval: float
    interval_sec: float = 1.0
    max_retries: int = 3
    timeout_sec: float = 10.0
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 30.0


# kind -> (tokens, interval seconds)
DEFAULT_RATES: dict[str, tuple[float, float]] = {
    "forum": (5, 1.0),
    "snapshot": (5, 1.0),
    "tally": (1, 1.0),
    "coingecko": (30, 60.0),
    "news": (1, 2.0),
}


@dataclass(frozen=True)
class SourceConfig:
    name: str
    discourse_url: str | None = None
    api_key: str | None = None
    api_username: str | None = None
    snapshot_space_id: str | None = None
    tally_organization_id: str | None = None
    coingecko_id: str | None = None


# Governance and token identifiers for the forums we know about. Credentials
# always come from the environment.
BUILTIN_SOURCES: dict[str, dict[str, str]] = {
    "COMPOUND": {"coingecko_id": "compound-governance-token"},
    "ZKSYNC": {"coingecko_id": "zksync"},
    "GITCOIN": {"coingecko_id": "gitcoin"},
    "CABIN": {},
    "SAFE": {"snapshot_space_id": "safe.eth"},
    "UNISWAP": {
        "snapshot_space_id": "uniswapgovernance.eth",
        "tally_organization_id": "2206072050458560434",
        "coingecko_id": "uniswap",
    },
    "ARBITRUM": {
        "snapshot_space_id": "arbitrumfoundation.eth",
        "tally_organization_id": "2206072050315953936",
        "coingecko_id": "arbitrum",
    },
}


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    log_level: str = "INFO"
    user_agent: str = "DaoIngestion/1.0"

    # Retry / timeout bounds shared by every client
    http_max_retries: int = 3
    request_timeout_sec: float = 10.0
    backoff_base_sec: float = 1.0
    backoff_max_sec: float = 30.0

    # Pagination
    snapshot_page_size: int = 1000
    tally_page_size: int = 20
    news_page_size: int = 100
    page_delay_sec: float = 1.0
    user_lookup_concurrency: int = 4
    market_backfill_days: int = 30

    # Monitoring
    heartbeat_threshold_sec: float = 300.0
    stall_check_interval_sec: float = 60.0

    # Orchestration
    max_concurrent_sources: int = 2
    sched_crawl_minutes: int = 120

    # External APIs
    snapshot_url: str = "https://hub.snapshot.org/graphql"
    tally_url: str = "https://api.tally.xyz/query"
    coingecko_url: str = "https://pro-api.coingecko.com/api/v3"
    news_url: str = "https://newsapi.org/v2/everything"
    coingecko_api_key: str | None = None
    news_api_key: str | None = None
    tally_api_key: str | None = None

    rates: tuple[tuple[str, float, float], ...] = ()
    sources: tuple[SourceConfig, ...] = ()

    def limits(self, kind: str) -> ClientLimits:
        tokens, interval = DEFAULT_RATES.get(kind, (1, 1.0))
        for k, t, i in self.rates:
            if k == kind:
                tokens, interval = t, i
        return ClientLimits(
            tokens_per_interval=tokens,
            interval_sec=interval,
            max_retries=self.http_max_retries,
            timeout_sec=self.request_timeout_sec,
            backoff_base_sec=self.backoff_base_sec,
            backoff_max_sec=self.backoff_max_sec,
        )

    def source(self, name: str) -> SourceConfig | None:
        for s in self.sources:
            if s.name == name:
                return s
        return None

    def require_database(self) -> str:
        if not self.database_url:
            raise ConfigurationError("Missing DATABASE_URL (or POSTGRES_DSN).")
        return self.database_url


def load_source(name: str) -> SourceConfig:
    defaults = BUILTIN_SOURCES.get(name, {})
    return SourceConfig(
        name=name,
        discourse_url=env(f"{name}_DISCOURSE_URL"),
        api_key=env(f"{name}_API_KEY"),
        api_username=env(f"{name}_API_USERNAME"),
        snapshot_space_id=env(f"{name}_SNAPSHOT_SPACE", defaults.get("snapshot_space_id")),
        tally_organization_id=env(f"{name}_TALLY_ORG_ID", defaults.get("tally_organization_id")),
        coingecko_id=env(f"{name}_COINGECKO_ID", defaults.get("coingecko_id")),
    )


def load_settings() -> Settings:
    names = env("CRAWL_SOURCES")
    source_names = [n.strip().upper() for n in names.split(",") if n.strip()] if names else list(BUILTIN_SOURCES)

    rates = []
    for kind, (tokens, interval) in DEFAULT_RATES.items():
        prefix = kind.upper()
        rates.append(
            (
                kind,
                env_float(f"{prefix}_TOKENS_PER_INTERVAL", tokens),
                env_float(f"{prefix}_INTERVAL_SEC", interval),
            )
        )

    return Settings(
        database_url=env("DATABASE_URL") or env("POSTGRES_DSN"),
        log_level=env("LOG_LEVEL", "INFO") or "INFO",
        user_agent=env("USER_AGENT", "DaoIngestion/1.0") or "DaoIngestion/1.0",
        http_max_retries=env_int("HTTP_MAX_RETRIES", 3),
        request_timeout_sec=env_float("REQUEST_TIMEOUT_SEC", 10.0),
        backoff_base_sec=env_float("BACKOFF_BASE_SEC", 1.0),
        backoff_max_sec=env_float("BACKOFF_MAX_SEC", 30.0),
        snapshot_page_size=env_int("SNAPSHOT_PAGE_SIZE", 1000),
        tally_page_size=env_int("TALLY_PAGE_SIZE", 20),
        news_page_size=env_int("NEWS_PAGE_SIZE", 100),
        page_delay_sec=env_float("PAGE_DELAY_SEC", 1.0),
        user_lookup_concurrency=env_int("USER_LOOKUP_CONCURRENCY", 4),
        market_backfill_days=env_int("MARKET_BACKFILL_DAYS", 30),
        heartbeat_threshold_sec=env_float("HEARTBEAT_THRESHOLD_SEC", 300.0),
        stall_check_interval_sec=env_float("STALL_CHECK_INTERVAL_SEC", 60.0),
        max_concurrent_sources=env_int("MAX_CONCURRENT_SOURCES", 2),
        sched_crawl_minutes=env_int("SCHED_CRAWL_MINUTES", 120),
        snapshot_url=env("SNAPSHOT_URL", "https://hub.snapshot.org/graphql") or "https://hub.snapshot.org/graphql",
        tally_url=env("TALLY_URL", "https://api.tally.xyz/query") or "https://api.tally.xyz/query",
        coingecko_url=env("COINGECKO_URL", "https://pro-api.coingecko.com/api/v3") or "https://pro-api.coingecko.com/api/v3",
        news_url=env("NEWS_URL", "https://newsapi.org/v2/everything") or "https://newsapi.org/v2/everything",
        coingecko_api_key=env("COINGECKO_PRO_API_KEY"),
        news_api_key=env("NEWS_API_KEY"),
        tally_api_key=env("TALLY_API_KEY") or env("TALLY_API"),
        rates=tuple(rates),
        sources=tuple(load_source(n) for n in source_names),
    )
