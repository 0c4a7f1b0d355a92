"""GitHub repository crawler with resumable, append-only output."""

from reposcan.crawler.config import CrawlerConfig
from reposcan.crawler.errors import (
    CrawlerError,
    ConfigError,
    EmptyResponseError,
    GraphQLError,
    HttpStatusError,
    QueryCostError,
    ResponseFormatError,
    StorageError,
    TransportFailure,
)
from reposcan.crawler.state import Forge, RepoRecord, StateStore
from reposcan.crawler.rate_limiter import TokenRotator, RateLimitedClient
from reposcan.crawler.discovery import RepoDiscovery
from reposcan.crawler.gitlab import GitLabScraper
from reposcan.crawler.orchestrator import CrawlOrchestrator, CrawlStats, run_crawl

__all__ = [
    "CrawlerConfig",
    "CrawlerError",
    "ConfigError",
    "EmptyResponseError",
    "GraphQLError",
    "HttpStatusError",
    "QueryCostError",
    "ResponseFormatError",
    "StorageError",
    "TransportFailure",
    "Forge",
    "RepoRecord",
    "StateStore",
    "TokenRotator",
    "RateLimitedClient",
    "RepoDiscovery",
    "GitLabScraper",
    "CrawlOrchestrator",
    "CrawlStats",
    "run_crawl",
]
