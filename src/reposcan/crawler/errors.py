"""Exceptions raised by the crawler.

Rate limiting is not represented here: the client resolves it internally by
rotating tokens and cooling down, so callers never see it.
"""

from typing import Optional


class CrawlerError(Exception):
    """Base class for crawler failures."""


class ConfigError(CrawlerError):
    """Invalid or missing startup configuration."""


class TransportFailure(CrawlerError):
    """Connection-level failure that outlasted the retry backoff cap."""

    def __init__(self, url: str, waited: float, cause: Exception):
        super().__init__(
            f"giving up on {url} after {waited:.0f}s of backoff: {cause!r}"
        )
        self.url = url
        self.waited = waited


class HttpStatusError(CrawlerError):
    """Non-success HTTP status that is not a rate limit."""

    def __init__(self, status_code: int, url: str, message: Optional[str] = None):
        text = f"GitHub API returned status code {status_code} for {url}"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)
        self.status_code = status_code
        self.url = url
        self.message = message


class GraphQLError(CrawlerError):
    """GraphQL call returned errors and no data."""


class EmptyResponseError(CrawlerError):
    """GraphQL response contained neither data nor errors."""


class QueryCostError(CrawlerError):
    """Batch query cost exceeded one rate-limit point.

    This means the query shape changed; it stops the crawl instead of being
    retried or isolated to a batch.
    """


class StorageError(CrawlerError):
    """Checkpoint or output file could not be read or written."""


class ResponseFormatError(CrawlerError):
    """A successful response whose body does not have the expected shape."""
