"""Main crawl orchestration.

Walks the GitHub /repositories listing page by page with:
- Resume from the checkpointed cursor
- Concurrent, bounded enrichment of full batches
- One flush + checkpoint per page
- Graceful stop on timeout, cancellation or end of listing
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from reposcan.crawler.config import CrawlerConfig
from reposcan.crawler.discovery import RepoDiscovery
from reposcan.crawler.errors import CrawlerError, QueryCostError
from reposcan.crawler.gitlab import GitLabScraper
from reposcan.crawler.rate_limiter import RateLimitedClient, TokenRotator
from reposcan.crawler.state import Forge, StateStore

logger = logging.getLogger(__name__)


@dataclass
class CrawlStats:
    """Summary of one crawl run."""

    pages: int = 0
    repos_seen: int = 0
    forks_skipped: int = 0
    batches: int = 0
    batch_failures: int = 0
    records_stored: int = 0
    gitlab_records: int = 0
    cursor: int = 0
    stop_reason: str = ""


class CrawlOrchestrator:
    """Main orchestrator for the GitHub repository scan.

    Coordinates:
    - Listing pages via the REST API
    - Batch enrichment via RepoDiscovery
    - Cursor checkpointing through the StateStore
    """

    def __init__(
        self,
        config: CrawlerConfig,
        client: Optional[RateLimitedClient] = None,
        store: Optional[StateStore] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.config = config
        self.client = client
        self.store = store
        self.cancel_event = cancel_event or asyncio.Event()
        self.discovery: Optional[RepoDiscovery] = None
        self.stats = CrawlStats()
        self._owns_client = client is None
        self._semaphore = asyncio.Semaphore(config.max_concurrent_batches)
        self._started = time.monotonic()
        self._sleep = asyncio.sleep

    async def init(self) -> None:
        """Initialize all components."""
        self.config.data_dir.mkdir(parents=True, exist_ok=True)

        if self.store is None:
            self.store = StateStore(self.config.data_dir)

        if self.client is None:
            self.client = RateLimitedClient(TokenRotator(self.config.github_tokens), self.config)

        self.discovery = RepoDiscovery(self.client, self.store, self.config)

    async def close(self) -> None:
        """Clean up resources."""
        if self._owns_client and self.client:
            await self.client.aclose()

    async def __aenter__(self) -> "CrawlOrchestrator":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _stop_reason(self) -> Optional[str]:
        """Return why the crawl should stop now, None to keep going."""
        if self.cancel_event.is_set():
            return "cancelled"
        timeout = self.config.timeout_seconds
        if timeout is not None and time.monotonic() - self._started >= timeout:
            return "timeout"
        return None

    def _dispatch(self, batch: List[str]) -> asyncio.Task:
        self.stats.batches += 1
        return asyncio.create_task(self._enrich(batch))

    async def _enrich(self, batch: List[str]) -> int:
        async with self._semaphore:
            records = await self.discovery.enrich_batch(batch)
        self.stats.records_stored += len(records)
        return len(records)

    async def _join(self, tasks: List[asyncio.Task]) -> None:
        """Wait for a page's batches; one failed batch never stops the others."""
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, QueryCostError):
                raise result
            if isinstance(result, CrawlerError):
                self.stats.batch_failures += 1
                logger.error(f"Failed to load a batch of repositories: {result}")
            elif isinstance(result, BaseException):
                raise result

    async def run(self) -> CrawlStats:
        """Scan GitHub until timeout, cancellation or the end of the listing."""
        if self.discovery is None:
            await self.init()

        page_size = self.config.page_size
        cursor = await self.store.get_cursor(Forge.GITHUB)
        batch: List[str] = []
        self._started = time.monotonic()

        logger.info(f"Started scraping GitHub repositories after id {cursor}")

        while True:
            iteration_started = time.monotonic()

            reason = self._stop_reason()
            if reason:
                tasks = [self._dispatch(batch)] if batch else []
                batch = []
                await self._join(tasks)
                await self.store.set_cursor(Forge.GITHUB, cursor)
                self.stats.stop_reason = reason
                break

            logger.debug(f"Scraping {page_size} repositories from the REST API")
            repos = await self.client.list_repositories_since(cursor)
            self.stats.pages += 1

            tasks: List[asyncio.Task] = []
            for repo in repos:
                # Forks still move the cursor so a resume never lands on one
                cursor = max(cursor, repo.id)
                self.stats.repos_seen += 1
                if repo.fork:
                    self.stats.forks_skipped += 1
                    continue

                batch.append(repo.node_id)
                if len(batch) >= page_size:
                    tasks.append(self._dispatch(batch))
                    batch = []

            # A short page is the only end-of-data signal the listing gives
            finished = len(repos) < page_size or self.cancel_event.is_set()
            if finished and batch:
                tasks.append(self._dispatch(batch))
                batch = []

            await self._join(tasks)
            await self.store.set_cursor(Forge.GITHUB, cursor)
            self.stats.cursor = cursor

            if finished:
                self.stats.stop_reason = "cancelled" if self.cancel_event.is_set() else "exhausted"
                break

            elapsed = time.monotonic() - iteration_started
            if elapsed < self.config.min_iteration_interval:
                await self._sleep(self.config.min_iteration_interval - elapsed)

        self.stats.cursor = cursor
        logger.info(
            f"Finished scraping GitHub repositories ({self.stats.stop_reason}): "
            f"{self.stats.pages} pages, {self.stats.records_stored} records, last id {cursor}"
        )
        return self.stats


async def run_crawl(
    config: CrawlerConfig,
    cancel_event: Optional[asyncio.Event] = None,
) -> CrawlStats:
    """Convenience function to run a crawl.

    Args:
        config: Crawler configuration
        cancel_event: Set to request a graceful stop

    Returns:
        Crawl statistics
    """
    async with CrawlOrchestrator(config, cancel_event=cancel_event) as orchestrator:
        stats = await orchestrator.run()

        if config.include_gitlab and stats.stop_reason == "exhausted":
            scraper = GitLabScraper(
                orchestrator.store, config, cancel_event=orchestrator.cancel_event
            )
            stats.gitlab_records = await scraper.scrape()

        return stats
