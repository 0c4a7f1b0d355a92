"""Repository enrichment via the GitHub GraphQL and git tree APIs.

A batch of node ids from the REST listing is resolved to names and languages
in a single GraphQL query. Only repositories using the target language get a
tree lookup, which keeps the request volume close to one call per batch.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from reposcan.crawler.config import CrawlerConfig
from reposcan.crawler.errors import CrawlerError
from reposcan.crawler.rate_limiter import GraphRepository, RateLimitedClient
from reposcan.crawler.state import Forge, RepoRecord, StateStore

logger = logging.getLogger(__name__)


class RepoDiscovery:
    """Turns batches of node ids into stored repository records."""

    def __init__(
        self,
        client: RateLimitedClient,
        store: StateStore,
        config: Optional[CrawlerConfig] = None,
    ):
        config = config or CrawlerConfig()
        self.client = client
        self.store = store
        self.target_language = config.target_language
        self.marker_a, self.marker_b = config.marker_files
        self.recursive_tree = config.recursive_tree

    async def enrich_batch(self, node_ids: Sequence[str]) -> List[RepoRecord]:
        """Load a batch, keep target-language repos and record their markers.

        Returns the records submitted to the store.
        """
        logger.debug(f"Loading {len(node_ids)} non-fork repositories")
        repos = await self.client.load_repository_batch(node_ids)

        wanted = [repo for repo in repos if repo.has_language(self.target_language)]
        if not wanted:
            return []

        return list(await asyncio.gather(*(self._inspect(repo) for repo in wanted)))

    async def _inspect(self, repo: GraphRepository) -> RepoRecord:
        try:
            paths = set(
                await self.client.fetch_tree(repo.name_with_owner, recursive=self.recursive_tree)
            )
        except CrawlerError as e:
            logger.warning(f"Failed to fetch file tree of {repo.name_with_owner}: {e}")
            paths = set()

        record = RepoRecord(
            id=repo.id,
            full_name=repo.name_with_owner,
            has_marker_a=self.marker_a in paths,
            has_marker_b=self.marker_b in paths,
        )
        self.store.store_record(Forge.GITHUB, record)

        logger.info(
            f"Found {record.full_name}: {self.marker_a} = {record.has_marker_a}, "
            f"{self.marker_b} = {record.has_marker_b}"
        )
        return record
