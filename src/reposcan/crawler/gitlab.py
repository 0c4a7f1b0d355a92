"""GitLab scraper.

GitLab can filter projects by language server-side and return the marker
blobs in the same query, so one paginated GraphQL query is enough. There is
no token rotation or retry here: any error ends the scrape.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from reposcan.crawler.config import CrawlerConfig
from reposcan.crawler.errors import EmptyResponseError, GraphQLError, HttpStatusError
from reposcan.crawler.rate_limiter import USER_AGENT
from reposcan.crawler.state import Forge, RepoRecord, StateStore

logger = logging.getLogger(__name__)


GITLAB_GRAPHQL_ENDPOINT = "https://gitlab.com/api/graphql"

GRAPHQL_QUERY_PROJECTS = """
query ListProjects($after: String, $language: String!, $paths: [String!]!) {
  projects(first: 50, after: $after, programmingLanguageName: $language) {
    pageInfo {
      hasNextPage
      endCursor
    }
    nodes {
      id
      fullPath
      repository {
        markerFiles: blobs(paths: $paths, ref: "HEAD") {
          nodes {
            path
          }
        }
      }
    }
  }
}
"""


class GitLabScraper:
    """Stores every GitLab project using the target language."""

    def __init__(
        self,
        store: StateStore,
        config: Optional[CrawlerConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        config = config or CrawlerConfig()
        self.store = store
        self.target_language = config.target_language
        self.marker_a, self.marker_b = config.marker_files
        self.timeout = config.request_timeout
        self._transport = transport
        self.cancel_event = cancel_event or asyncio.Event()

    def _to_record(self, project: Dict[str, Any]) -> RepoRecord:
        repository = project.get("repository") or {}
        blobs = (repository.get("markerFiles") or {}).get("nodes") or []
        paths = {blob["path"] for blob in blobs}
        return RepoRecord(
            id=project["id"],
            full_name=project["fullPath"],
            has_marker_a=self.marker_a in paths,
            has_marker_b=self.marker_b in paths,
        )

    async def scrape(self) -> int:
        """Walk all matching projects. Returns the number of records stored."""
        logger.info(f"Started scraping GitLab for {self.target_language} projects")

        stored = 0
        after: Optional[str] = None
        page = 1

        async with httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            while not self.cancel_event.is_set():
                variables = {
                    "after": after,
                    "language": self.target_language,
                    "paths": [self.marker_a, self.marker_b],
                }
                response = await client.post(
                    GITLAB_GRAPHQL_ENDPOINT,
                    json={"query": GRAPHQL_QUERY_PROJECTS, "variables": variables},
                )
                if not response.is_success:
                    raise HttpStatusError(response.status_code, GITLAB_GRAPHQL_ENDPOINT)

                body = response.json()
                if body.get("errors"):
                    raise GraphQLError(f"GitLab GraphQL call failed: {body['errors']}")
                if not body.get("data"):
                    raise EmptyResponseError("empty GitLab GraphQL response")

                projects = body["data"]["projects"]
                for project in projects["nodes"]:
                    self.store.store_record(Forge.GITLAB, self._to_record(project))
                    stored += 1
                await self.store.flush()

                logger.debug(f"GitLab page {page}: {len(projects['nodes'])} projects")

                if not projects["pageInfo"]["hasNextPage"]:
                    break
                after = projects["pageInfo"]["endCursor"]
                page += 1

        logger.info(f"Finished scraping GitLab: {stored} projects on {page} pages")
        return stored
