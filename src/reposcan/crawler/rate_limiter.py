"""GitHub API client with multi-token rotation and retry.

Wraps the three GitHub calls the crawler needs (REST listing, GraphQL batch
lookup, git tree listing) behind one request loop that:

- retries transport failures with capped exponential backoff
- rotates tokens on rate limits (429/422, abuse or secondary limits)
- sleeps a fixed cooldown once every token has been rate limited
- fails immediately on any other non-success status
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from reposcan.crawler.config import CrawlerConfig
from reposcan.crawler.errors import (
    ConfigError,
    EmptyResponseError,
    GraphQLError,
    HttpStatusError,
    QueryCostError,
    ResponseFormatError,
    TransportFailure,
)

logger = logging.getLogger(__name__)


USER_AGENT = "reposcan (+https://github.com/reposcan/reposcan)"

RATE_LIMIT_STATUSES = (422, 429)
RATE_LIMIT_MARKERS = ("abuse", "secondary rate", "rate limit", "throttl")

GRAPHQL_QUERY_REPOSITORIES = """
query($ids: [ID!]!) {
    nodes(ids: $ids) {
        ... on Repository {
            id
            nameWithOwner
            defaultBranchRef {
                name
            }
            languages(first: 100, orderBy: { field: SIZE, direction: DESC }) {
                nodes {
                    name
                }
            }
        }
    }

    rateLimit {
        cost
    }
}
"""


@dataclass
class RestRepository:
    """Entry of the REST /repositories listing."""

    id: int
    full_name: str
    node_id: str
    fork: bool = False

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "RestRepository":
        return cls(
            id=int(data["id"]),
            full_name=data["full_name"],
            node_id=data["node_id"],
            fork=bool(data.get("fork", False)),
        )


@dataclass
class GraphRepository:
    """Repository summary returned by the GraphQL batch query."""

    id: str
    name_with_owner: str
    languages: List[str] = field(default_factory=list)
    default_branch: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "GraphRepository":
        branch = data.get("defaultBranchRef") or {}
        nodes = (data.get("languages") or {}).get("nodes") or []
        return cls(
            id=data["id"],
            name_with_owner=data["nameWithOwner"],
            languages=[lang["name"] for lang in nodes if lang],
            default_branch=branch.get("name"),
        )

    def has_language(self, name: str) -> bool:
        return name in self.languages


@dataclass
class TokenState:
    """A single GitHub API token."""

    token: str
    token_hash: str


class TokenRotator:
    """Round-robin selection over several GitHub tokens.

    The current index is shared by every coroutine using the client. It only
    moves forward, and only through rotate(), which compares the index the
    caller observed with the current one so that a burst of concurrent rate
    limits on the same token advances it once.
    """

    def __init__(self, tokens: Sequence[str]):
        if not tokens:
            raise ConfigError("No API tokens configured")

        self.tokens: List[TokenState] = []
        self._index = 0
        self._lock = asyncio.Lock()

        for token in tokens:
            token_hash = hashlib.sha256(token.encode()).hexdigest()[:16]
            self.tokens.append(TokenState(token=token, token_hash=token_hash))

    @property
    def index(self) -> int:
        return self._index

    async def current(self) -> Tuple[int, str]:
        """Return (index, token) of the token to use next."""
        async with self._lock:
            return self._index, self.tokens[self._index].token

    async def rotate(self, observed_index: int) -> bool:
        """Move past a rate-limited token.

        Returns True when this call wrapped around to the first token, in
        which case the caller is expected to cool down before retrying.
        """
        async with self._lock:
            if observed_index != self._index:
                # Someone else already rotated away from this token
                return False

            previous = self.tokens[self._index]
            self._index = (self._index + 1) % len(self.tokens)
            logger.warning(
                f"Token {previous.token_hash} rate limited, switching to "
                f"token {self.tokens[self._index].token_hash} "
                f"({self._index + 1}/{len(self.tokens)})"
            )
            return self._index == 0


class RateLimitedClient:
    """GitHub API client with automatic rate limit handling.

    Features:
    - Automatic token rotation
    - Cooldown once every token is rate limited
    - Retry on transport errors with exponential backoff
    - Fail-fast on any other HTTP error
    """

    BASE_URL = "https://api.github.com"

    def __init__(
        self,
        token_rotator: TokenRotator,
        config: Optional[CrawlerConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = config or CrawlerConfig()
        self.rotator = token_rotator
        self.page_size = config.page_size
        self.timeout = config.request_timeout
        self.initial_backoff = config.initial_backoff
        self.backoff_jitter = config.backoff_jitter
        self.max_backoff = config.max_backoff
        self.rate_limit_cooldown = config.rate_limit_cooldown
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._sleep = asyncio.sleep

    async def __aenter__(self) -> "RateLimitedClient":
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            )
        return self._client

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "User-Agent": USER_AGENT,
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    @staticmethod
    def _error_message(response: httpx.Response) -> Optional[str]:
        """Extract the "message" field GitHub puts in error bodies."""
        try:
            data = response.json()
        except ValueError:
            return None
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return None

    @staticmethod
    def _graphql_errors(response: httpx.Response) -> List[Dict[str, Any]]:
        """Return the "errors" list of a GraphQL body, empty for anything else."""
        try:
            data = response.json()
        except ValueError:
            return []
        if not isinstance(data, dict) or not isinstance(data.get("errors"), list):
            return []
        return [error for error in data["errors"] if isinstance(error, dict)]

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        """Detect primary, secondary, abuse and GraphQL rate limits."""
        if response.status_code in RATE_LIMIT_STATUSES:
            return True
        if response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0":
            return True
        if response.status_code in (200, 403):
            messages = [self._error_message(response)]
            for error in self._graphql_errors(response):
                if error.get("type") == "RATE_LIMITED":
                    return True
                messages.append(error.get("message"))
            for message in messages:
                if message and any(marker in str(message).lower() for marker in RATE_LIMIT_MARKERS):
                    return True
        return False

    @staticmethod
    def _json(response: httpx.Response, expected: type) -> Any:
        """Decode a successful body, failing with ResponseFormatError on a bad shape."""
        try:
            data = response.json()
        except ValueError as e:
            raise ResponseFormatError(f"invalid JSON from {response.request.url}: {e}") from e
        if not isinstance(data, expected):
            raise ResponseFormatError(
                f"expected a JSON {expected.__name__} from {response.request.url}, "
                f"got {type(data).__name__}"
            )
        return data

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an authenticated request, retrying until it succeeds or fails hard."""
        client = await self._ensure_client()
        url = endpoint if endpoint.startswith("https://") else f"{self.BASE_URL}{endpoint}"

        backoff = self.initial_backoff
        waited = 0.0

        while True:
            index, token = await self.rotator.current()
            try:
                response = await client.request(
                    method, url, headers=self._headers(token), params=params, json=json
                )
            except httpx.TransportError as e:
                if waited + backoff > self.max_backoff:
                    raise TransportFailure(url, waited, e) from e
                logger.warning(f"Request to {url} failed ({e!r}), retrying in {backoff:.0f}s")
                await self._sleep(backoff)
                waited += backoff
                backoff = backoff * 2 + self.backoff_jitter
                continue

            if self._is_rate_limited(response):
                if await self.rotator.rotate(index):
                    logger.warning(
                        f"All tokens rate limited. Cooling down for {self.rate_limit_cooldown:.0f}s"
                    )
                    await self._sleep(self.rate_limit_cooldown)
                else:
                    await self._sleep(0)
                continue

            if response.is_success:
                return response

            raise HttpStatusError(response.status_code, url, self._error_message(response))

    async def graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Run a GraphQL query, returning its data object."""
        response = await self.request(
            "POST", "/graphql", json={"query": query, "variables": variables}
        )
        body = self._json(response, dict)
        data = body.get("data")
        errors = [error for error in body.get("errors") or [] if isinstance(error, dict)]

        if data is not None:
            if not isinstance(data, dict):
                raise ResponseFormatError(f"GraphQL data is a {type(data).__name__}, not an object")
            for error in errors:
                if error.get("type") == "NOT_FOUND":
                    logger.debug(f"Ignored GraphQL error: {error.get('message')}")
                    continue
                logger.warning(f"Non-fatal GraphQL error: {error.get('message')}")
            return data

        if errors:
            raise GraphQLError(f"GitHub GraphQL call failed: {errors[-1].get('message')}")
        raise EmptyResponseError("empty GraphQL response")

    async def list_repositories_since(self, since: int) -> List[RestRepository]:
        """List public repositories with an id strictly greater than since."""
        response = await self.request(
            "GET", "/repositories", params={"since": since, "per_page": self.page_size}
        )
        try:
            repos = [RestRepository.from_json(item) for item in self._json(response, list)]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ResponseFormatError(f"malformed repository listing since {since}: {e!r}") from e
        if len(repos) != self.page_size:
            logger.info(
                f"Listing since {since} returned {len(repos)} repositories "
                f"(requested {self.page_size})"
            )
        return repos

    async def load_repository_batch(self, node_ids: Sequence[str]) -> List[GraphRepository]:
        """Load names and languages for up to page_size repositories."""
        if len(node_ids) > self.page_size:
            raise ValueError(
                f"cannot load {len(node_ids)} repositories in one query (max {self.page_size})"
            )
        if not node_ids:
            return []

        data = await self.graphql(GRAPHQL_QUERY_REPOSITORIES, {"ids": list(node_ids)})

        try:
            cost = (data.get("rateLimit") or {}).get("cost", 0)
            # Deleted repositories come back as null, non-repositories as {}
            repos = [
                GraphRepository.from_json(node)
                for node in data.get("nodes") or []
                if node and "nameWithOwner" in node
            ]
        except (KeyError, TypeError, AttributeError) as e:
            raise ResponseFormatError(f"malformed repository batch: {e!r}") from e

        if cost > 1:
            raise QueryCostError(f"load repositories query too costly (cost {cost})")
        return repos

    async def fetch_tree(self, full_name: str, recursive: bool = False) -> List[str]:
        """List file paths on the default branch of a repository."""
        params = {"recursive": 1} if recursive else None
        response = await self.request(
            "GET", f"/repos/{full_name}/git/trees/HEAD", params=params
        )
        data = self._json(response, dict)
        if data.get("truncated"):
            logger.debug(f"Tree of {full_name} was truncated by GitHub")
        try:
            return [entry["path"] for entry in data.get("tree") or []]
        except (KeyError, TypeError) as e:
            raise ResponseFormatError(f"malformed tree for {full_name}: {e!r}") from e
