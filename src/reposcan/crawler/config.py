"""Configuration for the repository crawler."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from reposcan.crawler.errors import ConfigError


# GitHub's REST listing and GraphQL node lookups both top out at 100 items
PAGE_SIZE = 100


def get_github_tokens() -> List[str]:
    """Get GitHub tokens from environment."""
    tokens = []

    # Single token
    if os.environ.get("GITHUB_TOKEN"):
        tokens.append(os.environ["GITHUB_TOKEN"])

    # Multiple tokens (comma-separated)
    if os.environ.get("GITHUB_TOKENS"):
        tokens.extend(os.environ["GITHUB_TOKENS"].split(","))

    return [t.strip() for t in tokens if t.strip()]


def parse_timeout(value: Optional[str]) -> Optional[int]:
    """Parse a run-time budget in whole seconds, None when unset."""
    if value is None or value == "":
        return None
    try:
        timeout = int(value)
    except ValueError:
        raise ConfigError(f"failed to parse timeout {value!r}: expected seconds")
    if timeout < 0:
        raise ConfigError(f"timeout must not be negative, got {timeout}")
    return timeout


@dataclass
class CrawlerConfig:
    """Configuration for crawling GitHub repositories.

    Attributes:
        data_dir: Directory holding state.json and the per-forge CSV files.
        github_tokens: List of GitHub API tokens for rate limit distribution.
        timeout_seconds: Wall-clock budget for a run (None for no limit).
        target_language: Language name a repository must contain.
        marker_files: The two paths recorded as has_marker_a / has_marker_b.
        page_size: Repositories per listing page and ids per GraphQL batch.
        recursive_tree: Fetch the full recursive tree instead of the root.
        max_concurrent_batches: Enrichment batches allowed in flight.
        min_iteration_interval: Minimum seconds per listing page.
        request_timeout: Per-request HTTP timeout in seconds.
        initial_backoff: First sleep after a transport failure.
        backoff_jitter: Constant added to the doubled backoff each retry.
        max_backoff: Accumulated backoff after which a call fails.
        rate_limit_cooldown: Sleep when token rotation wraps around.
        include_gitlab: Also scrape GitLab after GitHub.
    """

    data_dir: Path = field(default_factory=lambda: Path("./data"))
    github_tokens: List[str] = field(default_factory=list)
    timeout_seconds: Optional[int] = None
    target_language: str = "Rust"
    marker_files: Tuple[str, str] = ("Cargo.toml", "Cargo.lock")
    page_size: int = PAGE_SIZE
    recursive_tree: bool = False
    max_concurrent_batches: int = 4
    min_iteration_interval: float = 0.25
    request_timeout: float = 30.0
    initial_backoff: float = 1.0
    backoff_jitter: float = 1.0
    max_backoff: float = 300.0
    rate_limit_cooldown: float = 60.0
    include_gitlab: bool = False

    def __post_init__(self):
        """Ensure paths are Path objects and limits are sane."""
        if isinstance(self.data_dir, str):
            self.data_dir = Path(self.data_dir)
        if not 0 < self.page_size <= PAGE_SIZE:
            raise ConfigError(f"page_size must be between 1 and {PAGE_SIZE}")
        if self.max_concurrent_batches < 1:
            raise ConfigError("max_concurrent_batches must be at least 1")
        if self.min_iteration_interval < 0:
            raise ConfigError("min_iteration_interval must not be negative")
        if self.initial_backoff <= 0 or self.max_backoff <= 0:
            raise ConfigError("initial_backoff and max_backoff must be positive")
        if len(self.marker_files) != 2:
            raise ConfigError("exactly two marker files are recorded")
        self.marker_files = tuple(self.marker_files)

    @classmethod
    def from_env(
        cls,
        data_dir: Optional[str] = None,
        timeout: Optional[str] = None,
        **overrides,
    ) -> "CrawlerConfig":
        """Build a config from GITHUB_TOKEN(S), REPOSCAN_* and overrides.

        Explicit arguments win over the environment; overrides set to None
        are ignored so argparse defaults can be passed straight through.
        """
        data_dir = data_dir or os.environ.get("REPOSCAN_DATA_DIR")
        if not data_dir:
            raise ConfigError("missing argument: <data_dir>")

        tokens = get_github_tokens()
        if not tokens:
            raise ConfigError(
                "failed to get the GitHub API token: set GITHUB_TOKEN or GITHUB_TOKENS"
            )

        kwargs = {
            "data_dir": Path(data_dir),
            "github_tokens": tokens,
            "timeout_seconds": parse_timeout(
                timeout if timeout is not None else os.environ.get("REPOSCAN_TIMEOUT")
            ),
        }
        if os.environ.get("REPOSCAN_LANGUAGE"):
            kwargs["target_language"] = os.environ["REPOSCAN_LANGUAGE"]
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)
