"""Command-line interface for the repository scanner.

Usage:
    reposcan ./data
    reposcan --timeout 3600 --language Rust ./data
    python -m reposcan.cli --gitlab ./data

Environment Variables (can be set in .env file):
    GITHUB_TOKEN       - Single GitHub personal access token
    GITHUB_TOKENS      - Multiple tokens, comma-separated (for higher throughput)
    REPOSCAN_TIMEOUT   - Stop gracefully after this many seconds
    REPOSCAN_DATA_DIR  - Data directory when none is given on the command line
    REPOSCAN_LANGUAGE  - Language to look for (default: Rust)
    LOG_LEVEL          - Logging level (default: INFO)
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import time

from dotenv import load_dotenv

from reposcan.crawler.config import CrawlerConfig
from reposcan.crawler.errors import CrawlerError
from reposcan.crawler.orchestrator import run_crawl

logger = logging.getLogger("reposcan")


def setup_logging(verbose: bool = False) -> None:
    level = "DEBUG" if verbose else os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # Only our own loggers follow LOG_LEVEL; httpx stays at WARNING
    logging.getLogger("reposcan").setLevel(level)


def install_signal_handlers(cancel_event: asyncio.Event) -> None:
    """Set cancel_event on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def _request_stop(signame: str) -> None:
        logger.info(f"Received {signame}, finishing in-flight work...")
        cancel_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig.name)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(cancel_event.set))


async def cmd_crawl(config: CrawlerConfig) -> int:
    """Run the crawl until it finishes or is interrupted."""
    cancel_event = asyncio.Event()
    install_signal_handlers(cancel_event)

    logger.info(
        f"Scanning for {config.target_language} repositories into {config.data_dir} "
        f"with {len(config.github_tokens)} GitHub token(s)"
    )
    stats = await run_crawl(config, cancel_event=cancel_event)

    logger.info(
        f"Crawl complete ({stats.stop_reason}): {stats.repos_seen:,} repositories seen, "
        f"{stats.forks_skipped:,} forks skipped, {stats.records_stored:,} records stored, "
        f"{stats.batch_failures} failed batches, last id {stats.cursor}"
    )
    if stats.gitlab_records:
        logger.info(f"GitLab: {stats.gitlab_records:,} projects stored")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Discover GitHub repositories written in a given language",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "data_dir",
        nargs="?",
        help="Directory for state.json and the CSV outputs (default: $REPOSCAN_DATA_DIR)",
    )
    parser.add_argument(
        "--timeout",
        help="Stop gracefully after this many seconds (default: $REPOSCAN_TIMEOUT)",
    )
    parser.add_argument(
        "--language",
        help="Language to look for (default: $REPOSCAN_LANGUAGE or Rust)",
    )
    parser.add_argument(
        "--gitlab",
        action="store_true",
        help="Also scrape GitLab once the GitHub listing is exhausted",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        help="Enrichment batches in flight (default: 4)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args(argv)

    load_dotenv()
    setup_logging(args.verbose)

    start = time.monotonic()
    try:
        config = CrawlerConfig.from_env(
            args.data_dir,
            timeout=args.timeout,
            target_language=args.language,
            include_gitlab=args.gitlab or None,
            max_concurrent_batches=args.concurrency,
        )
        return asyncio.run(cmd_crawl(config))
    except (CrawlerError, OSError) as e:
        logger.error(f"Error: {e}")
        return 1
    finally:
        logger.info(f"Execution completed in {time.monotonic() - start:.0f} seconds")


if __name__ == "__main__":
    sys.exit(main())
