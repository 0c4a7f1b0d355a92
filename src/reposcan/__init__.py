"""
reposcan: find GitHub repositories written in a given language.

Walks the public repository listing, filters by language and records
whether each match carries two marker files.
"""

__version__ = "0.1.0"

from reposcan.crawler import CrawlerConfig, CrawlOrchestrator, StateStore

__all__ = [
    "CrawlerConfig",
    "CrawlOrchestrator",
    "StateStore",
]
