"""Tests for the CrawlOrchestrator scan loop."""

import asyncio
import csv
import json

import httpx
import pytest

from fakes import FakeGitHub
from reposcan.crawler.config import CrawlerConfig
from reposcan.crawler.errors import HttpStatusError, QueryCostError
from reposcan.crawler.orchestrator import CrawlOrchestrator
from reposcan.crawler.rate_limiter import RateLimitedClient, TokenRotator
from reposcan.crawler.state import Forge, StateStore


def make_config(tmp_path, **kwargs):
    kwargs.setdefault("min_iteration_interval", 0)
    return CrawlerConfig(data_dir=tmp_path, **kwargs)


def rust(i, fork=False):
    return (i, f"owner/repo{i}", fork, ["Rust"])


def output_names(tmp_path):
    path = tmp_path / "github.csv"
    if not path.exists():
        return []
    with open(path, newline="") as f:
        return [row["name"] for row in csv.DictReader(f)]


def checkpoint(tmp_path):
    return json.loads((tmp_path / "state.json").read_text())


async def run(config, gh, store=None, cancel_event=None):
    store = store or StateStore(config.data_dir)
    async with CrawlOrchestrator(config, client=gh, store=store, cancel_event=cancel_event) as orch:
        return await orch.run()


class TestScanLoop:

    @pytest.mark.asyncio
    async def test_fork_moves_cursor_but_is_not_enriched(self, tmp_path):
        """Ids 5 and 9 where 9 is a fork: cursor 9, only 5 is enriched."""
        gh = FakeGitHub([rust(5), rust(9, fork=True)])
        stats = await run(make_config(tmp_path), gh)

        assert checkpoint(tmp_path) == {"github": 9}
        assert gh.batches == [["N5"]]
        assert output_names(tmp_path) == ["owner/repo5"]
        assert stats.cursor == 9
        assert stats.forks_skipped == 1
        assert stats.stop_reason == "exhausted"

    @pytest.mark.asyncio
    async def test_forks_never_reach_output(self, tmp_path):
        gh = FakeGitHub([rust(1, fork=True), rust(2, fork=True), rust(3)], page_size=2)
        await run(make_config(tmp_path, page_size=2), gh)

        assert output_names(tmp_path) == ["owner/repo3"]
        assert "N1" not in sum(gh.batches, [])

    @pytest.mark.asyncio
    async def test_cursor_is_monotonic_and_checkpointed_per_page(self, tmp_path):
        gh = FakeGitHub([rust(i) for i in range(1, 6)], page_size=2)
        store = StateStore(tmp_path)
        cursors = []
        set_cursor = store.set_cursor

        async def spy(forge, value):
            cursors.append(value)
            await set_cursor(forge, value)

        store.set_cursor = spy
        await run(make_config(tmp_path, page_size=2), gh, store=store)

        assert cursors == [2, 4, 5]
        assert gh.list_calls == [0, 2, 4]
        assert checkpoint(tmp_path) == {"github": 5}

    @pytest.mark.asyncio
    async def test_resume_starts_after_checkpoint(self, tmp_path):
        (tmp_path / "state.json").write_text('{\n  "github": 9\n}\n')
        gh = FakeGitHub([rust(5), rust(9), rust(12)])

        await run(make_config(tmp_path), gh)

        assert gh.list_calls[0] == 9
        assert gh.batches == [["N12"]]
        assert output_names(tmp_path) == ["owner/repo12"]

    @pytest.mark.asyncio
    async def test_batches_fill_across_pages(self, tmp_path):
        gh = FakeGitHub(
            [rust(1, fork=True), rust(2), rust(3), rust(4, fork=True), rust(5)],
            page_size=2,
        )
        stats = await run(make_config(tmp_path, page_size=2), gh)

        assert gh.batches == [["N2", "N3"], ["N5"]]
        assert stats.batches == 2
        assert sorted(output_names(tmp_path)) == ["owner/repo2", "owner/repo3", "owner/repo5"]

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_stop_crawl(self, tmp_path):
        gh = FakeGitHub([rust(i) for i in range(1, 6)], page_size=2, broken_ids={"N1"})
        stats = await run(make_config(tmp_path, page_size=2), gh)

        assert stats.batch_failures == 1
        assert stats.stop_reason == "exhausted"
        assert sorted(output_names(tmp_path)) == ["owner/repo3", "owner/repo4", "owner/repo5"]
        assert checkpoint(tmp_path) == {"github": 5}

    @pytest.mark.asyncio
    async def test_query_cost_error_stops_crawl(self, tmp_path):
        gh = FakeGitHub([rust(1)])

        async def too_costly(node_ids):
            raise QueryCostError("load repositories query too costly (cost 2)")

        gh.load_repository_batch = too_costly
        with pytest.raises(QueryCostError):
            await run(make_config(tmp_path), gh)
        assert not (tmp_path / "state.json").exists()

    @pytest.mark.asyncio
    async def test_listing_failure_propagates(self, tmp_path):
        gh = FakeGitHub([rust(1)])

        async def broken_listing(since):
            raise HttpStatusError(500, "https://api.github.com/repositories")

        gh.list_repositories_since = broken_listing
        with pytest.raises(HttpStatusError):
            await run(make_config(tmp_path), gh)

    @pytest.mark.asyncio
    async def test_non_matching_language_is_skipped(self, tmp_path):
        gh = FakeGitHub([(1, "a/py", False, ["Python"]), rust(2)])
        stats = await run(make_config(tmp_path), gh)

        assert gh.tree_calls == ["owner/repo2"]
        assert stats.records_stored == 1

    @pytest.mark.asyncio
    async def test_malformed_tree_body_is_isolated_to_its_repo(self, tmp_path):
        def handler(request):
            if request.url.path.startswith("/repos/a/bad/"):
                return httpx.Response(200, text="<html>oops</html>")
            return httpx.Response(200, json={"tree": [{"path": "Cargo.toml"}]})

        config = make_config(tmp_path)
        trees = RateLimitedClient(
            TokenRotator(["tok"]), config, transport=httpx.MockTransport(handler)
        )
        gh = FakeGitHub([(1, "a/bad", False, ["Rust"]), (2, "a/good", False, ["Rust"])])
        gh.fetch_tree = trees.fetch_tree

        async with trees:
            stats = await run(config, gh)

        with open(tmp_path / "github.csv", newline="") as f:
            rows = {row["name"]: row for row in csv.DictReader(f)}
        assert rows["a/good"]["has_marker_a"] == "true"
        assert rows["a/bad"]["has_marker_a"] == "false"
        assert rows["a/bad"]["has_marker_b"] == "false"
        assert stats.batch_failures == 0
        assert checkpoint(tmp_path) == {"github": 2}


class TestStopping:

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, tmp_path):
        gh = FakeGitHub([rust(1)])
        cancel = asyncio.Event()
        cancel.set()

        stats = await run(make_config(tmp_path), gh, cancel_event=cancel)

        assert gh.list_calls == []
        assert stats.stop_reason == "cancelled"
        assert checkpoint(tmp_path) == {"github": 0}

    @pytest.mark.asyncio
    async def test_cancel_mid_page_finishes_page(self, tmp_path):
        gh = FakeGitHub([rust(i) for i in range(1, 8)], page_size=2)
        cancel = asyncio.Event()
        gh.on_list = lambda since: cancel.set()

        stats = await run(make_config(tmp_path, page_size=2), gh, cancel_event=cancel)

        # The full page was still processed, then the crawl stopped
        assert gh.list_calls == [0]
        assert gh.batches == [["N1", "N2"]]
        assert checkpoint(tmp_path) == {"github": 2}
        assert stats.stop_reason == "cancelled"

    @pytest.mark.asyncio
    async def test_timeout_flushes_partial_batch(self, tmp_path):
        gh = FakeGitHub([rust(1), rust(2, fork=True), rust(3), rust(4)], page_size=2)
        config = make_config(tmp_path, page_size=2, timeout_seconds=3600)
        store = StateStore(tmp_path)

        async with CrawlOrchestrator(config, client=gh, store=store) as orch:
            # Expire the budget once the first page is listed
            gh.on_list = lambda since: setattr(config, "timeout_seconds", 0)
            stats = await orch.run()

        assert stats.stop_reason == "timeout"
        assert gh.list_calls == [0]
        assert gh.batches == [["N1"]]
        assert output_names(tmp_path) == ["owner/repo1"]
        assert checkpoint(tmp_path) == {"github": 2}

    @pytest.mark.asyncio
    async def test_paces_fast_iterations(self, tmp_path):
        gh = FakeGitHub([rust(i) for i in range(1, 6)], page_size=2)
        config = make_config(tmp_path, page_size=2, min_iteration_interval=10)
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        async with CrawlOrchestrator(config, client=gh, store=StateStore(tmp_path)) as orch:
            orch._sleep = fake_sleep
            await orch.run()

        # Two full pages are followed by a pause, the short last page is not
        assert len(sleeps) == 2
        assert all(0 < s <= 10 for s in sleeps)
