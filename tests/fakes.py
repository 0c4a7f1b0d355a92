"""In-memory stand-in for RateLimitedClient used by the pipeline tests."""

from reposcan.crawler.errors import HttpStatusError
from reposcan.crawler.rate_limiter import GraphRepository, RestRepository


class FakeGitHub:
    """Serves a fixed set of repositories through the client interface."""

    def __init__(self, repos, page_size=100, trees=None, broken_trees=(), broken_ids=()):
        # repos: list of (id, full_name, fork, languages)
        self.repos = sorted(repos)
        self.page_size = page_size
        self.trees = trees or {}
        self.broken_trees = set(broken_trees)
        self.broken_ids = set(broken_ids)
        self.list_calls = []
        self.batches = []
        self.tree_calls = []
        self.on_list = None

    async def list_repositories_since(self, since):
        self.list_calls.append(since)
        if self.on_list:
            self.on_list(since)
        page = [r for r in self.repos if r[0] > since][: self.page_size]
        return [
            RestRepository(id=i, full_name=name, node_id=f"N{i}", fork=fork)
            for i, name, fork, _ in page
        ]

    async def load_repository_batch(self, node_ids):
        self.batches.append(list(node_ids))
        if self.broken_ids & set(node_ids):
            raise HttpStatusError(502, "https://api.github.com/graphql")
        by_node = {f"N{i}": (name, langs) for i, name, _, langs in self.repos}
        return [
            GraphRepository(id=node_id, name_with_owner=by_node[node_id][0], languages=list(by_node[node_id][1]))
            for node_id in node_ids
        ]

    async def fetch_tree(self, full_name, recursive=False):
        self.tree_calls.append(full_name)
        if full_name in self.broken_trees:
            raise HttpStatusError(409, f"https://api.github.com/repos/{full_name}/git/trees/HEAD")
        return list(self.trees.get(full_name, []))

    async def aclose(self):
        pass
