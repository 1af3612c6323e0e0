"""Shared fixtures for remote tests, including a fake of the GitHub git data API."""

import base64
import hashlib
import json
import re

import httpx
import pytest
import pytest_asyncio

from gitray.core.sha import git_blob_sha1
from gitray.remote.github import GithubRemote
from gitray.remote.memory import MemoryRemote


def _digest(value) -> str:
    return hashlib.sha1(json.dumps(value, sort_keys=True).encode()).hexdigest()


class FakeGithub:
    """Serves the subset of endpoints GithubRemote uses.

    Repositories are kept as refs -> commits -> flat trees -> blobs.
    """

    def __init__(self, login="octo"):
        self.login = login
        self.repos = {}
        self.blobs = {}
        self.trees = {}
        self.commits = {}
        self.requests = []
        self.fail = {}  # (method, path regex) -> status
        self.corrupt_blob_shas = False

    # Helpers for tests ------------------------------------------------------

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def create_repo(self, full_name, files=None, branch="main"):
        self.repos[full_name] = {"default_branch": branch, "refs": {}}
        if files is not None:
            self._commit_files(full_name, branch, files, "init")

    def files(self, full_name, branch=None):
        repo = self.repos[full_name]
        branch = branch or repo["default_branch"]
        commit = self.commits[repo["refs"][branch]]
        tree = self.trees[commit["tree"]]
        return {path: self.blobs[sha] for path, sha in tree.items()}

    def _commit_files(self, full_name, branch, files, message):
        tree = {}
        for path, content in files.items():
            sha = git_blob_sha1(content)
            self.blobs[sha] = content
            tree[path] = sha
        tree_sha = _digest(tree)
        self.trees[tree_sha] = tree
        repo = self.repos[full_name]
        parent = repo["refs"].get(branch)
        commit = {"tree": tree_sha, "parents": [parent] if parent else []}
        commit_sha = _digest({**commit, "message": message})
        self.commits[commit_sha] = commit
        repo["refs"][branch] = commit_sha

    # Request handling ---------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.requests.append((method, path))

        for (fail_method, pattern), status in self.fail.items():
            if fail_method == method and re.search(pattern, path):
                return httpx.Response(status, json={"message": "injected"})

        body = json.loads(request.content) if request.content else None

        if method == "GET" and path == "/user":
            return httpx.Response(200, json={"login": self.login})

        if path == "/user/repos":
            if method == "POST":
                full_name = f"{self.login}/{body['name']}"
                if full_name in self.repos:
                    return httpx.Response(422, json={"message": "name already exists"})
                self.repos[full_name] = {"default_branch": "main", "refs": {}}
                return httpx.Response(201, json={"full_name": full_name})
            page = int(request.url.params.get("page", 1))
            per_page = int(request.url.params.get("per_page", 30))
            names = sorted(self.repos)
            chunk = names[(page - 1) * per_page : page * per_page]
            return httpx.Response(
                200,
                json=[{"name": n.split("/")[1], "full_name": n} for n in chunk],
            )

        match = re.match(r"^/repos/([^/]+/[^/]+)(/.*)?$", path)
        if not match:
            return httpx.Response(404, json={"message": "Not Found"})
        full_name, rest = match.group(1), match.group(2) or ""
        repo = self.repos.get(full_name)
        if repo is None:
            return httpx.Response(404, json={"message": "Not Found"})

        if method == "GET" and rest == "":
            return httpx.Response(
                200,
                json={"full_name": full_name, "default_branch": repo["default_branch"]},
            )

        if method == "PUT" and rest.startswith("/contents/"):
            file_path = rest[len("/contents/") :]
            content = base64.b64decode(body["content"])
            branch = repo["default_branch"]
            files = self.files(full_name) if repo["refs"] else {}
            files[file_path] = content
            self._commit_files(full_name, branch, files, body["message"])
            return httpx.Response(201, json={"content": {"path": file_path}})

        if method == "GET" and rest.startswith("/git/ref/heads/"):
            branch = rest[len("/git/ref/heads/") :]
            if branch not in repo["refs"]:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(
                200, json={"object": {"sha": repo["refs"][branch], "type": "commit"}}
            )

        if method == "GET" and rest.startswith("/git/commits/"):
            sha = rest[len("/git/commits/") :]
            commit = self.commits[sha]
            return httpx.Response(
                200, json={"sha": sha, "tree": {"sha": commit["tree"]}}
            )

        if method == "GET" and rest.startswith("/git/trees/"):
            sha = rest[len("/git/trees/") :]
            tree = self.trees[sha]
            dirs = sorted({p.rsplit("/", 1)[0] for p in tree if "/" in p})
            entries = [{"path": d, "type": "tree", "sha": "0" * 40} for d in dirs]
            entries += [
                {"path": p, "type": "blob", "sha": s, "mode": "100644"}
                for p, s in sorted(tree.items())
            ]
            return httpx.Response(
                200, json={"sha": sha, "tree": entries, "truncated": False}
            )

        if method == "GET" and rest.startswith("/git/blobs/"):
            sha = rest[len("/git/blobs/") :]
            content = base64.encodebytes(self.blobs[sha]).decode("ascii")
            return httpx.Response(
                200, json={"sha": sha, "content": content, "encoding": "base64"}
            )

        if method == "POST" and rest == "/git/blobs":
            content = base64.b64decode(body["content"])
            sha = git_blob_sha1(content)
            self.blobs[sha] = content
            if self.corrupt_blob_shas:
                sha = "f" * 40
            return httpx.Response(201, json={"sha": sha})

        if method == "POST" and rest == "/git/trees":
            tree = dict(self.trees[body["base_tree"]])
            for entry in body["tree"]:
                if entry["sha"] is None:
                    tree.pop(entry["path"], None)
                else:
                    tree[entry["path"]] = entry["sha"]
            sha = _digest(tree)
            self.trees[sha] = tree
            return httpx.Response(201, json={"sha": sha})

        if method == "POST" and rest == "/git/commits":
            commit = {"tree": body["tree"], "parents": body["parents"]}
            sha = _digest({**commit, "message": body["message"]})
            self.commits[sha] = commit
            return httpx.Response(201, json={"sha": sha})

        if method == "PATCH" and rest.startswith("/git/refs/heads/"):
            branch = rest[len("/git/refs/heads/") :]
            repo["refs"][branch] = body["sha"]
            return httpx.Response(200, json={"object": {"sha": body["sha"]}})

        return httpx.Response(404, json={"message": "Not Found"})


@pytest.fixture
def fake_github():
    return FakeGithub()


@pytest_asyncio.fixture
async def github(fake_github):
    remote = GithubRemote(
        "test-token",
        base_url="https://api.github.test",
        transport=fake_github.transport(),
    )
    yield remote
    await remote.close()


@pytest.fixture
def memory_remote():
    return MemoryRemote(owner="me")
