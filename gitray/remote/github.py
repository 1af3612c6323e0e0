"""Remote store backed by GitHub repositories through the git data API."""

import asyncio
import base64
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import httpx

from ..config import GitrayConfig
from ..core.inflight import InflightRegistry
from ..core.sha import git_blob_sha1, hash_content
from ..core.structure import (
    ROOT_META_PATH,
    ContentRef,
    StoreStructure,
    encode_json,
    tree_to_structure,
)
from ..exceptions import (
    HashMismatchError,
    RemoteError,
    RemoteUnavailableError,
    StoreNotFoundError,
)
from .base import RemoteStore

logger = logging.getLogger(__name__)

API_URL = "https://api.github.com"
RAW_URL = "https://raw.githubusercontent.com"
API_VERSION = "2022-11-28"
BLOB_MODE = "100644"
PAGE_SIZE = 100

TokenProvider = Union[str, Callable[[], Union[str, Awaitable[str]]]]


class GithubRemote(RemoteStore):
    """
    Stores are repositories named ``<owner>/<repo_prefix>-<name>``.

    A commit uploads every blob, builds a tree on top of the current one,
    creates a commit and moves the branch ref, so the branch only ever points
    at complete states.
    """

    def __init__(
        self,
        token: TokenProvider,
        repo_prefix: str = "gitray-db",
        entry_name: str = "entry",
        branch: Optional[str] = None,
        base_url: str = API_URL,
        timeout: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the remote.

        Args:
            token: Access token, or a (possibly async) callable returning one;
                the callable is invoked whenever a new client is created
            repo_prefix: Prefix of every store repository name
            entry_name: Chunk file prefix used when parsing trees
            branch: Branch to read and write; the default branch when None
            base_url: GitHub API URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.token = token
        self.repo_prefix = repo_prefix
        self.entry_name = entry_name
        self.branch = branch
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._client_lock = asyncio.Lock()
        self._inflight = InflightRegistry()
        self._default_branches: Dict[str, str] = {}

    @classmethod
    def from_config(
        cls, config: GitrayConfig, token: TokenProvider, **kwargs
    ) -> "GithubRemote":
        """Create a remote using the naming and branch settings of ``config``."""
        return cls(
            token,
            repo_prefix=config.repo_prefix,
            entry_name=config.entry_name,
            branch=config.branch,
            timeout=int(config.commit_timeout),
            **kwargs,
        )

    async def _resolve_token(self) -> str:
        if isinstance(self.token, str):
            return self.token
        token = self.token()
        if inspect.isawaitable(token):
            token = await token
        return token

    async def _get_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                token = await self._resolve_token()
                self._client = httpx.AsyncClient(
                    base_url=self.base_url,
                    timeout=self.timeout,
                    transport=self.transport,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Accept": "application/vnd.github+json",
                        "X-GitHub-Api-Version": API_VERSION,
                    },
                )
            return self._client

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        """Send a request and map failures onto the remote error hierarchy.

        Raises:
            RemoteUnavailableError: Network failure, 5xx or rate limiting
            StoreNotFoundError: 404
            RemoteError: Any other refused request
        """
        client = await self._get_client()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise RemoteUnavailableError(f"{method} {url} failed: {e}") from e

        status = response.status_code
        if status < 400:
            return response.json() if response.content else None

        try:
            message = response.json().get("message", response.text)
        except ValueError:
            message = response.text
        detail = f"{method} {url} returned {status}: {message}"

        rate_limited = status == 403 and (
            response.headers.get("x-ratelimit-remaining") == "0"
            or "rate limit" in str(message).lower()
        )
        if status >= 500 or status == 429 or rate_limited:
            raise RemoteUnavailableError(detail, status)
        if status == 404:
            raise StoreNotFoundError(detail, status)
        raise RemoteError(detail, status)

    async def _owner(self) -> str:
        user = await self._request("GET", "/user")
        return user["login"]

    async def _branch(self, store: str) -> str:
        if self.branch:
            return self.branch
        branch = self._default_branches.get(store)
        if branch is None:
            repo = await self._request("GET", f"/repos/{store}")
            branch = repo["default_branch"]
            self._default_branches[store] = branch
        return branch

    async def _head(self, store: str) -> tuple[str, str, str]:
        """Resolve (branch, commit sha, tree sha) of the store's head."""
        branch = await self._branch(store)
        ref = await self._request("GET", f"/repos/{store}/git/ref/heads/{branch}")
        commit_sha = ref["object"]["sha"]
        commit = await self._request(
            "GET", f"/repos/{store}/git/commits/{commit_sha}"
        )
        return branch, commit_sha, commit["tree"]["sha"]

    async def fetch_structure(self, store: str) -> StoreStructure:
        return await self._inflight.run(
            ("structure", store), lambda: self._fetch_structure(store)
        )

    async def _fetch_structure(self, store: str) -> StoreStructure:
        _, _, tree_sha = await self._head(store)
        tree = await self._request(
            "GET", f"/repos/{store}/git/trees/{tree_sha}", params={"recursive": "1"}
        )
        if tree.get("truncated"):
            logger.warning(f"Tree listing of {store} was truncated by the API")
        blobs = [
            (entry["path"], entry["sha"])
            for entry in tree.get("tree", [])
            if entry.get("type") == "blob"
        ]
        logger.debug(f"Fetched structure of {store}: {len(blobs)} blob(s)")
        return tree_to_structure(blobs, entry_name=self.entry_name)

    async def fetch_content(
        self, store: str, refs: Iterable[ContentRef]
    ) -> Dict[str, bytes]:
        refs = [ref for ref in refs if ref.hash]
        contents = await asyncio.gather(
            *[
                self._inflight.run(
                    ("blob", store, ref.hash),
                    lambda ref=ref: self._fetch_blob(store, ref),
                )
                for ref in refs
            ]
        )
        return {ref.path: content for ref, content in zip(refs, contents)}

    async def _fetch_blob(self, store: str, ref: ContentRef) -> bytes:
        blob = await self._request("GET", f"/repos/{store}/git/blobs/{ref.hash}")
        if blob.get("encoding") == "base64":
            content = base64.b64decode(blob.get("content", ""))
        else:
            content = blob.get("content", "").encode("utf-8")
        actual = git_blob_sha1(content)
        if actual != ref.hash:
            raise HashMismatchError(ref.path, ref.hash, actual)
        return content

    async def _create_blob(self, store: str, path: str, content: bytes) -> str:
        expected = await hash_content(content)
        blob = await self._request(
            "POST",
            f"/repos/{store}/git/blobs",
            json={
                "content": base64.b64encode(content).decode("ascii"),
                "encoding": "base64",
            },
        )
        if blob["sha"] != expected:
            raise HashMismatchError(path, expected, blob["sha"])
        return blob["sha"]

    async def commit(
        self,
        store: str,
        files: Dict[str, bytes],
        deletions: Iterable[str],
        message: str,
    ) -> str:
        branch, commit_sha, tree_sha = await self._head(store)

        paths = list(files)
        shas = await asyncio.gather(
            *[self._create_blob(store, path, files[path]) for path in paths]
        )
        tree_entries: List[Dict[str, Any]] = [
            {"path": path, "mode": BLOB_MODE, "type": "blob", "sha": sha}
            for path, sha in zip(paths, shas)
        ]
        tree_entries.extend(
            {"path": path, "mode": BLOB_MODE, "type": "blob", "sha": None}
            for path in deletions
        )

        tree = await self._request(
            "POST",
            f"/repos/{store}/git/trees",
            json={"base_tree": tree_sha, "tree": tree_entries},
        )
        new_commit = await self._request(
            "POST",
            f"/repos/{store}/git/commits",
            json={"message": message, "tree": tree["sha"], "parents": [commit_sha]},
        )
        await self._request(
            "PATCH",
            f"/repos/{store}/git/refs/heads/{branch}",
            json={"sha": new_commit["sha"]},
        )
        logger.info(
            f"Committed {len(tree_entries)} change(s) to {store}@{branch}: "
            f"{new_commit['sha'][:7]}"
        )
        return new_commit["sha"]

    async def create_store(self, name: str) -> str:
        owner = await self._owner()
        repo_name = f"{self.repo_prefix}-{name}"
        await self._request(
            "POST", "/user/repos", json={"name": repo_name, "private": True}
        )
        full_name = f"{owner}/{repo_name}"
        await self._request(
            "PUT",
            f"/repos/{full_name}/contents/{ROOT_META_PATH}",
            json={
                "message": "[Gitray] Initialize store",
                "content": base64.b64encode(encode_json({})).decode("ascii"),
            },
        )
        logger.info(f"Created store {full_name}")
        return full_name

    async def list_stores(self) -> List[str]:
        stores = []
        page = 1
        while True:
            repos = await self._request(
                "GET",
                "/user/repos",
                params={"type": "all", "per_page": PAGE_SIZE, "page": page},
            )
            stores.extend(
                repo["full_name"]
                for repo in repos
                if repo["name"].startswith(f"{self.repo_prefix}-")
            )
            if len(repos) < PAGE_SIZE:
                return stores
            page += 1

    def asset_url(self, store: str, path: str) -> str:
        return f"{RAW_URL}/{store}/{self.branch or 'HEAD'}/{path}"

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
