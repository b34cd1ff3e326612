import asyncio
import contextlib
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from aiohttp.client import ClientError, ClientSession

from release import ReleaseVersion

JSON = dict[str, Any]

API_ROOT = "https://api.github.com"


class GitHubAPIError(Exception):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(f"GitHub API error {status}: {message}")
        self.status = status
        self.message = message


# A request fails with one of these, from a bad status to a dropped connection.
REQUEST_ERRORS = (GitHubAPIError, ClientError, asyncio.TimeoutError)


@dataclass(frozen=True)
class Ref:
    ref: str
    sha: str
    type: str = "commit"

    @classmethod
    def from_json(cls, data: Any, status: int = 200) -> "Ref":
        try:
            ref = data["ref"]
            sha = data["object"]["sha"]
            type_ = data["object"].get("type", "commit")
        except (KeyError, TypeError, AttributeError):
            raise GitHubAPIError(status, f"unexpected ref payload: {data!r}") from None
        if not all(isinstance(value, str) for value in (ref, sha, type_)):
            raise GitHubAPIError(status, f"unexpected ref payload: {data!r}")
        return cls(ref=ref, sha=sha, type=type_)

    @property
    def name(self) -> str:
        return self.ref.removeprefix("refs/tags/").removeprefix("refs/heads/")


@contextlib.asynccontextmanager
async def github_session(token: str) -> AsyncIterator[ClientSession]:
    headers = {
        "Authorization": f"token {token}",
        "Accept": "application/vnd.github+json",
    }
    async with ClientSession(headers=headers) as session:
        yield session


class GitHubAPI:
    def __init__(self, session: ClientSession, repo: str) -> None:
        self._session = session
        self.repo = repo

    def _url(self, path: str) -> str:
        return f"{API_ROOT}/repos/{self.repo}/{path}"

    @staticmethod
    def _decode(status: int, text: str) -> Any:
        try:
            return json.loads(text) if text else None
        except json.JSONDecodeError:
            raise GitHubAPIError(status, f"invalid JSON response: {text[:200]}") from None

    @staticmethod
    def _message(payload: Any) -> str:
        if isinstance(payload, dict) and "message" in payload:
            return str(payload["message"])
        return "no message"

    async def _fetch_json(self, url: str) -> tuple[int, Any]:
        async with self._session.get(url) as resp:
            status = resp.status
            return status, self._decode(status, await resp.text())

    async def _post_json(self, url: str, payload: JSON) -> tuple[int, Any]:
        async with self._session.post(url, json=payload) as resp:
            status = resp.status
            return status, self._decode(status, await resp.text())

    async def branch_head(self, branch: str) -> str:
        status, data = await self._fetch_json(self._url(f"git/ref/heads/{branch}"))
        if status != 200:
            raise GitHubAPIError(status, self._message(data))
        return Ref.from_json(data, status).sha

    async def tag_commit(self, version: ReleaseVersion) -> str | None:
        status, data = await self._fetch_json(self._url(f"git/ref/tags/{version}"))
        if status == 404:
            return None
        if status != 200:
            raise GitHubAPIError(status, self._message(data))
        ref = Ref.from_json(data, status)
        if ref.type == "tag":
            return await self._tag_object_commit(ref.sha)
        return ref.sha

    async def _tag_object_commit(self, sha: str) -> str:
        # Annotated tags point to a tag object, which points to the commit
        status, data = await self._fetch_json(self._url(f"git/tags/{sha}"))
        if status != 200:
            raise GitHubAPIError(status, self._message(data))
        try:
            commit = data["object"]["sha"]
        except (KeyError, TypeError):
            raise GitHubAPIError(status, f"unexpected tag payload: {data!r}") from None
        return commit

    async def version_tags(self) -> list[str]:
        status, data = await self._fetch_json(self._url("git/matching-refs/tags/v"))
        if status != 200:
            raise GitHubAPIError(status, self._message(data))
        if not isinstance(data, list):
            raise GitHubAPIError(status, f"unexpected refs payload: {data!r}")
        return [Ref.from_json(ref, status).name for ref in data]

    async def create_tag(self, version: ReleaseVersion, commit: str) -> Ref:
        status, data = await self._post_json(
            self._url("git/refs"), {"ref": version.refname, "sha": commit}
        )
        if status != 201:
            raise GitHubAPIError(status, self._message(data))
        return Ref.from_json(data, status)
