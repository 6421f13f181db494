"""GitHub REST release source with ETag-based conditional requests."""

from __future__ import annotations

import dataclasses
import datetime as dt
import http
import os
import typing as typ

import httpx
import msgspec

from .errors import ReleaseSourceError
from .models import FetchResult, UpstreamRelease


class ReleaseSource(typ.Protocol):
    """Interface for fetching the latest release of a repository."""

    async def get_latest(
        self, owner: str, name: str, validator: str | None
    ) -> FetchResult:
        """Conditionally fetch the latest release.

        Must return a result with ``release=None`` (not raise) when the
        validator shows the content is unchanged.
        """
        ...


@dataclasses.dataclass(frozen=True, slots=True)
class GitHubReleaseConfig:
    """Configuration for the GitHub REST API client."""

    token: str | None = None
    api_base: str = "https://api.github.com"
    timeout_s: float = 20.0
    user_agent: str = "releasewatch/0.1"

    @classmethod
    def from_env(cls) -> GitHubReleaseConfig:
        """Build configuration using the optional `RELEASEWATCH_GITHUB_TOKEN`."""
        token = os.environ.get("RELEASEWATCH_GITHUB_TOKEN", "").strip()
        return cls(token=token or None)


class _GitHubReleasePayload(msgspec.Struct):
    """Subset of the `GET /repos/{owner}/{repo}/releases/latest` response."""

    tag_name: str
    html_url: str
    name: str | None = None
    body: str | None = None
    published_at: dt.datetime | None = None


class GitHubReleaseClient:
    """Fetch latest releases from the GitHub REST API."""

    def __init__(
        self,
        config: GitHubReleaseConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Create a client; an injected ``http_client`` is not closed by us."""
        self._config = config or GitHubReleaseConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=self._config.timeout_s,
            headers={"User-Agent": self._config.user_agent},
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    def _headers(self, validator: str | None) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self._config.token:
            headers["Authorization"] = f"Bearer {self._config.token}"
        if validator:
            headers["If-None-Match"] = validator
        return headers

    async def get_latest(
        self, owner: str, name: str, validator: str | None
    ) -> FetchResult:
        """Conditionally fetch the latest published release.

        A ``304 Not Modified`` keeps the supplied validator. A ``404`` means
        the repository has no published release yet and is reported like an
        unchanged response.
        """
        url = f"{self._config.api_base}/repos/{owner}/{name}/releases/latest"
        response = await self._client.get(url, headers=self._headers(validator))

        if response.status_code == http.HTTPStatus.NOT_MODIFIED:
            return FetchResult(release=None, validator=validator)
        if response.status_code == http.HTTPStatus.NOT_FOUND:
            return FetchResult(release=None, validator=None)
        if response.status_code != http.HTTPStatus.OK:
            raise ReleaseSourceError.http_error(response.status_code)

        try:
            payload = msgspec.json.decode(
                response.content, type=_GitHubReleasePayload
            )
        except msgspec.DecodeError as exc:
            raise ReleaseSourceError.malformed(exc) from exc

        release = UpstreamRelease(
            tag=payload.tag_name,
            title=payload.name or "",
            url=payload.html_url,
            body=payload.body or "",
            published_at=(
                payload.published_at.astimezone(dt.UTC)
                if payload.published_at is not None
                else None
            ),
        )
        return FetchResult(
            release=release, validator=response.headers.get("ETag") or None
        )
