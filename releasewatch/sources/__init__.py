"""Upstream release sources."""

from __future__ import annotations

from .errors import ReleaseSourceError, is_transient_fetch_error
from .github import GitHubReleaseClient, GitHubReleaseConfig, ReleaseSource
from .models import FetchResult, UpstreamRelease

__all__ = [
    "FetchResult",
    "GitHubReleaseClient",
    "GitHubReleaseConfig",
    "ReleaseSource",
    "ReleaseSourceError",
    "UpstreamRelease",
    "is_transient_fetch_error",
]
