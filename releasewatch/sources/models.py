"""Typed results returned by release sources."""

from __future__ import annotations

import dataclasses
import typing as typ

if typ.TYPE_CHECKING:
    import datetime as dt


@dataclasses.dataclass(frozen=True, slots=True)
class UpstreamRelease:
    """Latest release as reported by the upstream source."""

    tag: str
    title: str
    url: str
    body: str
    published_at: dt.datetime | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class FetchResult:
    """Outcome of a conditional fetch.

    ``release`` is ``None`` when the source reported the content unchanged
    for the supplied validator (or when the repository has no release yet).
    ``validator`` carries the token to send on the next fetch; ``None`` means
    the source did not return one.
    """

    release: UpstreamRelease | None
    validator: str | None = None

    @property
    def not_modified(self) -> bool:
        """Return True when no release content was transferred."""
        return self.release is None
