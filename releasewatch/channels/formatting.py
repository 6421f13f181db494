"""Message rendering for release notifications."""

from __future__ import annotations

import html
import typing as typ

from releasewatch.common.slug import repo_slug

if typ.TYPE_CHECKING:
    from releasewatch.storage.models import Release, TrackedRepo


def format_release_message(repo: TrackedRepo, release: Release) -> str:
    """Render the HTML notification text for a new release.

    The release title falls back to the tag when upstream left it empty.
    Repository, title, tag and URL are HTML-escaped for Telegram's HTML
    parse mode.
    """
    title = release.title or release.tag
    return (
        f"New release for {html.escape(repo_slug(repo.owner, repo.name))}: "
        f"<b>{html.escape(title)}</b> ({html.escape(release.tag)})\n"
        f"{html.escape(release.url)}"
    )
