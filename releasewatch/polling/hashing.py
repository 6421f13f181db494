"""Content hashing used to detect changed release content."""

from __future__ import annotations

import hashlib


def content_hash(*, body: str, tag: str, title: str, url: str) -> str:
    """Return the lowercase hex SHA-256 digest of a release's mutable fields.

    The fields are concatenated as ``body + tag + title + url`` before hashing,
    so a retagged release whose notes were edited produces a new digest.

    >>> content_hash(body="", tag="", title="", url="")[:12]
    'e3b0c44298fc'
    """
    digest = hashlib.sha256()
    digest.update(f"{body}{tag}{title}{url}".encode())
    return digest.hexdigest()
