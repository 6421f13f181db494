"""Error taxonomy for the release detection and delivery pipeline."""

from __future__ import annotations


class ReleaseWatchError(Exception):
    """Base class for releasewatch errors."""


class ConfigError(ReleaseWatchError):
    """Raised when worker or adapter configuration is invalid."""

    @classmethod
    def missing(cls, env_var: str) -> ConfigError:
        """Return an error for a required environment variable that is unset."""
        return cls(f"{env_var} is required")

    @classmethod
    def not_positive(cls, env_var: str, raw: str) -> ConfigError:
        """Return an error for a value that must be a positive number."""
        return cls(f"{env_var} must be a positive number, got: {raw!r}")


class UpstreamFetchError(ReleaseWatchError):
    """Raised when the release source still fails after all retries."""

    def __init__(self, repo_slug: str, cause: BaseException) -> None:
        """Record the repository and the terminal cause."""
        self.repo_slug = repo_slug
        self.cause = cause
        super().__init__(f"fetching latest release for {repo_slug} failed: {cause}")


class ReferenceNotFoundError(ReleaseWatchError):
    """Raised when an entity referenced by a delivery no longer resolves."""

    def __init__(self, kind: str, entity_id: str) -> None:
        """Record which entity kind and id were missing."""
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} not found")


class SendError(ReleaseWatchError):
    """Raised when a notification channel rejects or fails a send."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        """Initialise with a message and optional HTTP status code."""
        self.status_code = status_code
        super().__init__(message)


class PersistenceError(ReleaseWatchError):
    """Raised when a store operation fails.

    Wraps the underlying SQLAlchemy error, which stays available as
    ``__cause__`` for categorisation.
    """

    @classmethod
    def during(cls, operation: str, exc: BaseException) -> PersistenceError:
        """Return an error describing the failed store operation."""
        return cls(f"{operation} failed: {exc}")


class GuardError(ReleaseWatchError):
    """Raised when the idempotency claim store is unavailable."""

    @classmethod
    def claim_failed(cls, key: str, exc: BaseException) -> GuardError:
        """Return an error for a claim attempt that could not complete."""
        return cls(f"claiming idempotency key {key!r} failed: {exc}")


__all__ = [
    "ConfigError",
    "GuardError",
    "PersistenceError",
    "ReferenceNotFoundError",
    "ReleaseWatchError",
    "SendError",
    "UpstreamFetchError",
]
