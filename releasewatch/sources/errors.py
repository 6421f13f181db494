"""Release source errors."""

from __future__ import annotations

import httpx

_HTTP_SERVER_ERROR_THRESHOLD = 500
_HTTP_TOO_MANY_REQUESTS = 429


class ReleaseSourceError(RuntimeError):
    """Raised when the upstream release source returns an error response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        """Initialise with a message and optional HTTP status code."""
        self.status_code = status_code
        super().__init__(message)

    @classmethod
    def http_error(cls, status_code: int) -> ReleaseSourceError:
        """Return an error for unexpected HTTP responses."""
        return cls(f"release source HTTP {status_code}", status_code=status_code)

    @classmethod
    def malformed(cls, detail: object) -> ReleaseSourceError:
        """Return an error for payloads missing expected fields."""
        return cls(f"release source returned a malformed payload: {detail}")


def is_transient_fetch_error(exc: BaseException) -> bool:
    """Return True for failures worth retrying against the release source.

    Transport failures, timeouts, rate limiting and 5xx responses are
    transient. Other 4xx responses and malformed payloads will not improve on
    retry.
    """
    if isinstance(exc, (httpx.TransportError, TimeoutError)):
        return True
    if isinstance(exc, ReleaseSourceError):
        code = exc.status_code
        return code is not None and (
            code >= _HTTP_SERVER_ERROR_THRESHOLD or code == _HTTP_TOO_MANY_REQUESTS
        )
    return False
