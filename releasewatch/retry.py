"""Bounded retries with exponential backoff for outbound calls.

The release source and the notification channel are both wrapped in a
:class:`RetryPolicy` by the poller and the notifier respectively. The policy
sleeps *before* each retry, never before the first call, and doubles the delay
after every sleep:

>>> policy = RetryPolicy(attempts=3, base_delay=2.0)
>>> policy.delays()
(2.0, 4.0)

Backoff uses ``asyncio.sleep`` so a loop waiting on a flaky upstream does not
stall the other loop sharing the event loop.
"""

from __future__ import annotations

import asyncio
import dataclasses as dc
import typing as typ

from releasewatch.logging import SupportsLog, log_warning

type Sleeper = typ.Callable[[float], typ.Awaitable[None]]


def _always_retry(exc: BaseException) -> bool:
    del exc
    return True


@dc.dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry an async operation a bounded number of times.

    Attributes
    ----------
    attempts
        Maximum number of calls, including the first one.
    base_delay
        Seconds slept before the first retry; doubled before each later one.
    attempt_timeout
        Optional upper bound, in seconds, on a single attempt. A timed out
        attempt counts as a failure and raises ``TimeoutError``.
    retry_if
        Predicate deciding whether an error is worth another attempt. Errors
        it rejects are re-raised immediately.

    """

    attempts: int = 3
    base_delay: float = 2.0
    attempt_timeout: float | None = None
    retry_if: typ.Callable[[BaseException], bool] = _always_retry

    def __post_init__(self) -> None:
        """Reject policies that could never call the operation."""
        if self.attempts < 1:
            msg = f"attempts must be >= 1, got {self.attempts}"
            raise ValueError(msg)
        if self.base_delay < 0:
            msg = f"base_delay must be >= 0, got {self.base_delay}"
            raise ValueError(msg)

    def delays(self) -> tuple[float, ...]:
        """Return the sleep durations used between consecutive attempts."""
        return tuple(self.base_delay * 2**i for i in range(self.attempts - 1))

    async def run[T](
        self,
        fn: typ.Callable[[], typ.Awaitable[T]],
        *,
        sleep: Sleeper = asyncio.sleep,
        logger: SupportsLog | None = None,
        operation: str = "operation",
    ) -> T:
        """Call ``fn`` until it succeeds or the attempts are exhausted.

        Returns the first successful result. When every attempt fails, the
        error raised by the last attempt propagates unchanged.
        """
        delay = self.base_delay
        for attempt in range(1, self.attempts + 1):
            try:
                return await self._call_once(fn)
            except Exception as exc:
                if attempt >= self.attempts or not self.retry_if(exc):
                    raise
                if logger is not None:
                    log_warning(
                        logger,
                        "retrying %s after attempt %d/%d failed: %s (sleep=%.1fs)",
                        operation,
                        attempt,
                        self.attempts,
                        exc,
                        delay,
                    )
                await sleep(delay)
                delay *= 2
        msg = "unreachable: retry loop exited without result"  # pragma: no cover
        raise AssertionError(msg)  # pragma: no cover

    async def _call_once[T](self, fn: typ.Callable[[], typ.Awaitable[T]]) -> T:
        if self.attempt_timeout is None:
            return await fn()
        async with asyncio.timeout(self.attempt_timeout):
            return await fn()


__all__ = ["RetryPolicy", "Sleeper"]
