"""Shared test utilities."""

from __future__ import annotations

import asyncio
import typing as typ


def run_async[T](coro_func: typ.Callable[[], typ.Coroutine[typ.Any, typ.Any, T]]) -> T:
    """Execute an async callable within the test context."""
    return asyncio.run(coro_func())


class FakeLogger:
    """Collects log calls for assertions."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, object | None, bool]] = []

    def log(
        self,
        level: str,
        message: str,
        /,
        *,
        exc_info: object | None = None,
        stack_info: bool = False,
    ) -> str:
        self.calls.append((level, message, exc_info, stack_info))
        return message

    def messages(self, level: str | None = None) -> list[str]:
        """Return logged messages, optionally filtered by level."""
        return [
            message
            for call_level, message, _, _ in self.calls
            if level is None or call_level == level
        ]


class RecordingSleep:
    """Async sleep stand-in that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
