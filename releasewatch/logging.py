"""femtologging helpers shared by the poll loop, the notify loop and the runtime.

Components receive their logger at construction time and log through the
helpers below, which interpolate ``%``-style templates up front so every line
reaching femtologging is already a finished string.

>>> from releasewatch.logging import get_logger, log_info
>>> logger = get_logger("releasewatch.worker")
>>> log_info(logger, "Polling %d repositories", 3)

"""

from __future__ import annotations

import enum
import typing as typ

from femtologging import basicConfig, get_logger

DEFAULT_LOG_LEVEL = "INFO"


class LogLevel(enum.StrEnum):
    """Level names accepted by ``RELEASEWATCH_LOG_LEVEL``."""

    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_ALIASES = {"WARN": LogLevel.WARNING, "FATAL": LogLevel.CRITICAL}


def normalize_log_level(level: str | None) -> tuple[str, bool]:
    """Return the canonical level name and whether ``level`` was unusable.

    Unknown or empty values fall back to ``INFO``.

    >>> normalize_log_level(" warn ")
    ('WARNING', False)
    >>> normalize_log_level("loud")
    ('INFO', True)
    """
    candidate = (level or "").strip().upper()
    if candidate in LogLevel.__members__:
        return (candidate, False)
    if candidate in _ALIASES:
        return (_ALIASES[candidate].value, False)
    return (DEFAULT_LOG_LEVEL, True)


def configure_logging(level: str, *, force: bool = False) -> tuple[str, bool]:
    """Install the femtologging root handler at ``level``.

    Parameters
    ----------
    level : str
        Raw level name, typically ``RELEASEWATCH_LOG_LEVEL``.
    force : bool, optional
        Replace handlers configured by an earlier call.

    Returns
    -------
    tuple[str, bool]
        The level actually used and whether the input had to be replaced.

    """
    normalized, invalid = normalize_log_level(level)
    basicConfig(level=normalized, force=force)
    return (normalized, invalid)


def format_log_message(template: str, *args: object) -> str:
    """Interpolate ``args`` into a ``%``-style template."""
    return template % args if args else template


class SupportsLog(typ.Protocol):
    """The part of a femtologging logger the helpers rely on."""

    def log(
        self,
        level: str,
        message: str,
        /,
        *,
        exc_info: object | None = None,
        stack_info: bool = False,
    ) -> str | None: ...


def _emit(
    logger: SupportsLog,
    level: LogLevel,
    template: str,
    args: tuple[object, ...],
    exc_info: object | None = None,
) -> None:
    logger.log(
        level.value,
        format_log_message(template, *args),
        exc_info=exc_info,
        stack_info=False,
    )


def log_debug(logger: SupportsLog, template: str, *args: object) -> None:
    """Log at DEBUG; used for per-item events that are normally quiet."""
    _emit(logger, LogLevel.DEBUG, template, args)


def log_info(
    logger: SupportsLog,
    template: str,
    *args: object,
    exc_info: object | None = None,
) -> None:
    """Log at INFO.

    Parameters
    ----------
    logger : SupportsLog
        Destination logger.
    template : str
        ``%``-style message template.
    *args : object
        Values interpolated into ``template``.
    exc_info : object | None, optional
        Exception attached to the record.

    """
    _emit(logger, LogLevel.INFO, template, args, exc_info)


def log_warning(
    logger: SupportsLog,
    template: str,
    *args: object,
    exc_info: object | None = None,
) -> None:
    """Log at WARNING; see :func:`log_info` for the parameters."""
    _emit(logger, LogLevel.WARNING, template, args, exc_info)


def log_error(
    logger: SupportsLog,
    template: str,
    *args: object,
    exc_info: object | None = None,
) -> None:
    """Log at ERROR; see :func:`log_info` for the parameters."""
    _emit(logger, LogLevel.ERROR, template, args, exc_info)


def log_exception(logger: SupportsLog, message: str, exc: BaseException) -> None:
    """Log ``message`` at ERROR with ``exc`` as the attached traceback.

    ``message`` is emitted verbatim, so it may contain literal ``%`` signs.
    """
    logger.log(LogLevel.ERROR.value, message, exc_info=exc, stack_info=False)


__all__ = [
    "DEFAULT_LOG_LEVEL",
    "LogLevel",
    "SupportsLog",
    "configure_logging",
    "format_log_message",
    "get_logger",
    "log_debug",
    "log_error",
    "log_exception",
    "log_info",
    "log_warning",
    "normalize_log_level",
]
