"""Logging utility functions."""

import logging
from typing import Any

# Reserved LogRecord attribute names that cannot be used in extra dict
_RESERVED_LOG_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "lineno",
        "funcName",
        "created",
        "asctime",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "message",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)


def log_with_context(
    logger: logging.Logger,
    level: int,
    msg: str,
    **kwargs: Any,
) -> None:
    """
    Log with structured context fields.

    Args:
        logger: Logger instance
        level: Log level (logging.INFO, etc.)
        msg: Log message
        **kwargs: Additional context fields (file_id, duration_ms, etc.)
                  Note: exc_info=True is supported and handled specially.

    Example:
        log_with_context(
            logger, logging.INFO, "Metadata forwarded",
            file_id=metadata.id,
            duration_ms=elapsed,
        )
    """
    exc_info = kwargs.pop("exc_info", None)
    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}
    logger.log(level, msg, exc_info=exc_info, extra=extra)


def log_exception(
    logger: logging.Logger,
    exc: BaseException,
    msg: str,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    **kwargs: Any,
) -> None:
    """
    Log exception with context and optional traceback.

    Automatically extracts error_category from PipelineError subclasses.

    Example:
        try:
            await repository.upsert(metadata)
        except RepositoryError as e:
            log_exception(logger, e, "Upsert failed", file_id=metadata.id)
    """
    if kwargs.get("error_category") is None and hasattr(exc, "category"):
        cat = exc.category
        kwargs["error_category"] = cat.value if hasattr(cat, "value") else str(cat)

    error_msg = str(exc)
    if len(error_msg) > 500:
        error_msg = error_msg[:500] + "..."
    kwargs["error_message"] = error_msg
    kwargs.setdefault("error_type", type(exc).__name__)

    extra = {k: v for k, v in kwargs.items() if k not in _RESERVED_LOG_KEYS}
    if include_traceback:
        logger.log(level, msg, exc_info=exc, extra=extra)
    else:
        logger.log(level, msg, extra=extra)


def format_cycle_output(
    cycle_id: str,
    status: str,
    read: int,
    forwarded: int,
    filtered: int = 0,
    malformed: int = 0,
    duration_ms: float | None = None,
) -> str:
    """
    Format a one-line summary for an ingestion cycle.

    Example:
        >>> format_cycle_output("c-1a2b", "committed", 4, 3, filtered=1)
        'Cycle c-1a2b [committed]: read=4, forwarded=3, filtered=1'
        >>> format_cycle_output("c-1a2b", "unchanged", 0, 0, duration_ms=12.5)
        'Cycle c-1a2b [unchanged]: read=0, forwarded=0 | 12ms'
    """
    parts = [f"read={read}", f"forwarded={forwarded}"]
    if filtered > 0:
        parts.append(f"filtered={filtered}")
    if malformed > 0:
        parts.append(f"malformed={malformed}")

    line = f"Cycle {cycle_id} [{status}]: {', '.join(parts)}"
    if duration_ms is not None:
        line += f" | {duration_ms:.0f}ms"
    return line


_BANNER_FIELDS: list[tuple[str, str]] = [
    ("job", "Job:          {}"),
    ("partition_id", "Partition:    {}"),
    ("cursor_store", "Cursor store: {}"),
    ("repository", "Repository:   {}"),
    ("publisher", "Publisher:    {}"),
    ("interval_seconds", "Interval:     {}s"),
    ("metrics_port", "Metrics:      http://localhost:{}"),
]


def log_startup_banner(
    logger: logging.Logger,
    title: str,
    **kwargs: Any,
) -> None:
    """
    Log startup banner with job configuration.

    Example:
        log_startup_banner(
            logger,
            title="Change Feed Ingestion",
            job="ingest",
            partition_id="default",
            publisher="servicebus",
        )
    """
    separator = "=" * 50
    lines = ["", separator, title, separator]

    for field_name, fmt in _BANNER_FIELDS:
        value = kwargs.get(field_name)
        if value:
            lines.append(fmt.format(value))

    lines.append(separator)
    lines.append("")

    logger.info("\n".join(lines))
