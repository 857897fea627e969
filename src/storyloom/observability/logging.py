"""Structured logging for Storyloom.

Console output goes through rich at the level chosen by ``-v``. With
``--log`` every event is also appended as JSON to
``{data_dir}/logs/debug.jsonl``, DEBUG included.

Pipeline modules log snake_case events with key/value context, e.g.
``log.info("page_image_committed", page_index=2, model=...)``. Workers
wrap each job in ``job_context`` so every event they emit carries the
story id without passing it to each call.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path  # noqa: TC003 - Used at runtime for path operations
from typing import TYPE_CHECKING, Any

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from structlog.typing import Processor

_configured = False
_file_handler: logging.FileHandler | None = None
_logs_dir: Path | None = None

_VERBOSITY_LEVELS = {0: logging.WARNING, 1: logging.INFO}

# SDK and transport loggers; their DEBUG output drowns pipeline events.
_QUIET_LOGGERS = (
    "httpx",
    "httpcore",
    "openai",
    "langchain",
    "langchain_core",
    "langsmith",
    "asyncio",
)

# Keys the JSONL entry sets itself.
_RESERVED_KEYS = ("level", "timestamp")


def _record_to_entry(record: logging.LogRecord) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "timestamp": datetime.now(UTC).isoformat(),
        "level": record.levelname,
        "logger": record.name,
    }
    if not isinstance(record.msg, dict):
        entry["event"] = record.getMessage()
        return entry

    # structlog's wrap_for_formatter hands over the event dict as record.msg
    fields = {k: v for k, v in record.msg.items() if k not in _RESERVED_KEYS}
    entry["event"] = fields.pop("event", "")
    entry.update(fields)
    return entry


class JSONLFileHandler(logging.FileHandler):
    """Append one JSON object per log record."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = json.dumps(_record_to_entry(record), default=str)
            if self.stream:
                self.stream.write(line + "\n")
                self.stream.flush()
        except Exception:
            self.handleError(record)


def _console_handler(verbosity: int) -> RichHandler:
    return RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        tracebacks_show_locals=verbosity >= 2,
        show_time=verbosity >= 1,
        show_path=verbosity >= 2,
        markup=False,
        level=_VERBOSITY_LEVELS.get(verbosity, logging.DEBUG),
    )


def _open_file_handler(data_dir: Path) -> JSONLFileHandler:
    global _file_handler, _logs_dir
    _logs_dir = data_dir / "logs"
    _logs_dir.mkdir(parents=True, exist_ok=True)
    _file_handler = JSONLFileHandler(str(_logs_dir / "debug.jsonl"), mode="a")
    _file_handler.setLevel(logging.DEBUG)
    return _file_handler


def configure_logging(
    verbosity: int = 0,
    log_to_file: bool = False,
    data_dir: Path | None = None,
) -> None:
    """Configure console and optional file logging.

    Safe to call repeatedly; a previously opened log file is closed first.

    Args:
        verbosity: 0=WARNING (default), 1=INFO, 2+=DEBUG.
        log_to_file: Also write JSONL events under ``{data_dir}/logs/``.
        data_dir: Pipeline data directory. Required if log_to_file=True.

    Raises:
        ValueError: If log_to_file=True but data_dir is not provided.
    """
    global _configured

    if log_to_file and data_dir is None:
        raise ValueError("data_dir is required when log_to_file=True")

    close_file_logging()

    handlers: list[logging.Handler] = [_console_handler(verbosity)]
    if log_to_file and data_dir is not None:
        handlers.append(_open_file_handler(data_dir))

    # Root stays open when a file sink is active; handlers do their own filtering.
    root_level = logging.DEBUG if (verbosity > 0 or log_to_file) else logging.WARNING
    logging.basicConfig(level=root_level, format="%(message)s", handlers=handlers, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]
    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Return a structured logger, configuring defaults on first use."""
    if not _configured:
        configure_logging()

    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(name)
    return logger


@contextmanager
def job_context(story_id: str, job: str, **fields: Any) -> Iterator[None]:
    """Bind ``story_id``, ``job`` and *fields* to every event logged inside."""
    with structlog.contextvars.bound_contextvars(story_id=story_id, job=job, **fields):
        yield


def get_logs_dir() -> Path | None:
    """Return the logs directory if file logging is enabled, None otherwise."""
    return _logs_dir


def close_file_logging() -> None:
    """Close the JSONL file handler, if one is open."""
    global _file_handler
    if _file_handler is not None:
        _file_handler.close()
        _file_handler = None
