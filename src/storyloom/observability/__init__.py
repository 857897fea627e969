"""Structured logging for the generation pipeline."""

from storyloom.observability.logging import (
    close_file_logging,
    configure_logging,
    get_logger,
    get_logs_dir,
    job_context,
)

__all__ = [
    "close_file_logging",
    "configure_logging",
    "get_logger",
    "get_logs_dir",
    "job_context",
]
