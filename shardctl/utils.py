"""
Utility functions for shardctl.

Includes logging setup, canonical hashing and console output helpers.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()


def setup_logging(
    log_file: Optional[Path] = None,
    log_level: str = "INFO",
    log_format: str = "structured",
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for control-plane operations.

    Args:
        log_file: Path to log file (None disables file logging)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        console_output: Also log to console

    Returns:
        Configured "shardctl" logger
    """
    logger = logging.getLogger("shardctl")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_time=False)
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, "node"):
            log_data["node"] = record.node
        if hasattr(record, "event"):
            log_data["event"] = record.event
        if hasattr(record, "metadata"):
            log_data["metadata"] = record.metadata

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def canonical_json(data: Any) -> str:
    """Serialize with sorted keys and compact separators so equal values give equal bytes."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def hash_canonical(data: Any) -> str:
    """
    Compute canonical hash of a JSON-serializable value.

    Returns:
        SHA256 hash prefixed with "sha256:"
    """
    digest = hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s", "0.4s")
    """
    if seconds < 1:
        return f"{seconds:.1f}s"
    if seconds < 60:
        return f"{int(seconds)}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = minutes // 60
    remaining_minutes = minutes % 60
    return f"{hours}h {remaining_minutes}m {remaining_seconds}s"


def print_success(message: str) -> None:
    """Print success message to console."""
    console.print(f"[bold green]✓[/bold green] {message}")


def print_error(message: str) -> None:
    """Print error message to console."""
    console.print(f"[bold red]✗[/bold red] {message}")


def print_warning(message: str) -> None:
    """Print warning message to console."""
    console.print(f"[bold yellow]⚠[/bold yellow] {message}")
