"""
Utility functions for chunkbatch.

Includes logging setup, retries with backoff, and console output helpers.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console()

# Extra LogRecord attributes copied into structured output
STRUCTURED_EXTRAS = ("job", "step", "execution_id", "chunk", "position")


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "pretty",
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """
    Set up logging for batch execution.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (rich console)
        log_file: Optional path to a log file (always structured)

    Returns:
        Configured package logger
    """
    logger = logging.getLogger("chunkbatch")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    if log_format == "pretty":
        console_handler: logging.Handler = RichHandler(rich_tracebacks=True, show_time=False)
    else:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(StructuredFormatter())
    logger.addHandler(console_handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        for key in STRUCTURED_EXTRAS:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def backoff_delay(attempt: int, backoff_seconds: float, backoff_multiplier: float) -> float:
    """Delay before retry number `attempt` (1-indexed)."""
    return backoff_seconds * (backoff_multiplier ** (attempt - 1))


def retry_with_backoff(
    func: Callable[[], Any],
    retry_on: tuple[type[BaseException], ...],
    max_retries: int = 3,
    backoff_seconds: float = 1.0,
    backoff_multiplier: float = 2.0,
    logger: Optional[logging.Logger] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Call func, retrying on the given exception types with exponential backoff.

    Args:
        func: Function to call
        retry_on: Exception types that trigger a retry; anything else propagates
        max_retries: Retries after the first attempt (0 = no retry)
        backoff_seconds: Initial backoff time in seconds
        backoff_multiplier: Multiplier for each retry
        logger: Logger for retry messages
        on_retry: Called with (retry_number, error) before each retry sleep
        sleep: Sleep function (patched in tests)

    Returns:
        Result of successful function call

    Raises:
        Exception: The last error once retries are exhausted
    """
    attempt = 0
    while True:
        try:
            return func()
        except retry_on as e:
            attempt += 1
            if attempt > max_retries:
                if logger:
                    logger.error(f"All {max_retries + 1} attempts failed: {e}")
                raise

            wait_time = backoff_delay(attempt, backoff_seconds, backoff_multiplier)
            if logger:
                logger.warning(
                    f"Attempt {attempt} failed: {e}. Retrying in {wait_time:.2f}s..."
                )
            if on_retry:
                on_retry(attempt, e)
            sleep(wait_time)


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "1m 23s", "45s")
    """
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


def print_info(message: str) -> None:
    """Print info message to console."""
    console.print(f"[bold cyan]ℹ[/bold cyan] {message}")
