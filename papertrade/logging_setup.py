"""Structured logging setup using loguru."""
import sys
from pathlib import Path
from typing import Optional

from loguru import logger as _logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def setup_logging(
    log_file: Optional[str] = "logs/papertrade.log",
    level: str = "INFO",
    enable_console: bool = True,
    trades_file: Optional[str] = None,
) -> None:
    """Configure logging for the monitor and its collaborators.

    Args:
        log_file: Path to the main log file, or None to disable file logging
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to stderr as well
        trades_file: Optional JSON-lines file receiving only records bound
            with ``trade=True`` (executions and fired triggers)
    """
    _logger.remove()

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(log_path),
            format=LOG_FORMAT,
            level=level,
            rotation="50 MB",
            retention="7 days",
        )

    if trades_file:
        trades_path = Path(trades_file)
        trades_path.parent.mkdir(parents=True, exist_ok=True)
        _logger.add(
            str(trades_path),
            level="INFO",
            serialize=True,
            filter=lambda record: record["extra"].get("trade", False),
        )

    # stderr keeps stdout free for CLI output
    if enable_console:
        _logger.add(
            sys.stderr,
            format=LOG_FORMAT,
            level=level,
            colorize=True,
        )


logger = _logger
