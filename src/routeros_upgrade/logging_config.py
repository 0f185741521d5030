"""Dual logging system - JSON structured and traditional text logs."""

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER_NAME = "routeros_upgrade"

# Contextual attributes copied into structured records when present
CONTEXT_FIELDS = ("device", "identity", "phase", "details")


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Format log records as traditional text."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


def setup_logging(
    log_dir: Optional[Path] = None,
    log_level: str = "INFO",
    console_output: bool = True,
    file_output: bool = False
) -> logging.Logger:
    """
    Set up dual logging system.

    Console output goes to stderr so that CSV written to stdout stays clean.

    Args:
        log_dir: Directory for log files (required when file_output is set)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        console_output: Whether to output to console
        file_output: Whether to write JSON and text log files

    Returns:
        Configured logger instance
    """
    level = getattr(logging, log_level.upper())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    if file_output:
        if log_dir is None:
            raise ValueError("log_dir is required for file logging")

        structured_dir = Path(log_dir) / "structured"
        text_dir = Path(log_dir) / "text"
        structured_dir.mkdir(parents=True, exist_ok=True)
        text_dir.mkdir(parents=True, exist_ok=True)

        stamp = datetime.now().strftime('%Y%m%d')

        # JSON structured log handler
        json_handler = logging.FileHandler(structured_dir / f"routeros-upgrade-{stamp}.json")
        json_handler.setFormatter(JSONFormatter())
        logger.addHandler(json_handler)

        # Text log handler
        text_handler = logging.FileHandler(text_dir / f"routeros-upgrade-{stamp}.log")
        text_handler.setFormatter(TextFormatter())
        logger.addHandler(text_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(TextFormatter())
        logger.addHandler(console_handler)

    # paramiko logs every transport event at INFO
    logging.getLogger("paramiko").setLevel(logging.DEBUG if level <= logging.DEBUG else logging.WARNING)

    return logger


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    """
    Get logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def get_log_files(logger: logging.Logger) -> list:
    """Paths of the file handlers attached to a logger."""
    return [
        Path(handler.baseFilename)
        for handler in logger.handlers
        if isinstance(handler, logging.FileHandler)
    ]


def log_with_context(
    logger: logging.Logger,
    level: str,
    message: str,
    device: Optional[str] = None,
    identity: Optional[str] = None,
    phase: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    exc_info: bool = False
) -> None:
    """
    Log message with contextual information.

    Args:
        logger: Logger instance
        level: Log level (debug, info, warning, error, critical)
        message: Log message
        device: Device address
        identity: Device identity
        phase: Current upgrade phase
        details: Additional details dictionary
        exc_info: Include exception information
    """
    extra = {}
    if device:
        extra['device'] = device
    if identity:
        extra['identity'] = identity
    if phase:
        extra['phase'] = phase
    if details:
        extra['details'] = details

    log_func = getattr(logger, level.lower())
    log_func(message, extra=extra, exc_info=exc_info)
