"""
Logging configuration for the package.

This module sets up consistent logging across all pipeline stages,
making it easier to follow what each stage did to the dataset.
"""

import logging
import sys

from rich.logging import RichHandler


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Handles two scenarios:
    1. CLI usage: the CLI installs a RichHandler on the root logger.
       We detect this and let logs propagate to root (single output).
    2. Library usage: no RichHandler on root. We add our own StreamHandler
       and disable propagation to prevent duplicate output.

    Args:
        name: Name of the logger
        level: Logging level (default: INFO)

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    # Only configure if it hasn't been configured yet
    if not logger.handlers:
        logger.setLevel(level)

        root_logger = logging.getLogger()
        has_rich_handler = any(
            isinstance(handler, RichHandler) for handler in root_logger.handlers
        )

        if not has_rich_handler:
            handler = logging.StreamHandler(sys.stdout)
            formatter = logging.Formatter(
                "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"
            )
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            # Root handlers would print the same record a second time
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Name of the logger

    Returns:
        logging.Logger: Logger instance
    """
    return setup_logger(name)


def setup_rich_logging(level: str = "INFO", console=None) -> None:
    """
    Route all package logs through a RichHandler on the root logger.

    Loggers created before this call already own a stdout handler; those
    handlers are removed so records propagate to the rich output instead.

    Args:
        level: Logging level name
        console: Optional rich Console to log to
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    if not any(isinstance(h, RichHandler) for h in root_logger.handlers):
        root_logger.addHandler(
            RichHandler(console=console, show_path=False, rich_tracebacks=True)
        )
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers:
        handler.setLevel(numeric_level)

    for name in list(logging.Logger.manager.loggerDict):
        if name == "cellcluster" or name.startswith("cellcluster."):
            package_logger = logging.getLogger(name)
            for handler in list(package_logger.handlers):
                package_logger.removeHandler(handler)
            package_logger.setLevel(numeric_level)
            package_logger.propagate = True
