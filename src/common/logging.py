"""Logging setup shared by the relay server and the CLI client."""

import logging

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CLI_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(level: str = "INFO", fmt: str = DEFAULT_FORMAT, datefmt: str | None = None) -> None:
    """Configure root logging.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        fmt: Log record format string
        datefmt: Optional date format
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=fmt,
        datefmt=datefmt,
    )
