"""Logging helpers for the gateway."""

import logging
import sys


def setup_logging(
    level: int = logging.WARNING, logger_name: str = "chitty-connect"
) -> logging.Logger:
    """Configure the gateway logger tree.

    Args:
        level: Logging level for the ``chitty-connect`` loggers
        logger_name: Root of the logger tree to configure

    Returns:
        The configured logger
    """
    root_logger = logging.getLogger(logger_name)
    root_logger.setLevel(level)

    if not any(
        isinstance(handler, logging.StreamHandler) for handler in root_logger.handlers
    ):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        root_logger.addHandler(handler)

    return root_logger


def mask_sensitive(value: str | None, keep_chars: int = 4) -> str:
    """Mask a token or API key for log output.

    Args:
        value: The sensitive value
        keep_chars: Characters to keep visible at each end

    Returns:
        Masked value, e.g. ``chit********a1b2``
    """
    if not value:
        return ""
    if len(value) <= keep_chars * 2:
        return "*" * len(value)
    return value[:keep_chars] + "*" * (len(value) - keep_chars * 2) + value[-keep_chars:]
