"""
Logging Utilities for the Feed Service.

Console logging is configured by the API entrypoint with
logging.basicConfig; setup_service_logger() adds per-service log files
under logs/service.

Example:
    >>> from feed_service.logging_utils import setup_service_logger
    >>> logger = setup_service_logger('feed')
    >>> logger.info("Feed service started")
"""

from pathlib import Path
from typing import Any, Dict
import logging

# ============================================================================
# Constants
# ============================================================================

SERVICE_LOG_DIR = "logs/service"

LOG_FORMAT = '%(asctime)s | %(levelname)s | %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


# ============================================================================
# Service Logger Setup
# ============================================================================

def setup_service_logger(
    name: str = 'feed',
    log_dir: str = SERVICE_LOG_DIR,
    console: bool = False
) -> logging.Logger:
    """
    Setup file logging for the feed service.

    Args:
        name: Logger name (also the log file name)
        log_dir: Directory for log files
        console: Whether to also log to console

    Returns:
        Configured logger ('service.<name>')
    """
    Path(log_dir).mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(f'service.{name}')
    logger.setLevel(logging.DEBUG)

    # Clear existing handlers
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers = []

    # File handler
    fh = logging.FileHandler(Path(log_dir) / f'{name}.log', encoding='utf-8')
    fh.setLevel(logging.INFO)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(fh)

    # Error file handler
    eh = logging.FileHandler(Path(log_dir) / 'error.log', encoding='utf-8')
    eh.setLevel(logging.ERROR)
    eh.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logger.addHandler(eh)

    if console:
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)
        ch.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        logger.addHandler(ch)

    return logger


# ============================================================================
# Format Helpers
# ============================================================================

def format_request(params: Dict[str, Any]) -> str:
    """Format request parameters for logging."""
    items = []
    for k, v in params.items():
        if v is None:
            continue
        if isinstance(v, float):
            items.append(f"{k}={v:.1f}")
        else:
            items.append(f"{k}={v}")
    return ", ".join(items)
