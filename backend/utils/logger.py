"""
Centralized logging configuration for the application

Usage:
    from utils.logger import get_logger

    logger = get_logger(__name__)
    logger.info("Fetching portfolio")
    logger.error("Failed to connect", exc_info=True)

Never log credentials, MFA codes or Robinhood tokens.
"""
import logging
import sys
from typing import Optional
from config import Config

# Define log format
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Global logging configuration
_configured = False


def configure_logging(level: Optional[str] = None):
    """
    Configure logging for the entire application
    Call this once at startup (e.g., in main.py)

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to Config.LOG_LEVEL.
    """
    global _configured

    if _configured:
        return

    if level is None:
        level = Config.LOG_LEVEL

    # Configure root logger
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stdout,
        force=True  # Override any existing configuration
    )

    # httpx logs full request URLs at INFO; we log our own API lines instead
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    _configured = True

    root_logger = logging.getLogger()
    root_logger.info(f"Logging configured at {level} level")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a module

    Args:
        name: Usually __name__ of the calling module

    Returns:
        Configured logger instance
    """
    # Ensure logging is configured
    if not _configured:
        configure_logging()

    return logging.getLogger(name)


def log_api_call(logger: logging.Logger, method: str, url: str, status: int, duration_ms: float):
    """Log an upstream API call with consistent format (pass the path, not a URL with secrets)"""
    logger.info(
        f"API {method} {url} - {status} ({duration_ms:.0f}ms)",
        extra={
            "method": method,
            "url": url,
            "status": status,
            "duration_ms": duration_ms,
            "type": "api_call"
        }
    )


def log_db_query(logger: logging.Logger, operation: str, table: str, duration_ms: float, count: Optional[int] = None):
    """Log a database query with consistent format"""
    count_str = f" ({count} rows)" if count is not None else ""
    logger.debug(
        f"DB {operation} {table}{count_str} ({duration_ms:.0f}ms)",
        extra={
            "operation": operation,
            "table": table,
            "duration_ms": duration_ms,
            "count": count,
            "type": "db_query"
        }
    )
