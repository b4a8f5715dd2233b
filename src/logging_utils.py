"""Request ID based logging utilities.

Every inbound HTTP request (and every script run) is bound to a request ID so
that RPC retries, submitted signatures and payment polls can be traced back to
the call that caused them.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variable to store the request ID for the current request/task
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-Id"


class RequestIdFilter(logging.Filter):
    """Add request ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Add request_id to the log record.

        Args:
            record: The log record to filter.

        Returns:
            Always True to allow the record through.
        """
        record.request_id = request_id_var.get() or "-"
        return True


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"request_id": "%(request_id)s", "name": "%(name)s", '
            '"message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(request_id)s] %(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())
    logger.addHandler(handler)

    # httpx logs every RPC POST at INFO; keep those for DEBUG runs only
    if logger.level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)



def generate_request_id() -> str:
    """Generate a new request ID.

    Returns:
        A new UUID-based request ID.
    """
    return f"req-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Args:
        name: The logger name (typically __name__).

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)


class RequestIdContext:
    """Context manager for binding a request ID to a block of code."""

    def __init__(self, request_id: Optional[str] = None):
        """Initialize the context manager.

        Args:
            request_id: The request ID to bind. If None, generates a new one.
        """
        self.request_id = request_id or generate_request_id()
        self._token = None

    def __enter__(self) -> str:
        self._token = request_id_var.set(self.request_id)
        return self.request_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        request_id_var.reset(self._token)
