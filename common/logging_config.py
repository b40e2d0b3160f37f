import logging
import os
import re
import sys
from contextvars import ContextVar
from typing import Optional


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Set by the HTTP middleware for the duration of one request
request_id_var: ContextVar[str] = ContextVar('request_id', default='-')

MASK = r'\1***MASKED***'


class SensitiveDataFilter(logging.Filter):
    """Filter to mask upload tokens and credentials in log records."""

    PATTERNS = [
        re.compile(r'(token["\']?\s*[:=]\s*["\']?)([^"\'}\s,\]]+)', re.IGNORECASE),
        re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^"\'}\s,\]]+)', re.IGNORECASE),
        re.compile(r'(authorization["\']?\s*[:=]\s*["\']?)([^"\'}\s,\]]+)', re.IGNORECASE),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_sensitive(record.msg)

        if isinstance(record.args, dict):
            record.args = {k: mask_sensitive(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(mask_sensitive(arg) for arg in record.args)

        return True


class RequestIdFilter(logging.Filter):
    """Stamp each record with the id of the request being served, '-' outside one."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True


def mask_sensitive(value):
    if not isinstance(value, str):
        return value
    for pattern in SensitiveDataFilter.PATTERNS:
        value = pattern.sub(MASK, value)
    return value


def setup_logging(component_name: str, log_level: Optional[str] = None) -> logging.Logger:
    """
    Set up logging for a component.

    The handler is shared by the component logger and the `uploadserver` and
    `common` package loggers, so module loggers obtained through
    get_logger(__name__) write to the same stream.

    Args:
        component_name: Name of the component (e.g., 'uploadserver')
        log_level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to LOG_LEVEL env var or INFO

    Returns:
        Configured logger instance
    """
    if log_level is None:
        log_level = os.getenv('LOG_LEVEL', 'INFO').upper()

    level = getattr(logging, log_level, logging.INFO)

    logger = logging.getLogger(component_name)
    logger.setLevel(level)

    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())

    for name in {component_name, 'uploadserver', 'common'}:
        package_logger = logging.getLogger(name)
        package_logger.setLevel(level)
        if not package_logger.handlers:
            package_logger.addHandler(handler)
        package_logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
