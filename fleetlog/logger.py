"""
FleetLog: JSON logging with host context and validation.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per log record.

    Output format:
    {
        "timestamp": "2026-10-19T08:30:00.123456+00:00",
        "level": "WARNING",
        "logger": "hostfacts.collector",
        "message": "Provider disk failed on WS-0042",
        "host": "WS-0042",          # lifted from context when present
        "context": {...}
    }
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        super().__init__()
        self.clock = clock or _utc_now

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_data: Dict[str, Any] = {
            'timestamp': self.clock().isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        context = getattr(record, 'context', None)
        if context:
            # host/provider are promoted so log lines can be grepped per machine
            for key in ('host', 'provider'):
                if key in context:
                    log_data[key] = context[key]
            log_data['context'] = context

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info)
            }

        if record.levelno <= logging.DEBUG:
            log_data['source'] = {
                'file': record.pathname,
                'line': record.lineno,
                'function': record.funcName
            }

        return json.dumps(log_data, default=str)


def _make_formatter(use_json: bool, clock=None) -> logging.Formatter:
    if use_json:
        return JSONFormatter(clock=clock)
    return logging.Formatter(PLAIN_FORMAT)


def get_logger(
    name: str,
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    use_json: bool = True,
    clock: Optional[Callable[[], datetime]] = None
) -> logging.Logger:
    """
    Get a pre-configured logger instance.

    Args:
        name: Logger name (typically a package name such as 'hostfacts')
        level: Logging level (default: INFO)
        log_file: Optional file path for an additional file handler
        use_json: Use JSON formatter (default: True)
        clock: Optional callable used to stamp JSON records

    Returns:
        Configured logger instance

    Example:
        logger = get_logger('hostfacts')
        logger.warning("Host unreachable", extra={'context': {'host': 'WS-0042'}})
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    has_console_handler = any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
                              for h in logger.handlers)
    has_file_handler = any(isinstance(h, logging.FileHandler) and h.baseFilename == log_file
                           for h in logger.handlers) if log_file else False

    if not has_console_handler:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(_make_formatter(use_json, clock))
        logger.addHandler(console_handler)

    if log_file and not has_file_handler:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(_make_formatter(use_json, clock))
        logger.addHandler(file_handler)

    return logger


def setup_logging(
    level: str = 'INFO',
    log_file: Optional[str] = None,
    use_json: bool = True,
    names: tuple = ('hostfacts',)
) -> logging.Logger:
    """
    Configure the project loggers from a level name.

    Returns the first configured logger. Raises ValueError for an unknown
    level name.
    """
    numeric = logging.getLevelName(str(level).upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level}")

    loggers = [get_logger(name, level=numeric, log_file=log_file, use_json=use_json)
               for name in names]
    return loggers[0]


def validate_log_format(log_line: str) -> bool:
    """
    Validate that a log line is properly formatted JSON.

    Args:
        log_line: Log line to validate

    Returns:
        True if valid JSON with required fields, False otherwise
    """
    try:
        data = json.loads(log_line)

        required_fields = ['timestamp', 'level', 'logger', 'message']
        if not all(field in data for field in required_fields):
            return False

        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if data['level'] not in valid_levels:
            return False

        if 'host' in data and not isinstance(data['host'], str):
            return False

        return True

    except (json.JSONDecodeError, TypeError):
        return False
