"""
fleetlog: Structured JSON logging for fleet collection runs

Provides JSON log records carrying per-host context so that a batch run
against many machines can be filtered by host and provider afterwards.
"""

from fleetlog.logger import JSONFormatter, get_logger, setup_logging, validate_log_format

__all__ = ['JSONFormatter', 'get_logger', 'setup_logging', 'validate_log_format']
__version__ = '1.0.0'
