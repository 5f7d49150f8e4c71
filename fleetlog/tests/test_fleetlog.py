"""
Unit tests for the FleetLog logging library.
"""

import io
import json
import logging
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pytest

from fleetlog.logger import JSONFormatter, get_logger, setup_logging, validate_log_format


def make_record(level=logging.INFO, msg='Test message', **kwargs):
    return logging.LogRecord(
        name='hostfacts.collector',
        level=level,
        pathname='collector.py',
        lineno=42,
        msg=msg,
        args=(),
        exc_info=kwargs.pop('exc_info', None),
        **kwargs
    )


class TestJSONFormatter:
    """Test JSONFormatter"""

    def test_format_basic_log(self):
        """Should format log as JSON with required fields"""
        data = json.loads(JSONFormatter().format(make_record()))

        assert 'timestamp' in data
        assert data['level'] == 'INFO'
        assert data['logger'] == 'hostfacts.collector'
        assert data['message'] == 'Test message'

    def test_format_uses_injected_clock(self):
        """Should stamp records with the supplied clock"""
        fixed = datetime(2026, 10, 19, 8, 30, tzinfo=timezone.utc)
        data = json.loads(JSONFormatter(clock=lambda: fixed).format(make_record()))

        assert data['timestamp'] == '2026-10-19T08:30:00+00:00'

    def test_format_promotes_host_and_provider(self):
        """Should lift host/provider out of context to the top level"""
        record = make_record(level=logging.WARNING, msg='Provider disk failed')
        record.context = {'host': 'WS-0042', 'provider': 'disk', 'attempt': 1}

        data = json.loads(JSONFormatter().format(record))

        assert data['host'] == 'WS-0042'
        assert data['provider'] == 'disk'
        assert data['context']['attempt'] == 1

    def test_format_with_exception(self):
        """Should include exception info"""
        try:
            raise ValueError('Test error')
        except ValueError:
            import sys
            exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(make_record(level=logging.ERROR, exc_info=exc_info)))

        assert data['exception']['type'] == 'ValueError'
        assert data['exception']['message'] == 'Test error'
        assert 'traceback' in data['exception']

    def test_format_debug_includes_source(self):
        """Should include source location in debug mode"""
        record = make_record(level=logging.DEBUG, func='collect')
        data = json.loads(JSONFormatter().format(record))

        assert data['source']['file'] == 'collector.py'
        assert data['source']['line'] == 42
        assert data['source']['function'] == 'collect'

    def test_format_info_no_source(self):
        """Should not include source location for INFO and above"""
        data = json.loads(JSONFormatter().format(make_record()))

        assert 'source' not in data

    def test_format_non_serialisable_context(self):
        """Should stringify values json can't encode"""
        record = make_record()
        record.context = {'host': 'WS-1', 'when': datetime(2026, 1, 1)}

        data = json.loads(JSONFormatter().format(record))

        assert data['context']['when'] == '2026-01-01 00:00:00'


class TestGetLogger:
    """Test get_logger and setup_logging"""

    def test_get_logger_returns_logger(self):
        logger = get_logger('fleet_test_app')

        assert isinstance(logger, logging.Logger)
        assert logger.name == 'fleet_test_app'
        assert logger.level == logging.INFO

    def test_get_logger_with_custom_level(self):
        logger = get_logger('fleet_test_debug', level=logging.DEBUG)

        assert logger.level == logging.DEBUG

    def test_get_logger_with_file(self):
        """Should write JSON lines to the log file"""
        with tempfile.NamedTemporaryFile(mode='w', delete=False, suffix='.log') as f:
            log_file = f.name

        logger = get_logger(f'fleet_file_{uuid.uuid4().hex[:8]}', log_file=log_file)
        try:
            logger.warning('Host unreachable', extra={'context': {'host': 'WS-9'}})
            for handler in logger.handlers:
                handler.flush()

            data = json.loads(Path(log_file).read_text().strip())
            assert data['message'] == 'Host unreachable'
            assert data['host'] == 'WS-9'
        finally:
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)
            Path(log_file).unlink()

    def test_get_logger_no_duplicate_handlers(self):
        logger1 = get_logger('fleet_test_dup')
        count = len(logger1.handlers)

        logger2 = get_logger('fleet_test_dup')

        assert logger1 is logger2
        assert len(logger2.handlers) == count

    def test_plain_text_handler(self):
        """Should support plain text format"""
        name = f'fleet_plain_{uuid.uuid4().hex[:8]}'
        logger = get_logger(name, use_json=False)
        stream = io.StringIO()
        logger.handlers[0].setStream(stream)

        logger.info('Plain text message')

        output = stream.getvalue()
        assert 'Plain text message' in output
        with pytest.raises(json.JSONDecodeError):
            json.loads(output)

    def test_setup_logging_level_name(self):
        logger = setup_logging(level='debug', names=('fleet_setup_test',))

        assert logger.name == 'fleet_setup_test'
        assert logger.level == logging.DEBUG

    def test_setup_logging_rejects_unknown_level(self):
        with pytest.raises(ValueError):
            setup_logging(level='LOUD', names=('fleet_setup_bad',))


class TestValidateLogFormat:
    """Test validate_log_format function"""

    def test_validate_valid_json_log(self):
        log_line = json.dumps({
            'timestamp': '2026-10-19T08:30:00+00:00',
            'level': 'INFO',
            'logger': 'hostfacts',
            'message': 'Collection finished'
        })

        assert validate_log_format(log_line) is True

    def test_validate_missing_required_field(self):
        log_line = json.dumps({'timestamp': '2026-10-19T08:30:00+00:00', 'level': 'INFO'})

        assert validate_log_format(log_line) is False

    def test_validate_invalid_level(self):
        log_line = json.dumps({
            'timestamp': '2026-10-19T08:30:00+00:00',
            'level': 'INVALID',
            'logger': 'hostfacts',
            'message': 'Test message'
        })

        assert validate_log_format(log_line) is False

    def test_validate_rejects_non_string_host(self):
        log_line = json.dumps({
            'timestamp': '2026-10-19T08:30:00+00:00',
            'level': 'WARNING',
            'logger': 'hostfacts',
            'message': 'Host unreachable',
            'host': 42
        })

        assert validate_log_format(log_line) is False

    def test_validate_not_json(self):
        assert validate_log_format('Plain text log entry') is False
