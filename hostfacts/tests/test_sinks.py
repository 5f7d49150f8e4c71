"""
Unit tests for record sinks and persistence.
"""

import csv
import json
from datetime import datetime, timezone
from types import MappingProxyType
from unittest.mock import MagicMock, Mock, patch

import psycopg2
import pytest

from hostfacts.models import CollectionResult, HostRecord
from hostfacts.sinks import (
    ConsoleSink,
    CsvFileSink,
    JsonlFileSink,
    PostgreSQLSink,
    RecordSink,
    SinkError,
    persist,
)


@pytest.fixture
def result():
    return CollectionResult(records=[
        HostRecord(
            host='WS-01',
            reachable=True,
            fields=MappingProxyType({'CurrentUser': 'CORP\\jdoe', 'MemoryUsedPercent': 41.2}),
            providers=('current_user', 'memory'),
            collected_at=datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc),
        ),
        HostRecord.host_failure('WS-02', 'unreachable'),
    ])


class TestCsvFileSink:
    """Test CsvFileSink"""

    def test_writes_header_and_rows(self, tmp_path, result, clock):
        """Should write a stamped header and one row per record"""
        path = tmp_path / 'logs' / 'inventory.csv'
        warnings = persist(result, CsvFileSink(str(path), clock=clock))

        assert warnings == []
        rows = list(csv.DictReader(path.open(newline='')))
        assert [r['ComputerName'] for r in rows] == ['WS-01', 'WS-02']
        assert rows[0]['LoggedAt'] == '2026-10-19T12:00:00+00:00'
        assert rows[0]['MemoryUsedPercent'] == '41.2'
        assert rows[1]['CurrentUser'] == ''
        assert rows[1]['Error'] == 'unreachable'

    def test_appends_under_existing_header(self, tmp_path, result, clock):
        """Should append under the header of an existing file"""
        path = tmp_path / 'inventory.csv'
        persist(result, CsvFileSink(str(path), clock=clock))
        persist(result, CsvFileSink(str(path), clock=clock))

        lines = path.read_text().splitlines()
        assert len(lines) == 5
        assert lines[0].startswith('LoggedAt,ComputerName,CurrentUser')

    def test_new_columns_are_refused_not_dropped(self, tmp_path, clock):
        """Should warn and write nothing when a run has columns the file lacks"""
        path = tmp_path / 'inventory.csv'
        users_only = CollectionResult(records=[HostRecord(
            host='WS-01', reachable=True, fields=MappingProxyType({'CurrentUser': 'CORP\\jdoe'}),
        )])
        with_memory = CollectionResult(records=[HostRecord(
            host='WS-01', reachable=True,
            fields=MappingProxyType({'CurrentUser': 'CORP\\jdoe', 'MemoryUsedPercent': 41.2}),
        )])
        persist(users_only, CsvFileSink(str(path), clock=clock))

        warnings = persist(with_memory, CsvFileSink(str(path), clock=clock))

        assert len(warnings) == 1
        assert 'MemoryUsedPercent' in warnings[0]
        assert with_memory.warnings == warnings
        assert len(path.read_text().splitlines()) == 2

    def test_fewer_columns_append_with_blanks(self, tmp_path, result, clock):
        """Should append a narrower selection under the existing header"""
        path = tmp_path / 'inventory.csv'
        persist(result, CsvFileSink(str(path), clock=clock))
        narrow = CollectionResult(records=[HostRecord(
            host='WS-03', reachable=True, fields=MappingProxyType({'CurrentUser': 'CORP\\asmith'}),
        )])

        assert persist(narrow, CsvFileSink(str(path), clock=clock)) == []

        rows = list(csv.DictReader(path.open(newline='')))
        assert rows[-1]['ComputerName'] == 'WS-03'
        assert rows[-1]['MemoryUsedPercent'] == ''

    def test_append_without_begin_checks_columns(self, tmp_path, result, clock):
        """Should raise SinkError when a record does not fit the header"""
        sink = CsvFileSink(str(tmp_path / 'inventory.csv'), clock=clock)
        sink.append(result.records[1])

        with pytest.raises(SinkError, match='MemoryUsedPercent'):
            sink.append(result.records[0])


class TestJsonlFileSink:
    """Test JsonlFileSink"""

    def test_daily_file(self, tmp_path, result, clock):
        """Should write records to today's JSONL file"""
        persist(result, JsonlFileSink(str(tmp_path), clock=clock))

        path = tmp_path / 'hostrecords-2026-10-19.jsonl'
        records = [json.loads(line) for line in path.read_text().splitlines()]
        assert [r['host'] for r in records] == ['WS-01', 'WS-02']
        assert records[0]['fields']['CurrentUser'] == 'CORP\\jdoe'
        assert records[0]['collected_at'] == '2026-10-19T12:00:00+00:00'
        assert records[1]['error'] == 'unreachable'


class TestConsoleSink:
    """Test ConsoleSink"""

    def test_one_line_per_record(self, capsys, result):
        """Should print one JSON line per record"""
        persist(result, ConsoleSink())

        lines = capsys.readouterr().out.splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])['ComputerName'] == 'WS-01'


class TestPostgreSQLSink:
    """Test PostgreSQLSink with a mocked pool"""

    def test_inserts_each_record(self, result):
        """Should create the table and insert one row per record"""
        with patch('hostfacts.sinks.SimpleConnectionPool') as pool_cls:
            conn = MagicMock()
            pool_cls.return_value.getconn.return_value = conn
            cursor = conn.cursor.return_value.__enter__.return_value

            warnings = persist(result, PostgreSQLSink('postgresql://localhost/fleet'))

        assert warnings == []
        statements = [c.args[0] for c in cursor.execute.call_args_list]
        assert 'CREATE TABLE IF NOT EXISTS host_records' in statements[0]
        assert sum('INSERT INTO host_records' in s for s in statements) == 2
        values = cursor.execute.call_args_list[1].args[1]
        assert values[1] == 'WS-01'
        assert json.loads(values[4]) == {'CurrentUser': 'CORP\\jdoe', 'MemoryUsedPercent': 41.2}
        pool_cls.return_value.closeall.assert_called_once()

    def test_database_error_becomes_sink_error(self, result):
        """Should roll back and raise SinkError on a database error"""
        with patch('hostfacts.sinks.SimpleConnectionPool') as pool_cls:
            conn = MagicMock()
            pool_cls.return_value.getconn.return_value = conn
            sink = PostgreSQLSink('postgresql://localhost/fleet')
            conn.cursor.return_value.__enter__.return_value.execute.side_effect = psycopg2.OperationalError('gone')

            with pytest.raises(SinkError):
                sink.append(result.records[0])
        conn.rollback.assert_called_once()


class TestPersist:
    """Test persist()"""

    def test_sink_failure_becomes_warning(self, result):
        """Should turn an append failure into a warning"""
        sink = Mock(spec=RecordSink)
        sink.append.side_effect = [OSError('disk full'), None]

        warnings = persist(result, sink)

        assert len(warnings) == 1
        assert 'WS-01' in warnings[0] and 'disk full' in warnings[0]
        assert result.warnings == warnings
        assert [r.host for r in result.records] == ['WS-01', 'WS-02']
        sink.close.assert_called_once()

    def test_begin_failure_skips_appends(self, result):
        """Should skip appends when the sink cannot start"""
        sink = Mock(spec=RecordSink)
        sink.begin.side_effect = PermissionError('read-only share')

        warnings = persist(result, sink)

        sink.append.assert_not_called()
        assert 'read-only share' in warnings[0]

    def test_close_failure_reported(self, result):
        """Should report a failed close"""
        sink = Mock(spec=RecordSink)
        sink.close.side_effect = RuntimeError('flush failed')

        assert 'flush failed' in persist(result, sink)[0]
