"""
Record sinks: persistence targets for host records.

A sink failure never changes the in-memory result; persist() turns it into
a warning on the CollectionResult.
"""

import csv
import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, List, Optional

import click
import psycopg2
from psycopg2.pool import SimpleConnectionPool

from hostfacts.models import CollectionResult, HostRecord, utc_now
from hostfacts.output import json_default, cell, columns_for, record_row

logger = logging.getLogger(__name__)


class SinkError(Exception):
    """A record could not be persisted"""
    pass


class RecordSink(ABC):
    """Base class for record sinks"""

    def begin(self, result: CollectionResult) -> None:
        """Called once before the records of a result are appended"""
        pass

    @abstractmethod
    def append(self, record: HostRecord) -> None:
        """Persist one record; raise on failure"""
        pass

    def close(self) -> None:
        pass


class ConsoleSink(RecordSink):
    """One JSON line per record on stdout"""

    def append(self, record: HostRecord) -> None:
        click.echo(json.dumps(record_row(record), default=json_default))


class CsvFileSink(RecordSink):
    """
    Appends rows to a CSV log, stamping each with the time it was logged.

    The header is taken from an existing file so repeated runs keep
    appending under the same columns. A run with columns the existing
    header lacks is refused with SinkError rather than losing values.
    """

    STAMP_COLUMN = 'LoggedAt'

    def __init__(self, path: str, clock: Callable = utc_now):
        self.path = Path(path)
        self.clock = clock
        self.columns: Optional[List[str]] = None

    def _existing_header(self) -> Optional[List[str]]:
        if not self.path.exists() or self.path.stat().st_size == 0:
            return None
        with open(self.path, newline='') as f:
            return next(csv.reader(f), None)

    def _check_columns(self, wanted: List[str]) -> None:
        missing = [c for c in wanted if c not in self.columns]
        if missing:
            raise SinkError(
                f"{self.path} has no column(s) {', '.join(missing)}; "
                f"use a new file for this provider selection"
            )

    def begin(self, result: CollectionResult) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        rows = [record_row(r) for r in result.records]
        wanted = [self.STAMP_COLUMN] + columns_for(rows)

        self.columns = self._existing_header()
        if self.columns is None:
            self.columns = wanted
            with open(self.path, 'w', newline='') as f:
                csv.writer(f).writerow(self.columns)
        else:
            self._check_columns(wanted)

    def append(self, record: HostRecord) -> None:
        if self.columns is None:
            self.begin(CollectionResult(records=[record]))

        row = {self.STAMP_COLUMN: self.clock().isoformat()}
        row.update(record_row(record))
        self._check_columns(list(row))
        with open(self.path, 'a', newline='') as f:
            writer = csv.DictWriter(f, fieldnames=self.columns)
            writer.writerow({key: cell(value) for key, value in row.items()})


class JsonlFileSink(RecordSink):
    """Writes records to daily-rotated JSONL files"""

    def __init__(self, output_dir: str, prefix: str = 'hostrecords', clock: Callable = utc_now):
        self.output_dir = Path(output_dir)
        self.prefix = prefix
        self.clock = clock

    def _get_path(self) -> Path:
        """Get today's JSONL file path."""
        date_str = self.clock().strftime("%Y-%m-%d")
        return self.output_dir / f"{self.prefix}-{date_str}.jsonl"

    def begin(self, result: CollectionResult) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def append(self, record: HostRecord) -> None:
        with open(self._get_path(), "a") as f:
            f.write(json.dumps(record.to_dict(), default=json_default) + "\n")


class PostgreSQLSink(RecordSink):
    """Writes host records to the host_records table with connection pooling"""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS host_records (
            id SERIAL PRIMARY KEY,
            collected_at TIMESTAMPTZ,
            host TEXT NOT NULL,
            reachable BOOLEAN NOT NULL,
            error TEXT,
            fields JSONB,
            failures JSONB
        )
    """

    def __init__(self, database_url: str, min_connections: int = 1, max_connections: int = 5):
        self.pool = SimpleConnectionPool(
            min_connections,
            max_connections,
            database_url
        )

    @contextmanager
    def get_connection(self):
        """Get a connection from the pool"""
        conn = self.pool.getconn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    def begin(self, result: CollectionResult) -> None:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(self.SCHEMA)

    def append(self, record: HostRecord) -> None:
        sql = """
            INSERT INTO host_records (
                collected_at, host, reachable, error, fields, failures
            ) VALUES (
                %s, %s, %s, %s, %s, %s
            )
        """
        values = (
            record.collected_at,
            record.host,
            record.reachable,
            record.error,
            json.dumps(dict(record.fields), default=json_default),
            json.dumps([str(f) for f in record.failures]),
        )

        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, values)
        except psycopg2.Error as e:
            raise SinkError(f"Database write failed: {e}") from e

    def close(self) -> None:
        """Close all connections in the pool"""
        self.pool.closeall()


def persist(result: CollectionResult, sink: RecordSink) -> List[str]:
    """
    Append every record of result to sink.

    Returns the failure messages, which are also added to result.warnings.
    Never raises.
    """
    sink_name = type(sink).__name__
    warnings: List[str] = []

    try:
        sink.begin(result)
    except Exception as e:
        message = f"{sink_name} could not start: {e}"
        logger.error(message)
        warnings.append(message)
    else:
        for record in result.records:
            try:
                sink.append(record)
            except Exception as e:
                message = f"{sink_name} failed for {record.host}: {e}"
                logger.error(message, extra={'context': {'host': record.host}})
                warnings.append(message)

    try:
        sink.close()
    except Exception as e:
        message = f"{sink_name} did not close cleanly: {e}"
        logger.error(message)
        warnings.append(message)

    result.warnings.extend(warnings)
    return warnings
