"""
Rendering of collection results as records, CSV text or JSON text.
"""

import csv
import io
import json
from datetime import date, datetime, timedelta
from typing import Any, Dict, List

from hostfacts.models import OUTPUT_MODES, CollectionResult, HostRecord

META_COLUMNS = ('Reachable', 'FailedProviders', 'Warnings', 'Error')


def scalar(value: Any) -> Any:
    """Text form for values JSON can't carry"""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return str(value)
    return value


def json_default(value: Any) -> Any:
    converted = scalar(value)
    if converted is value:
        return str(value)
    return converted


def record_row(record: HostRecord) -> Dict[str, Any]:
    """Flat ordered row: host, provider fields in insertion order, then metadata"""
    row: Dict[str, Any] = {'ComputerName': record.host}
    row.update(record.fields)
    row['Reachable'] = record.reachable
    row['FailedProviders'] = '; '.join(str(f) for f in record.failures)
    row['Warnings'] = '; '.join(str(w) for w in record.warnings)
    row['Error'] = record.error or ''
    return row


def columns_for(rows: List[Dict[str, Any]]) -> List[str]:
    """Union of row keys in first-seen order, metadata columns last"""
    columns: Dict[str, None] = {}
    for row in rows:
        for key in row:
            if key not in META_COLUMNS:
                columns.setdefault(key, None)
    return list(columns) + list(META_COLUMNS)


def cell(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, (list, tuple, dict)):
        return json.dumps(value, default=json_default, separators=(',', ':'))
    return str(scalar(value))


def limit_depth(value: Any, depth: int) -> Any:
    """
    Bound nesting: containers below `depth` levels are rendered as text,
    the way ConvertTo-Json truncates at its -Depth.
    """
    if isinstance(value, dict):
        if depth <= 0:
            return json.dumps(value, default=json_default, separators=(',', ':'))
        return {k: limit_depth(v, depth - 1) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        if depth <= 0:
            return json.dumps(list(value), default=json_default, separators=(',', ':'))
        return [limit_depth(v, depth - 1) for v in value]
    return scalar(value)


def render_csv(rows: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns_for(rows), lineterminator='\n')
    writer.writeheader()
    for row in rows:
        writer.writerow({key: cell(value) for key, value in row.items()})
    return buffer.getvalue()


def render_json(rows: List[Dict[str, Any]], depth: int = 4) -> str:
    return json.dumps([limit_depth(row, depth) for row in rows], indent=2, default=json_default)


def format_result(result: CollectionResult, mode: str = 'records', depth: int = 4):
    """
    Render a CollectionResult.

    Args:
        result: Collection result to render
        mode: 'records' (list of dicts), 'csv' or 'json' (text)
        depth: Maximum nesting depth for 'json'

    Returns:
        List of row dicts, or the rendered text
    """
    if mode not in OUTPUT_MODES:
        raise ValueError(f"Invalid output mode: {mode}. Must be one of {list(OUTPUT_MODES)}")

    rows = [record_row(r) for r in result.records]
    if mode == 'csv':
        return render_csv(rows)
    if mode == 'json':
        return render_json(rows, depth)
    return rows
