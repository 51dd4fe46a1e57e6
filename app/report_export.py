"""Flat delimited export of report results."""

from __future__ import annotations

import csv
import io
import re
from datetime import date
from typing import Any, List

from app.reports import ReportSpec, RunResult


def _cell(value: Any) -> str:
    text = "" if value is None else str(value)
    if isinstance(value, bool):
        text = "true" if value else "false"
    return '"' + text.replace('"', '""') + '"'


def to_delimited(spec: ReportSpec, result: RunResult) -> str:
    """Header of raw field names, then one quoted, comma-joined line per row."""
    lines = [",".join(spec.fields)]
    for row in result.rows:
        lines.append(",".join(_cell(row.get(name)) for name in spec.fields))
    return "\n".join(lines)


def parse_delimited(text: str) -> tuple[List[str], List[List[str]]]:
    """Read an export back into ``(header, rows)`` of strings."""
    if not text:
        return [], []
    lines = list(csv.reader(io.StringIO(text)))
    return lines[0], lines[1:]


def export_filename(name: str | None, today: date | None = None) -> str:
    today = today or date.today()
    base = re.sub(r"\s+", "_", name or "report")
    return f"{base}_{today.isoformat()}.csv"
