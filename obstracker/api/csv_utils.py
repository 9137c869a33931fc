from __future__ import annotations

import csv
import io
from typing import Any, Iterable, List, Sequence


def csv_cell(value: Any) -> str:
    text = "" if value is None else str(value)
    return '"' + text.replace('"', '""') + '"'


def csv_text_from_rows(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    """Header line unquoted, every data cell quoted with internal quotes doubled."""
    lines = [",".join(headers)]
    for row in rows:
        lines.append(",".join(csv_cell(value) for value in row))
    return "\n".join(lines)


def parse_csv_text(text: str) -> List[List[str]]:
    return [row for row in csv.reader(io.StringIO(text))]
