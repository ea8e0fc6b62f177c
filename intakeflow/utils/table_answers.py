"""
Row-by-row collection for table questions

A table question (input_kind "table", data_type "array") is answered over
several turns: each turn adds one or more rows to a draft, and a done
token commits the draft as the field value.

Row formats:
- JSON: an object (one row) or an array (objects, or scalars wrapped as
  {"value": x})
- Text: one row per line, cells separated by '|', ',' or ';'
"""

import json
import re
from typing import Any, Dict, List, Optional, Sequence

DONE_TOKENS = ("סיום", "סיימתי", "אין עוד", "אין", "done", "finish", "finished", "stop")

_DONE_RE = re.compile(r"^(" + "|".join(re.escape(t) for t in DONE_TOKENS) + r")$", re.IGNORECASE)
_CELL_SPLIT_RE = re.compile(r"[|,;]+")


def is_done_token(raw: str) -> bool:
    """True when the answer closes the table draft."""
    return bool(_DONE_RE.match((raw or "").strip().lower()))


def parse_table_rows(raw: str, columns: Sequence[str]) -> Optional[List[Dict[str, Any]]]:
    """
    Parse rows from an answer.

    Args:
        raw: Raw answer
        columns: Column names; text lines must supply at least this many cells

    Returns:
        List of row dicts, or None if nothing usable was found
    """
    s = (raw or "").strip()
    if not s:
        return None

    try:
        parsed = json.loads(s)
    except ValueError:
        parsed = None
    if isinstance(parsed, list):
        rows = [x if isinstance(x, dict) else {"value": x} for x in parsed]
        return rows or None
    if isinstance(parsed, dict):
        return [parsed]

    rows: List[Dict[str, Any]] = []
    for line in s.splitlines():
        cells = [c.strip() for c in _CELL_SPLIT_RE.split(line) if c.strip()]
        if not cells:
            continue

        if columns:
            if len(cells) < len(columns):
                return None
            row = {column: cells[i] for i, column in enumerate(columns)}
            if len(cells) > len(columns):
                row["notes"] = " ".join(cells[len(columns):])
        else:
            row = {"value": cells[0]}
            if len(cells) > 1:
                row["details"] = cells[1:]
        rows.append(row)

    return rows or None


def example_row(columns: Sequence[str]) -> str:
    """Format hint shown to the user."""
    if columns:
        return ", ".join(columns)
    return "item, details"
