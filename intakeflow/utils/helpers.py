"""
Utility helpers for the intake flow engine

Small value tests and identifier generation shared across modules.
"""

import json
import uuid
from datetime import datetime, timezone

# Placeholder strings that upstream extractors emit instead of a real value
_EMPTY_PLACEHOLDERS = ("null", ":null", "undefined", ":undefined")


def is_present(value):
    """
    Presence test used by conditions and completion checks

    Boolean False and 0 are present. Empty strings, placeholder strings
    ("null", "undefined") and empty lists are not.

    Examples:
        >>> is_present(False)
        True
        >>> is_present("  null ")
        False
        >>> is_present([])
        False
    """
    if value is None:
        return False
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return False
        return s.lower() not in _EMPTY_PLACEHOLDERS
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


def is_answered(value):
    """
    Looser test used by question selection

    Unlike is_present(), placeholder strings count as answered; only None,
    blank strings and empty lists are unanswered.
    """
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


def generate_session_id(short=True):
    """
    Generate unique section session identifier

    Args:
        short (bool): If True, return 8-char hex. If False, return full UUID.

    Returns:
        str: Session ID

    Examples:
        >>> generate_session_id()
        'a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    return full_id[:8] if short else full_id


def utc_now_iso():
    """ISO-8601 UTC timestamp for history records."""
    return datetime.now(timezone.utc).isoformat()


def safe_parse_json(value, default=None):
    """
    Decode a JSON string stored in CollectedData

    Stores persist nested values (form document, draft rows) as strings.
    Non-string values are returned unchanged; undecodable strings yield
    the default.
    """
    if value is None:
        return default
    if not isinstance(value, str):
        return value
    s = value.strip()
    if not s:
        return default
    try:
        return json.loads(s)
    except ValueError:
        return default


def format_value(value):
    """
    Render a collected value for user-facing summaries

    Examples:
        >>> format_value(True)
        'yes'
        >>> format_value(1500000.0)
        '1,500,000'
        >>> format_value(['fire', 'theft'])
        'fire, theft'
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        return f"{value:,}"
    if isinstance(value, float):
        return f"{value:,.2f}"
    if isinstance(value, (list, tuple)):
        return ", ".join(s for s in (format_value(v) for v in value) if s)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value)
