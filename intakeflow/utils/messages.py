"""
User-Facing Message Registry

Defines message IDs for every re-prompt and status text the engine emits,
and their default wording.

Message Text:
- MESSAGE_TEXT contains pattern strings with {placeholder} fields
- A catalog may override any pattern through engine_contract.messages
  (keyed by the MessageID value)
- render_message() fills placeholders; unknown placeholders are left as-is
  so a catalog typo never crashes a turn
"""

import logging
from enum import Enum
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class MessageID(str, Enum):
    """
    Message identifiers.

    Naming convention: <AREA>_<REASON>
    """
    # Answer parsing
    ANSWER_EMPTY = "answer_empty"
    ANSWER_NOT_BOOLEAN = "answer_not_boolean"
    ANSWER_NOT_NUMBER = "answer_not_number"
    ANSWER_NOT_OPTION = "answer_not_option"
    ANSWER_NOT_OPTIONS = "answer_not_options"

    # Numeric constraints
    NUMBER_BELOW_MIN = "number_below_min"
    NUMBER_ABOVE_MAX = "number_above_max"
    NUMBER_STEP = "number_step"

    # Table input
    TABLE_START = "table_start"
    TABLE_RETRY = "table_retry"
    TABLE_MORE = "table_more"

    # Flow
    STAGE_SUMMARY = "stage_summary"
    SUMMARY_MORE = "summary_more"
    HANDOFF = "handoff"
    TERMINAL = "terminal"


MESSAGE_TEXT: Dict[str, str] = {
    MessageID.ANSWER_EMPTY: "I didn't catch that - could you answer again briefly?",
    MessageID.ANSWER_NOT_BOOLEAN: 'Could you answer "yes" or "no"?',
    MessageID.ANSWER_NOT_NUMBER: "Could you write a number?",
    MessageID.ANSWER_NOT_OPTION: "Please choose one of the options: {options}",
    MessageID.ANSWER_NOT_OPTIONS: "Please choose one or more of the options: {options}",

    MessageID.NUMBER_BELOW_MIN: "The value must be at least {limit}",
    MessageID.NUMBER_ABOVE_MAX: "The value must be at most {limit}",
    MessageID.NUMBER_STEP: "The value must be in steps of {step}",

    MessageID.TABLE_START: 'To fill the table, send one row in the format: {example}. Write "done" when finished.',
    MessageID.TABLE_RETRY: 'Let\'s do this row by row. Send one row in the format: {example}. Write "done" when finished.',
    MessageID.TABLE_MORE: 'Got it. Another row? Send it now, or write "done".',

    MessageID.STAGE_SUMMARY: "Quick summary so far: {stage_summary}. If anything is off, tell me and we'll fix it.",
    MessageID.SUMMARY_MORE: "and {count} more details",
    MessageID.HANDOFF: "Thanks. A specialist will continue with you from here.",
    MessageID.TERMINAL: "Thanks, we have everything we need.",
}


class _SafeDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def render_message(
    message_id: MessageID,
    overrides: Optional[Mapping[str, str]] = None,
    **values,
) -> str:
    """
    Render a message pattern.

    Args:
        message_id: Which message to render
        overrides: Catalog-provided patterns keyed by message id value
        **values: Placeholder values

    Returns:
        str: Rendered text
    """
    key = message_id.value if isinstance(message_id, MessageID) else str(message_id)
    pattern = None
    if overrides:
        pattern = overrides.get(key)
    if not pattern:
        pattern = MESSAGE_TEXT.get(message_id) or MESSAGE_TEXT.get(key)
    if pattern is None:
        logger.warning(f"Unknown message id: {key}")
        return ""
    return pattern.format_map(_SafeDict(values))


def render_template(template: str, **values) -> str:
    """Fill {placeholders} in a catalog-provided template."""
    return (template or "").format_map(_SafeDict(values))
