"""
Answer Parser - Type-directed coercion of raw user answers

Responsibilities:
- Coerce a raw answer string into the question's data type
- Enforce numeric constraints declared on the question
- Produce user-facing re-prompt messages for every failure

Design principles:
- Pure functions: no state, no I/O
- Tolerant input: leading yes/no tokens with trailing detail, currency
  symbols, thousands separators and case differences are accepted
- Strict output: a value is either fully resolved or the answer is rejected
  (no partially resolved multi-selects)
"""

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

from intakeflow.contracts import Question
from intakeflow.results import AnswerParseError
from intakeflow.utils.helpers import format_value
from intakeflow.utils.messages import MessageID, render_message

TRUE_WORDS = ("כן", "yes", "y", "true", "חיובי")
FALSE_WORDS = ("לא", "no", "n", "false", "שלילי")

_LEADING_QUOTES_RE = re.compile(r"""^[\s"'“”׳״]+""")
_BOOLEAN_HEAD_RE = re.compile(
    r"^(" + "|".join(re.escape(w) for w in TRUE_WORDS + FALSE_WORDS) + r")"
    r"(?=$|[\s,.:;!?()\[\]{}'\"“”\-–—])",
    re.IGNORECASE,
)
_LEADING_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_CURRENCY_RE = re.compile(r"[₪$€£,]")
_AFFIRMATIVE_PREFIX_RE = re.compile(r"^(כן|yes)\s*[,:.\-–]\s*", re.IGNORECASE)
_MULTI_SPLIT_RE = re.compile(r"[,;|\n]")

_CONSTRAINT_PATTERNS = (
    ("min", re.compile(r"^min\s*=\s*([\d,]+(?:\.\d+)?)$", re.IGNORECASE)),
    ("max", re.compile(r"^max\s*=\s*([\d,]+(?:\.\d+)?)$", re.IGNORECASE)),
    ("step", re.compile(r"^step\s*=\s*([\d,]+(?:\.\d+)?)$", re.IGNORECASE)),
    ("gte", re.compile(r"^>=\s*([\d,]+(?:\.\d+)?)$")),
    ("lte", re.compile(r"^<=\s*([\d,]+(?:\.\d+)?)$")),
    ("gt", re.compile(r"^>\s*([\d,]+(?:\.\d+)?)$")),
    ("lt", re.compile(r"^<\s*([\d,]+(?:\.\d+)?)$")),
)


@dataclass(frozen=True)
class NumericConstraints:
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    gte: Optional[float] = None
    lte: Optional[float] = None
    gt: Optional[float] = None
    lt: Optional[float] = None

    @property
    def step_base(self) -> float:
        if self.min is not None:
            return self.min
        if self.gte is not None:
            return self.gte
        return 0


# =============================================================================
# Scalar parsers
# =============================================================================

def parse_boolean(raw: str) -> Optional[bool]:
    """
    Parse a yes/no answer.

    A recognised leading token wins even when followed by detail
    ("כן, ותק 5 שנים" -> True). Otherwise a leading integer is read as a
    count (0 -> False, anything else -> True).

    Returns:
        bool or None if the answer is not boolean-like
    """
    s = (raw or "").strip().lower()
    if not s:
        return None
    head = _LEADING_QUOTES_RE.sub("", s).strip()

    m = _BOOLEAN_HEAD_RE.match(head)
    if m:
        token = m.group(1).lower()
        return token in TRUE_WORDS

    m = _LEADING_NUMBER_RE.match(head)
    if m:
        return float(m.group()) != 0
    return None


def parse_number(raw: str) -> Optional[Union[int, float]]:
    """
    Extract the first number from an answer.

    Currency symbols and thousands separators are ignored
    ("₪1,500,000" -> 1500000). Integral values come back as int.
    """
    cleaned = _CURRENCY_RE.sub("", raw or "")
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    m = _NUMBER_RE.search(cleaned)
    if not m:
        return None
    value = float(m.group())
    return int(value) if value.is_integer() else value


def parse_enum(raw: str, options: Sequence[str]) -> Optional[str]:
    """
    Resolve an answer to exactly one option.

    Order: strip a leading "yes," prefix, exact (case-insensitive) match,
    then a unique option where one string contains the other.
    """
    s = (raw or "").strip()
    if not s or not options:
        return None
    s = _AFFIRMATIVE_PREFIX_RE.sub("", s).strip() or s

    folded = s.casefold()
    for option in options:
        if option.casefold() == folded:
            return option

    matches = [o for o in options if folded in o.casefold() or o.casefold() in folded]
    if len(matches) == 1:
        return matches[0]
    return None


def parse_multi_select(raw: str, options: Sequence[str]) -> Optional[List[str]]:
    """
    Resolve a delimited answer to a de-duplicated list of options.

    Fails (None) if any token cannot be resolved.
    """
    s = (raw or "").strip()
    if not s or not options:
        return None

    # An option may itself contain a delimiter
    folded = s.casefold()
    for option in options:
        if option.casefold() == folded:
            return [option]

    parts = [p.strip() for p in _MULTI_SPLIT_RE.split(s) if p.strip()]
    if not parts:
        return None

    resolved: List[str] = []
    for part in parts:
        value = parse_enum(part, options)
        if value is None:
            return None
        if value not in resolved:
            resolved.append(value)
    return resolved


# =============================================================================
# Constraints
# =============================================================================

def parse_constraints(constraints: Any) -> NumericConstraints:
    """
    Parse numeric constraints.

    Accepts a dict ({"min": 1, "step": 5}) or the ';'-separated string form
    ("min=500000; max=10000000; step=500000", ">=1", "<=5000"). Unknown
    parts are ignored.
    """
    if not constraints:
        return NumericConstraints()

    if isinstance(constraints, Mapping):
        values = {}
        for key in ("min", "max", "step", "gte", "lte", "gt", "lt"):
            if constraints.get(key) is not None:
                values[key] = float(constraints[key])
        return NumericConstraints(**values)

    values = {}
    for part in str(constraints).split(";"):
        part = part.strip()
        if not part:
            continue
        for key, pattern in _CONSTRAINT_PATTERNS:
            m = pattern.match(part)
            if m:
                values[key] = float(m.group(1).replace(",", ""))
                break
    return NumericConstraints(**values)


def check_number(
    value: float,
    constraints: Any,
    messages: Optional[Mapping[str, str]] = None,
) -> Optional[Tuple[str, str]]:
    """
    Validate a number against constraints.

    Check order: min, >=, >, max, <=, <, step. Step is measured from min
    (or the >= bound, or zero).

    Returns:
        (code, message) for the first violated constraint, or None
    """
    c = parse_constraints(constraints)

    def too_small(limit):
        return ("min", render_message(MessageID.NUMBER_BELOW_MIN, messages, limit=format_value(limit)))

    def too_large(limit):
        return ("max", render_message(MessageID.NUMBER_ABOVE_MAX, messages, limit=format_value(limit)))

    if c.min is not None and value < c.min:
        return too_small(c.min)
    if c.gte is not None and value < c.gte:
        return too_small(c.gte)
    if c.gt is not None and value <= c.gt:
        return too_small(c.gt)
    if c.max is not None and value > c.max:
        return too_large(c.max)
    if c.lte is not None and value > c.lte:
        return too_large(c.lte)
    if c.lt is not None and value >= c.lt:
        return too_large(c.lt)

    if c.step:
        if not is_multiple(value - c.step_base, c.step):
            return ("step", render_message(MessageID.NUMBER_STEP, messages, step=format_value(c.step)))
    return None


def is_multiple(value: float, step: float) -> bool:
    """Exact decimal multiple test (avoids float remainder noise)."""
    try:
        return Decimal(str(value)) % Decimal(str(step)) == 0
    except (InvalidOperation, ZeroDivisionError):
        return False


# =============================================================================
# Entry point
# =============================================================================

def parse_answer(
    question: Question,
    raw: str,
    messages: Optional[Mapping[str, str]] = None,
) -> Tuple[Any, Optional[AnswerParseError]]:
    """
    Coerce a raw answer for a question.

    Args:
        question: Question being answered
        raw: Raw user answer
        messages: Catalog message overrides

    Returns:
        (value, None) on success, (None, AnswerParseError) on failure
    """
    s = (raw or "").strip()
    if not s:
        return None, AnswerParseError(
            question.qid, render_message(MessageID.ANSWER_EMPTY, messages), "empty"
        )

    data_type = question.data_type
    options = question.options

    if data_type == "boolean":
        value = parse_boolean(s)
        if value is None:
            return None, AnswerParseError(
                question.qid, render_message(MessageID.ANSWER_NOT_BOOLEAN, messages), "not_boolean"
            )
        return value, None

    if data_type == "number":
        value = parse_number(s)
        if value is None:
            return None, AnswerParseError(
                question.qid, render_message(MessageID.ANSWER_NOT_NUMBER, messages), "not_number"
            )
        violation = check_number(value, question.constraints, messages)
        if violation:
            code, message = violation
            return None, AnswerParseError(question.qid, message, code)
        return value, None

    if data_type == "enum":
        value = parse_enum(s, options)
        if value is None:
            return None, AnswerParseError(
                question.qid,
                render_message(MessageID.ANSWER_NOT_OPTION, messages, options=", ".join(options)),
                "not_option",
            )
        return value, None

    if data_type == "array":
        values = parse_multi_select(s, options)
        if values is None:
            return None, AnswerParseError(
                question.qid,
                render_message(MessageID.ANSWER_NOT_OPTIONS, messages, options=", ".join(options)),
                "not_options",
            )
        return values, None

    # string, date
    return s, None
