"""
Answer pre-processing collaborators

Pre-processors run before the questionnaire engine sees an answer. They
may rewrite the raw answer, contribute extra field values, or ask the
state machine to simply re-ask the pending question. Repair heuristics for
a specific catalog (e.g., splitting "name + phone" into two fields) belong
here, never inside the engine.

Interface (duck-typed):
    preprocess(raw_answer, question, vars) -> PreprocessResult
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence

from intakeflow.contracts import Question

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreprocessResult:
    """
    Attributes:
        answer: Answer to hand to the engine (possibly rewritten)
        reask: Skip parsing and re-ask the pending question
        extra_fields: Additional values to persist with the turn
    """
    answer: str
    reask: bool = False
    extra_fields: Dict[str, Any] = field(default_factory=dict)


CONTINUE_TOKENS = (
    "continue", "next", "go on", "ok", "okay", "let's go",
    "המשך", "נמשיך", "הלאה", "יאללה", "אוקיי",
)


class ContinueIntentPreprocessor:
    """
    Detect "let's continue" style answers.

    Such answers carry no data for the pending question, so the question is
    re-asked instead of being parsed (and rejected) as an answer.
    """

    def __init__(self, tokens: Optional[Sequence[str]] = None):
        words = tokens or CONTINUE_TOKENS
        self._pattern = re.compile(
            r"^(" + "|".join(re.escape(w) for w in words) + r")[\s.!]*$",
            re.IGNORECASE,
        )

    def preprocess(self, raw_answer: str, question: Optional[Question], vars: Mapping[str, Any]) -> PreprocessResult:
        s = (raw_answer or "").strip()
        if question is not None and question.data_type in ("string", "date"):
            # Free-text questions accept anything, including "ok"
            return PreprocessResult(answer=s)
        if self._pattern.match(s):
            logger.info(f"Continue intent detected, re-asking {question.qid if question else 'current question'}")
            return PreprocessResult(answer=s, reask=True)
        return PreprocessResult(answer=s)


class PreprocessorChain:
    """Run several pre-processors in order; the first reask wins."""

    def __init__(self, *preprocessors):
        for p in preprocessors:
            if not hasattr(p, "preprocess") or not callable(p.preprocess):
                raise TypeError(f"{type(p).__name__} must implement preprocess()")
        self.preprocessors = preprocessors

    def preprocess(self, raw_answer: str, question: Optional[Question], vars: Mapping[str, Any]) -> PreprocessResult:
        answer = raw_answer
        extra: Dict[str, Any] = {}
        for p in self.preprocessors:
            result = p.preprocess(answer, question, vars)
            extra.update(result.extra_fields)
            if result.reask:
                return PreprocessResult(answer=result.answer, reask=True, extra_fields=extra)
            answer = result.answer
        return PreprocessResult(answer=answer, extra_fields=extra)
