"""
Result types returned by the questionnaire engine, router and state machine.

Recoverable failures (AnswerParseError, ValidationFailure) are values, not
exceptions: the state machine turns them into a re-prompt for the same
question.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from intakeflow.contracts import FlowStatus, NextQuestion


# =============================================================================
# Answer outcomes
# =============================================================================

@dataclass(frozen=True)
class AnswerApplied:
    """
    Answer parsed and written into the state.

    Attributes:
        qid: Question that was answered
        field_key: CollectedData key that received the value
        value: Typed value (bool, float, str, list, ...)
    """
    qid: str
    field_key: str
    value: Any


@dataclass(frozen=True)
class AnswerParseError:
    """
    Raw answer could not be coerced into the question's data type.

    Attributes:
        qid: Question being answered
        message: User-facing re-prompt text
        code: Machine-readable reason (e.g., 'not_boolean', 'step')
    """
    qid: str
    message: str
    code: str = "parse_failed"


@dataclass(frozen=True)
class ValidationFailure:
    """
    A production validation rule rejected the collected data.

    Attributes:
        rule_name: Name of the failing rule
        field_key: Field the rule checks
        message: User-facing error text from the catalog
    """
    rule_name: str
    field_key: str
    message: str


AnswerOutcome = Union[AnswerApplied, AnswerParseError]


# =============================================================================
# Checklist / handoff outputs
# =============================================================================

@dataclass(frozen=True)
class PendingAttachment:
    qid: str
    field_key: str
    title: str
    json_path: str
    notes: str = ""

    def to_json(self) -> Dict[str, Any]:
        return {
            "qid": self.qid,
            "field_key": self.field_key,
            "title": self.title,
            "json_path": self.json_path,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class FiredHandoff:
    trigger_key: str
    reason: str
    action: str


# =============================================================================
# Router output
# =============================================================================

@dataclass(frozen=True)
class RouterDecision:
    """
    Either a section to activate, or done=True when nothing is left.
    """
    section_key: Optional[str] = None
    done: bool = False

    @staticmethod
    def finished() -> "RouterDecision":
        return RouterDecision(section_key=None, done=True)


# =============================================================================
# Turn output
# =============================================================================

class TurnKind(str, Enum):
    PROMPT = "prompt"
    HANDOFF = "handoff"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class TurnResult:
    """
    Outcome of one process_turn() call.

    Attributes:
        kind: prompt (ask something), handoff, or terminal
        system_output: Text to display to the user
        question: Question being asked (prompt turns only)
        section_key: Active section after this turn
        intro: Stage intro / checkpoint text sent with the prompt
        error: Parse or validation failure that caused a re-prompt
        handoff_reasons: Reasons of fired handoff triggers
        handoff_actions: Actions of fired handoff triggers
        stale_pointer_recovered: Pointer was out of date; answer discarded
        transitions: State machine states visited during the turn
        debug: Extra diagnostics (applied value, derived updates, ...)
    """
    kind: TurnKind
    system_output: str
    question: Optional[NextQuestion] = None
    section_key: Optional[str] = None
    intro: str = ""
    error: Optional[Union[AnswerParseError, ValidationFailure]] = None
    handoff_reasons: Tuple[str, ...] = ()
    handoff_actions: Tuple[str, ...] = ()
    stale_pointer_recovered: bool = False
    transitions: Tuple[FlowStatus, ...] = ()
    debug: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_reprompt(self) -> bool:
        return self.error is not None

    def to_json(self) -> Dict[str, Any]:
        """JSON-safe view for HTTP responses."""
        payload: Dict[str, Any] = {
            "kind": self.kind.value,
            "system_output": self.system_output,
            "section_key": self.section_key,
            "intro": self.intro,
            "stale_pointer_recovered": self.stale_pointer_recovered,
            "transitions": [t.value for t in self.transitions],
        }
        if self.question is not None:
            payload["question"] = {
                "qid": self.question.qid,
                "stage_key": self.question.stage_key,
                "stage_title": self.question.stage_title,
                "prompt": self.question.prompt,
                "data_type": self.question.data_type,
                "input_kind": self.question.input_kind,
                "options": list(self.question.options),
            }
        if self.error is not None:
            payload["error"] = self.error.message
        if self.kind == TurnKind.HANDOFF:
            payload["handoff_reasons"] = list(self.handoff_reasons)
            payload["handoff_actions"] = list(self.handoff_actions)
        return payload
