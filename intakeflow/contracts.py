"""
Semantic contracts for the intake flow engine.

This module defines immutable data structures that serve as contracts
between modules. These are NOT validators - catalog.py is responsible for
building them correctly from catalog JSON.

Design principles:
- Frozen dataclasses (immutable after creation)
- Tuples instead of lists for collection attributes
- No dependencies on other modules
- Definition layer only (no enforcement)

Contents:
- Catalog entries: Question, Stage, ModuleDefinition, DerivedRule,
  ComputedVar, ProductionValidation, HandoffTrigger, AttachmentItem,
  ProcessDefinition
- Engine outputs: NextQuestion
- Flow records: FlowPointer, CompletionRecord
- Enums: FieldStatus, FlowStatus, RequiredMode

Usage:
    from intakeflow.contracts import Question, FlowPointer
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# =============================================================================
# Reserved CollectedData keys
# =============================================================================

# Serialized form document (nested JSON built through json_path writes)
FORM_DOCUMENT_KEY = "form_document_json"

# Ordered list of completed process keys (router progress)
COMPLETED_PROCESSES_KEY = "completed_processes"

# Transient extraction field, cleared whenever a turn fails
TRANSIENT_ANSWER_KEY = "questionnaire_answer"

# Section-scoped table draft state
TABLE_DRAFT_QID_KEY = "__table_draft_qid"
TABLE_DRAFT_ROWS_KEY = "__table_draft_rows_json"

# Scope holding flow-level progress (completed processes)
FLOW_SCOPE = "__flow__"


# =============================================================================
# Enums
# =============================================================================

class FieldStatus(str, Enum):
    """
    Per-field provenance inside a QuestionnaireState.

    UNSET: no value at all
    DEFAULTED: value came from engine defaults; the question is still asked
    ANSWERED: value came from the user or a derived rule
    """
    UNSET = "unset"
    DEFAULTED = "defaulted"
    ANSWERED = "answered"


class FlowStatus(str, Enum):
    """States of the stage/flow state machine."""
    ACTIVE = "active"
    SECTION_COMPLETE = "section_complete"
    ROUTED = "routed"
    TERMINAL = "terminal"


class RequiredMode(str, Enum):
    REQUIRED = "required"
    OPTIONAL = "optional"
    CONDITIONAL = "conditional"


# =============================================================================
# Catalog entries
# =============================================================================

@dataclass(frozen=True)
class Question:
    """
    Immutable question definition from the catalog.

    Attributes:
        qid: Question identifier (e.g., 'Q010')
        stage_key: Stage (section) the question belongs to
        field_key: Flat key written into CollectedData
        data_type: One of string, number, boolean, enum, array, date
        prompt: Default prompt text
        input_kind: Presentation hint ('text', 'table', 'file', ...)
        options: Allowed values for enum/array questions
        constraints: Raw numeric constraints ("min=..; step=..") or dict
        ask_if: Condition expression; question skipped when False
        required_if: Condition expression; question skipped when False
        required_mode: required | optional | conditional
        module_key: Coverage module gating this question
        collection_mode: e.g. 'chat', 'attachment'
        json_path: Target location inside the form document
        audience: 'customer' questions are asked, everything else is internal
        prompt_variants: Channel name -> prompt text
        table_columns: Column names for table input
        label: Short label for stage summaries
    """
    qid: str
    stage_key: str
    field_key: str
    data_type: str = "string"
    prompt: str = ""
    input_kind: str = ""
    options: Tuple[str, ...] = ()
    constraints: Any = None
    ask_if: str = ""
    required_if: str = ""
    required_mode: RequiredMode = RequiredMode.REQUIRED
    module_key: str = ""
    collection_mode: str = ""
    json_path: str = ""
    audience: str = "customer"
    prompt_variants: Tuple[Tuple[str, str], ...] = ()
    table_columns: Tuple[str, ...] = ()
    label: str = ""

    @property
    def is_out_of_band(self) -> bool:
        """File uploads and attachment-mode questions never block the conversation."""
        return self.input_kind == "file" or "attachment" in (self.collection_mode or "")

    @property
    def is_table(self) -> bool:
        return self.input_kind == "table" and self.data_type == "array"

    def prompt_for(self, channel: Optional[str] = None) -> str:
        if channel:
            for name, text in self.prompt_variants:
                if name == channel and text:
                    return text
        return self.prompt


@dataclass(frozen=True)
class CompletionCheckpoint:
    send_summary: bool = False
    summary_template: str = ""


@dataclass(frozen=True)
class Stage:
    """
    Ordered group of questions within the questionnaire.

    Attributes:
        stage_key: Stage identifier
        title: Human-readable title
        question_ids: Question ids in ask order
        ask_if: Condition gating the whole stage
        intro: Text sent once when the conversation enters the stage
        intro_variants: Channel name -> intro text
        completion_checkpoint: Summary sent when leaving the stage
        module_gating_exempt: Questions here are asked even when their
            module is disabled (they decide which modules are enabled)
    """
    stage_key: str
    title: str = ""
    question_ids: Tuple[str, ...] = ()
    ask_if: str = ""
    intro: str = ""
    intro_variants: Tuple[Tuple[str, str], ...] = ()
    completion_checkpoint: CompletionCheckpoint = field(default_factory=CompletionCheckpoint)
    module_gating_exempt: bool = False

    def intro_for(self, channel: Optional[str] = None) -> str:
        if channel:
            for name, text in self.intro_variants:
                if name == channel and text:
                    return text
        return self.intro


@dataclass(frozen=True)
class ModuleDefinition:
    module_key: str
    title: str = ""
    enable_if: str = ""


@dataclass(frozen=True)
class DerivedRule:
    """When set_when holds, write value into target_field (and maps_to_qid's json_path)."""
    target_field: str
    set_when: str
    value: Any
    maps_to_qid: str = ""


@dataclass(frozen=True)
class ComputedTerm:
    """
    One addend of a computed var.

    fields are aliases: the first non-zero numeric value among them is used.
    """
    fields: Tuple[str, ...]
    factor: float = 1.0


@dataclass(frozen=True)
class ComputedVar:
    """
    Catalog-declared aggregate scalar (e.g., total sum insured).

    op: 'sum' adds every term, 'first_nonzero' takes the first term that
        is not zero.
    """
    target: str
    op: str = "sum"
    terms: Tuple[ComputedTerm, ...] = ()


@dataclass(frozen=True)
class ProductionValidation:
    name: str
    field_key: str
    error: str
    when: str = ""
    min: Optional[float] = None
    max: Optional[float] = None
    multiple_of: Optional[float] = None


@dataclass(frozen=True)
class HandoffTrigger:
    trigger_key: str
    when: str
    reason: str = ""
    action: str = ""


@dataclass(frozen=True)
class AttachmentItem:
    qid: str
    field_key: str
    json_path: str
    title: str = ""
    when: str = ""
    notes: str = ""


@dataclass(frozen=True)
class ProcessDefinition:
    """
    Routable section of the conversation.

    Attributes:
        process_key: Section identifier used by the router
        title: Human-readable title
        stage_keys: Questionnaire stages collected while this process is active
        ask_if: Eligibility condition evaluated by the router
        forced_next: Process that must follow this one once it completes
    """
    process_key: str
    title: str = ""
    stage_keys: Tuple[str, ...] = ()
    ask_if: str = ""
    forced_next: str = ""


# =============================================================================
# Engine outputs
# =============================================================================

@dataclass(frozen=True)
class NextQuestion:
    """
    Question selected by the engine, ready for presentation.

    Mirrors the catalog Question with the prompt already resolved for the
    requested channel and the stage title attached.
    """
    qid: str
    stage_key: str
    stage_title: str
    prompt: str
    field_key: str
    data_type: str
    input_kind: str = ""
    options: Tuple[str, ...] = ()
    constraints: Any = None
    json_path: str = ""


# =============================================================================
# Flow records
# =============================================================================

@dataclass(frozen=True)
class FlowPointer:
    """
    Which section a user is in and which question is pending.

    Mutated exclusively by the flow state machine (by replacement, since
    the dataclass is frozen). Serializable to/from JSON for pointer stores.

    Attributes:
        active_section_key: Current process key (None once terminal)
        position: Pending question id ('' when nothing is pending)
        stage_key: Stage of the pending question, used to detect stage changes
        status: ACTIVE or TERMINAL
        session_id: Identifier of this section session (for history records)
    """
    active_section_key: Optional[str]
    position: str = ""
    stage_key: str = ""
    status: FlowStatus = FlowStatus.ACTIVE
    session_id: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status == FlowStatus.TERMINAL

    def advance(self, qid: str, stage_key: str) -> "FlowPointer":
        return replace(self, position=qid, stage_key=stage_key)

    def to_json(self) -> Dict[str, Any]:
        return {
            "active_section_key": self.active_section_key,
            "position": self.position,
            "stage_key": self.stage_key,
            "status": self.status.value,
            "session_id": self.session_id,
        }

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "FlowPointer":
        return FlowPointer(
            active_section_key=data.get("active_section_key"),
            position=data.get("position") or "",
            stage_key=data.get("stage_key") or "",
            status=FlowStatus(data.get("status", FlowStatus.ACTIVE.value)),
            session_id=data.get("session_id") or "",
        )


@dataclass(frozen=True)
class CompletionRecord:
    """Append-only record that a section was completed."""
    section_key: str
    position: str
    session_id: str
    completed_at: str

    def to_json(self) -> Dict[str, Any]:
        return {
            "section_key": self.section_key,
            "position": self.position,
            "session_id": self.session_id,
            "completed_at": self.completed_at,
        }

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "CompletionRecord":
        return CompletionRecord(
            section_key=data["section_key"],
            position=data.get("position", "main"),
            session_id=data.get("session_id", ""),
            completed_at=data.get("completed_at", ""),
        )
