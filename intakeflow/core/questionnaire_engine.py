"""
Questionnaire Engine - Stateless next-question selection and answer application

Responsibilities:
- Build the per-turn QuestionnaireState from persisted data and catalog defaults
- Select the next question to ask (stage order, gating, defaults awareness)
- Parse and apply answers into vars and the form document
- Apply derived rules and recompute computed vars / enabled modules
- Evaluate production validations, pending attachments and handoff triggers
- Decide whether a section's required data is complete

Design principles:
- Stateless: all state comes from the QuestionnaireState argument
- Explicit threading: operations return (new_state, output); the input
  state is never mutated, so a failed operation leaves nothing behind
- Deterministic: same catalog + state always produces the same output
- Defaults are provisional: a DEFAULTED field is still asked and is never
  exported back to persistence
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from intakeflow.contracts import (
    FieldStatus,
    NextQuestion,
    Question,
    RequiredMode,
    Stage,
)
from intakeflow.core.answer_parser import is_multiple, parse_answer
from intakeflow.core.catalog import Catalog
from intakeflow.core.condition_interpreter import ConditionInterpreter, to_number
from intakeflow.core.json_path import get_by_path, set_by_path
from intakeflow.results import (
    AnswerApplied,
    AnswerOutcome,
    FiredHandoff,
    PendingAttachment,
    ValidationFailure,
)
from intakeflow.utils.helpers import is_answered, is_present

logger = logging.getLogger(__name__)


@dataclass
class QuestionnaireState:
    """
    Per-turn working copy of a user's questionnaire data.

    Attributes:
        form_document: Nested document built through json_path writes
        vars: Flat field map used by condition evaluation
        enabled_modules: Modules whose enable_if currently holds
        field_status: Provenance of each field (UNSET / DEFAULTED / ANSWERED)
    """
    form_document: Dict[str, Any] = field(default_factory=dict)
    vars: Dict[str, Any] = field(default_factory=dict)
    enabled_modules: frozenset = frozenset()
    field_status: Dict[str, FieldStatus] = field(default_factory=dict)

    def status_of(self, key: str) -> FieldStatus:
        return self.field_status.get(key, FieldStatus.UNSET)

    @property
    def defaulted_keys(self) -> Set[str]:
        """Fields whose current value came from engine defaults."""
        return {k for k, s in self.field_status.items() if s == FieldStatus.DEFAULTED}

    def copy(self) -> "QuestionnaireState":
        return QuestionnaireState(
            form_document=copy.deepcopy(self.form_document),
            vars=copy.deepcopy(self.vars),
            enabled_modules=self.enabled_modules,
            field_status=dict(self.field_status),
        )


class QuestionnaireEngine:
    """
    Stateless questionnaire engine bound to one catalog.

    Holds no per-user data; every method takes the state it works on.
    """

    def __init__(self, catalog: Catalog, interpreter: Optional[ConditionInterpreter] = None):
        """
        Args:
            catalog: Validated catalog
            interpreter: Condition interpreter (defaults to a logging one)
        """
        self.catalog = catalog
        self.interpreter = interpreter or ConditionInterpreter()
        self._computed_targets = frozenset(cv.target for cv in catalog.computed_vars)

        logger.info(f"Questionnaire engine initialized for catalog '{catalog.name}'")

    # =========================================================================
    # State construction
    # =========================================================================

    def build_initial_state(
        self,
        existing_vars: Optional[Dict[str, Any]] = None,
        existing_document: Optional[Dict[str, Any]] = None,
    ) -> QuestionnaireState:
        """
        Build the working state for one turn.

        Args:
            existing_vars: Persisted CollectedData overlay
            existing_document: Persisted form document (rebuilt from vars if None)

        Returns:
            QuestionnaireState with defaults, computed vars and modules applied
        """
        vars = copy.deepcopy(existing_vars or {})
        status: Dict[str, FieldStatus] = {}

        for key, value in vars.items():
            if is_answered(value):
                status[key] = FieldStatus.ANSWERED

        for key, value in self.catalog.defaults.items():
            if vars.get(key) is None:
                vars[key] = value
                status[key] = FieldStatus.DEFAULTED

        if existing_document is not None:
            document = copy.deepcopy(existing_document)
        else:
            document = self._document_from_vars(vars, status)

        state = QuestionnaireState(form_document=document, vars=vars, field_status=status)
        self._recompute(state)
        return state

    def export_collected(self, state: QuestionnaireState) -> Dict[str, Any]:
        """
        Flatten state back to CollectedData.

        Defaulted and computed fields are excluded: they are rebuilt every
        turn and must never be persisted.
        """
        return {
            key: copy.deepcopy(value)
            for key, value in state.vars.items()
            if state.status_of(key) != FieldStatus.DEFAULTED and key not in self._computed_targets
        }

    # =========================================================================
    # Question selection
    # =========================================================================

    def get_next_question(
        self,
        state: QuestionnaireState,
        stage_keys: Optional[Iterable[str]] = None,
        channel: Optional[str] = None,
    ) -> Optional[NextQuestion]:
        """
        Select the next question to ask.

        Args:
            state: Current questionnaire state
            stage_keys: Restrict selection to these stages (a process's
                stages); None means every stage
            channel: Channel name used to pick a prompt variant

        Returns:
            NextQuestion, or None when nothing in scope needs asking
        """
        allowed = set(stage_keys) if stage_keys is not None else None

        for stage in self.catalog.stages:
            if allowed is not None and stage.stage_key not in allowed:
                continue
            if not self._holds(stage.ask_if, state):
                continue

            for question in self.catalog.iter_stage_questions(stage):
                if self._should_ask(question, stage, state):
                    return self._to_next_question(question, stage, channel)

        return None

    def next_question_for(self, question: Question, channel: Optional[str] = None) -> NextQuestion:
        """Presentation view of a specific question (e.g., when re-prompting)."""
        stage = self.catalog.stage(question.stage_key) or Stage(stage_key=question.stage_key)
        return self._to_next_question(question, stage, channel)

    # =========================================================================
    # Answer application
    # =========================================================================

    def parse_and_apply_answer(
        self,
        state: QuestionnaireState,
        question: Question,
        raw_answer: str,
    ) -> Tuple[QuestionnaireState, AnswerOutcome]:
        """
        Parse a raw answer and write it into a copy of the state.

        Returns:
            (new_state, AnswerApplied) on success
            (state, AnswerParseError) on failure - the input state is returned
            untouched
        """
        value, error = parse_answer(question, raw_answer, self.catalog.messages)
        if error is not None:
            logger.info(f"Answer rejected for {question.qid}: {error.code}")
            return state, error
        return self.apply_value(state, question, value)

    def apply_value(
        self,
        state: QuestionnaireState,
        question: Question,
        value: Any,
    ) -> Tuple[QuestionnaireState, AnswerApplied]:
        """Write an already-typed value (table rows, pre-extracted values)."""
        new_state = state.copy()
        new_state.vars[question.field_key] = value
        new_state.field_status[question.field_key] = FieldStatus.ANSWERED
        if question.json_path:
            set_by_path(new_state.form_document, question.json_path, copy.deepcopy(value))

        self._recompute(new_state)
        logger.debug(f"Applied {question.qid} -> {question.field_key}={value!r}")
        return new_state, AnswerApplied(question.qid, question.field_key, value)

    def apply_derived_rules(self, state: QuestionnaireState) -> Tuple[QuestionnaireState, Dict[str, Any]]:
        """
        Apply derived rules in declared order.

        Each rule sees the writes of earlier rules. Only fields whose value or
        status actually changes are reported, so re-running on unchanged input
        returns no updates.

        Returns:
            (new_state, updates) - new_state is the input state when nothing changed
        """
        new_state = state.copy()
        updates: Dict[str, Any] = {}

        for rule in self.catalog.derived_rules:
            if not self._holds(rule.set_when, new_state):
                continue

            question = None
            if rule.maps_to_qid:
                question = self.catalog.question(rule.maps_to_qid)
                if question is None:
                    logger.warning(
                        f"Derived rule for '{rule.target_field}' maps to unknown question "
                        f"'{rule.maps_to_qid}', skipped"
                    )
                    continue

            target = rule.target_field
            unchanged = (
                new_state.vars.get(target) == rule.value
                and new_state.status_of(target) == FieldStatus.ANSWERED
            )
            if unchanged:
                continue

            value = copy.deepcopy(rule.value)
            new_state.vars[target] = value
            new_state.field_status[target] = FieldStatus.ANSWERED
            if question is not None and question.json_path:
                set_by_path(new_state.form_document, question.json_path, copy.deepcopy(value))
            updates[target] = value

        if not updates:
            return state, {}

        self._recompute(new_state)
        logger.info(f"Derived rules updated: {sorted(updates)}")
        return new_state, updates

    # =========================================================================
    # Post-answer checks
    # =========================================================================

    def validate_production_rules(self, state: QuestionnaireState) -> Optional[ValidationFailure]:
        """
        Check production validations in declared order.

        Rules whose condition is false, or whose field is empty or
        non-numeric, are skipped.

        Returns:
            First failing rule, or None
        """
        for rule in self.catalog.production_validations:
            if not self._holds(rule.when, state):
                continue

            raw = state.vars.get(rule.field_key)
            if raw is None or raw == "":
                continue
            if isinstance(raw, str):
                raw = raw.replace("₪", "")
            number = to_number(raw)
            if number is None:
                continue

            failed = (
                (rule.min is not None and number < rule.min)
                or (rule.max is not None and number > rule.max)
                or (rule.multiple_of is not None and not is_multiple(number, rule.multiple_of))
            )
            if failed:
                logger.info(f"Production validation '{rule.name}' failed for {rule.field_key}={number}")
                return ValidationFailure(rule.name, rule.field_key, rule.error)

        return None

    def compute_pending_attachments(self, state: QuestionnaireState) -> List[PendingAttachment]:
        """Attachments whose condition holds and whose document slot is still empty."""
        pending = []
        for item in self.catalog.attachments:
            if item.when and not self._holds(item.when, state):
                continue
            if is_answered(get_by_path(state.form_document, item.json_path)):
                continue
            pending.append(PendingAttachment(
                qid=item.qid,
                field_key=item.field_key,
                title=item.title,
                json_path=item.json_path,
                notes=item.notes,
            ))
        return pending

    def evaluate_handoff_triggers(self, state: QuestionnaireState) -> List[FiredHandoff]:
        fired = [
            FiredHandoff(t.trigger_key, t.reason, t.action)
            for t in self.catalog.handoff_triggers
            if self._holds(t.when, state)
        ]
        if fired:
            logger.info(f"Handoff triggers fired: {[f.trigger_key for f in fired]}")
        return fired

    # =========================================================================
    # Completion
    # =========================================================================

    def missing_required_questions(
        self,
        state: QuestionnaireState,
        stage_keys: Iterable[str],
    ) -> List[Question]:
        """
        Required questions in scope whose field has no present value.

        Requirement per required_mode:
        - required, conditional: ask_if and required_if hold
          (an empty condition holds)
        - optional: never required

        Internal-audience and out-of-band (file/attachment) questions are
        never required here; module-gated questions are only required while
        their module is enabled.
        """
        allowed = set(stage_keys)
        missing = []

        for stage in self.catalog.stages:
            if stage.stage_key not in allowed:
                continue
            if not self._holds(stage.ask_if, state):
                continue

            for question in self.catalog.iter_stage_questions(stage):
                if question.audience != "customer" or question.is_out_of_band:
                    continue
                if self._gated_out(question, stage, state):
                    continue
                if not self._is_required(question, state):
                    continue
                if not is_present(state.vars.get(question.field_key)):
                    missing.append(question)

        return missing

    def is_section_complete(
        self,
        state: QuestionnaireState,
        stage_keys: Iterable[str],
        process_ask_if: str = "",
    ) -> bool:
        """
        Completion re-check for a section.

        A section whose own eligibility condition is false counts as complete.
        """
        if process_ask_if and not self._holds(process_ask_if, state):
            return True
        return not self.missing_required_questions(state, stage_keys)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _holds(self, expression: str, state: QuestionnaireState) -> bool:
        return self.interpreter.evaluate(expression, state.vars)

    def _gated_out(self, question: Question, stage: Stage, state: QuestionnaireState) -> bool:
        if stage.module_gating_exempt or not question.module_key:
            return False
        return question.module_key not in state.enabled_modules

    def _should_ask(self, question: Question, stage: Stage, state: QuestionnaireState) -> bool:
        if question.audience != "customer":
            return False
        if self._gated_out(question, stage, state):
            return False
        if question.is_out_of_band:
            return False

        field_key = question.field_key
        if state.status_of(field_key) != FieldStatus.DEFAULTED and is_answered(state.vars.get(field_key)):
            return False

        if not self._holds(question.ask_if, state):
            return False
        if not self._holds(question.required_if, state):
            return False
        return True

    def _is_required(self, question: Question, state: QuestionnaireState) -> bool:
        # Must agree with _should_ask: a question never offered is never required
        if question.required_mode == RequiredMode.OPTIONAL:
            return False
        if not self._holds(question.ask_if, state):
            return False
        return self._holds(question.required_if, state)

    def _to_next_question(self, question: Question, stage: Stage, channel: Optional[str]) -> NextQuestion:
        return NextQuestion(
            qid=question.qid,
            stage_key=question.stage_key or stage.stage_key,
            stage_title=stage.title,
            prompt=question.prompt_for(channel),
            field_key=question.field_key,
            data_type=question.data_type,
            input_kind=question.input_kind,
            options=question.options,
            constraints=question.constraints,
            json_path=question.json_path,
        )

    def _document_from_vars(self, vars: Dict[str, Any], status: Dict[str, FieldStatus]) -> Dict[str, Any]:
        document: Dict[str, Any] = {}
        for question in self.catalog.questions.values():
            key = question.field_key
            if status.get(key) != FieldStatus.ANSWERED or not question.json_path:
                continue
            set_by_path(document, question.json_path, copy.deepcopy(vars[key]))
        return document

    def _recompute(self, state: QuestionnaireState) -> None:
        """Refresh computed vars, then enabled modules (modules may read computed vars)."""
        for computed in self.catalog.computed_vars:
            values = [self._term_value(term.fields, state) * term.factor for term in computed.terms]
            if computed.op == "first_nonzero":
                result = next((v for v in values if v), 0)
            else:
                result = sum(values)
            state.vars[computed.target] = int(result) if float(result).is_integer() else result

        state.enabled_modules = frozenset(
            m.module_key for m in self.catalog.modules if self._holds(m.enable_if, state)
        )

    @staticmethod
    def _term_value(fields, state: QuestionnaireState) -> float:
        for key in fields:
            number = to_number(state.vars.get(key))
            if number:
                return number
        return 0.0
