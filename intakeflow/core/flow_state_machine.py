"""
Flow State Machine - Per-turn driver across sections (Functional Core)

Responsibilities:
- Resolve the user's pointer (section + pending question) for this turn
- Recover from stale pointers without consuming the answer
- Apply the answer through the questionnaire engine (parse, derive, validate)
- Persist the turn's field patch through the field store
- Detect section completion, re-check it, record it and route onward
- Emit handoff and terminal outcomes

States (reported on TurnResult.transitions):
    ACTIVE(section, qid) -> SECTION_COMPLETE(section) -> ROUTED(next)
    ROUTED(next) -> ACTIVE(next, first qid) | TERMINAL

Design principles:
- Ephemeral per turn: the QuestionnaireState is rebuilt from the field
  store every turn and discarded afterwards
- No partial writes: a rejected answer writes nothing except the clearing
  of a transient extraction field
- Thin orchestration: selection, parsing and routing live in the engine and
  the router; this module only sequences them
- Catalog defects (unknown question at the pointer, routing that cannot
  make progress) raise; user mistakes re-prompt
"""

import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from intakeflow.contracts import (
    COMPLETED_PROCESSES_KEY,
    FLOW_SCOPE,
    FORM_DOCUMENT_KEY,
    TABLE_DRAFT_QID_KEY,
    TABLE_DRAFT_ROWS_KEY,
    TRANSIENT_ANSWER_KEY,
    FlowPointer,
    FlowStatus,
    NextQuestion,
    Question,
)
from intakeflow.core.catalog import Catalog
from intakeflow.core.condition_interpreter import ConditionInterpreter
from intakeflow.core.process_router import ProcessRouter, mark_completed, read_completed
from intakeflow.core.questionnaire_engine import QuestionnaireEngine, QuestionnaireState
from intakeflow.errors import RouterNoEligibleTarget, UnknownQuestionError
from intakeflow.results import (
    AnswerApplied,
    AnswerParseError,
    RouterDecision,
    TurnKind,
    TurnResult,
    ValidationFailure,
)
from intakeflow.utils.helpers import generate_session_id, safe_parse_json
from intakeflow.utils.messages import MessageID, render_message
from intakeflow.utils.stage_summary import render_checkpoint
from intakeflow.utils.table_answers import example_row, is_done_token, parse_table_rows

logger = logging.getLogger(__name__)


class FlowStateMachine:
    """
    Drives one conversation turn end to end.

    Functional core design:
    - Collaborators injected (field store, pointer store, history)
    - process_turn() reads state, transforms it, writes one patch
    - No per-user state held on the instance
    """

    def __init__(self, catalog: Catalog, field_store, pointer_store, history,
                 preprocessor=None, interpreter: Optional[ConditionInterpreter] = None):
        """
        Initialize the state machine.

        Args:
            catalog: Validated catalog
            field_store: get_fields(user, scope) / set_fields(user, scope, patch)
            pointer_store: get_pointer / save_pointer / delete_pointer
            history: append_completion(user, section, session_id, position)
            preprocessor: Optional preprocess(raw, question, vars) collaborator
            interpreter: Condition interpreter shared by engine and router

        Raises:
            TypeError: If a collaborator is missing a required method
        """
        self._validate_collaborators(field_store, pointer_store, history, preprocessor)

        self.catalog = catalog
        self.fields = field_store
        self.pointers = pointer_store
        self.history = history
        self.preprocessor = preprocessor

        self.interpreter = interpreter or ConditionInterpreter()
        self.engine = QuestionnaireEngine(catalog, self.interpreter)
        self.router = ProcessRouter(catalog, self.interpreter)

        logger.info(f"Flow state machine initialized ({len(catalog.process_order)} processes)")

    def _validate_collaborators(self, field_store, pointer_store, history, preprocessor):
        """Validate collaborator interfaces"""
        required = (
            (field_store, "field_store", ("get_fields", "set_fields")),
            (pointer_store, "pointer_store", ("get_pointer", "save_pointer", "delete_pointer")),
            (history, "history", ("append_completion",)),
        )
        if preprocessor is not None:
            required += ((preprocessor, "preprocessor", ("preprocess",)),)

        for obj, name, methods in required:
            for method in methods:
                if not callable(getattr(obj, method, None)):
                    raise TypeError(f"{name} must have callable {method}() method")

    # =========================================================================
    # Public API
    # =========================================================================

    def process_turn(self, user_id: str, raw_answer: str, channel: Optional[str] = None) -> TurnResult:
        """
        Process one user turn.

        First call for a user (no pointer) opens the first eligible section
        and returns its first question; raw_answer is not consumed.

        Args:
            user_id: Conversation owner
            raw_answer: Raw answer text for the pending question
            channel: Channel name used for prompt/intro variants

        Returns:
            TurnResult (prompt, handoff or terminal)

        Raises:
            UnknownQuestionError: Pointer references a question missing from the catalog
            RouterNoEligibleTarget: Routing cannot make progress
        """
        pointer = self.pointers.get_pointer(user_id)

        if pointer is None:
            logger.info(f"No pointer for {user_id}, starting flow")
            return self._start(user_id, channel)

        if pointer.is_terminal:
            return self._terminal_result([FlowStatus.TERMINAL])

        if self.catalog.process(pointer.active_section_key) is None:
            logger.warning(
                f"Pointer of {user_id} references unknown section "
                f"'{pointer.active_section_key}', restarting routing"
            )
            self.pointers.delete_pointer(user_id)
            return self._start(user_id, channel)

        return self._process_active_turn(user_id, pointer, raw_answer or "", channel)

    def reset(self, user_id: str) -> None:
        """Forget the user's pointer (collected data is kept)."""
        self.pointers.delete_pointer(user_id)
        logger.info(f"Flow reset for {user_id}")

    # =========================================================================
    # Turn processing
    # =========================================================================

    def _start(self, user_id: str, channel: Optional[str]) -> TurnResult:
        vars = self.fields.get_fields(user_id, FLOW_SCOPE)
        completed = read_completed(vars)
        decision = self.router.next(completed, vars)
        return self._enter_section(user_id, decision, [FlowStatus.ROUTED], channel, prefix="")

    def _process_active_turn(self, user_id: str, pointer: FlowPointer,
                             raw_answer: str, channel: Optional[str]) -> TurnResult:
        section = pointer.active_section_key
        stage_keys = self.catalog.stage_keys_for_process(section)
        transitions = [FlowStatus.ACTIVE]

        vars = self.fields.get_fields(user_id, section)
        state = self._load_state(vars)

        current_qid = pointer.position
        question = None
        if current_qid:
            question = self.catalog.question(current_qid)
            if question is None:
                raise UnknownQuestionError(current_qid, f"pointer of user '{user_id}'")

        # Step 1: Stale pointer recovery
        expected = self.engine.get_next_question(state, stage_keys, channel)
        if expected is not None and expected.qid != current_qid:
            logger.warning(
                f"Stale pointer for {user_id}: pointer={current_qid or '-'}, "
                f"expected={expected.qid}; answer discarded"
            )
            new_pointer = pointer.advance(expected.qid, expected.stage_key)
            self.pointers.save_pointer(user_id, new_pointer)
            intro = self._compose_intro(state, pointer.stage_key, expected.stage_key, channel)
            return self._prompt_result(expected, section, transitions, intro=intro, stale=True)

        # Step 2: Nothing pending - the section is already done
        if question is None:
            return self._complete_section(user_id, pointer, state, transitions, channel)

        # Step 3: Optional pre-processing (continue intent, answer repair)
        answer = raw_answer
        extra_fields: Dict[str, Any] = {}
        if self.preprocessor is not None:
            pre = self.preprocessor.preprocess(raw_answer, question, state.vars)
            if pre.reask:
                return self._prompt_result(
                    self.engine.next_question_for(question, channel), section, transitions
                )
            answer = pre.answer
            extra_fields = dict(pre.extra_fields)

        # Step 4: Apply the answer
        if question.is_table:
            handled = self._handle_table_answer(user_id, section, state, question, answer, transitions, channel)
            if isinstance(handled, TurnResult):
                return handled
            new_state, applied = handled
        else:
            new_state, outcome = self.engine.parse_and_apply_answer(state, question, answer)
            if isinstance(outcome, AnswerParseError):
                self._clear_transient(user_id, section, vars)
                return self._prompt_result(
                    self.engine.next_question_for(question, channel), section, transitions, error=outcome
                )
            applied = outcome

        # Step 5: Derived rules, then production validations
        new_state, derived = self.engine.apply_derived_rules(new_state)
        failure = self.engine.validate_production_rules(new_state)
        if failure is not None:
            self._clear_transient(user_id, section, vars)
            return self._prompt_result(
                self.engine.next_question_for(question, channel), section, transitions, error=failure
            )

        # Step 6: Checklist, handoff, next question
        pending = self.engine.compute_pending_attachments(new_state)
        handoffs = self.engine.evaluate_handoff_triggers(new_state)
        next_question = self.engine.get_next_question(new_state, stage_keys, channel)

        patch: Dict[str, Any] = dict(extra_fields)
        patch.update(derived)
        patch.update({
            applied.field_key: applied.value,
            FORM_DOCUMENT_KEY: json.dumps(new_state.form_document, ensure_ascii=False),
            TRANSIENT_ANSWER_KEY: "",
            "attachments_pending_json": json.dumps([p.to_json() for p in pending], ensure_ascii=False),
            "attachments_pending_count": len(pending),
            "handoff_required": bool(handoffs),
            "handoff_reasons": " | ".join(h.reason for h in handoffs if h.reason),
            "questionnaire_complete": next_question is None or bool(handoffs),
        })
        if question.is_table:
            patch.update({TABLE_DRAFT_QID_KEY: "", TABLE_DRAFT_ROWS_KEY: ""})
        self.fields.set_fields(user_id, section, patch)

        debug = {
            "applied": {applied.field_key: applied.value},
            "derived_updates": derived,
            "pending_attachments": len(pending),
        }

        # Step 7: Handoff forces completion and leaves the flow
        if handoffs:
            transitions.append(FlowStatus.SECTION_COMPLETE)
            self._record_completion(user_id, section, pointer.session_id, pointer.stage_key)
            self.pointers.delete_pointer(user_id)
            logger.info(f"Handoff for {user_id} in section {section}: {[h.trigger_key for h in handoffs]}")
            return TurnResult(
                kind=TurnKind.HANDOFF,
                system_output=render_message(MessageID.HANDOFF, self.catalog.messages),
                section_key=section,
                handoff_reasons=tuple(h.reason for h in handoffs),
                handoff_actions=tuple(h.action for h in handoffs),
                transitions=tuple(transitions),
                debug=debug,
            )

        # Step 8: Advance within the section
        if next_question is not None:
            self.pointers.save_pointer(user_id, pointer.advance(next_question.qid, next_question.stage_key))
            intro = self._compose_intro(new_state, pointer.stage_key, next_question.stage_key, channel)
            return self._prompt_result(next_question, section, transitions, intro=intro, debug=debug)

        # Step 9: Section complete
        return self._complete_section(user_id, pointer, new_state, transitions, channel, debug=debug)

    # =========================================================================
    # Section lifecycle
    # =========================================================================

    def _complete_section(self, user_id: str, pointer: FlowPointer, state: QuestionnaireState,
                          transitions: List[FlowStatus], channel: Optional[str],
                          debug: Optional[Dict[str, Any]] = None) -> TurnResult:
        """
        Re-check completion, record it, and route to the next section.

        A failed re-check keeps the user in the section, positioned at the
        first required question that still lacks a value.
        """
        section = pointer.active_section_key
        process = self.catalog.process(section)
        stage_keys = process.stage_keys

        if not self.engine.is_section_complete(state, stage_keys, process.ask_if):
            missing = self.engine.missing_required_questions(state, stage_keys)
            reopen = missing[0]
            logger.warning(
                f"Completion re-check failed for {user_id}/{section}; "
                f"reopening at {reopen.qid} ({len(missing)} required field(s) missing)"
            )
            self.pointers.save_pointer(user_id, pointer.advance(reopen.qid, reopen.stage_key))
            return self._prompt_result(
                self.engine.next_question_for(reopen, channel), section, transitions, debug=debug
            )

        transitions.append(FlowStatus.SECTION_COMPLETE)
        completed = self._record_completion(user_id, section, pointer.session_id, pointer.stage_key)

        vars = self.fields.get_fields(user_id, FLOW_SCOPE)
        decision = self.router.next_after(section, completed, vars)
        transitions.append(FlowStatus.ROUTED)

        prefix = render_checkpoint(self.catalog, state, pointer.stage_key) if pointer.stage_key else None
        return self._enter_section(user_id, decision, transitions, channel, prefix=prefix or "", debug=debug)

    def _enter_section(self, user_id: str, decision: RouterDecision, transitions: List[FlowStatus],
                       channel: Optional[str], prefix: str = "",
                       debug: Optional[Dict[str, Any]] = None) -> TurnResult:
        """
        Open the routed section and return its first question.

        Sections with nothing to ask are completed on the spot and routing
        continues; every hop completes one more process, so the loop is
        bounded by the number of processes.
        """
        max_hops = len(self.catalog.process_order) + 1
        hops = 0
        last_section = ""

        while True:
            if decision.done:
                terminal = FlowPointer(active_section_key=None, status=FlowStatus.TERMINAL,
                                       session_id=generate_session_id())
                self.pointers.save_pointer(user_id, terminal)
                transitions.append(FlowStatus.TERMINAL)
                logger.info(f"Flow complete for {user_id}")
                return self._terminal_result(transitions, prefix=prefix, debug=debug)

            hops += 1
            section = decision.section_key
            process = self.catalog.process(section)
            flow_vars = self.fields.get_fields(user_id, FLOW_SCOPE)
            if hops > max_hops or process is None or section in read_completed(flow_vars):
                raise RouterNoEligibleTarget(user_id, section or last_section, hops)
            last_section = section

            session_id = generate_session_id()
            vars = self.fields.get_fields(user_id, section)
            state = self._load_state(vars)
            logger.info(f"Entering section {section} for {user_id} (session {session_id})")

            first = self.engine.get_next_question(state, process.stage_keys, channel)
            if first is not None:
                pointer = FlowPointer(section, first.qid, first.stage_key, FlowStatus.ACTIVE, session_id)
                self.pointers.save_pointer(user_id, pointer)
                transitions.append(FlowStatus.ACTIVE)
                intro = self._compose_intro(state, "", first.stage_key, channel, prefix=prefix)
                return self._prompt_result(first, section, transitions, intro=intro, debug=debug)

            if not self.engine.is_section_complete(state, process.stage_keys, process.ask_if):
                reopen = self.engine.missing_required_questions(state, process.stage_keys)[0]
                pointer = FlowPointer(section, reopen.qid, reopen.stage_key, FlowStatus.ACTIVE, session_id)
                self.pointers.save_pointer(user_id, pointer)
                transitions.append(FlowStatus.ACTIVE)
                intro = self._compose_intro(state, "", reopen.stage_key, channel, prefix=prefix)
                return self._prompt_result(
                    self.engine.next_question_for(reopen, channel), section, transitions, intro=intro, debug=debug
                )

            logger.info(f"Section {section} has nothing to ask, completing it")
            transitions.extend([FlowStatus.SECTION_COMPLETE, FlowStatus.ROUTED])
            completed = self._record_completion(user_id, section, session_id, "main")
            decision = self.router.next_after(section, completed, self.fields.get_fields(user_id, FLOW_SCOPE))

    def _record_completion(self, user_id: str, section: str, session_id: str, position: str) -> List[str]:
        """Append section to completed_processes and to the history log."""
        progress = read_completed(self.fields.get_fields(user_id, FLOW_SCOPE))
        completed = mark_completed(progress, section)
        self.fields.set_fields(user_id, FLOW_SCOPE, {COMPLETED_PROCESSES_KEY: completed})
        self.history.append_completion(user_id, section, session_id, position or "main")
        logger.info(f"Section {section} completed for {user_id}; progress={completed}")
        return completed

    # =========================================================================
    # Table answers
    # =========================================================================

    def _handle_table_answer(self, user_id: str, section: str, state: QuestionnaireState,
                             question: Question, answer: str, transitions: List[FlowStatus],
                             channel: Optional[str]) -> Union[TurnResult, Tuple[QuestionnaireState, AnswerApplied]]:
        """
        Collect table rows into a section-scoped draft.

        Returns:
            TurnResult while the draft is still open, or (state, AnswerApplied)
            once a done token commits the rows
        """
        draft_qid = str(state.vars.get(TABLE_DRAFT_QID_KEY) or "").strip()
        draft_rows = safe_parse_json(state.vars.get(TABLE_DRAFT_ROWS_KEY), default=[])
        rows = draft_rows if draft_qid == question.qid and isinstance(draft_rows, list) else []
        example = example_row(question.table_columns)
        messages = self.catalog.messages
        view = self.engine.next_question_for(question, channel)

        if is_done_token(answer):
            if rows:
                return self.engine.apply_value(state, question, rows)
            self._save_draft(user_id, section, question.qid, rows)
            text = render_message(MessageID.TABLE_START, messages, example=example)
            return self._prompt_result(view, section, transitions, text=text)

        new_rows = parse_table_rows(answer, question.table_columns)
        if not new_rows:
            self._save_draft(user_id, section, question.qid, rows)
            text = render_message(MessageID.TABLE_RETRY, messages, example=example)
            return self._prompt_result(view, section, transitions, text=text)

        combined = rows + new_rows
        self._save_draft(user_id, section, question.qid, combined)
        text = render_message(MessageID.TABLE_MORE, messages)
        return self._prompt_result(view, section, transitions, text=text,
                                   debug={"table_rows": len(combined)})

    def _save_draft(self, user_id: str, section: str, qid: str, rows: List[Dict[str, Any]]) -> None:
        self.fields.set_fields(user_id, section, {
            TABLE_DRAFT_QID_KEY: qid,
            TABLE_DRAFT_ROWS_KEY: json.dumps(rows, ensure_ascii=False),
        })

    # =========================================================================
    # Helpers
    # =========================================================================

    def _load_state(self, vars: Dict[str, Any]) -> QuestionnaireState:
        document = safe_parse_json(vars.get(FORM_DOCUMENT_KEY))
        if not isinstance(document, dict):
            document = None
        return self.engine.build_initial_state(vars, document)

    def _clear_transient(self, user_id: str, section: str, vars: Dict[str, Any]) -> None:
        """Roll back the transient extraction field so the turn doesn't look answered."""
        if vars.get(TRANSIENT_ANSWER_KEY):
            self.fields.set_fields(user_id, section, {TRANSIENT_ANSWER_KEY: ""})

    def _compose_intro(self, state: QuestionnaireState, previous_stage: str, next_stage: str,
                       channel: Optional[str], prefix: str = "") -> str:
        """
        Text sent before a question when the stage changes.

        Order: checkpoint summary of the stage being left, then the intro of
        the stage being entered.
        """
        parts = [prefix]
        if next_stage != previous_stage:
            if previous_stage:
                parts.append(render_checkpoint(self.catalog, state, previous_stage) or "")
            stage = self.catalog.stage(next_stage)
            if stage is not None:
                parts.append(stage.intro_for(channel))
        return "\n\n".join(p.strip() for p in parts if p and p.strip())

    def _prompt_result(self, question: NextQuestion, section: str, transitions: List[FlowStatus],
                       intro: str = "", error: Optional[Union[AnswerParseError, ValidationFailure]] = None,
                       stale: bool = False, text: str = "",
                       debug: Optional[Dict[str, Any]] = None) -> TurnResult:
        body = text or question.prompt
        parts = [error.message if error is not None else "", intro, body]
        return TurnResult(
            kind=TurnKind.PROMPT,
            system_output="\n\n".join(p for p in parts if p),
            question=question,
            section_key=section,
            intro=intro,
            error=error,
            stale_pointer_recovered=stale,
            transitions=tuple(transitions),
            debug=debug or {},
        )

    def _terminal_result(self, transitions: List[FlowStatus], prefix: str = "",
                         debug: Optional[Dict[str, Any]] = None) -> TurnResult:
        closing = render_message(MessageID.TERMINAL, self.catalog.messages)
        return TurnResult(
            kind=TurnKind.TERMINAL,
            system_output="\n\n".join(p for p in (prefix, closing) if p),
            intro=prefix,
            transitions=tuple(transitions),
            debug=debug or {},
        )
