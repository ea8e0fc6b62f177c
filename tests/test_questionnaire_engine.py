"""
Test Suite for the Questionnaire Engine

Covers question selection, defaults, module gating, answer application,
derived rules, computed vars, validations, attachments, handoffs and the
section completion check.

Run with: python -m pytest tests/test_questionnaire_engine.py
"""

import json
import os
import tempfile
import unittest

from intakeflow.contracts import FieldStatus
from intakeflow.core.catalog import load_catalog
from intakeflow.core.questionnaire_engine import QuestionnaireEngine
from intakeflow.results import AnswerApplied, AnswerParseError

ENGINE_CATALOG = {
    "meta": {"name": "engine_test", "version": "1"},
    "engine_contract": {
        "defaults": {"insure_contents": True},
        "module_gating_exempt_stages": ["S1"],
        "derived_rules": [
            {"target_field": "claim_route", "set_when": "intent = 'claim'", "value": "desk"},
            {
                "target_field": "survey",
                "set_when": "building_sum >= 5000000",
                "value": True,
                "maps_to_qid": "Q6",
            },
        ],
        "computed_vars": [
            {"target": "total_sum", "op": "sum", "terms": ["building_sum", "contents_sum"]},
        ],
    },
    "modules_catalog": [
        {"module_key": "contents", "enable_if": "insure_contents = true"},
    ],
    "stages": [
        {"stage_key": "S1", "title": "Intake", "question_ids": ["Q1", "Q2"]},
        {"stage_key": "S2", "title": "Quote", "ask_if": "intent = 'quote'",
         "question_ids": ["Q3", "Q4", "Q5", "Q6", "Q7"]},
    ],
    "questions": [
        {"qid": "Q1", "field_key": "intent", "data_type": "enum", "options": ["quote", "claim"],
         "prompt": "Quote or claim?", "json_path": "request.type"},
        {"qid": "Q2", "field_key": "insure_contents", "data_type": "boolean", "module_key": "contents",
         "prompt": "Insure contents?", "prompt_variants": {"sms": "Contents? y/n"}},
        {"qid": "Q3", "field_key": "contents_sum", "data_type": "number", "module_key": "contents",
         "constraints": "min=1000", "prompt": "Contents sum?", "json_path": "coverage.contents"},
        {"qid": "Q4", "field_key": "building_sum", "data_type": "number",
         "constraints": "min=500000; step=500000", "prompt": "Building sum?",
         "json_path": "coverage.building"},
        {"qid": "Q5", "field_key": "notes", "data_type": "string", "required_mode": "optional",
         "prompt": "Anything else?"},
        {"qid": "Q6", "field_key": "survey", "data_type": "boolean", "audience": "internal",
         "json_path": "underwriting.survey"},
        {"qid": "Q7", "field_key": "id_doc", "data_type": "string", "input_kind": "file",
         "prompt": "Upload ID", "json_path": "attachments.id"},
    ],
    "production_validations": [
        {"name": "total_cap", "field_key": "total_sum", "rule": {"max": 10000000},
         "error": "Total too high"},
    ],
    "handoff_triggers": [
        {"trigger_key": "survey", "when": "survey = true", "reason": "Needs survey", "action": "schedule"},
    ],
    "attachments_checklist": [
        {"qid": "Q7", "field_key": "id_doc", "title": "ID", "json_path": "attachments.id"},
        {"field_key": "deed", "title": "Deed", "when": "building_sum > 0", "json_path": "attachments.deed"},
    ],
}


class EngineTestCase(unittest.TestCase):
    """Shared setup: catalog written to a temp file and loaded."""

    def setUp(self):
        self.temp_file = tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False)
        json.dump(ENGINE_CATALOG, self.temp_file)
        self.temp_file.close()

        self.catalog = load_catalog(self.temp_file.name)
        self.engine = QuestionnaireEngine(self.catalog)

    def tearDown(self):
        os.unlink(self.temp_file.name)

    def answer(self, state, qid, raw):
        new_state, outcome = self.engine.parse_and_apply_answer(state, self.catalog.question(qid), raw)
        self.assertIsInstance(outcome, AnswerApplied, f"{qid} rejected {raw!r}: {outcome}")
        return new_state


# =============================================================================
# PART 1: State construction
# =============================================================================

class TestInitialState(EngineTestCase):

    def test_defaults_are_marked_defaulted(self):
        state = self.engine.build_initial_state({})
        self.assertIs(state.vars["insure_contents"], True)
        self.assertEqual(state.status_of("insure_contents"), FieldStatus.DEFAULTED)
        self.assertEqual(state.defaulted_keys, {"insure_contents"})
        self.assertEqual(state.status_of("intent"), FieldStatus.UNSET)

    def test_null_value_is_replaced_by_default(self):
        state = self.engine.build_initial_state({"insure_contents": None})
        self.assertEqual(state.status_of("insure_contents"), FieldStatus.DEFAULTED)

    def test_existing_value_wins_over_default(self):
        state = self.engine.build_initial_state({"insure_contents": False})
        self.assertIs(state.vars["insure_contents"], False)
        self.assertEqual(state.status_of("insure_contents"), FieldStatus.ANSWERED)
        self.assertEqual(state.defaulted_keys, set())

    def test_input_vars_not_mutated(self):
        existing = {"intent": "quote"}
        self.engine.build_initial_state(existing)
        self.assertEqual(existing, {"intent": "quote"})

    def test_document_rebuilt_from_answered_vars(self):
        state = self.engine.build_initial_state({"intent": "quote", "building_sum": 1000000})
        self.assertEqual(state.form_document, {
            "request": {"type": "quote"},
            "coverage": {"building": 1000000},
        })

    def test_existing_document_is_used(self):
        state = self.engine.build_initial_state({"intent": "quote"}, {"custom": 1})
        self.assertEqual(state.form_document, {"custom": 1})

    def test_export_excludes_defaults_and_computed(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        self.assertIn("total_sum", state.vars)
        self.assertEqual(self.engine.export_collected(state), {"intent": "quote"})


# =============================================================================
# PART 2: Question selection
# =============================================================================

class TestNextQuestion(EngineTestCase):

    def test_first_question_of_first_stage(self):
        state = self.engine.build_initial_state({})
        question = self.engine.get_next_question(state)
        self.assertEqual(question.qid, "Q1")
        self.assertEqual(question.stage_key, "S1")
        self.assertEqual(question.stage_title, "Intake")

    def test_gated_stage_unreachable_until_condition_holds(self):
        """S2 questions never come up while intent is unset."""
        state = self.engine.build_initial_state({})
        state = self.answer(state, "Q2", "yes")
        self.assertEqual(self.engine.get_next_question(state).qid, "Q1")
        self.assertIsNone(self.engine.get_next_question(state, stage_keys=["S2"]))

        state = self.answer(state, "Q1", "quote")
        self.assertEqual(self.engine.get_next_question(state).qid, "Q3")

    def test_defaulted_field_is_still_asked(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        self.assertEqual(self.engine.get_next_question(state).qid, "Q2")

    def test_disabled_module_skips_questions(self):
        state = self.engine.build_initial_state({"intent": "quote", "insure_contents": False})
        self.assertNotIn("contents", state.enabled_modules)
        self.assertEqual(self.engine.get_next_question(state).qid, "Q4")

    def test_gating_exempt_stage_asks_module_question(self):
        """Q2 decides its own module, so it is asked while the module is off."""
        state = self.engine.build_initial_state({"insure_contents": ""})
        self.assertNotIn("contents", state.enabled_modules)
        state = self.answer(state, "Q1", "quote")
        self.assertEqual(self.engine.get_next_question(state).qid, "Q2")

    def test_internal_and_file_questions_never_asked(self):
        state = self.engine.build_initial_state({
            "intent": "quote", "insure_contents": False, "building_sum": 1000000, "notes": "none",
        })
        self.assertIsNone(self.engine.get_next_question(state))

    def test_stage_scope(self):
        state = self.engine.build_initial_state({})
        self.assertIsNone(self.engine.get_next_question(state, stage_keys=[]))

    def test_prompt_variant_for_channel(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        self.assertEqual(self.engine.get_next_question(state, channel="sms").prompt, "Contents? y/n")
        self.assertEqual(self.engine.get_next_question(state, channel="web").prompt, "Insure contents?")

    def test_selection_is_deterministic(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        first = self.engine.get_next_question(state)
        for _ in range(5):
            self.assertEqual(self.engine.get_next_question(state), first)


# =============================================================================
# PART 3: Answer application
# =============================================================================

class TestApplyAnswer(EngineTestCase):

    def test_answer_written_to_vars_and_document(self):
        state = self.engine.build_initial_state({})
        new_state = self.answer(state, "Q1", "Quote")
        self.assertEqual(new_state.vars["intent"], "quote")
        self.assertEqual(new_state.status_of("intent"), FieldStatus.ANSWERED)
        self.assertEqual(new_state.form_document["request"]["type"], "quote")
        self.assertNotIn("intent", state.vars)

    def test_answer_replaces_default(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        state = self.answer(state, "Q2", "no")
        self.assertIs(state.vars["insure_contents"], False)
        self.assertEqual(state.status_of("insure_contents"), FieldStatus.ANSWERED)
        self.assertNotIn("contents", state.enabled_modules)

    def test_parse_failure_leaves_state_untouched(self):
        """No partial writes when the answer is rejected."""
        state = self.engine.build_initial_state({"intent": "quote"})
        before_vars = dict(state.vars)
        before_doc = json.dumps(state.form_document, sort_keys=True)

        new_state, outcome = self.engine.parse_and_apply_answer(state, self.catalog.question("Q4"), "750000")

        self.assertIsInstance(outcome, AnswerParseError)
        self.assertEqual(outcome.code, "step")
        self.assertIs(new_state, state)
        self.assertEqual(state.vars, before_vars)
        self.assertEqual(json.dumps(state.form_document, sort_keys=True), before_doc)

    def test_computed_var_recomputed(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        state = self.answer(state, "Q3", "50,000")
        state = self.answer(state, "Q4", "1000000")
        self.assertEqual(state.vars["total_sum"], 1050000)
        self.assertIsInstance(state.vars["total_sum"], int)

    def test_apply_value_for_pre_typed_rows(self):
        state = self.engine.build_initial_state({})
        question = self.catalog.question("Q5")
        new_state, applied = self.engine.apply_value(state, question, "typed")
        self.assertEqual(applied, AnswerApplied("Q5", "notes", "typed"))
        self.assertEqual(new_state.vars["notes"], "typed")


# =============================================================================
# PART 4: Derived rules, validations, attachments, handoffs
# =============================================================================

class TestPostAnswerChecks(EngineTestCase):

    def test_derived_rule_applied_once(self):
        state = self.engine.build_initial_state({})
        state = self.answer(state, "Q1", "claim")

        state, updates = self.engine.apply_derived_rules(state)
        self.assertEqual(updates, {"claim_route": "desk"})
        self.assertEqual(state.status_of("claim_route"), FieldStatus.ANSWERED)

        again, updates = self.engine.apply_derived_rules(state)
        self.assertEqual(updates, {})
        self.assertIs(again, state)

    def test_derived_rule_writes_mapped_document_path(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        state = self.answer(state, "Q4", "5000000")
        state, updates = self.engine.apply_derived_rules(state)
        self.assertEqual(updates, {"survey": True})
        self.assertIs(state.form_document["underwriting"]["survey"], True)

    def test_derived_rule_not_applied_when_condition_false(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        new_state, updates = self.engine.apply_derived_rules(state)
        self.assertEqual(updates, {})
        self.assertIs(new_state, state)

    def test_production_validation_failure(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        state = self.answer(state, "Q3", "1000000")
        state = self.answer(state, "Q4", "9500000")
        failure = self.engine.validate_production_rules(state)
        self.assertIsNotNone(failure)
        self.assertEqual(failure.rule_name, "total_cap")
        self.assertEqual(failure.message, "Total too high")

    def test_production_validation_passes(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        state = self.answer(state, "Q4", "1000000")
        self.assertIsNone(self.engine.validate_production_rules(state))

    def test_pending_attachments(self):
        state = self.engine.build_initial_state({})
        pending = self.engine.compute_pending_attachments(state)
        self.assertEqual([p.field_key for p in pending], ["id_doc"])

        state = self.engine.build_initial_state({"intent": "quote", "building_sum": 500000})
        pending = self.engine.compute_pending_attachments(state)
        self.assertEqual([p.field_key for p in pending], ["id_doc", "deed"])

        state.form_document["attachments"] = {"id": "scan.pdf"}
        pending = self.engine.compute_pending_attachments(state)
        self.assertEqual([p.field_key for p in pending], ["deed"])

    def test_handoff_triggers(self):
        state = self.engine.build_initial_state({})
        self.assertEqual(self.engine.evaluate_handoff_triggers(state), [])

        state = self.engine.build_initial_state({"survey": True})
        fired = self.engine.evaluate_handoff_triggers(state)
        self.assertEqual(len(fired), 1)
        self.assertEqual(fired[0].reason, "Needs survey")
        self.assertEqual(fired[0].action, "schedule")


# =============================================================================
# PART 5: Completion
# =============================================================================

class TestCompletion(EngineTestCase):

    def test_missing_required_questions(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        missing = [q.qid for q in self.engine.missing_required_questions(state, ["S1", "S2"])]
        # Q2 holds a default, optional/internal/file questions are never required
        self.assertEqual(missing, ["Q3", "Q4"])

    def test_section_complete(self):
        state = self.engine.build_initial_state({
            "intent": "quote", "insure_contents": False, "building_sum": 500000,
        })
        self.assertTrue(self.engine.is_section_complete(state, ["S1", "S2"]))

    def test_ineligible_section_counts_as_complete(self):
        state = self.engine.build_initial_state({"intent": "quote"})
        self.assertFalse(self.engine.is_section_complete(state, ["S2"]))
        self.assertTrue(self.engine.is_section_complete(state, ["S2"], process_ask_if="intent = 'claim'"))

    def test_gated_stage_not_required(self):
        state = self.engine.build_initial_state({"intent": "claim"})
        self.assertTrue(self.engine.is_section_complete(state, ["S2"]))


if __name__ == '__main__':
    unittest.main()
