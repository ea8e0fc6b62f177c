"""
Tests for table row parsing and answer pre-processors
"""

import pytest

from intakeflow.contracts import Question
from intakeflow.utils.answer_preprocessor import (
    ContinueIntentPreprocessor,
    PreprocessorChain,
    PreprocessResult,
)
from intakeflow.utils.table_answers import example_row, is_done_token, parse_table_rows

COLUMNS = ("item", "value")


class TestTableRows:

    @pytest.mark.parametrize("raw", ["done", "DONE", " סיום ", "אין עוד", "finished"])
    def test_done_tokens(self, raw):
        assert is_done_token(raw)

    def test_not_done(self):
        assert not is_done_token("done with ring")
        assert not is_done_token("")

    def test_text_row(self):
        assert parse_table_rows("ring, 60000", COLUMNS) == [{"item": "ring", "value": "60000"}]

    def test_multiple_lines_and_separators(self):
        rows = parse_table_rows("ring | 60000\nwatch; 80000", COLUMNS)
        assert rows == [
            {"item": "ring", "value": "60000"},
            {"item": "watch", "value": "80000"},
        ]

    def test_extra_cells_go_to_notes(self):
        rows = parse_table_rows("painting, 120000, in the lobby", COLUMNS)
        assert rows == [{"item": "painting", "value": "120000", "notes": "in the lobby"}]

    def test_too_few_cells_rejected(self):
        assert parse_table_rows("just a ring", COLUMNS) is None

    def test_json_object_and_array(self):
        assert parse_table_rows('{"item": "ring", "value": 1}', COLUMNS) == [{"item": "ring", "value": 1}]
        assert parse_table_rows('["a", {"item": "b"}]', COLUMNS) == [{"value": "a"}, {"item": "b"}]
        assert parse_table_rows("[]", COLUMNS) is None

    def test_without_columns(self):
        assert parse_table_rows("laptop, work, 2023", ()) == [{"value": "laptop", "details": ["work", "2023"]}]

    def test_blank(self):
        assert parse_table_rows("   ", COLUMNS) is None

    def test_example_row(self):
        assert example_row(COLUMNS) == "item, value"
        assert example_row(()) == "item, details"


def make_question(data_type):
    return Question(qid="Q1", stage_key="s", field_key="f", data_type=data_type)


class TestPreprocessors:

    def test_continue_intent_reasks(self):
        result = ContinueIntentPreprocessor().preprocess("OK!", make_question("boolean"), {})
        assert result.reask is True

    def test_continue_intent_hebrew(self):
        result = ContinueIntentPreprocessor().preprocess("המשך", make_question("number"), {})
        assert result.reask is True

    def test_free_text_question_accepts_ok(self):
        result = ContinueIntentPreprocessor().preprocess(" ok ", make_question("string"), {})
        assert result.reask is False
        assert result.answer == "ok"

    def test_regular_answer_passes_through(self):
        result = ContinueIntentPreprocessor().preprocess("yes", make_question("boolean"), {})
        assert result == PreprocessResult(answer="yes")

    def test_chain_collects_extra_fields(self):
        class PhoneSplitter:
            def preprocess(self, raw, question, vars):
                name, _, phone = raw.partition(" ")
                return PreprocessResult(answer=name, extra_fields={"phone": phone})

        chain = PreprocessorChain(PhoneSplitter(), ContinueIntentPreprocessor())
        result = chain.preprocess("Dana 050-1234567", make_question("string"), {})
        assert result.answer == "Dana"
        assert result.extra_fields == {"phone": "050-1234567"}

    def test_chain_rejects_invalid_member(self):
        with pytest.raises(TypeError, match="preprocess"):
            PreprocessorChain(object())
