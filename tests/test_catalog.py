"""
Test Suite for the Catalog Loader

Run with: python -m pytest tests/test_catalog.py
"""

import copy
import json
import os
import tempfile
import unittest

from intakeflow.contracts import RequiredMode
from intakeflow.core.catalog import DEFAULT_PROCESS_KEY, Catalog, load_catalog
from intakeflow.errors import CatalogError

SAMPLE_CATALOG_PATH = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data", "sample_catalog.json"
)

MINIMAL_CATALOG = {
    "meta": {"name": "mini", "version": "2"},
    "engine_contract": {"defaults": {"region": "north"}},
    "stages": [
        {"stage_key": "s1", "question_ids": ["Q1", "Q2"]},
    ],
    "questions": [
        {"qid": "Q1", "field_key": "name", "prompt": "Name?"},
        {"q_id": "Q2", "field_key": "age", "data_type": "Number", "input_type": "text"},
    ],
}


class TestCatalogLoading(unittest.TestCase):
    """Loading from disk and building contract objects."""

    def setUp(self):
        self.temp_file = tempfile.NamedTemporaryFile(mode='w', suffix='.json', delete=False)
        json.dump(MINIMAL_CATALOG, self.temp_file)
        self.temp_file.close()

    def tearDown(self):
        os.unlink(self.temp_file.name)

    def test_load_from_file(self):
        catalog = load_catalog(self.temp_file.name)
        self.assertEqual(catalog.name, "mini")
        self.assertEqual(catalog.version, "2")
        self.assertEqual(set(catalog.questions), {"Q1", "Q2"})

    def test_missing_file_raises(self):
        with self.assertRaises(FileNotFoundError):
            load_catalog("/nonexistent/catalog.json")

    def test_invalid_json_raises_catalog_error(self):
        with open(self.temp_file.name, 'w') as f:
            f.write("{not json")
        with self.assertRaises(CatalogError):
            load_catalog(self.temp_file.name)

    def test_aliases_and_normalisation(self):
        """q_id, input_type and mixed-case data types are accepted."""
        catalog = Catalog(MINIMAL_CATALOG)
        q2 = catalog.question("Q2")
        self.assertEqual(q2.data_type, "number")
        self.assertEqual(q2.input_kind, "text")
        self.assertEqual(q2.json_path, "age")
        self.assertEqual(q2.required_mode, RequiredMode.REQUIRED)

    def test_required_mode_spellings(self):
        """Legacy Y/yes spellings are required; an empty mode follows required_if."""
        raw = copy.deepcopy(MINIMAL_CATALOG)
        raw["stages"][0]["question_ids"] += ["Q3", "Q4", "Q5"]
        raw["questions"][0]["required_mode"] = "Y"
        raw["questions"][1]["required_mode"] = " yes "
        raw["questions"] += [
            {"qid": "Q3", "field_key": "staff", "required_mode": "", "required_if": "has_staff = true"},
            {"qid": "Q4", "field_key": "notes", "required_mode": "No"},
            {"qid": "Q5", "field_key": "city", "required_mode": "Optional"},
        ]
        catalog = Catalog(raw)
        self.assertEqual(catalog.question("Q1").required_mode, RequiredMode.REQUIRED)
        self.assertEqual(catalog.question("Q2").required_mode, RequiredMode.REQUIRED)
        self.assertEqual(catalog.question("Q3").required_mode, RequiredMode.CONDITIONAL)
        self.assertEqual(catalog.question("Q4").required_mode, RequiredMode.OPTIONAL)
        self.assertEqual(catalog.question("Q5").required_mode, RequiredMode.OPTIONAL)

    def test_unknown_required_mode_rejected(self):
        raw = copy.deepcopy(MINIMAL_CATALOG)
        raw["questions"][0]["required_mode"] = "sometimes"
        with self.assertRaises(CatalogError) as ctx:
            Catalog(raw)
        self.assertIn("invalid required_mode 'sometimes'", str(ctx.exception))

    def test_json_path_must_start_with_key(self):
        raw = copy.deepcopy(MINIMAL_CATALOG)
        raw["questions"][0]["json_path"] = "[0].name"
        with self.assertRaises(CatalogError) as ctx:
            Catalog(raw)
        self.assertIn("json_path '[0].name' that does not start with a key", str(ctx.exception))

    def test_questions_inherit_stage(self):
        catalog = Catalog(MINIMAL_CATALOG)
        self.assertEqual(catalog.question("Q1").stage_key, "s1")

    def test_stage_question_ids_fall_back_to_question_stage(self):
        raw = copy.deepcopy(MINIMAL_CATALOG)
        del raw["stages"][0]["question_ids"]
        raw["questions"][0]["stage_key"] = "s1"
        raw["questions"][1]["stage_key"] = "s1"
        catalog = Catalog(raw)
        self.assertEqual(catalog.stage("s1").question_ids, ("Q1", "Q2"))

    def test_default_process_wraps_all_stages(self):
        catalog = Catalog(MINIMAL_CATALOG)
        self.assertEqual(catalog.process_order, (DEFAULT_PROCESS_KEY,))
        self.assertEqual(catalog.stage_keys_for_process(DEFAULT_PROCESS_KEY), ("s1",))

    def test_defaults_are_copies(self):
        catalog = Catalog(MINIMAL_CATALOG)
        catalog.defaults["region"] = "south"
        self.assertEqual(catalog.defaults["region"], "north")

    def test_engine_contract_under_runtime(self):
        raw = copy.deepcopy(MINIMAL_CATALOG)
        raw["runtime"] = {"engine_contract": raw.pop("engine_contract")}
        self.assertEqual(Catalog(raw).defaults, {"region": "north"})

    def test_sample_catalog_loads(self):
        catalog = load_catalog(SAMPLE_CATALOG_PATH)
        self.assertEqual(catalog.process_order, ("01", "02", "03", "04"))
        self.assertTrue(catalog.stage("intake").module_gating_exempt)
        self.assertEqual(catalog.process("03").forced_next, "04")
        self.assertEqual(catalog.process_for_stage("contents"), "02")
        self.assertTrue(catalog.question("Q022").is_table)
        self.assertTrue(catalog.question("Q040").is_out_of_band)
        self.assertEqual(catalog.question("Q003").prompt_for("whatsapp"), "Insure the building? yes / no")
        self.assertEqual(catalog.question("Q003").prompt_for("web"), catalog.question("Q003").prompt)


class TestCatalogValidation(unittest.TestCase):
    """Structural problems are reported together."""

    def test_collects_every_error(self):
        raw = {
            "stages": [
                {"stage_key": "s1", "question_ids": ["Q1", "Q404"]},
                {"stage_key": "s1"},
            ],
            "questions": [
                {"qid": "Q1", "field_key": "a", "data_type": "blob"},
                {"qid": "Q2"},
            ],
            "processes": [
                {"process_key": "p1", "stage_keys": ["s1", "ghost"], "forced_next": "p9"},
            ],
            "process_order": ["p1", "p2"],
        }
        with self.assertRaises(CatalogError) as ctx:
            Catalog(raw)
        message = str(ctx.exception)
        self.assertIn("Catalog validation failed", message)
        self.assertIn("unsupported data_type 'blob'", message)
        self.assertIn("Question 'Q2' missing 'field_key'", message)
        self.assertIn("Duplicate stage key 's1'", message)
        self.assertIn("undefined question 'Q404'", message)
        self.assertIn("undefined stage 'ghost'", message)
        self.assertIn("forces undefined process 'p9'", message)
        self.assertIn("'p2' in process_order but not defined", message)

    def test_no_stages(self):
        with self.assertRaises(CatalogError):
            Catalog({"questions": []})

    def test_stage_in_two_processes(self):
        raw = copy.deepcopy(MINIMAL_CATALOG)
        raw["processes"] = [
            {"process_key": "a", "stage_keys": ["s1"]},
            {"process_key": "b", "stage_keys": ["s1"]},
        ]
        with self.assertRaises(CatalogError) as ctx:
            Catalog(raw)
        self.assertIn("belongs to both", str(ctx.exception))

    def test_malformed_condition_only_warns(self):
        raw = copy.deepcopy(MINIMAL_CATALOG)
        raw["questions"][0]["ask_if"] = "intent = = 'x'"
        with self.assertLogs("intakeflow.core.catalog", level="WARNING") as logs:
            Catalog(raw)
        self.assertTrue(any("Malformed condition" in line for line in logs.output))

    def test_invalid_computed_var_op(self):
        raw = copy.deepcopy(MINIMAL_CATALOG)
        raw["engine_contract"]["computed_vars"] = [{"target": "t", "op": "median", "terms": ["age"]}]
        with self.assertRaises(CatalogError):
            Catalog(raw)

    def test_root_must_be_object(self):
        with self.assertRaises(CatalogError):
            Catalog([])


if __name__ == '__main__':
    unittest.main()
