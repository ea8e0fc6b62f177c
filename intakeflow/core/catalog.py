"""
Catalog Loader - Versioned, read-only questionnaire definition

Responsibilities:
- Load catalog JSON from disk (or from an already-decoded dict)
- Build immutable contract objects (Question, Stage, ProcessDefinition, ...)
- Validate references and structure on load, reporting every problem at once
- Provide lookups used by the engine, router and state machine

Design principles:
- Fail fast: structural problems raise CatalogError at load time
- Fail soft at runtime: malformed condition strings are only warned about
  here because the condition interpreter fails closed on them
- Read-only: nothing mutates a Catalog after construction
- Catalog-agnostic: no business vocabulary is interpreted here

Catalog layout (top-level keys):
    meta                    {name, version}
    engine_contract         {defaults, derived_rules, computed_vars,
                             module_gating_exempt_stages, messages}
                            (also accepted under runtime.engine_contract)
    modules_catalog         [{module_key, title, enable_if}]
    stages                  [{stage_key, title, ask_if, intro, intro_variants,
                              question_ids, completion_checkpoint,
                              module_gating_exempt}]
    questions               [{qid, stage_key, field_key, data_type, prompt, ...}]
    production_validations  [{name, field_key, when, rule{min,max,multipleOf}, error}]
    handoff_triggers        [{trigger_key, when, reason, action}]
    attachments_checklist   [{qid, field_key, title, when, json_path, notes}]
    processes               [{process_key, title, ask_if, stage_keys, forced_next}]
    process_order           [process_key, ...]   (defaults to processes order)
"""

import copy
import json
import logging
from pathlib import Path
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional, Tuple

from intakeflow.contracts import (
    AttachmentItem,
    CompletionCheckpoint,
    ComputedTerm,
    ComputedVar,
    DerivedRule,
    HandoffTrigger,
    ModuleDefinition,
    ProcessDefinition,
    ProductionValidation,
    Question,
    RequiredMode,
    Stage,
)
from intakeflow.core.condition_interpreter import ConditionInterpreter
from intakeflow.core.json_path import parse_path
from intakeflow.errors import CatalogError

logger = logging.getLogger(__name__)

SUPPORTED_DATA_TYPES = frozenset(["string", "number", "boolean", "enum", "array", "date"])
COMPUTED_VAR_OPS = frozenset(["sum", "first_nonzero"])

_LEGACY_REQUIRED_MODES = {
    "y": RequiredMode.REQUIRED,
    "yes": RequiredMode.REQUIRED,
    "n": RequiredMode.OPTIONAL,
    "no": RequiredMode.OPTIONAL,
}

# Process used when a catalog declares no processes
DEFAULT_PROCESS_KEY = "main"


def load_catalog(catalog_path: str) -> "Catalog":
    """
    Load and validate a catalog file.

    Args:
        catalog_path: Path to catalog JSON

    Returns:
        Catalog

    Raises:
        FileNotFoundError: If the file doesn't exist
        CatalogError: If the catalog is malformed
    """
    path = Path(catalog_path)
    if not path.exists():
        raise FileNotFoundError(f"Catalog not found: {catalog_path}")

    with open(path, 'r', encoding='utf-8') as f:
        try:
            raw = json.load(f)
        except json.JSONDecodeError as e:
            raise CatalogError(f"Catalog is not valid JSON: {catalog_path}: {e}") from e

    catalog = Catalog(raw, source=str(path))
    logger.info(
        f"Catalog loaded: {catalog.name} v{catalog.version} "
        f"({len(catalog.stages)} stages, {len(catalog.questions)} questions, "
        f"{len(catalog.process_order)} processes)"
    )
    return catalog


class Catalog:
    """
    Immutable, validated view over catalog JSON.

    Construct via load_catalog(path) or Catalog(dict) in tests.
    """

    def __init__(self, raw: Dict[str, Any], source: str = "<dict>"):
        """
        Args:
            raw: Decoded catalog JSON
            source: Where the catalog came from (for error messages)

        Raises:
            CatalogError: If validation fails
        """
        if not isinstance(raw, dict):
            raise CatalogError(f"Catalog root must be an object ({source})")

        self.source = source
        self._errors: List[str] = []

        meta = raw.get("meta") or {}
        self.name: str = str(meta.get("name") or raw.get("name") or "catalog")
        self.version: str = str(meta.get("version") or raw.get("version") or "0")

        contract = (raw.get("runtime") or {}).get("engine_contract") or raw.get("engine_contract") or {}
        self._defaults: Dict[str, Any] = dict(contract.get("defaults") or {})
        self.messages: Dict[str, str] = dict(contract.get("messages") or {})
        exempt_stages = set(contract.get("module_gating_exempt_stages") or [])

        # Build entries (errors accumulate in self._errors)
        self.questions: Dict[str, Question] = self._build_questions(raw.get("questions") or [])
        self.stages: Tuple[Stage, ...] = self._build_stages(raw.get("stages") or [], exempt_stages)
        self.modules: Tuple[ModuleDefinition, ...] = self._build_modules(raw.get("modules_catalog") or [])
        self.derived_rules: Tuple[DerivedRule, ...] = self._build_derived_rules(contract.get("derived_rules") or [])
        self.computed_vars: Tuple[ComputedVar, ...] = self._build_computed_vars(contract.get("computed_vars") or [])
        self.production_validations: Tuple[ProductionValidation, ...] = self._build_validations(
            raw.get("production_validations") or []
        )
        self.handoff_triggers: Tuple[HandoffTrigger, ...] = self._build_handoffs(raw.get("handoff_triggers") or [])
        self.attachments: Tuple[AttachmentItem, ...] = self._build_attachments(raw.get("attachments_checklist") or [])
        self.processes: Dict[str, ProcessDefinition] = self._build_processes(raw.get("processes") or [])
        self.process_order: Tuple[str, ...] = tuple(
            raw.get("process_order") or list(self.processes.keys())
        )

        self._stage_by_key = {s.stage_key: s for s in self.stages}

        self._validate()

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def defaults(self) -> Dict[str, Any]:
        """Engine defaults (deep copy; callers may mutate)."""
        return copy.deepcopy(self._defaults)

    def question(self, qid: str) -> Optional[Question]:
        return self.questions.get(qid)

    def stage(self, stage_key: str) -> Optional[Stage]:
        return self._stage_by_key.get(stage_key)

    def process(self, process_key: str) -> Optional[ProcessDefinition]:
        return self.processes.get(process_key)

    def stage_keys_for_process(self, process_key: str) -> Tuple[str, ...]:
        process = self.processes.get(process_key)
        return process.stage_keys if process else ()

    def iter_stage_questions(self, stage: Stage) -> Iterator[Question]:
        """Yield the stage's questions in declared order, skipping unknown ids."""
        for qid in stage.question_ids:
            question = self.questions.get(qid)
            if question is None:
                logger.warning(f"Stage '{stage.stage_key}' references unknown question '{qid}'")
                continue
            yield question

    def process_for_stage(self, stage_key: str) -> Optional[str]:
        for key in self.process_order:
            if stage_key in self.stage_keys_for_process(key):
                return key
        return None

    # =========================================================================
    # Builders
    # =========================================================================

    def _build_questions(self, items: List[dict]) -> Dict[str, Question]:
        questions: Dict[str, Question] = {}
        for i, item in enumerate(items):
            qid = item.get("qid") or item.get("q_id")
            if not qid:
                self._errors.append(f"Question at index {i} missing 'qid'")
                continue
            if qid in questions:
                self._errors.append(f"Duplicate question id '{qid}'")
                continue

            field_key = item.get("field_key")
            if not field_key:
                self._errors.append(f"Question '{qid}' missing 'field_key'")
                continue

            data_type = str(item.get("data_type") or "string").lower()
            if data_type not in SUPPORTED_DATA_TYPES:
                self._errors.append(f"Question '{qid}' has unsupported data_type '{data_type}'")
                continue

            required_mode = _required_mode(item.get("required_mode"), item.get("required_if"))
            if required_mode is None:
                self._errors.append(f"Question '{qid}' has invalid required_mode '{item.get('required_mode')}'")
                continue

            json_path = item.get("json_path") or field_key
            segments = parse_path(json_path)
            if not segments or isinstance(segments[0], int):
                self._errors.append(f"Question '{qid}' has json_path '{json_path}' that does not start with a key")
                continue

            questions[qid] = Question(
                qid=qid,
                stage_key=item.get("stage_key") or "",
                field_key=field_key,
                data_type=data_type,
                prompt=item.get("prompt") or "",
                input_kind=item.get("input_kind") or item.get("input_type") or "",
                options=_split_options(item.get("options")),
                constraints=item.get("constraints"),
                ask_if=item.get("ask_if") or "",
                required_if=item.get("required_if") or "",
                required_mode=required_mode,
                module_key=item.get("module_key") or "",
                collection_mode=item.get("collection_mode") or "",
                json_path=json_path,
                audience=item.get("audience") or "customer",
                prompt_variants=tuple((item.get("prompt_variants") or {}).items()),
                table_columns=tuple(item.get("table_columns") or ()),
                label=item.get("label") or "",
            )
        return questions

    def _build_stages(self, items: List[dict], exempt_stages: set) -> Tuple[Stage, ...]:
        stages: List[Stage] = []
        seen = set()
        for i, item in enumerate(items):
            key = item.get("stage_key")
            if not key:
                self._errors.append(f"Stage at index {i} missing 'stage_key'")
                continue
            if key in seen:
                self._errors.append(f"Duplicate stage key '{key}'")
                continue
            seen.add(key)

            question_ids = item.get("question_ids")
            if question_ids is None:
                # Fall back to questions declaring this stage, in catalog order
                question_ids = [q.qid for q in self.questions.values() if q.stage_key == key]

            checkpoint = item.get("completion_checkpoint") or {}
            stages.append(Stage(
                stage_key=key,
                title=item.get("title") or key,
                question_ids=tuple(question_ids),
                ask_if=item.get("ask_if") or "",
                intro=item.get("intro") or "",
                intro_variants=tuple((item.get("intro_variants") or {}).items()),
                completion_checkpoint=CompletionCheckpoint(
                    send_summary=bool(checkpoint.get("send_summary", False)),
                    summary_template=checkpoint.get("summary_template") or "",
                ),
                module_gating_exempt=bool(item.get("module_gating_exempt")) or key in exempt_stages,
            ))

        # Questions inherit the stage that lists them when they don't declare one
        for stage in stages:
            for qid in stage.question_ids:
                question = self.questions.get(qid)
                if question is not None and not question.stage_key:
                    self.questions[qid] = _with_stage(question, stage.stage_key)

        return tuple(stages)

    def _build_modules(self, items: List[dict]) -> Tuple[ModuleDefinition, ...]:
        modules = []
        for i, item in enumerate(items):
            key = item.get("module_key")
            if not key:
                self._errors.append(f"Module at index {i} missing 'module_key'")
                continue
            modules.append(ModuleDefinition(
                module_key=key,
                title=item.get("title") or key,
                enable_if=item.get("enable_if") or "",
            ))
        return tuple(modules)

    def _build_derived_rules(self, items: List[dict]) -> Tuple[DerivedRule, ...]:
        rules = []
        for i, item in enumerate(items):
            target = item.get("target_field")
            set_when = item.get("set_when")
            if not target or not set_when:
                self._errors.append(f"Derived rule at index {i} needs 'target_field' and 'set_when'")
                continue
            rules.append(DerivedRule(
                target_field=target,
                set_when=set_when,
                value=item.get("value"),
                maps_to_qid=item.get("maps_to_qid") or item.get("maps_to_q_id") or "",
            ))
        return tuple(rules)

    def _build_computed_vars(self, items: List[dict]) -> Tuple[ComputedVar, ...]:
        computed = []
        for i, item in enumerate(items):
            target = item.get("target")
            op = item.get("op") or "sum"
            if not target:
                self._errors.append(f"Computed var at index {i} missing 'target'")
                continue
            if op not in COMPUTED_VAR_OPS:
                self._errors.append(f"Computed var '{target}' has unsupported op '{op}'")
                continue

            terms = []
            for term in item.get("terms") or []:
                if isinstance(term, str):
                    terms.append(ComputedTerm(fields=(term,)))
                    continue
                fields = term.get("fields") or ([term["field"]] if term.get("field") else [])
                if not fields:
                    self._errors.append(f"Computed var '{target}' has a term without fields")
                    continue
                terms.append(ComputedTerm(fields=tuple(fields), factor=float(term.get("factor", 1))))
            computed.append(ComputedVar(target=target, op=op, terms=tuple(terms)))
        return tuple(computed)

    def _build_validations(self, items: List[dict]) -> Tuple[ProductionValidation, ...]:
        validations = []
        for i, item in enumerate(items):
            field_key = item.get("field_key")
            if not field_key:
                self._errors.append(f"Production validation at index {i} missing 'field_key'")
                continue
            rule = item.get("rule") or {}
            validations.append(ProductionValidation(
                name=item.get("name") or f"validation_{i}",
                field_key=field_key,
                error=item.get("error") or "",
                when=item.get("when") or "",
                min=rule.get("min"),
                max=rule.get("max"),
                multiple_of=rule.get("multipleOf", rule.get("multiple_of")),
            ))
        return tuple(validations)

    def _build_handoffs(self, items: List[dict]) -> Tuple[HandoffTrigger, ...]:
        triggers = []
        for i, item in enumerate(items):
            when = item.get("when")
            if not when:
                self._errors.append(f"Handoff trigger at index {i} missing 'when'")
                continue
            triggers.append(HandoffTrigger(
                trigger_key=item.get("trigger_key") or f"handoff_{i}",
                when=when,
                reason=item.get("reason") or "",
                action=item.get("action") or "",
            ))
        return tuple(triggers)

    def _build_attachments(self, items: List[dict]) -> Tuple[AttachmentItem, ...]:
        attachments = []
        for item in items:
            field_key = item.get("field_key")
            json_path = item.get("json_path") or field_key
            if not field_key:
                logger.warning(f"Attachment item without field_key skipped: {item}")
                continue
            attachments.append(AttachmentItem(
                qid=item.get("qid") or item.get("q_id") or "",
                field_key=field_key,
                json_path=json_path,
                title=item.get("title") or field_key,
                when=item.get("when") or "",
                notes=item.get("notes") or "",
            ))
        return tuple(attachments)

    def _build_processes(self, items: List[dict]) -> Dict[str, ProcessDefinition]:
        if not items:
            return {
                DEFAULT_PROCESS_KEY: ProcessDefinition(
                    process_key=DEFAULT_PROCESS_KEY,
                    title=self.name,
                    stage_keys=tuple(s.stage_key for s in self.stages),
                )
            }

        processes: Dict[str, ProcessDefinition] = {}
        for i, item in enumerate(items):
            key = item.get("process_key")
            if not key:
                self._errors.append(f"Process at index {i} missing 'process_key'")
                continue
            if key in processes:
                self._errors.append(f"Duplicate process key '{key}'")
                continue
            processes[key] = ProcessDefinition(
                process_key=key,
                title=item.get("title") or key,
                stage_keys=tuple(item.get("stage_keys") or ()),
                ask_if=item.get("ask_if") or "",
                forced_next=item.get("forced_next") or "",
            )
        return processes

    # =========================================================================
    # Validation
    # =========================================================================

    def _validate(self):
        """
        Validate cross references.

        Checks:
        - At least one stage
        - Every stage question id exists
        - Every process stage exists, every stage belongs to a process at most once
        - process_order only names defined processes, without duplicates
        - forced_next names a defined process
        - Condition strings parse (warning only)

        Raises:
            CatalogError: If validation fails
        """
        errors = self._errors

        if not self.stages:
            errors.append("Catalog defines no stages")

        for stage in self.stages:
            for qid in stage.question_ids:
                if qid not in self.questions:
                    errors.append(f"Stage '{stage.stage_key}' references undefined question '{qid}'")

        owner: Dict[str, str] = {}
        for key, process in self.processes.items():
            for stage_key in process.stage_keys:
                if stage_key not in self._stage_by_key:
                    errors.append(f"Process '{key}' references undefined stage '{stage_key}'")
                elif stage_key in owner:
                    errors.append(
                        f"Stage '{stage_key}' belongs to both '{owner[stage_key]}' and '{key}'"
                    )
                else:
                    owner[stage_key] = key
            if process.forced_next and process.forced_next not in self.processes:
                errors.append(f"Process '{key}' forces undefined process '{process.forced_next}'")

        seen = set()
        for key in self.process_order:
            if key not in self.processes:
                errors.append(f"Process '{key}' in process_order but not defined in processes")
            if key in seen:
                errors.append(f"Duplicate process '{key}' in process_order")
            seen.add(key)

        for rule in self.derived_rules:
            if rule.maps_to_qid and rule.maps_to_qid not in self.questions:
                logger.warning(
                    f"Derived rule for '{rule.target_field}' maps to unknown question "
                    f"'{rule.maps_to_qid}'; it will be skipped"
                )

        self._warn_on_bad_conditions()

        if errors:
            error_msg = "Catalog validation failed:\n  - " + "\n  - ".join(errors)
            raise CatalogError(error_msg)

    def _warn_on_bad_conditions(self):
        checker = ConditionInterpreter()
        expressions = []
        expressions += [(f"stage {s.stage_key} ask_if", s.ask_if) for s in self.stages]
        for q in self.questions.values():
            expressions += [(f"question {q.qid} ask_if", q.ask_if),
                            (f"question {q.qid} required_if", q.required_if)]
        expressions += [(f"module {m.module_key} enable_if", m.enable_if) for m in self.modules]
        expressions += [(f"derived rule {r.target_field}", r.set_when) for r in self.derived_rules]
        expressions += [(f"validation {v.name}", v.when) for v in self.production_validations]
        expressions += [(f"handoff {t.trigger_key}", t.when) for t in self.handoff_triggers]
        expressions += [(f"attachment {a.field_key}", a.when) for a in self.attachments]
        expressions += [(f"process {p.process_key}", p.ask_if) for p in self.processes.values()]

        for where, expression in expressions:
            problem = checker.check_syntax(expression)
            if problem:
                logger.warning(f"Malformed condition in {where} (evaluates to False): {problem}")


def _split_options(options) -> Tuple[str, ...]:
    if not options:
        return ()
    if isinstance(options, str):
        parts = options.split(",")
    else:
        parts = [str(o) for o in options]
    return tuple(p.strip() for p in parts if p and p.strip())


def _required_mode(raw, required_if) -> Optional[RequiredMode]:
    """
    Normalise a required_mode entry; None when unrecognised.

    Legacy sheets mark required questions "Y" / "yes". An empty mode is
    conditional when the question carries required_if, required otherwise.
    """
    mode = str(raw or "").strip().lower()
    if not mode:
        return RequiredMode.CONDITIONAL if str(required_if or "").strip() else RequiredMode.REQUIRED
    if mode in _LEGACY_REQUIRED_MODES:
        return _LEGACY_REQUIRED_MODES[mode]
    try:
        return RequiredMode(mode)
    except ValueError:
        return None


def _with_stage(question: Question, stage_key: str) -> Question:
    return replace(question, stage_key=stage_key)
