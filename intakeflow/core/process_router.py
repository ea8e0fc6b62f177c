"""
Process Router - Pick the next eligible, incomplete section

Responsibilities:
- Walk the catalog's process order and return the first process that is
  neither completed nor ineligible
- Honour a process's forced successor
- Read and extend the completed-processes progress list

Design principles:
- Stateless and deterministic: order comes solely from the catalog
- Monotonic progress: completed keys are only ever appended
- A process referenced in the order but missing from the catalog is
  skipped with a warning (the catalog loader rejects this up front)
"""

import logging
from typing import Any, Iterable, List, Mapping, Optional

from intakeflow.contracts import COMPLETED_PROCESSES_KEY
from intakeflow.core.catalog import Catalog
from intakeflow.core.condition_interpreter import ConditionInterpreter
from intakeflow.results import RouterDecision
from intakeflow.utils.helpers import safe_parse_json

logger = logging.getLogger(__name__)


def read_completed(vars: Mapping[str, Any]) -> List[str]:
    """
    Read completed process keys from CollectedData.

    Accepts a list or its JSON-encoded string form; anything else is empty.
    """
    raw = safe_parse_json(vars.get(COMPLETED_PROCESSES_KEY), default=[])
    if not isinstance(raw, list):
        return []
    completed: List[str] = []
    for item in raw:
        key = str(item).strip()
        if key and key not in completed:
            completed.append(key)
    return completed


def mark_completed(completed: Iterable[str], process_key: str) -> List[str]:
    """Append process_key if absent, preserving order."""
    result = list(completed)
    if process_key and process_key not in result:
        result.append(process_key)
    return result


class ProcessRouter:
    """
    Stateless router over the catalog's processes.
    """

    def __init__(self, catalog: Catalog, interpreter: Optional[ConditionInterpreter] = None):
        self.catalog = catalog
        self.interpreter = interpreter or ConditionInterpreter()

    def next(self, completed: Iterable[str], vars: Mapping[str, Any]) -> RouterDecision:
        """
        Select the next process.

        Args:
            completed: Completed process keys
            vars: CollectedData overlay used for ask_if evaluation

        Returns:
            RouterDecision with section_key, or done=True
        """
        done = set(completed)

        for key in self.catalog.process_order:
            if key in done:
                continue
            process = self.catalog.process(key)
            if process is None:
                logger.warning(f"Process '{key}' in order but not defined, skipped")
                continue
            if not self.interpreter.evaluate(process.ask_if, vars):
                logger.debug(f"Process '{key}' not eligible")
                continue
            return RouterDecision(section_key=key)

        return RouterDecision.finished()

    def next_after(
        self,
        finished_key: str,
        completed: Iterable[str],
        vars: Mapping[str, Any],
    ) -> RouterDecision:
        """
        Select the process that follows finished_key.

        A forced successor wins when it is not completed yet; otherwise the
        regular walk applies.
        """
        completed = list(completed)
        process = self.catalog.process(finished_key)
        if process is not None and process.forced_next and process.forced_next not in completed:
            logger.info(f"Forced routing {finished_key} -> {process.forced_next}")
            return RouterDecision(section_key=process.forced_next)
        return self.next(completed, vars)
