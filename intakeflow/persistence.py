"""
Field store, pointer store and completion history.

In-memory implementations for tests and the console harness; JSON-file
implementations for restart resilience. All of them are plain
collaborators of the flow state machine: no transactions, no locking
(callers serialize turns per user).

Layout (file-backed):
    outputs/intakeflow/
        fields/USER-<id>.json        {"scopes": {scope_id: {key: value}}}
        pointers/USER-<id>.json      FlowPointer.to_json()
        history/USER-<id>.jsonl      one CompletionRecord per line (append-only)
"""

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from intakeflow.contracts import CompletionRecord, FlowPointer
from intakeflow.utils.helpers import utc_now_iso

logger = logging.getLogger(__name__)


def _user_filename(user_id: str, extension: str) -> str:
    safe = re.sub(r"[^A-Za-z0-9_.-]", "_", str(user_id))
    return f"USER-{safe}.{extension}"


def _write_json_atomic(path: Path, data: Any) -> None:
    """Write to a sibling temp file, then rename over path."""
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    tmp.replace(path)


def _overlay(scopes: Mapping[str, Dict[str, Any]], scope_id: str) -> Dict[str, Any]:
    """Other scopes form the base (in write order); the requested scope wins."""
    merged: Dict[str, Any] = {}
    for key, fields in scopes.items():
        if key != scope_id:
            merged.update(fields)
    merged.update(scopes.get(scope_id, {}))
    return copy.deepcopy(merged)


def _apply_patch(scopes: Dict[str, Dict[str, Any]], scope_id: str, patch: Mapping[str, Any]) -> int:
    fields = scopes.pop(scope_id, {})
    written = 0
    for key, value in patch.items():
        if value is None:
            logger.debug(f"Ignoring null write for '{key}' in scope '{scope_id}'")
            continue
        fields[key] = copy.deepcopy(value)
        written += 1
    # Re-insert so the most recently written scope is last in the overlay base
    scopes[scope_id] = fields
    return written


# =============================================================================
# Field stores
# =============================================================================

class InMemoryFieldStore:
    """CollectedData per (user, scope), held in a dict."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def get_fields(self, user_id: str, scope_id: str) -> Dict[str, Any]:
        return _overlay(self._data.get(user_id, {}), scope_id)

    def set_fields(self, user_id: str, scope_id: str, patch: Mapping[str, Any]) -> None:
        written = _apply_patch(self._data.setdefault(user_id, {}), scope_id, patch)
        logger.debug(f"Stored {written} field(s) for {user_id}/{scope_id}")

    def delete_fields(self, user_id: str, scope_id: str, keys: Iterable[str]) -> None:
        fields = self._data.get(user_id, {}).get(scope_id, {})
        for key in keys:
            fields.pop(key, None)


class JsonFileFieldStore:
    """
    CollectedData per user in one JSON file.

    The whole file is rewritten on every patch (small documents, one writer
    per user).
    """

    def __init__(self, base_dir: str = "outputs/intakeflow"):
        """
        Args:
            base_dir: Base directory for all stores
        """
        self.base_dir = Path(base_dir) / "fields"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"JsonFileFieldStore initialized: {self.base_dir}")

    def get_fields(self, user_id: str, scope_id: str) -> Dict[str, Any]:
        return _overlay(self._load(user_id), scope_id)

    def set_fields(self, user_id: str, scope_id: str, patch: Mapping[str, Any]) -> None:
        scopes = self._load(user_id)
        written = _apply_patch(scopes, scope_id, patch)
        self._save(user_id, scopes)
        logger.debug(f"Stored {written} field(s) for {user_id}/{scope_id}")

    def delete_fields(self, user_id: str, scope_id: str, keys: Iterable[str]) -> None:
        scopes = self._load(user_id)
        fields = scopes.get(scope_id, {})
        for key in keys:
            fields.pop(key, None)
        self._save(user_id, scopes)

    def _path(self, user_id: str) -> Path:
        return self.base_dir / _user_filename(user_id, "json")

    def _load(self, user_id: str) -> Dict[str, Dict[str, Any]]:
        path = self._path(user_id)
        if not path.exists():
            return {}
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return data.get("scopes", {})

    def _save(self, user_id: str, scopes: Dict[str, Dict[str, Any]]) -> None:
        _write_json_atomic(self._path(user_id), {"user_id": user_id, "scopes": scopes})


# =============================================================================
# Pointer stores
# =============================================================================

class InMemoryPointerStore:

    def __init__(self):
        self._pointers: Dict[str, FlowPointer] = {}

    def get_pointer(self, user_id: str) -> Optional[FlowPointer]:
        return self._pointers.get(user_id)

    def save_pointer(self, user_id: str, pointer: FlowPointer) -> None:
        self._pointers[user_id] = pointer

    def delete_pointer(self, user_id: str) -> None:
        self._pointers.pop(user_id, None)


class JsonFilePointerStore:
    """FlowPointer per user, one JSON file each."""

    def __init__(self, base_dir: str = "outputs/intakeflow"):
        self.base_dir = Path(base_dir) / "pointers"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"JsonFilePointerStore initialized: {self.base_dir}")

    def get_pointer(self, user_id: str) -> Optional[FlowPointer]:
        path = self._path(user_id)
        if not path.exists():
            return None
        with open(path, 'r', encoding='utf-8') as f:
            return FlowPointer.from_json(json.load(f))

    def save_pointer(self, user_id: str, pointer: FlowPointer) -> None:
        _write_json_atomic(self._path(user_id), pointer.to_json())

    def delete_pointer(self, user_id: str) -> None:
        path = self._path(user_id)
        if path.exists():
            path.unlink()
            logger.info(f"Pointer deleted for {user_id}")

    def _path(self, user_id: str) -> Path:
        return self.base_dir / _user_filename(user_id, "json")


# =============================================================================
# Completion history
# =============================================================================

class InMemoryHistory:

    def __init__(self):
        self._records: Dict[str, List[CompletionRecord]] = {}

    def append_completion(
        self,
        user_id: str,
        section_key: str,
        session_id: str,
        position: str = "main",
    ) -> CompletionRecord:
        record = CompletionRecord(section_key, position, session_id, utc_now_iso())
        self._records.setdefault(user_id, []).append(record)
        return record

    def list_completions(self, user_id: str) -> List[CompletionRecord]:
        return list(self._records.get(user_id, []))


class JsonLinesHistory:
    """
    Append-only completion history, one JSON line per record.

    Lines are never rewritten; an existing file is only ever appended to.
    """

    def __init__(self, base_dir: str = "outputs/intakeflow"):
        self.base_dir = Path(base_dir) / "history"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"JsonLinesHistory initialized: {self.base_dir}")

    def append_completion(
        self,
        user_id: str,
        section_key: str,
        session_id: str,
        position: str = "main",
    ) -> CompletionRecord:
        record = CompletionRecord(section_key, position, session_id, utc_now_iso())
        with open(self._path(user_id), 'a', encoding='utf-8') as f:
            f.write(json.dumps(record.to_json(), ensure_ascii=False) + "\n")
        logger.info(f"Completion recorded for {user_id}: {section_key} (session {session_id})")
        return record

    def list_completions(self, user_id: str) -> List[CompletionRecord]:
        path = self._path(user_id)
        if not path.exists():
            return []
        records = []
        with open(path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line:
                    records.append(CompletionRecord.from_json(json.loads(line)))
        return records

    def _path(self, user_id: str) -> Path:
        return self.base_dir / _user_filename(user_id, "jsonl")
