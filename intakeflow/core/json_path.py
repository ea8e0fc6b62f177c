"""
JSON-path accessor for the form document.

Paths use dotted keys with bracketed integer indices, e.g.
``insured.addresses[0].city``. Reads are total (missing -> None); writes
auto-vivify intermediate containers.
"""

import re
from typing import Any, List, Union

_SEGMENT_RE = re.compile(r"([^\[.\]]+)|\[(\d+)\]")

Segment = Union[str, int]


def parse_path(path: str) -> List[Segment]:
    """
    Split a path into segments.

    Examples:
        >>> parse_path("a.b[0].c")
        ['a', 'b', 0, 'c']
    """
    segments: List[Segment] = []
    for key, index in _SEGMENT_RE.findall(path or ""):
        if index:
            segments.append(int(index))
        else:
            key = key.strip()
            if key:
                segments.append(key)
    return segments


def get_by_path(document: Any, path: str) -> Any:
    """
    Read the value at path.

    Returns None as soon as a segment is missing, an index is out of range,
    or the current node has the wrong container type.
    """
    node = document
    for segment in parse_path(path):
        if node is None:
            return None
        if isinstance(segment, int):
            if not isinstance(node, list) or segment >= len(node):
                return None
            node = node[segment]
        else:
            if not isinstance(node, dict):
                return None
            node = node.get(segment)
    return node


def set_by_path(document: dict, path: str, value: Any) -> None:
    """
    Write value at path, mutating document in place.

    Missing intermediate containers are created: a list when the next
    segment is an index, a dict otherwise. Lists are padded with None.
    Existing scalars sitting where a container is needed are replaced.

    Raises:
        ValueError: If path has no segments, or its first segment does not
            fit the document (an index into a dict, a key into a list)
    """
    segments = parse_path(path)
    if not segments:
        raise ValueError(f"Empty json path: {path!r}")
    expected = list if isinstance(segments[0], int) else dict
    if not isinstance(document, expected):
        raise ValueError(
            f"Json path {path!r} needs a {expected.__name__} at the root, got {type(document).__name__}"
        )

    node = document
    for i, segment in enumerate(segments[:-1]):
        next_segment = segments[i + 1]
        fresh = [] if isinstance(next_segment, int) else {}

        if isinstance(segment, int):
            _pad(node, segment)
            child = node[segment]
            if not isinstance(child, type(fresh)):
                child = fresh
                node[segment] = child
        else:
            child = node.get(segment)
            if not isinstance(child, type(fresh)):
                child = fresh
                node[segment] = child
        node = child

    last = segments[-1]
    if isinstance(last, int):
        _pad(node, last)
    node[last] = value


def _pad(node: list, index: int) -> None:
    while len(node) <= index:
        node.append(None)
