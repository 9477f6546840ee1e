"""
Runtime state - the execution-scoped key/value map shared across nodes.

Nodes never mutate the live state. They read a snapshot taken at the start of
their tier and return a patch; the executor merges patches in node order once
the tier completes.
"""

import copy
import json
import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

_OUTPUT_TEMPLATE = re.compile(r"\{\{\s*output(?:\.([\w.\[\]-]+))?\s*\}\}")


class RuntimeState:
    """Mutable only through merge(); values are never rolled back."""

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._data: dict[str, Any] = dict(initial or {})

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the current state for the nodes of one tier."""
        return copy.deepcopy(self._data)

    def merge(self, patch: Mapping[str, Any] | None) -> list[str]:
        """Apply a patch key by key (last writer wins). Returns the changed keys."""
        if not patch:
            return []
        changed = []
        for key, value in patch.items():
            if self._data.get(key, object()) != value:
                changed.append(key)
            self._data[key] = value
        return changed

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"RuntimeState({self._data!r})"


def update_flow_state(updates: Iterable[Mapping[str, Any]] | None) -> dict[str, Any]:
    """
    Build a state patch from declared ``[{key, value}]`` updates.

    Entries without a key are skipped. The returned dict contains just the
    updated keys; later entries for the same key win.
    """
    patch: dict[str, Any] = {}
    for update in updates or []:
        if not isinstance(update, Mapping):
            logger.warning(f"Ignoring malformed state update: {update!r}")
            continue
        key = update.get("key")
        if not key:
            continue
        patch[str(key)] = update.get("value")
    return patch


def _lookup_path(data: Any, path: str) -> Any:
    current = data
    for part in re.split(r"\.|\[(\d+)\]", path):
        if part is None or part == "":
            continue
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def process_template_variables(patch: Mapping[str, Any], output: Any) -> dict[str, Any]:
    """
    Bind ``{{ output }}`` / ``{{ output.path }}`` in patch values to a node's output.

    ``output`` may be text or structured data; text that parses as JSON is
    navigated for ``output.path`` references. A path that does not exist
    leaves the placeholder in place.
    """
    structured = output
    if isinstance(output, str):
        try:
            structured = json.loads(output)
        except json.JSONDecodeError:
            structured = None

    def render(value: Any) -> Any:
        if value is None:
            return None
        return value if isinstance(value, str) else json.dumps(value)

    def substitute(match: re.Match) -> str:
        path = match.group(1)
        if not path:
            text = render(output)
            return match.group(0) if text is None else text
        resolved = _lookup_path(structured, path) if structured is not None else None
        return match.group(0) if resolved is None else render(resolved)

    processed: dict[str, Any] = {}
    for key, value in patch.items():
        if not isinstance(value, str):
            processed[key] = value
            continue
        whole = _OUTPUT_TEMPLATE.fullmatch(value.strip())
        if whole and whole.group(1) and structured is not None:
            resolved = _lookup_path(structured, whole.group(1))
            # A sole placeholder keeps the raw value type
            processed[key] = resolved if resolved is not None else value
            continue
        processed[key] = _OUTPUT_TEMPLATE.sub(substitute, value)
    return processed
