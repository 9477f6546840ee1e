"""Result payload splitting and escaped-argument parsing."""

import json
import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

ARTIFACTS_PREFIX = "\n\n----ARTIFACTS----\n\n"
TOOL_ARGS_PREFIX = "\n\n----TOOL_ARGS----\n\n"
SOURCE_DOCUMENTS_PREFIX = "\n\n----SOURCE_DOCUMENTS----\n\n"

_SECTIONS = {
    ARTIFACTS_PREFIX: "artifacts",
    TOOL_ARGS_PREFIX: "tool_args",
    SOURCE_DOCUMENTS_PREFIX: "source_documents",
}

# Escape sequences accepted in tool arguments typed into the editor
_UNESCAPES = {
    '\\"': '"',
    "\\\\": "\\",
    "\\[": "[",
    "\\]": "]",
    "\\{": "{",
    "\\}": "}",
}


@dataclass
class ResultEnvelope:
    """Node output text plus the structured sections appended to it."""

    content: str = ""
    artifacts: Any = None
    tool_args: Any = None
    source_documents: Any = None


def split_result_payload(text: str) -> ResultEnvelope:
    """
    Split a node's output text on the section delimiters.

    Each delimiter is honoured on its first occurrence; the text before the
    earliest delimiter is the content, and every section runs up to the next
    delimiter. Sections whose body is not valid JSON are dropped with a
    warning, the content is kept either way.
    """
    if not isinstance(text, str):
        return ResultEnvelope(content="" if text is None else str(text))

    positions = sorted(
        (text.find(prefix), prefix) for prefix in _SECTIONS if text.find(prefix) != -1
    )
    if not positions:
        return ResultEnvelope(content=text)

    envelope = ResultEnvelope(content=text[: positions[0][0]])
    for i, (start, prefix) in enumerate(positions):
        body_start = start + len(prefix)
        body_end = positions[i + 1][0] if i + 1 < len(positions) else len(text)
        body = text[body_start:body_end]
        attr = _SECTIONS[prefix]
        try:
            setattr(envelope, attr, json.loads(body))
        except json.JSONDecodeError as e:
            logger.warning(f"Dropping malformed {attr} section: {e}")
    return envelope


def unescape_argument(value: str) -> str:
    """Undo the editor's backslash escapes in one left-to-right pass."""
    out: list[str] = []
    i = 0
    while i < len(value):
        pair = value[i : i + 2]
        if pair in _UNESCAPES:
            out.append(_UNESCAPES[pair])
            i += 2
        else:
            out.append(value[i])
            i += 1
    return "".join(out)


def parse_escaped_argument(value: Any) -> Any:
    """
    Parse a tool argument that may hold escaped JSON.

    ``'\\["a", "b"\\]'`` becomes ``["a", "b"]``. Values that are not
    bracketed after unescaping, or that fail to parse, come back as the
    unescaped string. Non-string values pass through untouched.
    """
    if not isinstance(value, str):
        return value

    unescaped = unescape_argument(value)
    stripped = unescaped.strip()
    bracketed = (stripped.startswith("[") and stripped.endswith("]")) or (
        stripped.startswith("{") and stripped.endswith("}")
    )
    if not bracketed:
        return unescaped
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return unescaped
