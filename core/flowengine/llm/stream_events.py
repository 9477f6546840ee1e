"""Events yielded by ``LLMProvider.stream()``.

The LLM node consumes them when it is an ending node with a streaming sink
attached: text deltas go to the sink as they arrive, the finish event carries
the token counts recorded as usage, and an error event fails the node.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True)
class TextDeltaEvent:
    """A chunk of generated text."""

    type: Literal["text_delta"] = "text_delta"
    content: str = ""
    snapshot: str = ""  # all text generated so far


@dataclass(frozen=True)
class TextEndEvent:
    type: Literal["text_end"] = "text_end"
    full_text: str = ""


@dataclass(frozen=True)
class FinishEvent:
    """Generation finished; token counts are final."""

    type: Literal["finish"] = "finish"
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class StreamErrorEvent:
    """The provider call failed mid-stream. Always the last event."""

    type: Literal["error"] = "error"
    error: str = ""
    status_code: int | None = None


StreamEvent = TextDeltaEvent | TextEndEvent | FinishEvent | StreamErrorEvent
