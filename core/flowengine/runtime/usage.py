"""
Usage tracking - best-effort delivery of token usage records.

Records are dispatched to the sink on a background task so a slow or failing
sink never delays or fails a flow execution. Failures are logged and dropped.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Protocol, runtime_checkable

from flowengine.observability import sanitize_log_context

logger = logging.getLogger(__name__)


@dataclass
class UsageRecord:
    """Token usage of one model-invoking node."""

    execution_id: str
    provider: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    processing_time_ms: int = 0
    success: bool = True
    org_id: str = ""
    user_id: str = ""
    node_id: str = ""
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict:
        data = asdict(self)
        data["total_tokens"] = self.total_tokens
        return data


@runtime_checkable
class UsageSink(Protocol):
    async def record(self, record: UsageRecord) -> None: ...


class LoggingUsageSink:
    """Sink that writes each record to the log."""

    async def record(self, record: UsageRecord) -> None:
        logger.info(
            f"Usage {record.provider}/{record.model}: {record.total_tokens} tokens",
            extra={
                "event": "usage",
                "tokens_used": record.total_tokens,
                "model": record.model,
                "node_id": record.node_id,
                "latency_ms": record.processing_time_ms,
            },
        )


class InMemoryUsageSink:
    """Sink that keeps records in a list (tests, CLI summaries)."""

    def __init__(self):
        self.records: list[UsageRecord] = []

    async def record(self, record: UsageRecord) -> None:
        self.records.append(record)


class UsageTracker:
    """Fire-and-forget dispatcher in front of a UsageSink."""

    def __init__(self, sink: UsageSink | None = None):
        self.sink = sink or LoggingUsageSink()
        self._pending: set[asyncio.Task] = set()

    def track(self, record: UsageRecord) -> asyncio.Task:
        """Schedule delivery of a record and return immediately."""
        task = asyncio.create_task(self._deliver(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, record: UsageRecord) -> None:
        try:
            await self.sink.record(record)
        except Exception as e:
            logger.warning(
                f"Failed to record usage: {e}",
                extra={"event": "usage_failed", **sanitize_log_context(record.to_dict())},
            )

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._pending)
