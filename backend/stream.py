"""
Streaming aggregation for agent-mode replies.

The backend answers a streaming request with newline-delimited frames, each
optionally prefixed with ``data:``:

    data: {"event": "agent_message", "conversation_id": "c-1", "answer": "Hel"}
    data: {"event": "agent_message", "conversation_id": "c-1", "answer": "lo"}
    data: {"event": "message_end", ...}

Lines are pulled one at a time, so buffering is bounded by the transport,
and every pull has an idle timeout.
"""
from __future__ import annotations

import asyncio
import json
import re
import structlog
from typing import Any, AsyncIterator, Optional

from models.schemas import DispatchOutcome

logger = structlog.get_logger()

AGENT_MESSAGE_EVENT = "agent_message"

_FRAME_PREFIX = re.compile(r"^data:\s*")


class StreamIdleTimeout(Exception):
    """No frame arrived within the idle timeout."""


def parse_frame(line: str) -> Optional[dict[str, Any]]:
    """Strip the frame marker and decode the JSON record. None for blank or malformed frames."""
    cleaned = _FRAME_PREFIX.sub("", line.strip())
    if not cleaned:
        return None
    try:
        record = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.debug("stream_frame_malformed", frame=cleaned[:200])
        return None
    return record if isinstance(record, dict) else None


class AgentStreamAggregator:
    """Accumulates ``agent_message`` answer fragments and the first conversation id."""

    def __init__(self):
        self.answer = ""
        self.conversation_id: Optional[str] = None
        self.frames = 0
        self.skipped = 0

    def feed(self, line: str) -> None:
        if not line.strip():
            return
        self.frames += 1
        event = parse_frame(line)
        if event is None:
            self.skipped += 1
            return
        if event.get("event") != AGENT_MESSAGE_EVENT:
            return
        answer = event.get("answer")
        if answer is None:
            answer = ""
        if not isinstance(answer, str):
            self.skipped += 1
            logger.debug("stream_frame_bad_answer", answer_type=type(answer).__name__)
            return
        conversation_id = event.get("conversation_id")
        if self.conversation_id is None and isinstance(conversation_id, str) and conversation_id:
            self.conversation_id = conversation_id
        self.answer += answer

    def outcome(self) -> DispatchOutcome:
        return DispatchOutcome(reply_text=self.answer, conversation_token=self.conversation_id)


async def aggregate_agent_stream(
    lines: AsyncIterator[str],
    idle_timeout: Optional[float] = 120.0,
) -> DispatchOutcome:
    """
    Consume ``lines`` until end-of-stream and return the aggregated outcome.

    Raises StreamIdleTimeout if no line arrives within ``idle_timeout``
    seconds. Transport errors propagate unchanged.
    """
    aggregator = AgentStreamAggregator()
    iterator = lines.__aiter__()
    while True:
        try:
            line = await asyncio.wait_for(iterator.__anext__(), timeout=idle_timeout)
        except StopAsyncIteration:
            break
        except asyncio.TimeoutError as e:
            raise StreamIdleTimeout(
                f"No stream frame within {idle_timeout}s "
                f"({aggregator.frames} frames received)"
            ) from e
        aggregator.feed(line)

    logger.debug("agent_stream_complete",
                 frames=aggregator.frames,
                 skipped=aggregator.skipped,
                 chars=len(aggregator.answer))
    return aggregator.outcome()
