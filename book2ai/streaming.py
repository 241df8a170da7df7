"""
Streaming transport: frames answer events for the client and relays the
upstream token stream.

Canonical framing is Server-Sent Events, one self-contained JSON object per
frame with a ``type`` discriminator::

    data: {"type": "meta", "q": "..."}

    data: {"type": "chunk", "delta": "..."}

    data: {"type": "done", "sources": [...]}

Both directions are tolerant: a frame that cannot be parsed is skipped and
the stream carries on.
"""

import asyncio
import json
import logging
import re
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, List, Optional

from pydantic import ValidationError as SchemaError

from .errors import StreamFrameError
from .models import stream_event_adapter

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

_WORD_BOUNDARY = re.compile(r"(?<=\s)(?=\S)")


def encode_frame(event) -> str:
    """Serialise one event as an SSE frame."""
    return f"{DATA_PREFIX} {event.model_dump_json(exclude_none=True)}\n\n"


def _frame_payload(line: str) -> Optional[str]:
    line = line.strip()
    if not line:
        return None
    if line.startswith(DATA_PREFIX):
        return line[len(DATA_PREFIX):].strip()
    # newline-delimited JSON without the SSE prefix
    if line.startswith("{"):
        return line
    return None


def decode_frames(lines: Iterable[str]) -> Iterator:
    """
    Parse frames from a line iterator, yielding ``StreamEvent`` models.

    Blank lines, comments, malformed JSON and unknown event types are
    skipped, so one corrupt frame never loses the rest of the answer.
    """
    for line in lines:
        payload = _frame_payload(line)
        if not payload or payload == DONE_SENTINEL:
            continue
        try:
            yield stream_event_adapter.validate_json(payload)
        except SchemaError as e:
            logger.debug(f"Skipping unparseable frame {payload[:80]!r}: {e.error_count()} error(s)")


def parse_upstream_frame(line: str) -> Optional[str]:
    """
    Extract the text delta from one line of an OpenAI chat-completion stream.

    Returns:
        The delta text ("" for frames without content), ``DONE_SENTINEL`` at
        the end of the stream, or None for non-data lines

    Raises:
        StreamFrameError: If the frame is not valid JSON
    """
    payload = _frame_payload(line)
    if payload is None:
        return None
    if payload == DONE_SENTINEL:
        return DONE_SENTINEL
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise StreamFrameError(payload, f"invalid JSON at column {e.colno}") from e
    try:
        return data["choices"][0]["delta"].get("content") or ""
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""


async def relay_openai_deltas(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield non-empty text deltas from an upstream SSE line stream until ``[DONE]``."""
    async for line in lines:
        try:
            delta = parse_upstream_frame(line)
        except StreamFrameError as e:
            logger.debug(f"Ignoring upstream frame: {e}")
            continue
        if delta == DONE_SENTINEL:
            return
        if delta:
            yield delta


def window_words(text: str, size: int) -> List[str]:
    """Split ``text`` into windows of ``size`` words; joining the windows gives back ``text``."""
    pieces = [p for p in _WORD_BOUNDARY.split(text) if p]
    size = max(1, size)
    return ["".join(pieces[i:i + size]) for i in range(0, len(pieces), size)]


def window_chars(text: str, size: int) -> List[str]:
    """Split ``text`` into windows of ``size`` characters."""
    size = max(1, size)
    return [text[i:i + size] for i in range(0, len(text), size)]


async def stream_windows(windows: Iterable[str], interval: float = 0.0) -> AsyncIterator[str]:
    """Yield pre-split windows on a short timer, giving the loop a chance to flush each one."""
    for window in windows:
        yield window
        await asyncio.sleep(interval)
