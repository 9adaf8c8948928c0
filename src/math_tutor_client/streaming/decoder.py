"""Incremental decoder for line-delimited ``data: <json>`` event streams.

The gateway relays an OpenAI-style chat completion stream::

    data: {"choices":[{"delta":{"content":"Hel"}}]}

    data: [DONE]

Bytes arrive in arbitrary pieces. Lines are framed by ``\\n`` and every
decision is taken per complete line, so the emitted deltas do not depend on
where the chunk boundaries fall.
"""

import codecs
import inspect
import json
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

from math_tutor_client.errors import MalformedEventIgnored

logger = structlog.get_logger()

DATA_PREFIX = "data: "
DONE_PAYLOAD = "[DONE]"

DeltaCallback = Callable[[str], Awaitable[None] | None]
DoneCallback = Callable[[], Awaitable[None] | None]


class ParserState(StrEnum):
    ACCUMULATING = "accumulating"
    # A data line failed to parse; following lines may complete it.
    CONTINUING = "continuing"


class StreamEnd(StrEnum):
    """Why decoding stopped."""

    DONE_MARKER = "done_marker"
    END_OF_INPUT = "end_of_input"


def _parse(payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise MalformedEventIgnored(f"unparseable event payload: {payload[:80]!r}") from e


def extract_delta(event: Any) -> str | None:
    """Read ``choices[0].delta.content``; a missing path means no delta."""
    try:
        content = event["choices"][0]["delta"]["content"]
    except (KeyError, IndexError, TypeError):
        return None
    if isinstance(content, str) and content:
        return content
    return None


class StreamDecoder:
    """Turns byte chunks into text deltas.

    A ``data:`` line whose JSON does not parse is held as pending instead of
    being discarded. Each following non-blank line is first tried on its own
    (a valid event or ``[DONE]`` supersedes the pending payload); other lines
    are appended to the pending payload and the result reparsed. After
    ``max_continuation_lines`` failed attempts the payload is dropped.

    Args:
        max_continuation_lines: Bound on lines spent completing one payload.
    """

    def __init__(self, max_continuation_lines: int = 4):
        self.max_continuation_lines = max_continuation_lines
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._state = ParserState.ACCUMULATING
        self._pending = ""
        self._continuations = 0
        self._done = False
        self.dropped_events = 0

    @property
    def done(self) -> bool:
        """True once ``[DONE]`` was seen or ``finish()`` was called."""
        return self._done

    @property
    def state(self) -> ParserState:
        return self._state

    def feed(self, chunk: bytes) -> list[str]:
        """Consume a chunk and return the deltas of every completed line."""
        if self._done:
            return []
        self._buffer += self._utf8.decode(chunk)
        deltas: list[str] = []
        while not self._done:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1 :]
            if line.endswith("\r"):
                line = line[:-1]
            delta = self._process_line(line)
            if delta:
                deltas.append(delta)
        return deltas

    def finish(self) -> None:
        """Signal end of input. Bytes that never formed a complete line are dropped."""
        if self._done:
            return
        self._buffer += self._utf8.decode(b"", final=True)
        if self._buffer:
            logger.debug("stream_tail_dropped", size=len(self._buffer))
            self._buffer = ""
        if self._state is ParserState.CONTINUING:
            self._drop_pending("end_of_input")
        self._done = True

    def _process_line(self, line: str) -> str | None:
        if not line.strip() or line.startswith(":"):
            return None
        if not line.startswith(DATA_PREFIX):
            if self._state is ParserState.CONTINUING:
                return self._continue(line.strip())
            return None

        payload = line[len(DATA_PREFIX) :].strip()
        if payload == DONE_PAYLOAD:
            if self._state is ParserState.CONTINUING:
                self._drop_pending("superseded")
            self._done = True
            return None
        try:
            event = _parse(payload)
        except MalformedEventIgnored:
            if self._state is ParserState.CONTINUING:
                self._drop_pending("superseded")
            self._state = ParserState.CONTINUING
            self._pending = payload
            self._continuations = 0
            return None
        if self._state is ParserState.CONTINUING:
            self._drop_pending("superseded")
        return extract_delta(event)

    def _continue(self, fragment: str) -> str | None:
        candidate = self._pending + fragment
        try:
            event = _parse(candidate)
        except MalformedEventIgnored:
            self._pending = candidate
            self._continuations += 1
            if self._continuations >= self.max_continuation_lines:
                self._drop_pending("retries_exhausted")
            return None
        self._reset_pending()
        return extract_delta(event)

    def _drop_pending(self, reason: str) -> None:
        self.dropped_events += 1
        logger.warning(
            "malformed_event_ignored",
            reason=reason,
            payload=self._pending[:80],
            continuations=self._continuations,
        )
        self._reset_pending()

    def _reset_pending(self) -> None:
        self._state = ParserState.ACCUMULATING
        self._pending = ""
        self._continuations = 0


async def _call(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


async def decode_stream(
    chunks: AsyncIterable[bytes],
    on_delta: DeltaCallback,
    on_done: DoneCallback,
    max_continuation_lines: int = 4,
) -> StreamEnd:
    """Decode a byte stream, invoking callbacks as deltas arrive.

    ``on_done`` fires exactly once, after ``[DONE]`` or at end of input,
    whichever comes first. Reading stops at ``[DONE]``. Errors raised by the
    byte source propagate and ``on_done`` is not called.

    Args:
        chunks: Response body chunks.
        on_delta: Called with every non-empty delta, in arrival order.
        on_done: Called once when decoding terminates.
        max_continuation_lines: See StreamDecoder.

    Returns:
        How the stream terminated.
    """
    decoder = StreamDecoder(max_continuation_lines=max_continuation_lines)
    end = StreamEnd.END_OF_INPUT
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            await _call(on_delta, delta)
        if decoder.done:
            end = StreamEnd.DONE_MARKER
            break
    else:
        decoder.finish()
    await _call(on_done)
    return end


async def iter_deltas(
    chunks: AsyncIterable[bytes], max_continuation_lines: int = 4
) -> AsyncIterator[str]:
    """Lazy, non-restartable sequence of deltas from a byte stream."""
    decoder = StreamDecoder(max_continuation_lines=max_continuation_lines)
    async for chunk in chunks:
        for delta in decoder.feed(chunk):
            yield delta
        if decoder.done:
            return
    decoder.finish()
