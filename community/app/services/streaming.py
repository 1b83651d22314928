"""Server-Sent Events framing for chat streams.

Chat replies travel as repeated ``data: <json>\\n\\n`` records. Each JSON
payload is one tagged chunk::

    {"type": "content", "data": "Hel"}
    {"type": "sources", "data": [{"title": ..., "slug": ..., "category": ...}]}
    {"type": "error",   "data": "message", "retryable": true}
    {"type": "done",    "data": null}

The server side only needs ``encode_chunk``. Consumers read a byte (or
text) stream through ``parse_stream``, which decodes incrementally and
yields chunks lazily, and fold them into a ``StreamAccumulator``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, AsyncIterable, AsyncIterator, List, Literal, Optional, Union

import httpx
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from community.app.core.config import settings
from community.app.core.logging import get_logger
from community.app.exceptions import ChatStreamError, StreamStateError

logger = get_logger(__name__)

DATA_FIELD = "data"
# OpenAI-style terminator some upstreams append after the last record
DONE_SENTINEL = "[DONE]"

STREAM_CLOSED_MESSAGE = "Stream closed before completion"
PARSE_FAILED_MESSAGE = "Stream parsing failed, please retry"
CONNECTION_LOST_MESSAGE = "Connection interrupted while receiving response. Please try again."


class ArticleSource(BaseModel):
    """A wiki article cited by an assistant reply."""
    title: str
    slug: str
    category: str


class ContentChunk(BaseModel):
    type: Literal["content"] = "content"
    data: str


class SourcesChunk(BaseModel):
    type: Literal["sources"] = "sources"
    data: List[ArticleSource]


class ErrorChunk(BaseModel):
    type: Literal["error"] = "error"
    data: str
    retryable: bool = True


class DoneChunk(BaseModel):
    type: Literal["done"] = "done"
    data: None = None


StreamChunk = Annotated[
    Union[ContentChunk, SourcesChunk, ErrorChunk, DoneChunk],
    Field(discriminator="type"),
]

_chunk_adapter: TypeAdapter = TypeAdapter(StreamChunk)

TERMINAL_CHUNKS = (DoneChunk, ErrorChunk)


@dataclass(frozen=True)
class MalformedRecord:
    """A record whose payload could not be decoded into a chunk."""
    raw: str
    error: str


def encode_chunk(chunk: BaseModel) -> str:
    """Serialise one chunk as an SSE record."""
    return f"{DATA_FIELD}: {chunk.model_dump_json()}\n\n"


def decode_chunk(payload: str) -> Union[ContentChunk, SourcesChunk, ErrorChunk, DoneChunk]:
    """Validate one JSON payload.

    Raises:
        ValidationError: for invalid JSON or an unknown chunk shape
    """
    return _chunk_adapter.validate_json(payload)


async def _close_iterator(iterator: object) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()


async def iter_sse_records(
    source: AsyncIterable[Union[bytes, str]],
) -> AsyncIterator[Union[str, MalformedRecord]]:
    """Yield the ``data`` payload of each complete SSE record.

    Input is buffered as bytes and split on ``\\n`` before decoding, so a
    multi-byte UTF-8 sequence may be split across reads. A record with
    invalid UTF-8 in its data is yielded as ``MalformedRecord`` and the
    following records are read as usual. Multiple ``data:`` lines in one
    record are joined with newlines. A final record missing its blank-line
    terminator is still delivered when the source ends.

    The underlying iterator is closed when this generator finishes or is
    closed early by its consumer.
    """
    iterator = aiter(source)
    buffer = b""
    data_lines: List[str] = []
    decode_error: Optional[str] = None

    def end_record() -> Union[str, MalformedRecord]:
        nonlocal decode_error
        payload = "\n".join(data_lines)
        data_lines.clear()
        if decode_error is not None:
            error, decode_error = decode_error, None
            return MalformedRecord(raw=payload, error=error)
        return payload

    def take_line(raw: bytes) -> Union[str, MalformedRecord, None]:
        nonlocal decode_error
        raw = raw.rstrip(b"\r")
        if not raw:
            return end_record() if data_lines else None
        try:
            line = raw.decode("utf-8")
            invalid = None
        except UnicodeDecodeError as e:
            line = raw.decode("utf-8", errors="replace")
            invalid = f"Invalid UTF-8 in record: {e.reason}"
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if name == DATA_FIELD and sep:
            data_lines.append(value[1:] if value.startswith(" ") else value)
            if invalid and decode_error is None:
                decode_error = invalid
        return None

    try:
        async for piece in iterator:
            buffer += piece.encode("utf-8") if isinstance(piece, str) else piece
            while True:
                newline = buffer.find(b"\n")
                if newline < 0:
                    break
                line = buffer[:newline]
                buffer = buffer[newline + 1:]
                record = take_line(line)
                if record is not None:
                    yield record

        if buffer:
            take_line(buffer)
        if data_lines:
            yield end_record()
    finally:
        await _close_iterator(iterator)


async def parse_stream(
    source: AsyncIterable[Union[bytes, str]],
) -> AsyncIterator[Union[ContentChunk, SourcesChunk, ErrorChunk, DoneChunk, MalformedRecord]]:
    """Decode an SSE chat stream into chunks, in arrival order.

    A record that fails to decode is yielded as ``MalformedRecord`` and
    reading continues. A ``done`` or ``error`` chunk is the last item
    yielded; nothing further is read from the source.
    """
    records = iter_sse_records(source)
    try:
        async for payload in records:
            if isinstance(payload, MalformedRecord):
                yield payload
                continue
            if payload.strip() == DONE_SENTINEL:
                continue
            try:
                chunk = decode_chunk(payload)
            except ValidationError as e:
                reason = "; ".join(err["msg"] for err in e.errors())
                yield MalformedRecord(raw=payload, error=reason)
                continue
            yield chunk
            if isinstance(chunk, TERMINAL_CHUNKS):
                return
    finally:
        await records.aclose()


class StreamState(str, Enum):
    READING = "reading"
    DONE = "done"
    FAILED = "failed"


class StreamAccumulator:
    """Folds parsed chunks into the final assistant message.

    ``content`` chunks are concatenated in arrival order and the last
    ``sources`` payload wins. The accumulator moves from ``READING`` to
    either ``DONE`` or ``FAILED`` exactly once.
    """

    def __init__(self, max_parse_errors: Optional[int] = None):
        if max_parse_errors is None:
            max_parse_errors = settings.stream_max_parse_errors
        if max_parse_errors < 1:
            raise ValueError("max_parse_errors must be at least 1")
        self.max_parse_errors = max_parse_errors
        self.state = StreamState.READING
        self.error: Optional[str] = None
        self.retryable = True
        self.parse_errors = 0
        self.total_parse_errors = 0
        self._parts: List[str] = []
        self._sources: List[ArticleSource] = []

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def sources(self) -> List[ArticleSource]:
        return list(self._sources)

    @property
    def finished(self) -> bool:
        return self.state is not StreamState.READING

    def _fail(self, message: str, retryable: bool = True) -> None:
        self.state = StreamState.FAILED
        self.error = message
        self.retryable = retryable

    def feed(self, item) -> StreamState:
        """Apply one parsed item.

        Raises:
            StreamStateError: if the stream already reached a terminal state
        """
        if self.finished:
            raise StreamStateError(f"stream already {self.state.value}")

        if isinstance(item, MalformedRecord):
            self.parse_errors += 1
            self.total_parse_errors += 1
            log = logger.warning if self.parse_errors > 3 else logger.debug
            log(
                f"Failed to parse SSE record ({self.parse_errors}/{self.max_parse_errors}): {item.error}",
                extra={"record_preview": item.raw[:100]},
            )
            if self.parse_errors >= self.max_parse_errors:
                self._fail(PARSE_FAILED_MESSAGE)
            return self.state

        self.parse_errors = 0
        if isinstance(item, ContentChunk):
            self._parts.append(item.data)
        elif isinstance(item, SourcesChunk):
            self._sources = list(item.data)
        elif isinstance(item, ErrorChunk):
            self._fail(item.data, item.retryable)
        elif isinstance(item, DoneChunk):
            self.state = StreamState.DONE
        else:
            raise TypeError(f"unexpected stream item: {type(item).__name__}")
        return self.state

    def fail_transport(self, message: str = CONNECTION_LOST_MESSAGE) -> None:
        """Record an I/O failure unless the stream already terminated."""
        if not self.finished:
            self._fail(message)

    def finish(self) -> StreamState:
        """Mark end of input; an unterminated stream counts as failed."""
        if not self.finished:
            self._fail(STREAM_CLOSED_MESSAGE)
        return self.state

    def raise_for_error(self) -> None:
        if self.state is StreamState.FAILED:
            raise ChatStreamError(self.error or STREAM_CLOSED_MESSAGE, self.retryable)


async def collect_stream(
    source: AsyncIterable[Union[bytes, str]],
    accumulator: Optional[StreamAccumulator] = None,
) -> StreamAccumulator:
    """Read a whole chat stream.

    Returns:
        The accumulator in ``DONE`` state

    Raises:
        ChatStreamError: if the stream reported an error, broke off, or
            exceeded the parse error budget
    """
    acc = accumulator or StreamAccumulator()
    chunks = parse_stream(source)
    try:
        async for item in chunks:
            acc.feed(item)
            if acc.finished:
                break
    except (httpx.TransportError, OSError) as e:
        logger.warning(f"Chat stream interrupted: {type(e).__name__}: {e}")
        acc.fail_transport()
    finally:
        await chunks.aclose()

    acc.finish()
    acc.raise_for_error()
    return acc
