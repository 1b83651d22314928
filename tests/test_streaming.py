"""Tests for SSE chat stream parsing and accumulation."""

import httpx
import pytest

from community.app.exceptions import ChatStreamError, StreamStateError
from community.app.services.streaming import (
    CONNECTION_LOST_MESSAGE,
    PARSE_FAILED_MESSAGE,
    STREAM_CLOSED_MESSAGE,
    ArticleSource,
    ContentChunk,
    DoneChunk,
    ErrorChunk,
    MalformedRecord,
    SourcesChunk,
    StreamAccumulator,
    StreamState,
    collect_stream,
    encode_chunk,
    iter_sse_records,
    parse_stream,
)

LIBRARY = ArticleSource(title="Library Hours", slug="library-hours", category="Campus Life")


async def source(*pieces):
    for piece in pieces:
        yield piece


class TrackingSource:
    """Async iterator that records how far it was read and whether it was closed."""

    def __init__(self, *pieces):
        self.pieces = list(pieces)
        self.reads = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.reads >= len(self.pieces):
            raise StopAsyncIteration
        piece = self.pieces[self.reads]
        self.reads += 1
        return piece

    async def aclose(self):
        self.closed = True


def wire(*chunks) -> bytes:
    return "".join(encode_chunk(c) for c in chunks).encode("utf-8")


async def collect(agen) -> list:
    return [item async for item in agen]


class TestEncodeChunk:
    def test_content_record(self):
        assert encode_chunk(ContentChunk(data="Hi")) == 'data: {"type":"content","data":"Hi"}\n\n'

    def test_done_record(self):
        assert encode_chunk(DoneChunk()) == 'data: {"type":"done","data":null}\n\n'

    def test_error_record_carries_retryable(self):
        record = encode_chunk(ErrorChunk(data="Rate limit exceeded", retryable=False))
        assert '"retryable":false' in record


class TestIterSseRecords:
    @pytest.mark.asyncio
    async def test_records_split_across_reads(self):
        payload = wire(ContentChunk(data="Hello"), DoneChunk())
        pieces = [payload[i:i + 7] for i in range(0, len(payload), 7)]

        records = await collect(iter_sse_records(source(*pieces)))

        assert records == [
            '{"type":"content","data":"Hello"}',
            '{"type":"done","data":null}',
        ]

    @pytest.mark.asyncio
    async def test_multibyte_characters_split_between_reads(self):
        payload = wire(ContentChunk(data="Grüße aus München 👋"))
        pieces = [payload[i:i + 3] for i in range(0, len(payload), 3)]

        items = await collect(parse_stream(source(*pieces)))

        assert items == [ContentChunk(data="Grüße aus München 👋")]

    @pytest.mark.asyncio
    async def test_crlf_comments_and_done_sentinel(self):
        text = (
            ": keep-alive\r\n\r\n"
            'data: {"type":"content","data":"ok"}\r\n\r\n'
            "event: ping\r\n\r\n"
            "data: [DONE]\r\n\r\n"
        )

        items = await collect(parse_stream(source(text)))

        assert items == [ContentChunk(data="ok")]

    @pytest.mark.asyncio
    async def test_multiline_data_is_joined(self):
        text = 'data: {"type": "content",\ndata: "data": "joined"}\n\n'

        items = await collect(parse_stream(source(text)))

        assert items == [ContentChunk(data="joined")]

    @pytest.mark.asyncio
    async def test_trailing_record_without_terminator_is_flushed(self):
        items = await collect(parse_stream(source(b'data: {"type":"done","data":null}')))

        assert items == [DoneChunk()]

    @pytest.mark.asyncio
    async def test_invalid_utf8_record_is_malformed_and_reading_continues(self):
        stream = source(
            wire(ContentChunk(data="a")),
            b'data: {"type":"content","data":"\xff\xfe"}\n\n',
            wire(ContentChunk(data="b"), DoneChunk()),
        )

        items = await collect(parse_stream(stream))

        assert items[0] == ContentChunk(data="a")
        assert isinstance(items[1], MalformedRecord)
        assert "UTF-8" in items[1].error
        assert items[2] == ContentChunk(data="b")
        assert items[3] == DoneChunk()

    @pytest.mark.asyncio
    async def test_invalid_utf8_in_comment_is_ignored(self):
        stream = source(b": \xff\n\n", wire(ContentChunk(data="ok")))

        records = await collect(iter_sse_records(stream))

        assert records == ['{"type":"content","data":"ok"}']


class TestParseStream:
    @pytest.mark.asyncio
    async def test_hello_world(self):
        stream = source(wire(ContentChunk(data="Hello"), ContentChunk(data=" world"), DoneChunk()))

        items = await collect(parse_stream(stream))

        assert len(items) == 3
        assert isinstance(items[0], ContentChunk)
        assert isinstance(items[1], ContentChunk)
        assert isinstance(items[2], DoneChunk)
        assert "".join(i.data for i in items if isinstance(i, ContentChunk)) == "Hello world"

    @pytest.mark.asyncio
    async def test_invalid_json_does_not_stop_reading(self):
        stream = source(
            wire(ContentChunk(data="a")),
            b"data: {not json}\n\n",
            wire(ContentChunk(data="b"), DoneChunk()),
        )

        items = await collect(parse_stream(stream))

        assert isinstance(items[1], MalformedRecord)
        assert items[1].raw == "{not json}"
        assert items[1].error
        assert items[0] == ContentChunk(data="a")
        assert items[2] == ContentChunk(data="b")
        assert items[3] == DoneChunk()

    @pytest.mark.asyncio
    async def test_unknown_chunk_type_is_malformed(self):
        items = await collect(parse_stream(source(b'data: {"type":"weird","data":1}\n\n')))

        assert len(items) == 1
        assert isinstance(items[0], MalformedRecord)

    @pytest.mark.asyncio
    async def test_sources_chunk(self):
        items = await collect(parse_stream(source(wire(SourcesChunk(data=[LIBRARY])))))

        assert items == [SourcesChunk(data=[LIBRARY])]

    @pytest.mark.asyncio
    async def test_error_chunk_defaults_to_retryable(self):
        items = await collect(
            parse_stream(source(b'data: {"type":"error","data":"Request timed out."}\n\n'))
        )

        assert items == [ErrorChunk(data="Request timed out.", retryable=True)]

    @pytest.mark.asyncio
    async def test_terminal_chunk_stops_reading_and_closes_source(self):
        tracked = TrackingSource(wire(DoneChunk()), wire(ContentChunk(data="late")))

        items = await collect(parse_stream(tracked))

        assert items == [DoneChunk()]
        assert tracked.reads == 1
        assert tracked.closed

    @pytest.mark.asyncio
    async def test_error_chunk_is_terminal(self):
        tracked = TrackingSource(
            wire(ErrorChunk(data="boom"), ContentChunk(data="late")),
        )

        items = await collect(parse_stream(tracked))

        assert items == [ErrorChunk(data="boom")]
        assert tracked.closed

    @pytest.mark.asyncio
    async def test_early_close_releases_source(self):
        tracked = TrackingSource(
            wire(ContentChunk(data="one")),
            wire(ContentChunk(data="two")),
            wire(DoneChunk()),
        )

        chunks = parse_stream(tracked)
        first = await chunks.__anext__()
        await chunks.aclose()

        assert first == ContentChunk(data="one")
        assert tracked.reads == 1
        assert tracked.closed

    @pytest.mark.asyncio
    async def test_stream_end_without_terminal_just_ends(self):
        items = await collect(parse_stream(source(wire(ContentChunk(data="cut")))))

        assert items == [ContentChunk(data="cut")]


class TestStreamAccumulator:
    def test_accumulates_content_and_keeps_last_sources(self):
        acc = StreamAccumulator()
        other = ArticleSource(title="Mensa", slug="mensa", category="Food")

        acc.feed(ContentChunk(data="Hello"))
        acc.feed(SourcesChunk(data=[LIBRARY]))
        acc.feed(ContentChunk(data=" world"))
        acc.feed(SourcesChunk(data=[other]))
        state = acc.feed(DoneChunk())

        assert state is StreamState.DONE
        assert acc.text == "Hello world"
        assert acc.sources == [other]
        acc.raise_for_error()

    def test_feeding_after_terminal_state_raises(self):
        acc = StreamAccumulator()
        acc.feed(DoneChunk())

        with pytest.raises(StreamStateError):
            acc.feed(ContentChunk(data="late"))

    def test_error_chunk_message_wins_over_stream_closed(self):
        acc = StreamAccumulator()
        acc.feed(ContentChunk(data="partial"))
        acc.feed(ErrorChunk(data="Rate limit exceeded. Please try again in a moment.", retryable=False))

        acc.finish()
        acc.fail_transport()

        assert acc.state is StreamState.FAILED
        assert acc.error == "Rate limit exceeded. Please try again in a moment."
        assert acc.retryable is False
        with pytest.raises(ChatStreamError) as exc_info:
            acc.raise_for_error()
        assert exc_info.value.message == acc.error
        assert exc_info.value.retryable is False

    def test_unterminated_stream_fails_on_finish(self):
        acc = StreamAccumulator()
        acc.feed(ContentChunk(data="partial"))

        assert acc.finish() is StreamState.FAILED
        assert acc.error == STREAM_CLOSED_MESSAGE
        assert acc.text == "partial"

    def test_consecutive_parse_errors_fail_the_stream(self):
        acc = StreamAccumulator(max_parse_errors=3)
        bad = MalformedRecord(raw="{", error="invalid")

        acc.feed(bad)
        acc.feed(bad)
        acc.feed(ContentChunk(data="ok"))
        acc.feed(bad)
        acc.feed(bad)
        assert acc.state is StreamState.READING

        acc.feed(bad)
        assert acc.state is StreamState.FAILED
        assert acc.error == PARSE_FAILED_MESSAGE
        assert acc.total_parse_errors == 5

    def test_rejects_unknown_items(self):
        with pytest.raises(TypeError):
            StreamAccumulator().feed("content")

    @pytest.mark.parametrize("max_parse_errors", [0, -1])
    def test_rejects_non_positive_parse_error_budget(self, max_parse_errors):
        with pytest.raises(ValueError):
            StreamAccumulator(max_parse_errors=max_parse_errors)


class TestCollectStream:
    @pytest.mark.asyncio
    async def test_collects_full_reply(self):
        stream = source(wire(
            ContentChunk(data="Hello"),
            ContentChunk(data=" world"),
            SourcesChunk(data=[LIBRARY]),
            DoneChunk(),
        ))

        acc = await collect_stream(stream)

        assert acc.state is StreamState.DONE
        assert acc.text == "Hello world"
        assert acc.sources == [LIBRARY]

    @pytest.mark.asyncio
    async def test_error_chunk_raises(self):
        stream = source(wire(ContentChunk(data="x"), ErrorChunk(data="The AI service is down")))

        with pytest.raises(ChatStreamError) as exc_info:
            await collect_stream(stream)

        assert exc_info.value.message == "The AI service is down"

    @pytest.mark.asyncio
    async def test_truncated_stream_raises(self):
        with pytest.raises(ChatStreamError) as exc_info:
            await collect_stream(source(wire(ContentChunk(data="x"))))

        assert exc_info.value.message == STREAM_CLOSED_MESSAGE

    @pytest.mark.asyncio
    async def test_transport_failure_raises_connection_lost(self):
        async def broken():
            yield wire(ContentChunk(data="partial"))
            raise httpx.ReadError("connection reset")

        acc = StreamAccumulator()
        with pytest.raises(ChatStreamError) as exc_info:
            await collect_stream(broken(), acc)

        assert exc_info.value.message == CONNECTION_LOST_MESSAGE
        assert acc.text == "partial"

    @pytest.mark.asyncio
    async def test_invalid_utf8_record_does_not_abort_the_reply(self):
        stream = source(
            wire(ContentChunk(data="Hello")),
            b'data: {"type":"content","data":"\xff\xfe"}\n\n',
            wire(ContentChunk(data=" world"), DoneChunk()),
        )

        acc = await collect_stream(stream)

        assert acc.state is StreamState.DONE
        assert acc.text == "Hello world"
        assert acc.total_parse_errors == 1
