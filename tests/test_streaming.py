"""Tests for paragraph re-chunking, the dual-sink writer and the streamed chat response."""

import json

import pytest

from chatlocal.api.responses import ChatStreamResponse
from chatlocal.service.streaming import (
    BufferSink,
    ClientDisconnected,
    DualSinkWriter,
    GenerateChunk,
    LiveSink,
    StreamAggregator,
    StreamDecodeError,
    aggregate,
    parse_chunk,
)
from chatlocal.storage.models import Message
from chatlocal.storage.transcripts import TranscriptStore


async def _lines(payload: bytes):
    for line in payload.decode().split("\n"):
        yield line


async def _collect(payload: bytes):
    return [unit async for unit in aggregate(_lines(payload))]


class RecordingSend:
    def __init__(self, fail_after=None):
        self.messages = []
        self.fail_after = fail_after

    async def __call__(self, message):
        if self.fail_after is not None and len(self.messages) >= self.fail_after:
            raise OSError("connection reset")
        self.messages.append(message)

    @property
    def body(self):
        return b"".join(m["body"] for m in self.messages).decode()


class FailingBuffer(BufferSink):
    async def write(self, data):
        raise MemoryError("buffer full")


class ScriptedBackendResponse:
    """Stands in for an open streaming ``httpx.Response``."""

    def __init__(self, payload: bytes):
        self.payload = payload
        self.closed = False

    async def aiter_lines(self):
        async for line in _lines(self.payload):
            yield line

    async def aclose(self):
        self.closed = True


class TestAggregator:
    async def test_hello_world_yields_two_units(self, make_ndjson):
        payload = make_ndjson(["Hello", " world", "\n", "Second", " sentence."])

        assert await _collect(payload) == ["Hello world", "Second sentence."]

    async def test_double_newline_is_a_marker(self, make_ndjson):
        payload = make_ndjson(["One", "\n\n", "Two"])

        assert await _collect(payload) == ["One", "Two"]

    async def test_marker_flushes_even_when_empty(self, make_ndjson):
        payload = make_ndjson(["\n", "Hi"])

        assert await _collect(payload) == ["", "Hi"]

    async def test_text_inside_other_fragments_is_not_a_marker(self, make_ndjson):
        payload = make_ndjson(["line one\n", "still one"])

        assert await _collect(payload) == ["line one\nstill one"]

    async def test_done_fragment_text_is_included(self):
        payload = (
            json.dumps({"response": "Bye", "done": False})
            + "\n"
            + json.dumps({"response": "!", "done": True})
            + "\n"
        ).encode()

        assert await _collect(payload) == ["Bye!"]

    async def test_lines_after_done_are_ignored(self, make_ndjson):
        payload = make_ndjson(["first"]) + b"this is not json\n"

        assert await _collect(payload) == ["first"]

    async def test_source_closing_without_done_flushes_pending(self, make_ndjson):
        payload = make_ndjson(["partial", " reply"], done=False)

        assert await _collect(payload) == ["partial reply"]

    async def test_source_closing_without_done_and_nothing_pending(self, make_ndjson):
        payload = make_ndjson(["a", "\n"], done=False)

        assert await _collect(payload) == ["a"]

    async def test_blank_lines_are_skipped(self, make_ndjson):
        payload = make_ndjson(["x"]).replace(b"\n", b"\n\n")

        assert await _collect(payload) == ["x"]

    async def test_malformed_line_aborts(self, make_ndjson):
        payload = make_ndjson(["ok", "\n"], done=False) + b"{broken\n"
        units = []

        with pytest.raises(StreamDecodeError):
            async for unit in aggregate(_lines(payload)):
                units.append(unit)

        assert units == ["ok"]

    def test_feed_and_finish(self):
        agg = StreamAggregator()

        assert agg.feed(GenerateChunk(response="a")) is None
        assert agg.feed(GenerateChunk(response="\n")) == "a"
        assert agg.feed(GenerateChunk(response="b", done=True)) == "b"
        assert agg.done
        assert agg.finish() is None

    @pytest.mark.parametrize("line", ["not json", "[]", '{"response": 5, "done": "maybe"}'])
    def test_parse_chunk_rejects_bad_shapes(self, line):
        with pytest.raises(StreamDecodeError):
            parse_chunk(line)


class TestDualSinkWriter:
    async def test_units_reach_both_sinks(self):
        send = RecordingSend()
        buffer = BufferSink()
        writer = DualSinkWriter(LiveSink(send), buffer)

        for unit in ["Hello world", "Second sentence."]:
            await writer.accept(unit)

        assert buffer.getvalue() == "Hello world\n\nSecond sentence.\n\n"
        assert send.body == buffer.getvalue()
        assert writer.text == "Hello world\n\nSecond sentence."

    async def test_each_unit_is_its_own_body_message(self):
        send = RecordingSend()
        writer = DualSinkWriter(LiveSink(send), BufferSink())

        await writer.accept("one")
        await writer.accept("two")

        assert [m["body"] for m in send.messages] == [b"one\n\n", b"two\n\n"]
        assert all(m["more_body"] for m in send.messages)

    async def test_live_failure_is_fatal_but_buffer_keeps_unit(self):
        send = RecordingSend(fail_after=1)
        buffer = BufferSink()
        writer = DualSinkWriter(LiveSink(send), buffer)
        await writer.accept("delivered")

        with pytest.raises(ClientDisconnected):
            await writer.accept("lost")

        assert buffer.getvalue() == "delivered\n\nlost\n\n"
        assert writer.units == 1

    async def test_buffer_failure_is_not_fatal(self):
        send = RecordingSend()
        writer = DualSinkWriter(LiveSink(send), FailingBuffer())

        await writer.accept("still sent")

        assert writer.degraded
        assert send.body == "still sent\n\n"


class TestChatStreamResponse:
    @pytest.fixture
    def transcripts(self, tmp_path):
        return TranscriptStore(tmp_path)

    def _response(self, payload, transcripts, chat_id, completions):
        async def persist_turn(reply):
            completions.append(reply)
            transcripts.append(
                "u1",
                chat_id,
                Message(sender="user", text="hi", type="sent", time="3:04 PM"),
                Message(sender="assistant", text=reply, type="received", time="3:04 PM"),
            )

        return ChatStreamResponse(ScriptedBackendResponse(payload), on_complete=persist_turn)

    async def test_clean_finish_persists_turn_and_closes_backend(self, make_ndjson, transcripts):
        chat_id = transcripts.create("u1")
        completions = []
        response = self._response(
            make_ndjson(["Hello", "\n", "again"]), transcripts, chat_id, completions
        )
        send = RecordingSend()

        await response.stream_response(send)

        assert response.backend_response.closed
        assert completions == ["Hello\n\nagain"]
        assert send.messages[0]["type"] == "http.response.start"
        assert send.messages[-1] == {"type": "http.response.body", "body": b"", "more_body": False}
        assert len(transcripts.get("u1", chat_id)) == 2

    async def test_client_disconnect_skips_persist_and_closes_backend(self, make_ndjson, transcripts):
        chat_id = transcripts.create("u1")
        completions = []
        response = self._response(
            make_ndjson(["Hello", " world", "\n", "Second", " sentence.", "\n", "Third"]),
            transcripts,
            chat_id,
            completions,
        )
        # start message and the first unit go through, the second unit hits a reset
        send = RecordingSend(fail_after=2)

        await response.stream_response(send)

        assert response.backend_response.closed
        assert completions == []
        assert transcripts.get("u1", chat_id) == []
        assert [m.get("body") for m in send.messages[1:]] == [b"Hello world\n\n"]
