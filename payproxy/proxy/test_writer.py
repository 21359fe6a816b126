import asyncio

import pytest

from payproxy.proxy.writer import ResponseWriter


class RecordingSend:
    def __init__(self, fail_after=None):
        self.messages = []
        self.fail_after = fail_after

    async def __call__(self, message):
        if self.fail_after is not None and len(self.messages) >= self.fail_after:
            raise ConnectionResetError("peer went away")
        self.messages.append(message)


def _headers(message):
    return {k.decode(): v.decode() for k, v in message["headers"]}


class TestWriteError:
    @pytest.mark.asyncio
    async def test_writes_plain_text_error(self):
        send = RecordingSend()
        writer = ResponseWriter(send)

        assert await writer.write_error(400, "Bad Request: Unrecognized host") is True

        start, body = send.messages
        assert start["status"] == 400
        assert _headers(start)["content-type"] == "text/plain"
        assert _headers(start)["content-length"] == str(len(b"Bad Request: Unrecognized host"))
        assert body == {
            "type": "http.response.body",
            "body": b"Bad Request: Unrecognized host",
            "more_body": False,
        }

    @pytest.mark.asyncio
    async def test_second_error_is_a_noop(self):
        send = RecordingSend()
        writer = ResponseWriter(send)

        await writer.write_error(504, "Gateway Timeout")
        assert await writer.write_error(500, "Internal Server Error") is False

        assert len(send.messages) == 2
        assert send.messages[0]["status"] == 504

    @pytest.mark.asyncio
    async def test_error_after_partial_stream_is_a_noop(self):
        send = RecordingSend()
        writer = ResponseWriter(send)
        await writer.start(200, [("content-type", "application/json")])
        await writer.write(b'{"ok":')

        assert await writer.write_error(500, "Internal Server Error") is False

        assert [m["type"] for m in send.messages] == [
            "http.response.start",
            "http.response.body",
        ]

    @pytest.mark.asyncio
    async def test_concurrent_errors_only_first_wins(self):
        send = RecordingSend()
        writer = ResponseWriter(send)

        results = await asyncio.gather(
            writer.write_error(504, "Gateway Timeout"),
            writer.write_error(500, "Internal Server Error"),
        )

        assert results == [True, False]
        assert [m.get("status") for m in send.messages if "status" in m] == [504]


class TestStreaming:
    @pytest.mark.asyncio
    async def test_stream_then_end(self):
        send = RecordingSend()
        writer = ResponseWriter(send)

        await writer.start(200, [("X-Test", "1")])
        await writer.write(b"ab")
        await writer.write(b"")
        await writer.write(b"cd")
        await writer.end()

        assert writer.bytes_written == 4
        assert writer.finished
        assert _headers(send.messages[0]) == {"x-test": "1"}
        assert [m.get("more_body") for m in send.messages[1:]] == [True, True, False]

    @pytest.mark.asyncio
    async def test_write_before_start_is_ignored(self):
        send = RecordingSend()
        writer = ResponseWriter(send)

        assert await writer.write(b"data") is False
        assert await writer.end() is False
        assert send.messages == []

    @pytest.mark.asyncio
    async def test_writes_after_end_are_ignored(self):
        send = RecordingSend()
        writer = ResponseWriter(send)
        await writer.respond(200, [], b"done")

        assert await writer.write(b"more") is False
        assert await writer.end() is False
        assert await writer.start(200, []) is False
        assert len(send.messages) == 2


class TestClosedConnection:
    @pytest.mark.asyncio
    async def test_send_failure_marks_closed_without_raising(self):
        send = RecordingSend(fail_after=1)
        writer = ResponseWriter(send)

        assert await writer.start(200, []) is True
        assert await writer.write(b"chunk") is False

        assert writer.closed
        assert await writer.write(b"again") is False
        assert await writer.write_error(500, "Internal Server Error") is False
        assert len(send.messages) == 1

    @pytest.mark.asyncio
    async def test_mark_closed_blocks_everything(self):
        send = RecordingSend()
        writer = ResponseWriter(send)
        writer.mark_closed()

        assert await writer.write_error(500, "Internal Server Error") is False
        assert send.messages == []

    @pytest.mark.asyncio
    async def test_abort_leaves_response_incomplete(self):
        send = RecordingSend()
        writer = ResponseWriter(send)
        await writer.start(200, [])
        await writer.write(b"partial")

        writer.abort()

        assert await writer.end() is False
        assert all(m.get("more_body", True) for m in send.messages[1:])
