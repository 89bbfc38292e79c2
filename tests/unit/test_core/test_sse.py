"""
Unit tests for virtual_csuite.core.sse module.

Tests token extraction for each chunk shape and incremental decoding of
SSE byte streams.
"""

import pytest

from virtual_csuite.core.sse import SSEDecoder, extract_token, iter_tokens

from tests.fakes import FakeStream, sse_body, sse_frame


class TestExtractToken:
    """Test extract_token for the supported chunk shapes."""

    def test_openai_delta(self):
        assert extract_token({"choices": [{"delta": {"content": "Hi"}}]}) == "Hi"

    def test_message_content(self):
        assert extract_token({"choices": [{"message": {"content": "Hi"}}]}) == "Hi"

    def test_workers_ai_response(self):
        assert extract_token({"response": "Hi"}) == "Hi"

    @pytest.mark.parametrize(
        "chunk",
        [
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": []},
            {"usage": {"total_tokens": 12}},
            {"response": None},
            ["not", "a", "dict"],
            None,
        ],
    )
    def test_chunks_without_text(self, chunk):
        assert extract_token(chunk) is None


class TestSSEDecoder:
    """Test SSEDecoder.feed and flush."""

    def test_complete_frames(self):
        decoder = SSEDecoder()
        assert decoder.feed(sse_body(["Hello", ", ", "world"])) == ["Hello", ", ", "world"]
        assert decoder.flush() == []

    def test_frame_split_across_reads(self):
        """A frame split mid-JSON is decoded once its line completes."""
        decoder = SSEDecoder()
        frame = sse_frame("Hello")
        assert decoder.feed(frame[:15]) == []
        assert decoder.feed(frame[15:]) == ["Hello"]

    def test_multibyte_character_split(self):
        """A UTF-8 character split across reads is preserved."""
        decoder = SSEDecoder()
        frame = 'data: {"response": "Olá €"}\n'.encode("utf-8")
        split = frame.index("€".encode("utf-8")) + 1
        tokens = decoder.feed(frame[:split]) + decoder.feed(frame[split:])
        assert tokens == ["Olá €"]

    def test_crlf_line_endings(self):
        decoder = SSEDecoder()
        data = b'data: {"response": "a"}\r\n\r\ndata: {"response": "b"}\r\n\r\n'
        assert decoder.feed(data) == ["a", "b"]

    def test_done_sentinel_ignored(self):
        decoder = SSEDecoder()
        assert decoder.feed(b"data: [DONE]\n\n") == []

    def test_non_data_lines_ignored(self):
        decoder = SSEDecoder()
        data = b': keep-alive\nevent: message\nid: 7\ndata: {"response": "x"}\n\n'
        assert decoder.feed(data) == ["x"]

    def test_data_without_space(self):
        decoder = SSEDecoder()
        assert decoder.feed(b'data:{"response": "x"}\n') == ["x"]

    def test_malformed_frame_skipped(self):
        """Malformed JSON is skipped and decoding continues."""
        decoder = SSEDecoder()
        data = b'data: {"response": "a"}\ndata: {oops\ndata: {"response": "b"}\n'
        assert decoder.feed(data) == ["a", "b"]
        assert decoder.skipped_frames == 1

    def test_flush_decodes_unterminated_last_line(self):
        decoder = SSEDecoder()
        assert decoder.feed(b'data: {"response": "tail"}') == []
        assert decoder.flush() == ["tail"]

    def test_empty_token_not_emitted(self):
        decoder = SSEDecoder()
        assert decoder.feed(sse_frame("")) == []


class TestIterTokens:
    """Test iter_tokens over both wire shapes."""

    @pytest.mark.asyncio
    async def test_byte_stream(self):
        body = sse_body(["The ", "answer"])
        source = FakeStream([body[:10], body[10:33], body[33:]])
        assert [t async for t in iter_tokens(source)] == ["The ", "answer"]

    @pytest.mark.asyncio
    async def test_structured_chunks(self):
        source = FakeStream(
            [
                {"choices": [{"delta": {"role": "assistant"}}]},
                {"choices": [{"delta": {"content": "A"}}]},
                {"response": "B"},
                "C",
                "",
            ]
        )
        assert [t async for t in iter_tokens(source)] == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_unterminated_stream_flushed(self):
        source = FakeStream([b'data: {"response": "end"}'])
        assert [t async for t in iter_tokens(source)] == ["end"]

    @pytest.mark.asyncio
    async def test_source_error_propagates(self):
        source = FakeStream([sse_frame("x")], fail_with=ConnectionResetError("reset"))
        tokens = []
        with pytest.raises(ConnectionResetError):
            async for token in iter_tokens(source):
                tokens.append(token)
        assert tokens == ["x"]
