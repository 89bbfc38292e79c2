"""Server-Sent Events decoding for backend token streams.

Backends stream completions as ``data:`` lines, each carrying one JSON chunk::

    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo"}}]}
    data: [DONE]

Reads arrive at arbitrary byte boundaries, so the decoder keeps the trailing
partial line (and any partial UTF-8 sequence) across calls. The token
sequence produced is therefore the same however the bytes are chunked.
"""

import codecs
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, List, Optional, Union

from virtual_csuite.core.errors import StreamDecodeError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


def extract_token(chunk: Any) -> Optional[str]:
    """Pull the text fragment out of one decoded stream chunk.

    Supports ``choices[0].delta.content`` (OpenAI streaming),
    ``choices[0].message.content`` (backends that stream whole messages)
    and ``response`` (Workers AI). Returns None when the chunk carries no
    text, e.g. role-only or usage frames.
    """
    if not isinstance(chunk, dict):
        return None

    choices = chunk.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first = choices[0]
        for key in ("delta", "message"):
            part = first.get(key)
            if isinstance(part, dict) and isinstance(part.get("content"), str):
                return part["content"]
        return None

    response = chunk.get("response")
    if isinstance(response, str):
        return response
    return None


class SSEDecoder:
    """Incremental SSE decoder producing token fragments.

    Example:
        >>> decoder = SSEDecoder()
        >>> decoder.feed(b'data: {"response": "Hi"}\\ndata: {"resp')
        ['Hi']
        >>> decoder.feed(b'onse": "!"}\\n')
        ['!']
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped_frames = 0

    def feed(self, data: bytes) -> List[str]:
        """Decode a chunk of bytes and return the tokens of every complete line."""
        self._buffer += self._decoder.decode(data)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._decode_lines(lines)

    def flush(self) -> List[str]:
        """Decode whatever remains once the stream has ended."""
        self._buffer += self._decoder.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        if not remainder:
            return []
        return self._decode_lines([remainder])

    def _decode_lines(self, lines: List[str]) -> List[str]:
        tokens = []
        for line in lines:
            try:
                token = self._decode_line(line)
            except StreamDecodeError as exc:
                self.skipped_frames += 1
                logger.debug(f"Skipping malformed SSE frame: {exc}")
                continue
            if token:
                tokens.append(token)
        return tokens

    def _decode_line(self, line: str) -> Optional[str]:
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            return None

        data = line[5:]
        if data.startswith(" "):
            data = data[1:]
        if not data.strip() or data.strip() == DONE_SENTINEL:
            return None

        try:
            chunk = json.loads(data)
        except ValueError as exc:
            raise StreamDecodeError(f"{exc.__class__.__name__}: {data[:80]!r}")
        return extract_token(chunk)


async def iter_tokens(
    source: AsyncIterable[Union[bytes, bytearray, str, dict]],
) -> AsyncIterator[str]:
    """Yield token fragments from either wire shape.

    ``source`` may be a raw SSE byte stream, or an async iterable of
    structured chunks (dicts in any shape :func:`extract_token` accepts)
    or plain text fragments.
    """
    decoder = SSEDecoder()
    async for item in source:
        if isinstance(item, (bytes, bytearray)):
            for token in decoder.feed(bytes(item)):
                yield token
        elif isinstance(item, str):
            if item:
                yield item
        else:
            token = extract_token(item)
            if token:
                yield token

    for token in decoder.flush():
        yield token
