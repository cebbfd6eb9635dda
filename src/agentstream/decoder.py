"""Incremental decoder for the agent's server-sent-event stream.

Chunks may arrive at arbitrary boundaries: mid-line, mid-frame, inside the
blank-line separator, or in the middle of a multi-byte character. The decoder
keeps a single carry-over buffer for the lifetime of the stream and only ever
emits frames whose separator has been seen, so the frames it yields do not
depend on how the bytes were chunked.
"""

from __future__ import annotations

import codecs
import json
import logging
import re
from collections.abc import AsyncIterable, AsyncIterator, Iterable

from .errors import AmbiguousPayloadError, MalformedStreamError
from .models import FrameType, StreamFrame

logger = logging.getLogger(__name__)

FRAME_SEPARATOR = "\n\n"
EVENT_MARKER = "event:"
DATA_MARKER = "data:"
DEFAULT_EVENT_TYPE = FrameType.MESSAGE.value

_LOOKS_LIKE_FRAMES = re.compile(r"^(event:|data:)", re.MULTILINE)


def parse_block(block: str) -> StreamFrame | None:
    """Parse one separated block into a frame; blocks without data are skipped."""
    event_type = DEFAULT_EVENT_TYPE
    data = ""
    for line in block.split("\n"):
        if line.startswith(EVENT_MARKER):
            event_type = line[len(EVENT_MARKER):].strip() or DEFAULT_EVENT_TYPE
        elif line.startswith(DATA_MARKER):
            data += line[len(DATA_MARKER):].strip()

    if not data:
        return None

    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Non-JSON data in %s frame, wrapping as text", event_type)
        payload = {"text": data}
    if not isinstance(payload, dict):
        payload = {"text": data}
    return StreamFrame(event_type=event_type, payload=payload)


class FrameDecoder:
    """Turns a sequence of raw chunks into complete frames."""

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._raw_text = ""
        self._frames_seen = 0
        self._finished = False

    @property
    def frames_seen(self) -> int:
        return self._frames_seen

    def feed(self, chunk: str | bytes) -> list[StreamFrame]:
        """Append a chunk and return every frame it completed."""
        if self._finished:
            raise RuntimeError("FrameDecoder.feed() called after finish()")
        text = self._utf8.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        if not text:
            return []
        if self._frames_seen == 0:
            self._raw_text += text
        self._buffer = (self._buffer + text).replace("\r\n", "\n")

        parts = self._buffer.split(FRAME_SEPARATOR)
        self._buffer = parts.pop()
        frames = self._parse_parts(parts)
        if self._frames_seen:
            # The raw body only matters for the no-frames fallback.
            self._raw_text = ""
        return frames

    def finish(self) -> list[StreamFrame]:
        """Flush the carry-over buffer once the underlying stream has ended.

        Raises:
            MalformedStreamError: the body looked like frames but none decoded.
            AmbiguousPayloadError: no frames and the body is not JSON either.
        """
        if self._finished:
            return []
        self._finished = True

        tail = self._utf8.decode(b"", final=True)
        if tail:
            if self._frames_seen == 0:
                self._raw_text += tail
            self._buffer = (self._buffer + tail).replace("\r\n", "\n")

        frames: list[StreamFrame] = []
        if self._buffer.strip():
            frames = self._parse_parts([self._buffer])
        self._buffer = ""

        if self._frames_seen == 0 and self._raw_text.strip():
            frames.append(self._fallback_frame(self._raw_text))
            self._frames_seen += 1
        return frames

    def _parse_parts(self, parts: Iterable[str]) -> list[StreamFrame]:
        frames: list[StreamFrame] = []
        for part in parts:
            if not part.strip():
                continue
            frame = parse_block(part)
            if frame is not None:
                frames.append(frame)
        self._frames_seen += len(frames)
        return frames

    @staticmethod
    def _fallback_frame(raw_text: str) -> StreamFrame:
        # Non-streaming transport: the whole body is the terminal payload.
        if _LOOKS_LIKE_FRAMES.search(raw_text):
            raise MalformedStreamError()
        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            raise AmbiguousPayloadError() from exc
        if not isinstance(payload, dict):
            raise AmbiguousPayloadError("Response JSON is not an object.")
        logger.info("No frames in response body, treating JSON body as done event")
        return StreamFrame(event_type=FrameType.DONE.value, payload=payload)


async def decode_frames(chunks: AsyncIterable[str | bytes]) -> AsyncIterator[StreamFrame]:
    """Yield frames from an async chunk source, in arrival order."""
    decoder = FrameDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.finish():
        yield frame


def decode_text(text: str | bytes) -> list[StreamFrame]:
    """Decode a complete body in one shot."""
    decoder = FrameDecoder()
    frames = decoder.feed(text)
    frames.extend(decoder.finish())
    return frames
