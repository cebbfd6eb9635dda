import json

import pytest

from agentstream.decoder import FrameDecoder, decode_frames, decode_text, parse_block
from agentstream.errors import AmbiguousPayloadError, MalformedStreamError
from agentstream.models import FrameType

from conftest import sse

BODY = (
    sse("status", {"stage": "search", "message": "Searching"})
    + sse("agent_text", {"text": "Hel"})
    + sse("agent_text", {"text": "lo é€"})
    + sse("done", {"output": "Hello", "sessionId": "s1"})
)


def _summary(frames):
    return [(f.event_type, f.payload) for f in frames]


def test_decode_complete_body() -> None:
    """A full body decodes to its frames in order."""
    frames = decode_text(BODY)
    assert [f.kind for f in frames] == [
        FrameType.STATUS,
        FrameType.AGENT_TEXT,
        FrameType.AGENT_TEXT,
        FrameType.DONE,
    ]
    assert frames[2].payload == {"text": "lo é€"}
    assert frames[3].payload["sessionId"] == "s1"


def test_split_at_every_offset_yields_same_frames() -> None:
    """Frames do not depend on where the bytes were cut, including mid-character."""
    raw = BODY.encode("utf-8")
    expected = _summary(decode_text(raw))
    for offset in range(1, len(raw)):
        decoder = FrameDecoder()
        frames = decoder.feed(raw[:offset]) + decoder.feed(raw[offset:])
        frames += decoder.finish()
        assert _summary(frames) == expected, offset


def test_byte_at_a_time_feed() -> None:
    """Feeding one byte per chunk yields the same frames."""
    raw = BODY.encode("utf-8")
    decoder = FrameDecoder()
    frames = []
    for index in range(len(raw)):
        frames.extend(decoder.feed(raw[index:index + 1]))
    frames.extend(decoder.finish())
    assert _summary(frames) == _summary(decode_text(BODY))


def test_crlf_separators_split_across_chunks() -> None:
    """CRLF line endings are normalized even when the separator is split."""
    raw = 'event: agent_text\r\ndata: {"text": "a"}\r\n\r\nevent: done\r\ndata: {}\r\n\r\n'
    cut = raw.index("\r\n\r\n") + 3
    decoder = FrameDecoder()
    frames = decoder.feed(raw[:cut]) + decoder.feed(raw[cut:]) + decoder.finish()
    assert _summary(frames) == [("agent_text", {"text": "a"}), ("done", {})]


def test_frame_emitted_only_after_separator() -> None:
    """A block without its blank-line separator waits in the buffer."""
    decoder = FrameDecoder()
    assert decoder.feed('event: agent_text\ndata: {"text": "x"}\n') == []
    frames = decoder.feed("\n")
    assert _summary(frames) == [("agent_text", {"text": "x"})]


def test_invalid_json_becomes_text_payload() -> None:
    """Non-JSON data is delivered as a text payload."""
    frames = decode_text("event: agent_text\ndata: not json\n\n")
    assert _summary(frames) == [("agent_text", {"text": "not json"})]


def test_non_object_json_becomes_text_payload() -> None:
    frames = decode_text("event: agent_text\ndata: [1, 2]\n\n")
    assert frames[0].payload == {"text": "[1, 2]"}


def test_multiple_data_lines_are_concatenated() -> None:
    """Data lines are stripped and joined without separators."""
    block = 'event: done\ndata: {"output":\ndata:  "Hello"}\n'
    frame = parse_block(block)
    assert frame is not None
    assert frame.payload == {"output": "Hello"}


def test_last_event_line_wins() -> None:
    frame = parse_block('event: status\nevent: done\ndata: {"output": "x"}')
    assert frame is not None
    assert frame.kind is FrameType.DONE


def test_missing_event_defaults_to_message() -> None:
    frame = parse_block('data: {"a": 1}')
    assert frame is not None
    assert frame.event_type == "message"
    assert frame.kind is FrameType.MESSAGE


def test_block_without_data_is_skipped() -> None:
    frames = decode_text('event: status\n\nevent: done\ndata: {"output": "ok"}\n\n')
    assert _summary(frames) == [("done", {"output": "ok"})]


def test_unknown_event_type_is_passed_through() -> None:
    frames = decode_text('event: heartbeat\ndata: {"t": 1}\n\n')
    assert frames[0].event_type == "heartbeat"
    assert frames[0].kind is None


def test_trailing_block_flushed_on_finish() -> None:
    """A last frame without its separator is emitted at end of stream."""
    decoder = FrameDecoder()
    assert decoder.feed('event: done\ndata: {"output": "tail"}') == []
    assert _summary(decoder.finish()) == [("done", {"output": "tail"})]


def test_plain_json_body_becomes_done_frame() -> None:
    """A non-streaming JSON response is treated as a single done frame."""
    body = json.dumps({"output": "Plain answer", "sessionId": "s2"})
    frames = decode_text(body)
    assert len(frames) == 1
    assert frames[0].kind is FrameType.DONE
    assert frames[0].payload["output"] == "Plain answer"


def test_frame_syntax_without_frames_is_malformed() -> None:
    """Text that looks like frames but yields none raises MalformedStreamError."""
    decoder = FrameDecoder()
    decoder.feed("event: status\nevent: done\n")
    with pytest.raises(MalformedStreamError) as info:
        decoder.finish()
    assert info.value.code == "MALFORMED_STREAM"


def test_garbage_body_is_ambiguous() -> None:
    with pytest.raises(AmbiguousPayloadError) as info:
        decode_text("<html>Bad gateway</html>")
    assert info.value.code == "PARSE_ERROR"


def test_json_array_body_is_ambiguous() -> None:
    with pytest.raises(AmbiguousPayloadError):
        decode_text("[1, 2, 3]")


def test_empty_body_yields_nothing() -> None:
    assert decode_text("") == []


def test_feed_after_finish_raises() -> None:
    decoder = FrameDecoder()
    decoder.finish()
    with pytest.raises(RuntimeError):
        decoder.feed("data: {}\n\n")


@pytest.mark.asyncio
async def test_decode_frames_async_source() -> None:
    """decode_frames consumes an async chunk source."""
    raw = BODY.encode("utf-8")

    async def chunks():
        for index in range(0, len(raw), 7):
            yield raw[index:index + 7]

    frames = [frame async for frame in decode_frames(chunks())]
    assert _summary(frames) == _summary(decode_text(BODY))


def test_canonical_three_frame_stream() -> None:
    raw = (
        'event: status\ndata: {"stage":"start","message":"Starting"}\n\n'
        'event: agent_text\ndata: {"text":"Hello"}\n\n'
        'event: done\ndata: {"output":"Hello","sessionId":"s1"}\n\n'
    )
    frames = decode_text(raw)
    assert [f.event_type for f in frames] == ["status", "agent_text", "done"]


def test_raw_body_released_once_frames_decode() -> None:
    """Only a body that has produced no frame yet is kept for the fallback."""
    decoder = FrameDecoder()
    decoder.feed('event: agent_text\ndata: {"text": "a"}')
    assert decoder._raw_text != ""
    decoder.feed("\n\n")
    assert decoder._raw_text == ""
    for _ in range(50):
        decoder.feed('event: agent_text\ndata: {"text": "more"}\n\n')
    assert decoder._raw_text == ""
    assert decoder.finish() == []
    assert decoder.frames_seen == 51
