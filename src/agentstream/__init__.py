"""Streaming session engine for conversing with a remote agent."""

from .decoder import FrameDecoder, decode_frames, decode_text
from .markdown import render_markdown
from .session import ChatSession, RunStatus, recover_session
from .trace import TraceAccumulator

__all__ = [
    "ChatSession",
    "FrameDecoder",
    "RunStatus",
    "TraceAccumulator",
    "decode_frames",
    "decode_text",
    "recover_session",
    "render_markdown",
]
