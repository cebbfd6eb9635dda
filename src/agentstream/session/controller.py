"""Session state machine driving one agent run at a time.

A run moves through IDLE -> ANALYZING -> RUNNING -> STREAMING and settles
in DONE, ERROR or ABORTED. Every frame handler first checks that the run's
cancellation token is still the live one, so bytes a cancelled transport
keeps delivering never touch the transcript.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..errors import AgentStreamError, ServerReportedError
from ..markdown import render_markdown
from ..models import (
    ChatMessage,
    FrameType,
    PersistedSession,
    Role,
    RunSnapshot,
    StreamFrame,
    TimingInfo,
    UsageRecord,
    as_int,
)
from ..services.agent_client import AgentClient
from ..services.session_store import SessionStore
from ..settings import Settings, get_settings
from ..trace import TraceAccumulator
from .progress import ProgressTracker, stage_label

logger = logging.getLogger(__name__)

START_STAGE = "start"
IGNORED_PROGRESS_STAGES = {"starting_agent_run"}


class RunStatus(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    RUNNING = "running"
    STREAMING = "streaming"
    DONE = "done"
    ERROR = "error"
    ABORTED = "aborted"

    @property
    def is_settled(self) -> bool:
        return self in (RunStatus.DONE, RunStatus.ERROR, RunStatus.ABORTED)


class CancellationToken:
    """Per-run handle; the single source of truth for "is this run still live"."""

    def __init__(self) -> None:
        self._cancelled = False
        self._task: Optional[asyncio.Future] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        """True until cancelled or until the bound task has finished."""
        return not self._cancelled and (self._task is None or not self._task.done())

    def bind(self, task: asyncio.Future) -> None:
        self._task = task
        if self._cancelled:
            task.cancel()

    def cancel(self) -> bool:
        """Cancel the run and its bound task. Returns False if already cancelled."""
        if self._cancelled:
            return False
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True


@dataclass
class SessionState:
    """Everything owned by the in-flight run."""

    token: CancellationToken = field(default_factory=CancellationToken)
    trace: TraceAccumulator = field(default_factory=TraceAccumulator)
    progress: ProgressTracker = field(default_factory=ProgressTracker)
    status: RunStatus = RunStatus.IDLE
    user_input: str = ""
    is_ticket: bool = False
    assistant_index: int = -1
    error: Optional[str] = None
    error_code: Optional[str] = None
    not_found: bool = False
    usage: List[UsageRecord] = field(default_factory=list)
    started_at: float = field(default_factory=time.perf_counter)
    text_frames: int = 0
    checkpoint_due: bool = False
    snapshot: Optional[RunSnapshot] = None


class InteractionRecorder(Protocol):
    """External persistence collaborator for completed runs."""

    async def record(self, snapshot: RunSnapshot) -> Optional[str]: ...


class ChatSession:
    """One open conversation: its transcript and at most one live run."""

    def __init__(
        self,
        *,
        client: AgentClient,
        store: SessionStore,
        settings: Optional[Settings] = None,
        recorder: Optional[InteractionRecorder] = None,
        persisted: Optional[PersistedSession] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._store = store
        self._recorder = recorder
        self._observer: Optional[Callable[["ChatSession"], None]] = None

        persisted = persisted or PersistedSession()
        self.messages: List[ChatMessage] = list(persisted.messages)
        self.session_id: Optional[str] = persisted.session_id
        self.conversation_id: Optional[str] = persisted.conversation_id
        self._state = self._new_state()

        self._handlers: Dict[FrameType, Callable[[SessionState, Dict[str, Any]], None]] = {
            FrameType.STATUS: self._on_status,
            FrameType.AGENT_TEXT: self._on_agent_text,
            FrameType.AGENT_EVENT: self._on_agent_event,
            FrameType.DONE: self._on_done,
            FrameType.ERROR: self._on_error,
        }

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> RunStatus:
        return self._state.status

    def set_observer(self, observer: Optional[Callable[["ChatSession"], None]]) -> None:
        """Set an optional callback invoked after every state change."""
        self._observer = observer

    def rendered_reply(self) -> str:
        """Markup for the latest assistant message."""
        for message in reversed(self.messages):
            if message.role == Role.ASSISTANT:
                return render_markdown(message.content)
        return ""

    def owns(self, token: CancellationToken) -> bool:
        return token is self._state.token and not token.cancelled

    def _new_state(self, **kwargs: Any) -> SessionState:
        return SessionState(
            trace=TraceAccumulator(output_limit=self._settings.tool_output_max_chars),
            progress=ProgressTracker(self._settings.status_label_policy),
            **kwargs,
        )

    def _notify(self) -> None:
        if self._observer is None:
            return
        try:
            self._observer(self)
        except Exception:
            logger.exception("Session observer failed")

    # Run lifecycle

    async def run(self, text: str) -> SessionState:
        """Start a run for `text`, cancelling any run still in flight.

        Returns the settled state of this run. Transport and server errors
        settle it as ERROR; an abort settles it as ABORTED.
        """
        text = text.strip()
        if not text:
            raise ValueError("Empty message")
        self.abort()
        self._state.token.cancel()

        first_exchange = not self.messages
        prefix = self._settings.ticket_prefix
        is_ticket = first_exchange and bool(prefix) and text.startswith(prefix)
        clean_input = text[len(prefix):].strip() if is_ticket else text
        label = f"Ticket #{clean_input}" if is_ticket else text

        state = self._new_state(status=RunStatus.RUNNING, user_input=clean_input, is_ticket=is_ticket)
        self._state = state
        self.messages.append(ChatMessage(role=Role.USER, content=label))
        self.messages.append(ChatMessage(role=Role.ASSISTANT))
        state.assistant_index = len(self.messages) - 1
        logger.info("Run started (ticket=%s, exchange=%d)", is_ticket, len(self.messages) // 2)
        self._notify()

        await self._checkpoint(state, in_progress=True)
        if state.token.cancelled:
            await self._finalize(state)
            return state

        task = asyncio.ensure_future(self._execute(state, first_exchange))
        state.token.bind(task)
        try:
            await task
        except asyncio.CancelledError:
            if not state.token.cancelled:
                # The caller was cancelled: stop this run with it.
                if self._state is state:
                    self.abort()
                raise
            logger.info("Run aborted while in %s", state.status.value)
        finally:
            await self._finalize(state)
        return state

    def abort(self) -> bool:
        """Cancel the live run. Idempotent; returns False when nothing was running.

        A run that already settled on an `error` frame keeps its stream open
        for a later `done`; aborting it closes the stream and keeps the error.
        """
        state = self._state
        if state.status == RunStatus.IDLE or not state.token.active:
            return False
        state.token.cancel()
        state.progress.clear()
        if state.status.is_settled:
            self._settle_assistant(state)
            logger.info("Closed the stream of a run settled as %s", state.status.value)
            self._notify()
            return True
        state.status = RunStatus.ABORTED

        index = state.assistant_index
        if 0 <= index < len(self.messages):
            assistant = self.messages[index]
            if assistant.content.strip():
                self.messages[index] = assistant.settle(trace=state.trace.export())
            else:
                # Nothing was said yet: the exchange is discarded.
                del self.messages[max(index - 1, 0): index + 1]
        if not self.messages:
            self.session_id = None
            self.conversation_id = None
        logger.info("Run aborted by request")
        self._notify()
        return True

    async def reset(self) -> None:
        """Start a new conversation: abort, forget the transcript and the stored session."""
        self.abort()
        self._state.token.cancel()
        self.messages = []
        self.session_id = None
        self.conversation_id = None
        self._state = self._new_state()
        await self._store.clear()
        self._notify()

    async def _execute(self, state: SessionState, first_exchange: bool) -> None:
        try:
            agent_input = await self._run_prestep(state) if first_exchange else None
            if not self.owns(state.token):
                return
            state.status = RunStatus.RUNNING

            payload: Dict[str, Any] = {"input": state.user_input, "isTicket": state.is_ticket}
            if agent_input is not None:
                payload["agentInput"] = agent_input
            if self.session_id:
                payload["sessionId"] = self.session_id
            if self.conversation_id:
                payload["conversationId"] = self.conversation_id

            async for frame in self._client.stream_frames(self._settings.agent_path, payload):
                self.handle_frame(frame, state.token)
                if state.checkpoint_due and self.owns(state.token):
                    state.checkpoint_due = False
                    await self._store.save_messages(self.messages)

            if not state.status.is_settled:
                self._fail(state, "Stream ended before completion.", "STREAM_INCOMPLETE")
        except AgentStreamError as exc:
            if self.owns(state.token) and state.status != RunStatus.DONE:
                self._fail(state, exc.message, exc.code)
        except Exception as exc:
            if not self.owns(state.token):
                return
            logger.exception("Unexpected failure while handling the run")
            if state.status != RunStatus.DONE:
                self._fail(state, f"{type(exc).__name__}: {exc}", "CLIENT_ERROR")

    async def _run_prestep(self, state: SessionState) -> Optional[Dict[str, Any]]:
        """Query analysis or ticket retrieval before the first agent run."""
        if state.is_ticket:
            try:
                body: Dict[str, Any] = {"ticketId": int(state.user_input)}
            except ValueError:
                raise ServerReportedError(f"Invalid ticket id: {state.user_input}", "INVALID_TICKET")
            path, stage, label = self._settings.ticket_fetch_path, "fetch_ticket", "Fetching ticket"
        else:
            if not self._settings.query_analysis_path:
                return None
            body = {"query": state.user_input}
            path, stage, label = self._settings.query_analysis_path, "query_analysis", "Running query analysis"

        state.status = RunStatus.ANALYZING
        state.progress.replace(stage, label)
        self._notify()

        output: Any = None
        async for frame in self._client.stream_frames(path, body):
            if not self.owns(state.token):
                return None
            kind = frame.kind
            if kind is FrameType.STATUS:
                current = str(frame.payload.get("stage") or "")
                if current == "llm_usage":
                    self._record_usage(state, frame.payload.get("data"))
                elif current:
                    state.progress.replace(current, stage_label(current, str(frame.payload.get("message") or "")))
                    self._notify()
            elif kind is FrameType.DONE:
                output = frame.payload.get("output")
            elif kind is FrameType.ERROR:
                raise ServerReportedError(
                    str(frame.payload.get("message") or f"{stage} failed"),
                    str(frame.payload.get("code") or ""),
                )

        if isinstance(output, dict) and isinstance(output.get("metadata"), dict):
            state.trace.set_query_analysis(output["metadata"], is_ticket=state.is_ticket)
        state.progress.ensure(START_STAGE, "Starting agent run")
        self._notify()
        return output if isinstance(output, dict) else None

    async def _checkpoint(self, state: SessionState, *, in_progress: bool) -> None:
        if self._state is not state:
            return
        await self._store.checkpoint(
            self.messages, self.session_id, self.conversation_id, run_in_progress=in_progress
        )

    async def _finalize(self, state: SessionState) -> None:
        # A run superseded by a newer one leaves persistence to the newer run.
        if self._state is not state:
            return
        if state.status == RunStatus.ABORTED:
            if not self.messages:
                await self._store.clear()
            else:
                await self._checkpoint(state, in_progress=False)
            return

        if state.status == RunStatus.ERROR:
            self._settle_assistant(state)
        await self._checkpoint(state, in_progress=False)
        self._notify()

        if state.status == RunStatus.DONE and state.snapshot is not None and self._recorder is not None:
            await self._record_interaction(state)

    def _settle_assistant(self, state: SessionState) -> None:
        assistant = self._assistant(state)
        if assistant is not None and not assistant.settled:
            self.messages[state.assistant_index] = assistant.settle(
                trace=state.trace.export(),
                timing=TimingInfo(round_trip_ms=self._elapsed_ms(state)),
            )

    async def _record_interaction(self, state: SessionState) -> None:
        try:
            interaction_id = await self._recorder.record(state.snapshot)
        except Exception as e:
            logger.warning("Failed to record interaction: %s", e)
            return
        if not interaction_id or self._state is not state:
            return
        assistant = self._assistant(state)
        if assistant is not None:
            self.messages[state.assistant_index] = assistant.with_interaction_id(interaction_id)
            await self._store.save_messages(self.messages)
            self._notify()

    # Frame routing

    def handle_frame(self, frame: StreamFrame, token: CancellationToken) -> bool:
        """Route one frame of the run owning `token`. Returns True if it was applied."""
        if not self.owns(token):
            logger.debug("Dropping %s frame from a stale run", frame.event_type)
            return False
        state = self._state
        if state.status in (RunStatus.DONE, RunStatus.ABORTED):
            logger.debug("Dropping %s frame after settlement", frame.event_type)
            return False

        kind = frame.kind
        handler = self._handlers.get(kind) if kind is not None else None
        if handler is None:
            logger.debug("Ignoring frame of type %s", frame.event_type)
            return False
        handler(state, frame.payload)
        self._notify()
        return True

    def _on_status(self, state: SessionState, payload: Dict[str, Any]) -> None:
        stage = str(payload.get("stage") or "")
        message = str(payload.get("message") or "")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else None

        if stage == "llm_usage":
            self._record_usage(state, data)
            return
        if stage == "timing":
            logger.debug("Server timing: %s %s", message, data)
            return
        if stage == "attachments_error":
            logger.warning("Attachment analysis failed: %s", data)
            return

        if data is not None and isinstance(data.get("metadata"), dict):
            if stage == "query_analysis":
                state.trace.set_query_analysis(data["metadata"], is_ticket=False)
            elif stage == "fetch_ticket":
                state.trace.set_query_analysis(data["metadata"], is_ticket=True)
        if stage == "attachments_analysis" and data is not None:
            state.trace.add_attachments(
                as_int(data.get("total")),
                as_int(data.get("cached")),
                as_int(data.get("analyzed")),
            )

        if stage and stage not in IGNORED_PROGRESS_STAGES:
            state.progress.upsert(stage, stage_label(stage, message))

    def _on_agent_text(self, state: SessionState, payload: Dict[str, Any]) -> None:
        text = payload.get("text")
        if not isinstance(text, str) or not text:
            return
        assistant = self._assistant(state)
        if assistant is None:
            return
        assistant.append_text(text)
        if state.status in (RunStatus.ANALYZING, RunStatus.RUNNING):
            state.status = RunStatus.STREAMING
        state.text_frames += 1
        every = self._settings.stream_checkpoint_every
        if every > 0 and state.text_frames % every == 0:
            state.checkpoint_due = True

    def _on_agent_event(self, state: SessionState, payload: Dict[str, Any]) -> None:
        name = str(payload.get("name") or "")
        data = payload.get("data")
        if not isinstance(data, dict):
            return
        if name == "tool_use":
            state.trace.apply_tool_use(data)
        elif name == "tool_result":
            state.trace.apply_tool_result(data)
        else:
            logger.debug("Ignoring agent event %s", name)

    def _on_done(self, state: SessionState, payload: Dict[str, Any]) -> None:
        output = payload.get("output")
        output_text = output if isinstance(output, str) else ("" if output is None else str(output))

        session_id = payload.get("sessionId")
        if isinstance(session_id, str) and session_id.strip():
            self.session_id = session_id
        conversation_id = payload.get("conversationId")
        if isinstance(conversation_id, str) and conversation_id.strip():
            self.conversation_id = conversation_id

        remote_trace = payload.get("trace")
        if isinstance(remote_trace, dict):
            state.trace.merge_remote(remote_trace)
        trace = state.trace.export()

        sources: List[str] = []
        raw_sources = payload.get("sources")
        if isinstance(raw_sources, list):
            for item in raw_sources:
                url = str(item).strip()
                if url and url not in sources:
                    sources.append(url)
        if not sources:
            sources = trace.source_urls()

        meta = payload.get("meta")
        server_ms = meta.get("server_ms") if isinstance(meta, dict) else None
        timing = TimingInfo(
            round_trip_ms=self._elapsed_ms(state),
            server_ms=round(server_ms) if isinstance(server_ms, (int, float)) else None,
        )

        assistant = self._assistant(state)
        if assistant is not None:
            content = output_text if output_text and not assistant.content else None
            settled = assistant.settle(content=content, sources=sources, trace=trace, timing=timing)
            self.messages[state.assistant_index] = settled
            final_content = settled.content
        else:
            final_content = output_text

        state.status = RunStatus.DONE
        state.error = None
        state.error_code = None
        state.not_found = False
        state.progress.finish()
        state.snapshot = RunSnapshot(
            session_id=self.session_id,
            conversation_id=self.conversation_id,
            user_input=state.user_input,
            is_ticket=state.is_ticket,
            content=final_content,
            sources=tuple(sources),
            trace=trace,
            timing=timing,
            usage=tuple(state.usage),
        )
        logger.info(
            "Run done: %d chars, %d tool calls, %d sources",
            len(final_content),
            len(trace.tool_calls),
            len(sources),
        )

    def _on_error(self, state: SessionState, payload: Dict[str, Any]) -> None:
        self._fail(
            state,
            str(payload.get("message") or "Unknown error"),
            str(payload.get("code") or ""),
        )

    def _fail(self, state: SessionState, message: str, code: str = "") -> None:
        state.status = RunStatus.ERROR
        state.error = message
        state.error_code = code or None
        state.not_found = bool(code) and code in self._settings.not_found_error_codes
        state.progress.finish()
        logger.warning("Run failed (%s): %s", code or "no code", message)
        self._notify()

    def _record_usage(self, state: SessionState, data: Any) -> None:
        if not isinstance(data, dict):
            return
        cost = data.get("costUsd")
        state.usage.append(
            UsageRecord(
                source=str(data.get("source") or "unknown"),
                cost_usd=float(cost) if isinstance(cost, (int, float)) else 0.0,
            )
        )

    def _assistant(self, state: SessionState) -> Optional[ChatMessage]:
        index = state.assistant_index
        if 0 <= index < len(self.messages) and self.messages[index].role == Role.ASSISTANT:
            return self.messages[index]
        return None

    @staticmethod
    def _elapsed_ms(state: SessionState) -> int:
        return round((time.perf_counter() - state.started_at) * 1000)
