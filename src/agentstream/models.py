import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import MessageSettledError


def as_int(value: Any) -> int:
    """Coerce a wire count to int; anything non-numeric counts as 0."""
    if isinstance(value, str):
        value = value.strip()
    elif not isinstance(value, (int, float)):
        return 0
    try:
        return int(float(value))
    except (ValueError, OverflowError):
        return 0


class FrameType(str, Enum):
    """Closed set of frame types understood by the session router."""

    STATUS = "status"
    AGENT_TEXT = "agent_text"
    AGENT_EVENT = "agent_event"
    DONE = "done"
    ERROR = "error"
    MESSAGE = "message"

    @classmethod
    def parse(cls, value: str) -> Optional["FrameType"]:
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass(frozen=True)
class StreamFrame:
    """One decoded unit of the wire protocol."""

    event_type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> Optional[FrameType]:
        return FrameType.parse(self.event_type)


@dataclass(frozen=True)
class TraceSource:
    url: str
    doc_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "docId": self.doc_id}

    @classmethod
    def coerce(cls, raw: Any) -> Optional["TraceSource"]:
        """Build a source from a url string or a `{url, docId}` object."""
        if isinstance(raw, TraceSource):
            return raw
        if isinstance(raw, dict):
            url = str(raw.get("url") or "").strip()
            doc_id = raw.get("docId", raw.get("doc_id"))
            if not url:
                return None
            return cls(url=url, doc_id=str(doc_id) if doc_id is not None else None)
        if raw is None:
            return None
        url = str(raw).strip()
        return cls(url=url) if url else None


@dataclass(frozen=True)
class ToolCallTrace:
    """One tool invocation as reconstructed from tool_use/tool_result frames."""

    call_id: str
    tool: str = ""
    query: str = ""
    filters: Any = None
    sources: Tuple[TraceSource, ...] = ()
    output: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "callId": self.call_id,
            "tool": self.tool,
            "query": self.query,
            "filters": copy.deepcopy(self.filters),
            "sources": [source.to_dict() for source in self.sources],
            "output": copy.deepcopy(self.output),
        }


@dataclass(frozen=True)
class QueryAnalysis:
    metadata: Dict[str, Any]
    is_ticket: bool = False


@dataclass(frozen=True)
class AttachmentsSummary:
    total: int = 0
    cached: int = 0
    analyzed: int = 0


@dataclass(frozen=True)
class AgentTrace:
    """Frozen record of everything the agent did to produce one response."""

    query_analysis: Optional[QueryAnalysis] = None
    attachments: Optional[AttachmentsSummary] = None
    tool_calls: Tuple[ToolCallTrace, ...] = ()

    def source_urls(self) -> List[str]:
        urls: List[str] = []
        for call in self.tool_calls:
            for source in call.sources:
                if source.url and source.url not in urls:
                    urls.append(source.url)
        return urls

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.query_analysis is not None:
            data["queryAnalysis"] = {
                "metadata": copy.deepcopy(self.query_analysis.metadata),
                "isTicket": self.query_analysis.is_ticket,
            }
        if self.attachments is not None:
            data["attachments"] = {
                "total": self.attachments.total,
                "cached": self.attachments.cached,
                "analyzed": self.attachments.analyzed,
            }
        if self.tool_calls:
            data["agentThinking"] = {"queries": [call.to_dict() for call in self.tool_calls]}
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AgentTrace":
        """Parse the wire shape `{queryAnalysis, attachments, agentThinking}`."""
        if not isinstance(data, dict):
            return cls()

        query_analysis = None
        raw_analysis = data.get("queryAnalysis")
        if isinstance(raw_analysis, dict) and isinstance(raw_analysis.get("metadata"), dict):
            query_analysis = QueryAnalysis(
                metadata=dict(raw_analysis["metadata"]),
                is_ticket=bool(raw_analysis.get("isTicket", raw_analysis.get("isZendesk", False))),
            )

        attachments = None
        raw_attachments = data.get("attachments")
        if isinstance(raw_attachments, dict):
            attachments = AttachmentsSummary(
                total=as_int(raw_attachments.get("total")),
                cached=as_int(raw_attachments.get("cached")),
                analyzed=as_int(raw_attachments.get("analyzed")),
            )

        calls: List[ToolCallTrace] = []
        thinking = data.get("agentThinking")
        queries = thinking.get("queries") if isinstance(thinking, dict) else None
        for raw in queries or []:
            if not isinstance(raw, dict) or not raw.get("callId"):
                continue
            sources: List[TraceSource] = []
            for item in raw.get("sources") or []:
                source = TraceSource.coerce(item)
                if source is not None and all(s.url != source.url for s in sources):
                    sources.append(source)
            calls.append(
                ToolCallTrace(
                    call_id=str(raw["callId"]),
                    tool=str(raw.get("tool") or ""),
                    query=str(raw.get("query") or ""),
                    filters=raw.get("filters"),
                    sources=tuple(sources),
                    output=raw.get("output"),
                )
            )
        return cls(query_analysis=query_analysis, attachments=attachments, tool_calls=tuple(calls))


@dataclass(frozen=True)
class TimingInfo:
    round_trip_ms: Optional[int] = None
    server_ms: Optional[int] = None


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class ChatMessage:
    """A transcript entry. Assistant messages grow while streaming, then settle."""

    role: Role
    content: str = ""
    sources: Optional[List[str]] = None
    trace: Optional[AgentTrace] = None
    timing: Optional[TimingInfo] = None
    interaction_id: Optional[str] = None
    settled: bool = False

    def append_text(self, text: str) -> None:
        if self.settled:
            raise MessageSettledError()
        self.content += text

    def settle(
        self,
        *,
        content: Optional[str] = None,
        sources: Optional[List[str]] = None,
        trace: Optional[AgentTrace] = None,
        timing: Optional[TimingInfo] = None,
    ) -> "ChatMessage":
        """Return the settled copy of this message with its final attachments."""
        if self.settled:
            raise MessageSettledError()
        return replace(
            self,
            content=self.content if content is None else content,
            sources=list(sources) if sources else None,
            trace=trace,
            timing=timing,
            settled=True,
        )

    def with_interaction_id(self, interaction_id: str) -> "ChatMessage":
        return replace(self, interaction_id=interaction_id)


@dataclass(frozen=True)
class StatusStep:
    id: str
    label: str


@dataclass
class PersistedSession:
    """Key-value state that survives a reload."""

    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    messages: List[ChatMessage] = field(default_factory=list)
    run_in_progress: bool = False


@dataclass(frozen=True)
class UsageRecord:
    source: str = "unknown"
    cost_usd: float = 0.0


@dataclass(frozen=True)
class RunSnapshot:
    """Final state of a completed run, handed to the interaction recorder."""

    session_id: Optional[str]
    conversation_id: Optional[str]
    user_input: str
    is_ticket: bool
    content: str
    sources: Tuple[str, ...]
    trace: AgentTrace
    timing: TimingInfo
    usage: Tuple[UsageRecord, ...] = ()

    @property
    def total_cost_usd(self) -> float:
        return sum(record.cost_usd for record in self.usage)

    def cost_by_source(self) -> Dict[str, float]:
        totals: Dict[str, float] = {}
        for record in self.usage:
            totals[record.source] = totals.get(record.source, 0.0) + record.cost_usd
        return totals
