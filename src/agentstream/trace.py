"""Accumulates tool-call frames into a deduplicated agent trace."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .models import AgentTrace, AttachmentsSummary, QueryAnalysis, ToolCallTrace, TraceSource

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "... (truncated)"
VECTOR_SEARCH_PREFIX = "vector_store_search_"
_QUERY_FIELDS = ("input", "query", "sql", "question")
_INPUT_PREVIEW_CHARS = 100


def is_table_output(output: Any) -> bool:
    """Tabular results carry parallel `columns` and `rows` lists."""
    return (
        isinstance(output, dict)
        and isinstance(output.get("columns"), list)
        and isinstance(output.get("rows"), list)
    )


def normalize_output(output: Any, limit: int = 500) -> Any:
    """Bound a tool output for display; tables are kept structurally."""
    if is_table_output(output):
        return copy.deepcopy(output)
    if isinstance(output, str):
        return output[:limit] + TRUNCATION_MARKER if len(output) > limit else output
    if isinstance(output, (dict, list)):
        encoded = json.dumps(output, ensure_ascii=False, default=str)
        if len(encoded) > limit:
            return encoded[:limit] + TRUNCATION_MARKER
        return copy.deepcopy(output)
    return output


def filter_pairs(filters: Any) -> list[tuple[str, str]]:
    """Flatten `{type: "and", filters: [...]}` or a bare filter list into pairs."""
    if isinstance(filters, dict) and filters.get("type") == "and":
        items = filters.get("filters")
    elif isinstance(filters, list):
        items = filters
    else:
        return []
    if not isinstance(items, list):
        return []

    pairs: list[tuple[str, str]] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        key = str(item.get("key") or "")
        value = str(item.get("value") or "")
        if key and value:
            pairs.append((key, value))
    return pairs


def describe_tool_input(tool_input: dict[str, Any]) -> str:
    """Pick a human-readable query string out of a tool's input arguments."""
    for name in _QUERY_FIELDS:
        if tool_input.get(name):
            return str(tool_input[name])
    encoded = json.dumps(tool_input, ensure_ascii=False, default=str)
    if len(encoded) > _INPUT_PREVIEW_CHARS:
        return encoded[:_INPUT_PREVIEW_CHARS] + "..."
    return encoded


def _coerce_sources(raw: Iterable[Any]) -> list[TraceSource]:
    sources: list[TraceSource] = []
    for item in raw:
        source = TraceSource.coerce(item)
        if source is not None:
            sources.append(source)
    return sources


@dataclass
class _CallEntry:
    call_id: str
    tool: str = ""
    query: str = ""
    filters: Any = None
    sources: list[TraceSource] = field(default_factory=list)
    output: Any = None

    def merge_sources(self, incoming: Iterable[TraceSource]) -> None:
        seen = {source.url for source in self.sources}
        for source in incoming:
            if source.url not in seen:
                seen.add(source.url)
                self.sources.append(source)


class TraceAccumulator:
    """Owns the in-flight trace of one run.

    Tool calls are keyed by call id and kept in first-seen order. Updates only
    overwrite the fields they carry, so the two phases of a call (`tool_use`
    with the query, `tool_result` with sources and output) can arrive in
    either order and replaying an update is harmless.
    """

    def __init__(self, *, output_limit: int = 500) -> None:
        self.output_limit = output_limit
        self._calls: dict[str, _CallEntry] = {}
        self._query_analysis: QueryAnalysis | None = None
        self._attachments: AttachmentsSummary | None = None

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._calls

    def upsert(
        self,
        call_id: str,
        *,
        tool: str | None = None,
        query: str | None = None,
        filters: Any = None,
        sources: Iterable[Any] | None = None,
        output: Any = None,
    ) -> None:
        """Create or update the entry for `call_id`; `None` means "not in this update"."""
        if not call_id:
            raise ValueError("call_id is required")
        entry = self._calls.get(call_id)
        if entry is None:
            entry = _CallEntry(call_id=call_id)
            self._calls[call_id] = entry

        if tool:
            entry.tool = tool
        if query is not None:
            entry.query = query
        if filters is not None:
            entry.filters = copy.deepcopy(filters)
        if sources is not None:
            entry.merge_sources(_coerce_sources(sources))
        if output is not None:
            entry.output = copy.deepcopy(output)

    def apply_tool_use(self, data: dict[str, Any]) -> bool:
        """Record the query side of a call. Returns False when the event is unusable."""
        tool = str(data.get("tool") or "")
        call_id = str(data.get("callId") or "")
        tool_input = data.get("input")
        if not tool or not call_id or not isinstance(tool_input, dict):
            logger.debug("Ignoring tool_use without tool/callId/input: %s", data)
            return False

        if tool.startswith(VECTOR_SEARCH_PREFIX):
            query = str(tool_input.get("query") or "")
            if not query:
                return False
            self.upsert(call_id, tool=tool, query=query, filters=tool_input.get("filters"))
        else:
            self.upsert(call_id, tool=tool, query=describe_tool_input(tool_input))
        return True

    def apply_tool_result(self, data: dict[str, Any]) -> bool:
        """Record the result side of a call: sources and output."""
        tool = str(data.get("tool") or "")
        call_id = str(data.get("callId") or "")
        if not tool or not call_id:
            logger.debug("Ignoring tool_result without tool/callId: %s", data)
            return False

        raw_sources = data.get("sources")
        sources = raw_sources if isinstance(raw_sources, list) else []

        output = data.get("output")
        if (
            isinstance(output, str)
            and output.strip().startswith("{")
            and TRUNCATION_MARKER not in output
        ):
            try:
                output = json.loads(output)
            except json.JSONDecodeError:
                pass

        self.upsert(call_id, tool=tool, sources=sources, output=output)
        return True

    def set_query_analysis(self, metadata: dict[str, Any], *, is_ticket: bool = False) -> None:
        self._query_analysis = QueryAnalysis(metadata=copy.deepcopy(metadata), is_ticket=is_ticket)

    def add_attachments(self, total: int, cached: int = 0, analyzed: int = 0) -> None:
        if total <= 0:
            return
        current = self._attachments or AttachmentsSummary()
        self._attachments = AttachmentsSummary(
            total=current.total + total,
            cached=current.cached + cached,
            analyzed=current.analyzed + analyzed,
        )

    def merge_remote(self, remote: AgentTrace | dict[str, Any] | None) -> None:
        """Fold a server-reported trace into the local one (sources unioned by url)."""
        if remote is None:
            return
        if not isinstance(remote, AgentTrace):
            remote = AgentTrace.from_dict(remote)

        if remote.query_analysis is not None:
            self._query_analysis = remote.query_analysis
        if remote.attachments is not None:
            self._attachments = remote.attachments
        for call in remote.tool_calls:
            self.upsert(
                call.call_id,
                tool=call.tool or None,
                query=call.query or None,
                filters=call.filters,
                sources=call.sources,
                output=call.output,
            )

    def source_urls(self) -> list[str]:
        urls: list[str] = []
        for entry in self._calls.values():
            for source in entry.sources:
                if source.url not in urls:
                    urls.append(source.url)
        return urls

    def export(self) -> AgentTrace:
        """Freeze the accumulated state into an immutable trace."""
        calls = tuple(
            ToolCallTrace(
                call_id=entry.call_id,
                tool=entry.tool,
                query=entry.query,
                filters=copy.deepcopy(entry.filters),
                sources=tuple(entry.sources),
                output=normalize_output(entry.output, self.output_limit),
            )
            for entry in self._calls.values()
        )
        return AgentTrace(
            query_analysis=self._query_analysis,
            attachments=self._attachments,
            tool_calls=calls,
        )
