import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..models import AgentTrace, ChatMessage, PersistedSession, Role, TimingInfo
from ..settings import Settings, get_settings
from .redis import get_redis_backend

logger = logging.getLogger(__name__)

SESSION_ID_KEY = "session_id"
MESSAGES_KEY = "messages"
CONVERSATION_ID_KEY = "conversation_id"
RUN_IN_PROGRESS_KEY = "run_in_progress"
SESSION_KEYS = (SESSION_ID_KEY, MESSAGES_KEY, CONVERSATION_ID_KEY, RUN_IN_PROGRESS_KEY)


class KeyValueBackend(Protocol):
    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]: ...

    async def set_many(self, values: Mapping[str, Optional[str]], ttl_seconds: Optional[int] = None) -> bool: ...


class InMemoryKeyValueStore:
    """Dict-backed backend used when no Redis is configured, and in tests."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}

    async def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [self.data.get(key) for key in keys]

    async def set_many(self, values: Mapping[str, Optional[str]], ttl_seconds: Optional[int] = None) -> bool:
        for key, value in values.items():
            if value is None:
                self.data.pop(key, None)
            else:
                self.data[key] = value
        return True


def message_to_dict(message: ChatMessage) -> Dict[str, Any]:
    """Serialize a ChatMessage to a JSON-serializable dict."""
    data: Dict[str, Any] = {"role": message.role.value, "content": message.content}
    if message.sources:
        data["sources"] = list(message.sources)
    if message.trace is not None:
        data["trace"] = message.trace.to_dict()
    if message.timing is not None:
        data["timing"] = {
            "round_trip_ms": message.timing.round_trip_ms,
            "server_ms": message.timing.server_ms,
        }
    if message.interaction_id:
        data["interactionId"] = message.interaction_id
    if message.settled:
        data["settled"] = True
    return data


def message_from_dict(data: Dict[str, Any]) -> ChatMessage:
    """Build a ChatMessage from a stored dict."""
    timing = data.get("timing")
    sources = data.get("sources")
    return ChatMessage(
        role=Role(data.get("role", Role.USER.value)),
        content=str(data.get("content") or ""),
        sources=[str(s) for s in sources] if isinstance(sources, list) and sources else None,
        trace=AgentTrace.from_dict(data["trace"]) if isinstance(data.get("trace"), dict) else None,
        timing=TimingInfo(
            round_trip_ms=timing.get("round_trip_ms"),
            server_ms=timing.get("server_ms"),
        )
        if isinstance(timing, dict)
        else None,
        interaction_id=data.get("interactionId"),
        settled=bool(data.get("settled", False)),
    )


class SessionStore:
    """The persisted-session contract over a key-value backend.

    One namespace per conversation context; four keys per namespace: session
    id, message list (JSON array), conversation id and the run-in-progress
    flag.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        namespace: str = "default",
        key_prefix: str = "agentstream:",
        ttl_seconds: int = 0,
    ) -> None:
        self._backend = backend
        self._namespace = namespace
        self._prefix = key_prefix
        self._ttl = ttl_seconds

    @property
    def backend(self) -> KeyValueBackend:
        return self._backend

    def key(self, name: str) -> str:
        return f"{self._prefix}{self._namespace}:{name}"

    async def _write(self, values: Dict[str, Optional[str]]) -> bool:
        return await self._backend.set_many(
            {self.key(name): value for name, value in values.items()},
            ttl_seconds=self._ttl or None,
        )

    def _dump_messages(self, messages: List[ChatMessage]) -> Optional[str]:
        if not messages:
            return None
        return json.dumps([message_to_dict(m) for m in messages])

    async def load(self) -> PersistedSession:
        """Read the whole persisted session in one backend call.

        Unreadable messages load as empty.
        """
        values = await self._backend.get_many([self.key(name) for name in SESSION_KEYS])
        raw = dict(zip(SESSION_KEYS, values))
        messages: List[ChatMessage] = []
        if raw[MESSAGES_KEY]:
            try:
                items = json.loads(raw[MESSAGES_KEY])
                if isinstance(items, list):
                    messages = [message_from_dict(item) for item in items if isinstance(item, dict)]
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Invalid stored messages in %s: %s", self._namespace, e)
                messages = []

        return PersistedSession(
            session_id=raw[SESSION_ID_KEY],
            conversation_id=raw[CONVERSATION_ID_KEY],
            messages=messages,
            run_in_progress=raw[RUN_IN_PROGRESS_KEY] == "1",
        )

    async def checkpoint(
        self,
        messages: List[ChatMessage],
        session_id: Optional[str],
        conversation_id: Optional[str],
        *,
        run_in_progress: bool,
    ) -> bool:
        """Write messages, ids and the run flag together, or nothing at all."""
        try:
            payload = self._dump_messages(messages)
        except (TypeError, ValueError) as e:
            logger.warning("Message serialization failed for %s: %s", self._namespace, e)
            return False
        return await self._write(
            {
                MESSAGES_KEY: payload,
                SESSION_ID_KEY: session_id or None,
                CONVERSATION_ID_KEY: conversation_id or None,
                RUN_IN_PROGRESS_KEY: "1" if run_in_progress else None,
            }
        )

    async def save_messages(self, messages: List[ChatMessage]) -> bool:
        """Persist the message list; an empty list removes the key."""
        try:
            payload = self._dump_messages(messages)
        except (TypeError, ValueError) as e:
            logger.warning("Message serialization failed for %s: %s", self._namespace, e)
            return False
        return await self._write({MESSAGES_KEY: payload})

    async def save_ids(self, session_id: Optional[str], conversation_id: Optional[str]) -> bool:
        return await self._write({SESSION_ID_KEY: session_id or None, CONVERSATION_ID_KEY: conversation_id or None})

    async def set_run_in_progress(self, in_progress: bool) -> bool:
        return await self._write({RUN_IN_PROGRESS_KEY: "1" if in_progress else None})

    async def save(self, session: PersistedSession) -> bool:
        return await self.checkpoint(
            session.messages,
            session.session_id,
            session.conversation_id,
            run_in_progress=session.run_in_progress,
        )

    async def clear(self) -> bool:
        """Remove every key of this namespace."""
        return await self._write({name: None for name in SESSION_KEYS})


async def open_session_store(settings: Optional[Settings] = None) -> SessionStore:
    """Return a SessionStore on Redis when configured and reachable, else in memory."""
    settings = settings or get_settings()
    backend: KeyValueBackend = InMemoryKeyValueStore()
    redis_backend = get_redis_backend(settings)
    if redis_backend is not None:
        try:
            await redis_backend.connect()
            backend = redis_backend
        except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
            logger.warning("Session store unavailable (Redis), using memory: %s", e)
    return SessionStore(
        backend,
        namespace=settings.storage_namespace,
        key_prefix=settings.storage_key_prefix,
        ttl_seconds=settings.session_ttl_seconds,
    )
