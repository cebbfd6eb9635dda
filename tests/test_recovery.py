import pytest

from agentstream.models import ChatMessage, PersistedSession, Role
from agentstream.services.session_store import InMemoryKeyValueStore, SessionStore
from agentstream.session import RecoveryOutcome, discard_orphaned_session, recover_session, remove_last_exchange


def _user(text: str) -> ChatMessage:
    return ChatMessage(role=Role.USER, content=text)


def _assistant(text: str) -> ChatMessage:
    return ChatMessage(role=Role.ASSISTANT, content=text, settled=bool(text))


async def _seed(store: SessionStore, messages, run_in_progress: bool = True) -> None:
    await store.save(
        PersistedSession(
            session_id="s1",
            conversation_id="conv-1",
            messages=list(messages),
            run_in_progress=run_in_progress,
        )
    )


@pytest.mark.asyncio
async def test_clean_shutdown_is_untouched(store: SessionStore, memory_backend: InMemoryKeyValueStore) -> None:
    """Without the flag nothing is changed."""
    await _seed(store, [_user("q"), _assistant("")], run_in_progress=False)
    before = dict(memory_backend.data)
    assert await recover_session(store) is RecoveryOutcome.CLEAN
    assert memory_backend.data == before


@pytest.mark.asyncio
async def test_completed_reply_only_clears_flag(store: SessionStore) -> None:
    """A non-empty last reply means the run finished: keep everything."""
    messages = [_user("q"), _assistant("answer")]
    await _seed(store, messages)
    assert await recover_session(store) is RecoveryOutcome.FLAG_CLEARED
    persisted = await store.load()
    assert persisted.run_in_progress is False
    assert persisted.messages == messages
    assert persisted.session_id == "s1"


@pytest.mark.asyncio
async def test_interrupted_first_exchange_clears_session(
    store: SessionStore, memory_backend: InMemoryKeyValueStore
) -> None:
    await _seed(store, [_user("q"), _assistant("")])
    assert await recover_session(store) is RecoveryOutcome.SESSION_CLEARED
    assert memory_backend.data == {}


@pytest.mark.asyncio
async def test_interrupted_later_exchange_is_dropped(store: SessionStore) -> None:
    """Only the unfinished exchange is removed; earlier history survives."""
    await _seed(store, [_user("q1"), _assistant("a1"), _user("q2"), _assistant("")])
    assert await recover_session(store) is RecoveryOutcome.EXCHANGE_DROPPED
    persisted = await store.load()
    assert [m.content for m in persisted.messages] == ["q1", "a1"]
    assert persisted.run_in_progress is False
    assert persisted.conversation_id == "conv-1"


@pytest.mark.asyncio
async def test_trailing_user_message_is_dropped(store: SessionStore) -> None:
    await _seed(store, [_user("q1"), _assistant("a1"), _user("q2")])
    assert await recover_session(store) is RecoveryOutcome.EXCHANGE_DROPPED
    persisted = await store.load()
    assert [m.content for m in persisted.messages] == ["q1", "a1"]


@pytest.mark.asyncio
async def test_flag_without_messages_clears_session(
    store: SessionStore, memory_backend: InMemoryKeyValueStore
) -> None:
    await store.save_ids("s1", None)
    await store.set_run_in_progress(True)
    assert await recover_session(store) is RecoveryOutcome.SESSION_CLEARED
    assert memory_backend.data == {}


def test_remove_last_exchange() -> None:
    messages = [_user("q1"), _assistant("a1"), _user("q2"), _assistant("")]
    assert [m.content for m in remove_last_exchange(messages)] == ["q1", "a1"]
    assert len(messages) == 4


@pytest.mark.asyncio
async def test_orphaned_session_is_discarded(store: SessionStore, memory_backend: InMemoryKeyValueStore) -> None:
    await _seed(store, [_user("q"), _assistant("a")], run_in_progress=False)
    assert await discard_orphaned_session(store, ["conv-1", "conv-2"]) is False
    assert memory_backend.data != {}
    assert await discard_orphaned_session(store, ["conv-2"]) is True
    assert memory_backend.data == {}
