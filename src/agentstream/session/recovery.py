"""Startup repair of state left behind by an interrupted run.

The run-in-progress flag is set when a run starts and cleared only when it
settles or is aborted, so finding it set at startup means the previous
process ended mid-run. Repair is silent: nothing here is reported to the user
as an error.
"""

import logging
from enum import Enum
from typing import Iterable, List

from ..models import ChatMessage, Role
from ..services.session_store import SessionStore

logger = logging.getLogger(__name__)


class RecoveryOutcome(str, Enum):
    CLEAN = "clean"
    FLAG_CLEARED = "flag_cleared"
    EXCHANGE_DROPPED = "exchange_dropped"
    SESSION_CLEARED = "session_cleared"


def remove_last_exchange(messages: List[ChatMessage]) -> List[ChatMessage]:
    """Drop the last assistant message and the last user message before it."""
    remaining = list(messages)
    for index in range(len(remaining) - 1, -1, -1):
        if remaining[index].role == Role.ASSISTANT:
            del remaining[index]
            break
    for index in range(len(remaining) - 1, -1, -1):
        if remaining[index].role == Role.USER:
            del remaining[index]
            break
    return remaining


def _has_unanswered_tail(messages: List[ChatMessage]) -> bool:
    last = messages[-1]
    if last.role == Role.USER:
        return True
    return not last.content.strip()


async def recover_session(store: SessionStore) -> RecoveryOutcome:
    """Inspect and repair the persisted session before anything else reads it."""
    persisted = await store.load()
    if not persisted.run_in_progress:
        return RecoveryOutcome.CLEAN

    messages = persisted.messages
    if not messages:
        logger.info("Unclean shutdown with no stored messages, clearing session")
        await store.clear()
        return RecoveryOutcome.SESSION_CLEARED

    if not _has_unanswered_tail(messages):
        logger.info("Unclean shutdown after a non-empty reply, keeping transcript")
        await store.set_run_in_progress(False)
        return RecoveryOutcome.FLAG_CLEARED

    if messages[-1].role == Role.USER:
        remaining = messages[:-1]
    else:
        remaining = remove_last_exchange(messages)

    if not remaining:
        logger.info("Unclean shutdown during the first exchange, clearing session")
        await store.clear()
        return RecoveryOutcome.SESSION_CLEARED

    logger.info(
        "Unclean shutdown mid-stream, dropping incomplete exchange (%d -> %d messages)",
        len(messages),
        len(remaining),
    )
    await store.checkpoint(remaining, persisted.session_id, persisted.conversation_id, run_in_progress=False)
    return RecoveryOutcome.EXCHANGE_DROPPED


async def discard_orphaned_session(store: SessionStore, known_conversation_ids: Iterable[str]) -> bool:
    """Clear persisted state whose conversation no longer exists in history.

    Returns True when the namespace was cleared.
    """
    persisted = await store.load()
    if not persisted.conversation_id:
        return False
    if persisted.conversation_id in set(known_conversation_ids):
        return False
    logger.info("Clearing orphaned session for conversation %s", persisted.conversation_id)
    await store.clear()
    return True
