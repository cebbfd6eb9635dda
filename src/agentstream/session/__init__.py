from .controller import (
    CancellationToken,
    ChatSession,
    InteractionRecorder,
    RunStatus,
    SessionState,
)
from .progress import ProgressTracker, stage_label
from .recovery import RecoveryOutcome, discard_orphaned_session, recover_session, remove_last_exchange

__all__ = [
    "CancellationToken",
    "ChatSession",
    "InteractionRecorder",
    "ProgressTracker",
    "RecoveryOutcome",
    "RunStatus",
    "SessionState",
    "discard_orphaned_session",
    "recover_session",
    "remove_last_exchange",
    "stage_label",
]
