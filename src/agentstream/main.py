import asyncio
import logging
import signal
from logging.handlers import RotatingFileHandler
from typing import Optional

from .models import Role
from .services.agent_client import AgentClient
from .services.redis import RedisSessionBackend
from .services.session_store import open_session_store
from .session import ChatSession, RunStatus, recover_session
from .settings import Settings, get_settings


def setup_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """Configure and return the package logger."""
    settings = settings or get_settings()
    logs_dir = settings.log_dir
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("agentstream")
    if logger.handlers:
        return logger

    logger.setLevel(settings.log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    ch.setLevel(logging.WARNING)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "agentstream.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


async def open_session(
    settings: Optional[Settings] = None,
    client: Optional[AgentClient] = None,
) -> ChatSession:
    """Open the persisted session, repairing an interrupted run first."""
    settings = settings or get_settings()
    store = await open_session_store(settings)
    outcome = await recover_session(store)
    logging.getLogger("agentstream").info("Session recovery: %s", outcome.value)
    persisted = await store.load()
    return ChatSession(
        client=client or AgentClient(settings),
        store=store,
        settings=settings,
        persisted=persisted,
    )


async def close_session(session: ChatSession) -> None:
    session.abort()
    backend = session.store.backend
    if isinstance(backend, RedisSessionBackend):
        await backend.close()


class _ConsolePrinter:
    """Observer that echoes streamed assistant text to stdout."""

    def __init__(self) -> None:
        self.shown = 0

    def __call__(self, session: ChatSession) -> None:
        if not session.messages or session.messages[-1].role != Role.ASSISTANT:
            return
        content = session.messages[-1].content
        if len(content) > self.shown:
            print(content[self.shown:], end="", flush=True)
            self.shown = len(content)


async def _run_turn(session: ChatSession, text: str, printer: _ConsolePrinter) -> None:
    printer.shown = 0
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.abort)
    except NotImplementedError:
        pass
    try:
        state = await session.run(text)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
    print()

    if state.status == RunStatus.ERROR:
        if state.not_found:
            print(f"[not found] {state.error}")
        else:
            print(f"[error] {state.error}")
    elif state.status == RunStatus.ABORTED:
        print("[aborted]")
    elif state.status == RunStatus.DONE and session.messages:
        reply = session.messages[-1]
        for url in reply.sources or []:
            print(f"  source: {url}")
        if reply.timing is not None:
            print(f"  ({reply.timing.round_trip_ms} ms)")


async def _chat(settings: Settings) -> None:
    session = await open_session(settings)
    printer = _ConsolePrinter()
    session.set_observer(printer)
    for message in session.messages:
        print(f"{message.role.value}: {message.content}")
    try:
        while True:
            try:
                text = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            command = text.strip()
            if not command:
                continue
            if command in {"/quit", "/exit"}:
                break
            if command == "/new":
                await session.reset()
                print("[new conversation]")
                continue
            await _run_turn(session, command, printer)
    finally:
        await close_session(session)


def main() -> None:
    """Interactive terminal chat against the configured agent gateway."""
    settings = get_settings()
    setup_logging(settings)
    try:
        asyncio.run(_chat(settings))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
