import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

import httpx
import pytest


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from agentstream.services.agent_client import AgentClient  # noqa: E402
from agentstream.services.session_store import InMemoryKeyValueStore, SessionStore  # noqa: E402
from agentstream.settings import Settings  # noqa: E402


def sse(event: str, data: Any) -> str:
    """Encode one frame the way the gateway writes it."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


class FakeGateway:
    """Routes requests by path to canned bodies and records what was sent.

    Each path holds a queue of reply factories; the last one is reused.
    """

    def __init__(self) -> None:
        self.routes: Dict[str, List[Callable[[], httpx.Response]]] = {}
        self.requests: List[Tuple[str, Dict[str, Any]]] = []

    def reply(self, path: str, body: str, status: int = 200) -> None:
        self.routes.setdefault(path, []).append(
            lambda: httpx.Response(status, content=body.encode("utf-8"))
        )

    def reply_json(self, path: str, payload: Any, status: int = 200) -> None:
        self.routes.setdefault(path, []).append(lambda: httpx.Response(status, json=payload))

    def stream(self, path: str, body_factory: Callable[[], Any]) -> None:
        """Serve the async iterator returned by `body_factory` as the body."""
        self.routes.setdefault(path, []).append(lambda: httpx.Response(200, content=body_factory()))

    def paths(self) -> List[str]:
        return [path for path, _ in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((path, json.loads(request.content or b"{}")))
        queue = self.routes.get(path)
        if not queue:
            return httpx.Response(404, json={"error": f"no route for {path}"})
        factory = queue.pop(0) if len(queue) > 1 else queue[0]
        return factory()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from the environment; query analysis off by default."""
    return Settings(
        _env_file=None,
        log_dir=tmp_path / "logs",
        agent_base_url="http://gateway.test",
        query_analysis_path="",
        redis_url=None,
        storage_namespace="test",
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def agent_client(settings: Settings, gateway: FakeGateway) -> AgentClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(gateway.handler))
    return AgentClient(settings, http_client=http_client)


@pytest.fixture
def memory_backend() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def store(memory_backend: InMemoryKeyValueStore) -> SessionStore:
    return SessionStore(memory_backend, namespace="test")
