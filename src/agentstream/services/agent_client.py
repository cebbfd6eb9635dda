from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from typing import Any, Optional

import httpx

from ..decoder import FrameDecoder
from ..errors import TransportError
from ..models import StreamFrame
from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)


def build_status_error(response: httpx.Response) -> TransportError:
    """Normalize an HTTP error status into a TransportError."""
    status = response.status_code
    message = _extract_response_message(response)
    formatted = f"Request failed with {status}: {message}"
    if status == 401:
        return TransportError("UNAUTHORIZED", formatted, status_code=status)
    if status in {408, 429}:
        code = "TIMEOUT" if status == 408 else "RATE_LIMIT"
        return TransportError(code, formatted, retryable=True, status_code=status)
    if status >= 500:
        return TransportError("UPSTREAM", formatted, retryable=True, status_code=status)
    return TransportError("BAD_STATUS", formatted, status_code=status)


def _extract_response_message(response: httpx.Response) -> str:
    try:
        payload: Any = response.json()
    except ValueError:
        return (response.text or "Unknown error.").strip()

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code")
            if isinstance(detail, str) and detail.strip():
                return detail.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return (response.text or "Unknown error.").strip()


class AgentClient:
    """Opens event streams against the agent gateway."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = http_client
        self._timeout = httpx.Timeout(None, connect=self._settings.connect_timeout_seconds)

    def url(self, path: str) -> str:
        return self._settings.agent_base_url.rstrip("/") + "/" + path.lstrip("/")

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._settings.access_token:
            headers["Authorization"] = f"Bearer {self._settings.access_token}"
        return headers

    async def stream_frames(self, path: str, payload: dict[str, Any]) -> AsyncIterator[StreamFrame]:
        """POST `payload` and yield decoded frames as the body arrives.

        Raises:
            TransportError: connection failure, timeout, or an error status.
            MalformedStreamError / AmbiguousPayloadError: undecodable body.
        """
        url = self.url(path)
        logger.info("Opening stream %s", url)
        try:
            async with AsyncExitStack() as stack:
                client = self._client
                if client is None:
                    client = await stack.enter_async_context(httpx.AsyncClient(timeout=self._timeout))
                response = await stack.enter_async_context(
                    client.stream(
                        "POST",
                        url,
                        json=payload,
                        headers=self._headers(),
                        timeout=self._timeout,
                    )
                )
                if response.status_code >= 400:
                    await response.aread()
                    raise build_status_error(response)

                decoder = FrameDecoder()
                async for chunk in response.aiter_bytes():
                    for frame in decoder.feed(chunk):
                        yield frame
                for frame in decoder.finish():
                    yield frame
                logger.debug("Stream %s ended after %d frames", url, decoder.frames_seen)
        except httpx.TimeoutException as exc:
            raise TransportError("TIMEOUT", "Agent request timed out.", retryable=True) from exc
        except httpx.RequestError as exc:
            raise TransportError(
                "CONNECTION_ERROR",
                f"Agent connection failed: {exc}",
                retryable=True,
            ) from exc
