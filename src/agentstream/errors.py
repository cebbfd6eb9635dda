from __future__ import annotations


class AgentStreamError(RuntimeError):
    """Base error for the streaming session engine."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class MalformedStreamError(AgentStreamError):
    """The body looked like frame syntax but no frame could be decoded."""

    def __init__(self, message: str = "Received SSE stream but failed to parse events.") -> None:
        super().__init__("MALFORMED_STREAM", message)


class AmbiguousPayloadError(AgentStreamError):
    """The body carried no frames and was not a JSON document either."""

    def __init__(self, message: str = "Failed to parse response: no events and no JSON payload.") -> None:
        super().__init__("PARSE_ERROR", message)


class TransportError(AgentStreamError):
    """Raised when the network request fails or returns an error status."""

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(code, message)
        self.retryable = retryable
        self.status_code = status_code


class ServerReportedError(AgentStreamError):
    """An explicit `error` frame raised out of a pre-step."""

    def __init__(self, message: str, code: str = "") -> None:
        super().__init__(code or "SERVER_ERROR", message)


class MessageSettledError(AgentStreamError):
    """A settled chat message was mutated."""

    def __init__(self) -> None:
        super().__init__("MESSAGE_SETTLED", "Cannot modify a settled message.")
