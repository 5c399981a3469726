from __future__ import annotations

from typing import Sequence


class BrowserAgentError(RuntimeError):
    pass


class ValidationError(BrowserAgentError):
    """A payload from outside the core did not match its schema.

    ``path`` is the dotted location of the first offending field
    (``candidates.0.content.parts.1``), or ``""`` for the payload root.
    """

    def __init__(self, schema: str, path: str, message: str) -> None:
        where = path or "<root>"
        super().__init__(f"{schema}: {where}: {message}")
        self.schema = schema
        self.path = path
        self.detail = message


class SessionError(BrowserAgentError):
    def __init__(self, message: str, *, reason: str = "unavailable") -> None:
        super().__init__(message)
        self.reason = reason


class ToolRequestError(BrowserAgentError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class DispatchError(ToolRequestError):
    pass


class ModelClientError(BrowserAgentError):
    pass


class TurnBusyError(BrowserAgentError):
    pass


class ContractViolation(BrowserAgentError):
    pass


class PoolCloseError(BrowserAgentError):
    def __init__(self, errors: Sequence[tuple[str, BaseException]]) -> None:
        self.errors = list(errors)
        urls = ", ".join(url for url, _ in self.errors)
        super().__init__(f"{len(self.errors)} MCP client(s) failed to close: {urls}")


RETRYABLE_HTTP_STATUSES = {429, 500, 502, 503, 504}


def is_retryable_status(status_code: int | None) -> bool:
    return status_code in RETRYABLE_HTTP_STATUSES
