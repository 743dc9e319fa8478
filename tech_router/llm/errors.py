# Role: Error taxonomy for one conversation turn. FlowController catches these at the turn boundary,
# persists a flagged error message, and resets the routing state.

from __future__ import annotations

from typing import Optional


class RouterError(RuntimeError):
    """Base class for turn-fatal errors."""


class FormattingFailure(RouterError):
    """A formatter produced no usable message list; no request is sent."""


class ProtocolViolation(RouterError):
    """The request payload breaks the provider's turn-order contract after validation."""


class RequestFailed(RouterError):
    """Non-2xx response, transport error, or broken stream."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConversationBusy(RouterError):
    """A turn was submitted while another one is still in flight for the same session."""
