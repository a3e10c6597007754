"""Error taxonomy shared by the bridge components."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class BridgeError(RuntimeError):
    """Base class for all bridge errors."""


class StartupError(BridgeError):
    """Fatal error raised before the bridge reached steady state.

    Missing credentials and a failed initial connect end up here; the CLI
    exits non-zero with the message as diagnostic.
    """


class DecodeErrorKind(str, Enum):
    MALFORMED = "malformed"


class DecodeError(BridgeError):
    """Raised when an inbound payload cannot be interpreted."""

    def __init__(
        self,
        message: str,
        *,
        kind: DecodeErrorKind = DecodeErrorKind.MALFORMED,
        raw: Optional[bytes] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.raw = raw


class TransientLinkError(BridgeError):
    """Link loss during steady state.

    Recovered by the transport's automatic reconnect; only ever reported as a
    status, never raised out of the receive loop.
    """


class PublishError(BridgeError):
    """Raised when an outbound command could not be handed to the transport."""

    def __init__(self, message: str, *, topic: Optional[str] = None) -> None:
        super().__init__(message)
        self.topic = topic
