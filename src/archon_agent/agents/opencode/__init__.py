"""OpenCode-compatible agent runtime support."""

from .client import OpenCodeClient
from .events import SSEEvent, parse_sse_lines
from .server import OpenCodeServer
from .session import (
    Session,
    SessionListener,
    SessionOrchestrator,
    SessionStatus,
    probe_runtime,
)

__all__ = [
    "OpenCodeClient",
    "OpenCodeServer",
    "SSEEvent",
    "Session",
    "SessionListener",
    "SessionOrchestrator",
    "SessionStatus",
    "parse_sse_lines",
    "probe_runtime",
]
