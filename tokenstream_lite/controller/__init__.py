"""
Request scheduling and event streaming.

Provides:
- TokenStreamController: Single-flight asyncio actor over one InferenceSession
- Request: Generation request (flat prompt or conversation turns)
- ControllerState: Actor state enum
- StreamEvent and its variants: TokenEvent, DoneEvent, ErrorEvent,
  CancelledEvent, WarmupEvent
"""

from tokenstream_lite.controller.events import (
    CancelledEvent,
    DoneEvent,
    ErrorEvent,
    StreamEvent,
    TokenEvent,
    WarmupEvent,
)
from tokenstream_lite.controller.request import ControllerState, Request
from tokenstream_lite.controller.token_stream_controller import TokenStreamController

__all__ = [
    "CancelledEvent",
    "ControllerState",
    "DoneEvent",
    "ErrorEvent",
    "Request",
    "StreamEvent",
    "TokenEvent",
    "TokenStreamController",
    "WarmupEvent",
]
