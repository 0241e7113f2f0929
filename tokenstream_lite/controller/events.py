"""
Stream events emitted by the token stream controller.

Every request id receives zero or more TokenEvents followed by exactly one
terminal event: DoneEvent, ErrorEvent or CancelledEvent. WarmupEvent answers
a model preload and carries no request id.
"""

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Optional


@dataclass(frozen=True)
class StreamEvent:
    """Base class of all stream events."""

    request_id: Optional[str]

    is_terminal: ClassVar[bool] = False

    def to_message(self) -> Dict[str, Any]:
        """Flat wire record used by message-passing consumers."""
        return {
            "token": None,
            "isDone": self.is_terminal,
            "error": None,
            "tokensPerSecond": None,
            "wasCancelled": False,
            "isWarmup": False,
            "requestId": self.request_id,
        }


@dataclass(frozen=True)
class TokenEvent(StreamEvent):
    text: str

    def to_message(self) -> Dict[str, Any]:
        message = super().to_message()
        message["token"] = self.text
        return message


@dataclass(frozen=True)
class DoneEvent(StreamEvent):
    tokens_per_second: float

    is_terminal: ClassVar[bool] = True

    def to_message(self) -> Dict[str, Any]:
        message = super().to_message()
        message["tokensPerSecond"] = self.tokens_per_second
        return message


@dataclass(frozen=True)
class ErrorEvent(StreamEvent):
    message: str

    is_terminal: ClassVar[bool] = True

    def to_message(self) -> Dict[str, Any]:
        message = super().to_message()
        message["error"] = self.message
        return message


@dataclass(frozen=True)
class CancelledEvent(StreamEvent):
    is_terminal: ClassVar[bool] = True

    def to_message(self) -> Dict[str, Any]:
        message = super().to_message()
        message["wasCancelled"] = True
        return message


@dataclass(frozen=True)
class WarmupEvent(StreamEvent):
    request_id: Optional[str] = None
    model_path: str = ""
    error: Optional[str] = None

    is_terminal: ClassVar[bool] = True

    def to_message(self) -> Dict[str, Any]:
        message = super().to_message()
        message["isWarmup"] = True
        message["error"] = self.error
        return message
