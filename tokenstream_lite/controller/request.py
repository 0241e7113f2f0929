"""
Request dataclass and controller states.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from tokenstream_lite.config import ControllerConfig
from tokenstream_lite.prompt.budget_builder import Turn


class ControllerState(Enum):
    """State of the token stream controller."""

    IDLE = "idle"  # Waiting for a request
    LOADING = "loading"  # Swapping the loaded model
    PREPARING = "preparing"  # Building and priming the prompt
    GENERATING = "generating"  # Producing tokens
    DRAINING = "draining"  # Abandoning a cancelled request


@dataclass
class Request:
    """A single generation request.

    Exactly one of ``prompt`` (final prompt text) or ``turns`` (conversation
    history, oldest first, budgeted into a prompt) must be given.

    Attributes:
        model_path: Local path of the model to generate with
        request_id: Caller-assigned id, unique per request
        prompt: Final prompt text
        turns: Conversation history; dicts with ``role``/``text`` are accepted
        system_prompt: Preamble placed before the history
        max_tokens: Upper bound on generation loop iterations
        temperature: Sampling temperature
        top_p: Nucleus sampling mass
    """

    model_path: str
    request_id: str
    prompt: Optional[str] = None
    turns: Optional[List[Turn]] = None
    system_prompt: Optional[str] = None
    max_tokens: int = 200
    temperature: float = 0.2
    top_p: float = 0.9

    def __post_init__(self) -> None:
        if (self.prompt is None) == (self.turns is None):
            raise ValueError("Exactly one of prompt or turns must be provided")
        if not self.model_path:
            raise ValueError("model_path cannot be empty")
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        if self.turns is not None:
            self.turns = [_as_turn(t) for t in self.turns]

    @property
    def has_history(self) -> bool:
        return self.turns is not None

    @classmethod
    def from_message(cls, message: Dict[str, Any], config: Optional[ControllerConfig] = None) -> "Request":
        """Build a request from a control-plane message.

        Keys: ``modelPath``, ``requestId``, ``prompt`` or ``messages``,
        ``systemPrompt``, ``maxTokens``, ``temperature``, ``topP``. Missing
        sampling keys take the defaults of ``config``.
        """
        config = config or ControllerConfig()
        return cls(
            model_path=message["modelPath"],
            request_id=message["requestId"],
            prompt=message.get("prompt"),
            turns=message.get("messages"),
            system_prompt=message.get("systemPrompt"),
            max_tokens=message.get("maxTokens", config.default_max_tokens),
            temperature=message.get("temperature", config.default_temperature),
            top_p=message.get("topP", config.default_top_p),
        )


def _as_turn(turn: Union[Turn, Dict[str, Any], Sequence[str]]) -> Turn:
    if isinstance(turn, Turn):
        return turn
    if isinstance(turn, dict):
        return Turn(role=str(turn["role"]), text=str(turn["text"]))
    role, text = turn
    return Turn(role=role, text=text)
