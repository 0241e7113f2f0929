"""
Session and controller configuration.

SessionConfig holds the context-window arithmetic used by the inference
session (batch capacity, safety margins, generation budget floor).
ControllerConfig holds the request-level defaults of the token stream
controller (prompt budgeting, stop markers, sampling defaults).
"""

from typing import Any, Dict, Optional, Sequence, Tuple

DEFAULT_CONTEXT_SIZE = 1024
DEFAULT_THREAD_COUNT = 4
MAX_BATCH_CAPACITY = 128
MAX_MICRO_BATCH = 64

DEFAULT_STOP_MARKERS: Tuple[str, ...] = ("<|user|>", "<|im_start|>", "<|im_end|>")


class SessionConfig:
    """Configuration for an InferenceSession.

    Attributes:
        context_size: Context window in tokens. Non-positive values fall back to 1024.
        thread_count: CPU threads for decode. Non-positive values fall back to 4.
        use_mmap: Whether the runtime may memory-map model weights.
        batch_capacity: Upper bound on tokens per decode call (at most 128).
        micro_batch: Upper bound on the runtime's physical micro-batch (at most 64).
        safety_margin: Tokens kept free after the prompt (prompt guard and budget).
        context_guard: Generation stops when the cursor is this close to n_ctx.
        min_new_tokens: Floor of the per-prompt generation budget.
    """

    def __init__(
        self,
        context_size: int = DEFAULT_CONTEXT_SIZE,
        thread_count: int = DEFAULT_THREAD_COUNT,
        use_mmap: bool = True,
        batch_capacity: int = MAX_BATCH_CAPACITY,
        micro_batch: int = MAX_MICRO_BATCH,
        safety_margin: int = 128,
        context_guard: int = 4,
        min_new_tokens: int = 16,
        **kwargs: Any,
    ) -> None:
        self.context_size = context_size if context_size > 0 else DEFAULT_CONTEXT_SIZE
        self.thread_count = thread_count if thread_count > 0 else DEFAULT_THREAD_COUNT
        self.use_mmap = bool(use_mmap)
        self.batch_capacity = batch_capacity
        self.micro_batch = micro_batch
        self.safety_margin = safety_margin
        self.context_guard = context_guard
        self.min_new_tokens = min_new_tokens

        self._validate()

    def _validate(self) -> None:
        """Validate configuration parameters.

        Raises:
            ValueError: If configuration parameters are invalid.
        """
        if not 0 < self.batch_capacity <= MAX_BATCH_CAPACITY:
            raise ValueError(
                f"batch_capacity must be in (0, {MAX_BATCH_CAPACITY}], got {self.batch_capacity}"
            )
        if not 0 < self.micro_batch <= MAX_MICRO_BATCH:
            raise ValueError(
                f"micro_batch must be in (0, {MAX_MICRO_BATCH}], got {self.micro_batch}"
            )
        if self.safety_margin < 0:
            raise ValueError(f"safety_margin must be non-negative, got {self.safety_margin}")
        if self.context_guard < 0:
            raise ValueError(f"context_guard must be non-negative, got {self.context_guard}")
        if self.min_new_tokens <= 0:
            raise ValueError(f"min_new_tokens must be positive, got {self.min_new_tokens}")

    @property
    def n_batch(self) -> int:
        """Tokens per decode call: min(batch_capacity, context_size)."""
        return min(self.batch_capacity, self.context_size)

    @property
    def n_ubatch(self) -> int:
        """Physical micro-batch: min(micro_batch, context_size)."""
        return min(self.micro_batch, self.context_size)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionConfig":
        """Build a configuration from a plain dictionary, ignoring unknown keys."""
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context_size": self.context_size,
            "thread_count": self.thread_count,
            "use_mmap": self.use_mmap,
            "batch_capacity": self.batch_capacity,
            "micro_batch": self.micro_batch,
            "safety_margin": self.safety_margin,
            "context_guard": self.context_guard,
            "min_new_tokens": self.min_new_tokens,
        }

    def __repr__(self) -> str:
        return (
            f"SessionConfig("
            f"context_size={self.context_size}, "
            f"thread_count={self.thread_count}, "
            f"use_mmap={self.use_mmap}, "
            f"n_batch={self.n_batch}, "
            f"n_ubatch={self.n_ubatch}, "
            f"safety_margin={self.safety_margin}"
            f")"
        )


class ControllerConfig:
    """Request-level defaults for the token stream controller.

    Attributes:
        context_size: Context window used for prompt budgeting.
        reserved_for_generation: Tokens withheld from history for the reply.
        stop_markers: Literal markers that end a stream (shared leading character).
        default_max_tokens: Generation loop bound when a request gives none.
        default_temperature: Sampling temperature default.
        default_top_p: Nucleus sampling default.
    """

    def __init__(
        self,
        context_size: int = DEFAULT_CONTEXT_SIZE,
        reserved_for_generation: int = 200,
        stop_markers: Optional[Sequence[str]] = None,
        default_max_tokens: int = 200,
        default_temperature: float = 0.2,
        default_top_p: float = 0.9,
        **kwargs: Any,
    ) -> None:
        self.context_size = context_size if context_size > 0 else DEFAULT_CONTEXT_SIZE
        self.reserved_for_generation = reserved_for_generation
        self.stop_markers = tuple(stop_markers) if stop_markers is not None else DEFAULT_STOP_MARKERS
        self.default_max_tokens = default_max_tokens
        self.default_temperature = default_temperature
        self.default_top_p = default_top_p

        self._validate()

    def _validate(self) -> None:
        if not 0 <= self.reserved_for_generation < self.context_size:
            raise ValueError(
                f"reserved_for_generation must be in [0, {self.context_size}), "
                f"got {self.reserved_for_generation}"
            )
        if not self.stop_markers:
            raise ValueError("stop_markers cannot be empty")
        if self.default_max_tokens <= 0:
            raise ValueError(f"default_max_tokens must be positive, got {self.default_max_tokens}")
        if not 0.0 < self.default_top_p <= 1.0:
            raise ValueError(f"default_top_p must be in (0, 1], got {self.default_top_p}")

    @property
    def prompt_budget(self) -> int:
        return self.context_size - self.reserved_for_generation

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ControllerConfig":
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context_size": self.context_size,
            "reserved_for_generation": self.reserved_for_generation,
            "stop_markers": list(self.stop_markers),
            "default_max_tokens": self.default_max_tokens,
            "default_temperature": self.default_temperature,
            "default_top_p": self.default_top_p,
        }
