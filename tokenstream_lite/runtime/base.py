"""
Abstract model runtime.

The inference session drives an autoregressive language model only through
these interfaces: load a model, open a context on it, tokenize, decode
batches, read logits, render tokens. Conventions follow native inference
libraries: status codes from ``decode`` and negative size hints from
``tokenize`` instead of exceptions on the hot path.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple

import torch

from tokenstream_lite.batch.batch import Batch


@dataclass
class ContextParams:
    """Parameters for a new inference context.

    Attributes:
        n_ctx: Context window in tokens
        n_threads: Threads for single-token decode
        n_threads_batch: Threads for batched prompt decode
        n_batch: Maximum tokens per decode call
        n_ubatch: Physical micro-batch size
        offload_kqv: Offload attention to an accelerator (always False: CPU only)
        no_perf: Disable performance counters
    """
    n_ctx: int
    n_threads: int
    n_threads_batch: int
    n_batch: int
    n_ubatch: int
    offload_kqv: bool = False
    no_perf: bool = True


class RuntimeContext(ABC):
    """Decode state (attention cache and last logits) bound to one model."""

    @property
    @abstractmethod
    def n_ctx(self) -> int:
        pass

    @property
    @abstractmethod
    def n_batch(self) -> int:
        pass

    @property
    @abstractmethod
    def n_ubatch(self) -> int:
        pass

    @abstractmethod
    def memory_clear(self) -> None:
        """Invalidate the whole attention cache."""
        pass

    @abstractmethod
    def decode(self, batch: Batch) -> int:
        """Decode the first ``batch.n_tokens`` rows.

        Returns:
            0 on success, non-zero runtime status on failure
        """
        pass

    @abstractmethod
    def get_logits_ith(self, i: int) -> torch.Tensor:
        """Logits of the i-th flagged row of the last decode (-1 = last flagged row)."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class RuntimeModel(ABC):
    """Loaded model weights plus vocabulary."""

    @property
    @abstractmethod
    def n_vocab(self) -> int:
        pass

    @property
    def n_ctx_train(self) -> Optional[int]:
        """Context window the model was trained with, if known."""
        return None

    @abstractmethod
    def tokenize(
        self, text: str, n_max_tokens: int, add_special: bool, parse_special: bool
    ) -> Tuple[int, List[int]]:
        """Tokenize ``text`` into at most ``n_max_tokens`` ids.

        Args:
            text: Input text
            n_max_tokens: Size of the caller's token buffer
            add_special: Add BOS/EOS as the model's vocabulary requires
            parse_special: Treat control-token text as control tokens

        Returns:
            ``(n, ids)``; when the buffer is too small ``n`` is the negated
            required size and ``ids`` is empty
        """
        pass

    @abstractmethod
    def token_to_piece(self, token_id: int, special: bool) -> bytes:
        """Render one token as UTF-8 bytes (possibly a partial character)."""
        pass

    @abstractmethod
    def is_eog(self, token_id: int) -> bool:
        """Whether the vocabulary marks ``token_id`` as end of generation."""
        pass

    @abstractmethod
    def new_context(self, params: ContextParams) -> RuntimeContext:
        """Create an inference context.

        Raises:
            ContextError: If the context cannot be allocated
        """
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class ModelRuntime(ABC):
    """Factory for loaded models."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def load_model(self, model_path: str, use_mmap: bool) -> RuntimeModel:
        """Load model weights and vocabulary.

        Raises:
            LoadError: If the model file is missing or cannot be loaded
        """
        pass
