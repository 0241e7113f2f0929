"""Fixed-capacity decode batch shared by prompt priming and token generation."""

from typing import Optional

import torch

from tokenstream_lite.config import MAX_BATCH_CAPACITY


class Batch:
    """Parallel per-row arrays describing one decode call.

    Rows are addressed by index: row ``i`` decodes ``token[i]`` at position
    ``pos[i]`` for sequence ``seq_id[i]`` and asks the runtime to keep its
    output distribution when ``logits[i]`` is set. Only the first
    ``n_tokens`` rows are meaningful.

    Args:
        capacity: Number of rows allocated once at construction (at most 128)
        n_seq_max: Sequence ids per row (only 1 is supported)
    """

    def __init__(self, capacity: int, n_seq_max: int = 1):
        if not 0 < capacity <= MAX_BATCH_CAPACITY:
            raise ValueError(
                f"Batch capacity must be in (0, {MAX_BATCH_CAPACITY}], got {capacity}"
            )
        if n_seq_max != 1:
            raise ValueError(f"Only a single sequence per row is supported, got {n_seq_max}")

        self.capacity = capacity
        self.n_tokens = 0
        self.token: Optional[torch.Tensor] = torch.zeros(capacity, dtype=torch.long)
        self.pos: Optional[torch.Tensor] = torch.zeros(capacity, dtype=torch.long)
        self.n_seq_id: Optional[torch.Tensor] = torch.zeros(capacity, dtype=torch.int32)
        self.seq_id: Optional[torch.Tensor] = torch.zeros((capacity, n_seq_max), dtype=torch.int32)
        self.logits: Optional[torch.Tensor] = torch.zeros(capacity, dtype=torch.bool)

    @property
    def is_closed(self) -> bool:
        return self.token is None

    def reset(self) -> None:
        """Start a new decode call. Buffers are kept, only the row count is cleared."""
        self.n_tokens = 0

    def space_left(self) -> int:
        return self.capacity - self.n_tokens

    def add(self, token: int, pos: int, seq_id: int = 0, logits: bool = False) -> None:
        """Append one row.

        Raises:
            IndexError: If the batch is full
            RuntimeError: If the batch was closed
        """
        if self.is_closed:
            raise RuntimeError("Batch is closed")
        if self.n_tokens >= self.capacity:
            raise IndexError(f"Batch is full ({self.capacity} rows)")

        i = self.n_tokens
        self.token[i] = token
        self.pos[i] = pos
        self.n_seq_id[i] = 1
        self.seq_id[i, 0] = seq_id
        self.logits[i] = logits
        self.n_tokens += 1

    def token_ids(self) -> torch.Tensor:
        return self.token[: self.n_tokens]

    def positions(self) -> torch.Tensor:
        return self.pos[: self.n_tokens]

    def logits_mask(self) -> torch.Tensor:
        return self.logits[: self.n_tokens]

    def close(self) -> None:
        """Release the row buffers. Safe to call more than once."""
        self.token = None
        self.pos = None
        self.n_seq_id = None
        self.seq_id = None
        self.logits = None
        self.n_tokens = 0

    def __len__(self) -> int:
        return self.n_tokens

    def __repr__(self) -> str:
        return f"Batch(capacity={self.capacity}, n_tokens={self.n_tokens})"
