"""ChunkManager for priming a context with a prompt in batch-sized windows."""

from dataclasses import dataclass, field
from typing import Iterator, List, Sequence

from tokenstream_lite.batch.batch import Batch

# Single logical sequence; multi-sequence batching is not supported.
SEQ_ID = 0


@dataclass
class ChunkState:
    """Progress of the prompt currently being primed."""
    n_tokens: int
    chunk_size: int
    start_pos: int = 0
    current_chunk_idx: int = 0
    total_chunks: int = 0
    completed_chunks: List[int] = field(default_factory=list)

    @property
    def cursor(self) -> int:
        """Position of the next token to be decoded."""
        return self.start_pos + min(self.current_chunk_idx * self.chunk_size, self.n_tokens)

    def is_complete(self) -> bool:
        return len(self.completed_chunks) == self.total_chunks


class ChunkManager:
    """Splits a prompt into consecutive windows and lays each out in a Batch.

    Windows are taken left to right without reordering or skipping. Every
    row of a window gets the next position, sequence id 0, and only the last
    row of each window asks for logits: interior distributions are never
    sampled.

    Args:
        chunk_size: Maximum tokens per chunk (normally the batch capacity)
    """

    def __init__(self, chunk_size: int):
        """Initialize ChunkManager.

        Args:
            chunk_size: Maximum tokens per chunk

        Raises:
            ValueError: If chunk_size is zero or negative
        """
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {chunk_size}")

        self.chunk_size = chunk_size
        self.state: ChunkState = ChunkState(n_tokens=0, chunk_size=chunk_size)

    def split_sequence(self, token_ids: Sequence[int]) -> List[List[int]]:
        """Split a token sequence into chunks of at most ``chunk_size``.

        Args:
            token_ids: Prompt token IDs

        Returns:
            List of chunks; empty for an empty sequence
        """
        return [
            list(token_ids[i:i + self.chunk_size])
            for i in range(0, len(token_ids), self.chunk_size)
        ]

    def fill_batch(self, batch: Batch, chunk: Sequence[int], start_pos: int) -> Batch:
        """Reset ``batch`` and populate it with one chunk.

        Args:
            batch: Reusable batch buffer
            chunk: Token IDs of this chunk
            start_pos: Position of the chunk's first token

        Returns:
            The populated batch

        Raises:
            ValueError: If the chunk does not fit the batch
        """
        if len(chunk) > batch.capacity:
            raise ValueError(
                f"Chunk of {len(chunk)} tokens exceeds batch capacity {batch.capacity}"
            )

        batch.reset()
        last = len(chunk) - 1
        for j, token in enumerate(chunk):
            batch.add(token, start_pos + j, SEQ_ID, logits=(j == last))
        return batch

    def iter_batches(
        self, batch: Batch, token_ids: Sequence[int], start_pos: int = 0
    ) -> Iterator[Batch]:
        """Yield ``batch`` once per chunk, populated in prompt order.

        The caller decodes the batch between iterations. ``self.state``
        tracks progress, so after an aborted iteration ``state.cursor``
        points at the first token of the failing chunk.

        Args:
            batch: Reusable batch buffer
            token_ids: Prompt token IDs
            start_pos: Position of the first prompt token

        Yields:
            The same batch object, refilled for each chunk
        """
        chunks = self.split_sequence(token_ids)
        self.state = ChunkState(
            n_tokens=len(token_ids),
            chunk_size=self.chunk_size,
            start_pos=start_pos,
            total_chunks=len(chunks),
        )

        for chunk in chunks:
            yield self.fill_batch(batch, chunk, self.state.cursor)
            self.state.completed_chunks.append(self.state.current_chunk_idx)
            self.state.current_chunk_idx += 1

    def calculate_chunks_needed(self, n_tokens: int) -> int:
        """Number of decode calls needed for ``n_tokens`` prompt tokens."""
        return -(-n_tokens // self.chunk_size)
