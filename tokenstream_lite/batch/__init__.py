"""
Prompt batching for context priming.

Provides:
- Batch: Fixed-capacity decode batch (token, position, sequence id, logits flag)
- ChunkManager: Splits a prompt into batch-sized windows with positional assignment
- ChunkState: Progress of the prompt being primed
"""

from tokenstream_lite.batch.batch import Batch
from tokenstream_lite.batch.chunk_manager import ChunkManager, ChunkState

__all__ = ["Batch", "ChunkManager", "ChunkState"]
