"""
Flat call surface with native-library conventions.

Mirrors the five exported calls of a native inference wrapper (init,
prepare_prompt, tokenize, get_next_token, free) for callers that expect
handles, booleans and integer status codes rather than exceptions. Errors
are logged here and never raised.
"""

import logging
from typing import Optional

from tokenstream_lite.core.inference_session import InferenceSession
from tokenstream_lite.errors import (
    DecodeError,
    NotInitializedError,
    NotPreparedError,
    SamplerError,
    TokenStreamError,
)
from tokenstream_lite.runtime.base import ModelRuntime

logger = logging.getLogger(__name__)

# get_next_token status codes (0 = stop, > 0 = bytes written)
ERR_NULL_HANDLE = -1
ERR_NOT_PREPARED = -2
ERR_SAMPLER = -3
ERR_DECODE = -4
ERR_BUFFER_TOO_SMALL = -5


def init(
    model_path: str,
    context_size: int,
    threads: int,
    use_mmap: bool,
    runtime: Optional[ModelRuntime] = None,
) -> Optional[InferenceSession]:
    """Create a session, or return None if the model or context fails."""
    try:
        return InferenceSession.init(
            model_path,
            context_size=context_size,
            thread_count=threads,
            use_mmap=use_mmap,
            runtime=runtime,
        )
    except TokenStreamError as e:
        logger.error("init failed: %s", e)
        return None


def prepare_prompt(handle: Optional[InferenceSession], prompt: str) -> bool:
    if handle is None:
        return False
    try:
        handle.prepare_prompt(prompt)
    except TokenStreamError as e:
        logger.error("prepare_prompt failed: %s", e)
        return False
    return True


def tokenize(handle: Optional[InferenceSession], text: str) -> int:
    """Token count of ``text``; -1 for a missing or freed handle."""
    if handle is None:
        return ERR_NULL_HANDLE
    try:
        return handle.tokenize(text)
    except TokenStreamError as e:
        logger.error("tokenize failed: %s", e)
        return ERR_NULL_HANDLE


def get_next_token(
    handle: Optional[InferenceSession],
    temperature: float,
    top_p: float,
    out_buffer: bytearray,
    out_buffer_size: int,
) -> int:
    """Write the next token's raw bytes, NUL terminated, into ``out_buffer``.

    A piece may end partway through a multi-byte UTF-8 character; the
    caller reassembles the bytes.

    Returns:
        Bytes written (excluding the terminator), 0 at end of generation,
        or a negative status code
    """
    if handle is None:
        return ERR_NULL_HANDLE
    try:
        data = handle.next_piece(temperature, top_p)
    except NotInitializedError:
        return ERR_NULL_HANDLE
    except NotPreparedError:
        return ERR_NOT_PREPARED
    except SamplerError as e:
        logger.error("get_next_token: failed to configure sampler: %s", e)
        return ERR_SAMPLER
    except DecodeError as e:
        logger.error("get_next_token: %s", e)
        return ERR_DECODE

    if data is None:
        return 0

    size = min(out_buffer_size, len(out_buffer))
    if len(data) > size - 1:
        logger.error("get_next_token: %d byte piece does not fit a %d byte buffer", len(data), size)
        return ERR_BUFFER_TOO_SMALL

    out_buffer[: len(data)] = data
    out_buffer[len(data)] = 0
    return len(data)


def free(handle: Optional[InferenceSession]) -> None:
    if handle is None:
        return
    handle.free()
