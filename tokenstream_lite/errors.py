"""
Error taxonomy for the inference session and token stream controller.

Every failure raised by the session derives from TokenStreamError so the
controller can terminate a single request without crashing the worker.
"""

from typing import Optional


class TokenStreamError(Exception):
    """Base class for all tokenstream_lite errors."""


class LoadError(TokenStreamError):
    """Model file is missing, unreadable or corrupt."""


class ContextError(TokenStreamError):
    """The runtime could not allocate an inference context."""


class PromptTooLongError(TokenStreamError):
    """Prompt does not fit the context window minus the safety margin.

    Attributes:
        n_tokens: Token count of the rejected prompt
        limit: Largest accepted token count plus one (n_ctx - safety margin)
    """

    def __init__(self, n_tokens: int, limit: int):
        super().__init__(f"Prompt too long: {n_tokens} tokens >= limit {limit}")
        self.n_tokens = n_tokens
        self.limit = limit


class DecodeError(TokenStreamError):
    """The runtime failed to decode a batch.

    Attributes:
        code: Non-zero status returned by the runtime
        position: Cursor position of the failing batch, if known
    """

    def __init__(self, message: str, code: int = -1, position: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.position = position


class SamplerError(TokenStreamError):
    """Sampler chain construction failed."""


class NotInitializedError(TokenStreamError):
    """Session was freed (or never initialized) and must not be used."""


class NotPreparedError(TokenStreamError):
    """Token requested before a prompt was successfully prepared."""

