"""
tokenstream_lite: on-device LLM inference session and token streaming.

This package bridges an autoregressive language-model runtime to an
asynchronous consumer:
- Inference session owning model, context, decode batch and sampler chain
- Chunked prompt priming with positional bookkeeping
- Sampler chain with rebuild-on-change policy
- Stop-sequence filter that never leaks a partial control marker
- Token-budgeted prompt construction from conversation history
- Single-flight controller with cancellation and supersession
"""

__version__ = "0.1.0"
__author__ = "tokenstream-lite contributors"

from tokenstream_lite.config import ControllerConfig, SessionConfig
from tokenstream_lite.controller import Request, TokenStreamController
from tokenstream_lite.core import InferenceSession

__all__ = [
    "ControllerConfig",
    "InferenceSession",
    "Request",
    "SessionConfig",
    "TokenStreamController",
]
