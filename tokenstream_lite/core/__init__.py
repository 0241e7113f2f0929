"""
Core inference session.

Provides:
- InferenceSession: Owns model, context, batch and sampler chain; primes prompts
  and produces one token at a time
- bridge: Handle/status-code call surface over InferenceSession
"""

from tokenstream_lite.core.inference_session import TURN_BOUNDARY_MARKERS, InferenceSession

__all__ = ["InferenceSession", "TURN_BOUNDARY_MARKERS"]
