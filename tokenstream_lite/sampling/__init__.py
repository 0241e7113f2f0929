"""
Token sampling.

Provides:
- Logit transforms: temperature, top-k, top-p, penalties
- SamplerChain: Ordered stages ending in a seeded categorical draw
- SamplerChainManager: Rebuild-on-change policy for the session's chain
"""

from tokenstream_lite.sampling.sampler_chain import (
    DistStage,
    PenaltiesStage,
    SamplerChain,
    SamplerChainManager,
    SamplerStage,
    TemperatureStage,
    TopKStage,
    TopPStage,
    build_default_chain,
)

__all__ = [
    "DistStage",
    "PenaltiesStage",
    "SamplerChain",
    "SamplerChainManager",
    "SamplerStage",
    "TemperatureStage",
    "TopKStage",
    "TopPStage",
    "build_default_chain",
]
