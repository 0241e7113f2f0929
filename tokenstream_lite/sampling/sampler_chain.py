"""
Sampler chain and its rebuild-on-change manager.

The chain is an ordered pipeline of logit transforms ending in a seeded
categorical draw:

    penalties(64, 1.2) -> temperature -> top-k(40) -> top-p(p, min_keep=1) -> dist(1234)
"""

import logging
import math
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, List, Optional

import torch

from tokenstream_lite.errors import SamplerError
from tokenstream_lite.sampling.sampling import (
    apply_frequency_penalty,
    apply_presence_penalty,
    apply_repetition_penalty,
    sample_from_logits,
    temperature_scaling,
    top_k_sampling,
    top_p_sampling,
)

logger = logging.getLogger(__name__)

PENALTY_LAST_N = 64
REPEAT_PENALTY = 1.2
TOP_K = 40
TOP_P_MIN_KEEP = 1
DIST_SEED = 1234


class SamplerStage(ABC):
    """One stage of a sampler chain."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        pass

    def accept(self, token_id: int) -> None:
        """Observe the token the chain finally selected."""

    def reset(self) -> None:
        """Clear accumulated state."""


class PenaltiesStage(SamplerStage):
    """Repetition/frequency/presence penalties over the last ``last_n`` accepted tokens."""

    def __init__(self, last_n: int, repeat: float, frequency: float = 0.0, presence: float = 0.0):
        self.last_n = last_n
        self.repeat = repeat
        self.frequency = frequency
        self.presence = presence
        self.window: deque = deque(maxlen=last_n)

    @property
    def name(self) -> str:
        return "penalties"

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        if not self.window:
            return logits
        logits = apply_repetition_penalty(logits, self.window, self.repeat)
        if self.frequency != 0.0 or self.presence != 0.0:
            counts = torch.zeros_like(logits)
            for token in self.window:
                counts[token] += 1
            logits = apply_frequency_penalty(logits, counts, self.frequency)
            logits = apply_presence_penalty(logits, (counts > 0).to(logits.dtype), self.presence)
        return logits

    def accept(self, token_id: int) -> None:
        self.window.append(token_id)

    def reset(self) -> None:
        self.window.clear()


class TemperatureStage(SamplerStage):
    def __init__(self, temperature: float):
        self.temperature = temperature

    @property
    def name(self) -> str:
        return "temp"

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        return temperature_scaling(logits, self.temperature)


class TopKStage(SamplerStage):
    def __init__(self, k: int):
        self.k = k

    @property
    def name(self) -> str:
        return "top-k"

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        return top_k_sampling(logits, self.k)


class TopPStage(SamplerStage):
    def __init__(self, p: float, min_keep: int = 1):
        self.p = p
        self.min_keep = min_keep

    @property
    def name(self) -> str:
        return "top-p"

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        return top_p_sampling(logits, self.p, self.min_keep)


class DistStage(SamplerStage):
    """Final categorical draw from a generator seeded with a fixed seed."""

    def __init__(self, seed: int):
        self.seed = seed
        self.generator = torch.Generator(device="cpu")
        self.generator.manual_seed(seed)

    @property
    def name(self) -> str:
        return "dist"

    def apply(self, logits: torch.Tensor) -> torch.Tensor:
        return logits

    def draw(self, logits: torch.Tensor) -> int:
        return sample_from_logits(logits, self.generator)

    def reset(self) -> None:
        self.generator.manual_seed(self.seed)


class SamplerChain:
    """Ordered sampler stages; the last stage must be a DistStage.

    Args:
        stages: Transform stages followed by the final draw
    """

    def __init__(self, stages: List[SamplerStage]):
        if not stages or not isinstance(stages[-1], DistStage):
            raise ValueError("Sampler chain must end with a DistStage")
        self.stages = stages

    @property
    def names(self) -> List[str]:
        return [stage.name for stage in self.stages]

    def sample(self, logits: torch.Tensor) -> int:
        """Run every stage over ``logits``, draw one token id and accept it."""
        logits = logits.detach().float().clone()
        for stage in self.stages[:-1]:
            logits = stage.apply(logits)
        token_id = self.stages[-1].draw(logits)
        for stage in self.stages:
            stage.accept(token_id)
        return token_id

    def reset(self) -> None:
        for stage in self.stages:
            stage.reset()


def build_default_chain(temperature: float, top_p: float) -> SamplerChain:
    """Build the standard chain for ``(temperature, top_p)``.

    Raises:
        SamplerError: If the parameters are not finite numbers
    """
    if not (math.isfinite(temperature) and math.isfinite(top_p)):
        raise SamplerError(f"Invalid sampler parameters: temperature={temperature}, top_p={top_p}")

    return SamplerChain([
        PenaltiesStage(PENALTY_LAST_N, REPEAT_PENALTY, 0.0, 0.0),
        TemperatureStage(temperature),
        TopKStage(TOP_K),
        TopPStage(top_p, TOP_P_MIN_KEEP),
        DistStage(DIST_SEED),
    ])


class SamplerChainManager:
    """Owns the session's sampler chain and decides when to rebuild it.

    The chain is rebuilt only when temperature or top-p differ from the last
    successfully built chain; otherwise the existing chain is reset and
    reused. The old chain is released before a rebuild, so a failed rebuild
    leaves the manager empty and the next call builds from scratch.

    Args:
        chain_factory: Builds a chain from (temperature, top_p)
        reset_on_reuse: Reset accumulated state when the chain is reused
    """

    def __init__(
        self,
        chain_factory: Callable[[float, float], SamplerChain] = build_default_chain,
        reset_on_reuse: bool = True,
    ):
        self.chain_factory = chain_factory
        self.reset_on_reuse = reset_on_reuse
        self.chain: Optional[SamplerChain] = None
        self.last_temperature: Optional[float] = None
        self.last_top_p: Optional[float] = None
        self.builds = 0

    def matches(self, temperature: float, top_p: float) -> bool:
        """Whether a chain exists for exactly these parameters."""
        return (
            self.chain is not None
            and temperature == self.last_temperature
            and top_p == self.last_top_p
        )

    def ensure(self, temperature: float, top_p: float) -> SamplerChain:
        """Return a chain configured for ``(temperature, top_p)``.

        Raises:
            SamplerError: If the chain cannot be constructed
        """
        if self.matches(temperature, top_p):
            if self.reset_on_reuse:
                self.chain.reset()
            return self.chain

        self.free()
        try:
            chain = self.chain_factory(temperature, top_p)
        except SamplerError:
            raise
        except (ValueError, RuntimeError, MemoryError) as e:
            raise SamplerError(f"Failed to build sampler chain: {e}") from e

        self.chain = chain
        self.last_temperature = temperature
        self.last_top_p = top_p
        self.builds += 1
        logger.debug("Built sampler chain %s (temp=%s, top_p=%s)", chain.names, temperature, top_p)
        return chain

    def reset(self) -> None:
        """Clear the chain's accumulated state without rebuilding it."""
        if self.chain is not None:
            self.chain.reset()

    def free(self) -> None:
        self.chain = None
        self.last_temperature = None
        self.last_top_p = None
