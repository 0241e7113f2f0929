"""
Logit transforms used by the sampler chain.

Every function takes the 1-D logits of a single position (``[n_vocab]``)
and returns a tensor of the same shape; filtered entries are set to -inf.
"""

from typing import Iterable

import torch


def greedy_sampling(logits: torch.Tensor) -> torch.Tensor:
    """Greedy sampling (argmax)."""
    return logits.argmax(dim=-1)


def temperature_scaling(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    """Apply temperature scaling.

    A non-positive temperature keeps only the highest logit, which turns the
    final draw into a greedy pick.
    """
    if temperature <= 0.0:
        keep = greedy_sampling(logits)
        out = torch.full_like(logits, float("-inf"))
        out[keep] = logits[keep]
        return out
    return logits / temperature


def top_k_sampling(logits: torch.Tensor, k: int) -> torch.Tensor:
    """Top-k filter."""
    if k <= 0 or k >= logits.size(-1):
        return logits

    top_k_logits, top_k_indices = torch.topk(logits, k, dim=-1)

    mask = torch.full_like(logits, float("-inf"))
    mask.scatter_(-1, top_k_indices, top_k_logits)

    return mask


def top_p_sampling(logits: torch.Tensor, p: float, min_keep: int = 1) -> torch.Tensor:
    """Top-p (nucleus) filter.

    Keeps the smallest set of most likely tokens whose cumulative probability
    reaches ``p``, and never fewer than ``min_keep`` tokens.
    """
    if p >= 1.0:
        return logits

    sorted_logits, sorted_indices = torch.sort(logits, descending=True, dim=-1)
    cumulative_probs = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)

    # A token is dropped once the mass before it already reached p
    sorted_remove = cumulative_probs > p
    sorted_remove[1:] = sorted_remove[:-1].clone()
    sorted_remove[: max(min_keep, 1)] = False

    remove = torch.zeros_like(sorted_remove)
    remove.scatter_(-1, sorted_indices, sorted_remove)
    return logits.masked_fill(remove, float("-inf"))


def apply_frequency_penalty(logits: torch.Tensor, token_counts: torch.Tensor, penalty: float) -> torch.Tensor:
    """Apply frequency penalty."""
    if penalty == 0.0:
        return logits
    return logits - penalty * token_counts


def apply_presence_penalty(logits: torch.Tensor, token_presence: torch.Tensor, penalty: float) -> torch.Tensor:
    """Apply presence penalty."""
    if penalty == 0.0:
        return logits
    return logits - penalty * token_presence


def apply_repetition_penalty(logits: torch.Tensor, previous_tokens: Iterable[int], penalty: float) -> torch.Tensor:
    """Apply repetition penalty once per distinct previous token."""
    if penalty == 1.0:
        return logits

    logits = logits.clone()
    for token in set(previous_tokens):
        if logits[token] > 0:
            logits[token] /= penalty
        else:
            logits[token] *= penalty

    return logits


def sample_from_logits(logits: torch.Tensor, generator: torch.Generator) -> int:
    """Categorical draw over the softmax of ``logits``."""
    probs = torch.softmax(logits.float(), dim=-1)
    return int(torch.multinomial(probs, num_samples=1, generator=generator).item())
