"""
Sampling strategies for text generation.

This module implements the methods used to pick the next token from the
model's logits. The default policy is temperature sampling with a nucleus
(top-p) cutoff; a temperature of 0 selects greedy decoding.
"""

import torch
from dataclasses import dataclass
from typing import Optional, Sequence


@dataclass
class SamplingParams:
    """Parameters for sampling strategies."""
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    repetition_penalty: float = 1.0

    def __post_init__(self):
        if self.temperature < 0:
            raise ValueError(f"temperature must be non-negative, got {self.temperature}")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.top_k < 0:
            raise ValueError(f"top_k must be non-negative, got {self.top_k}")
        if self.repetition_penalty <= 0:
            raise ValueError(
                f"repetition_penalty must be positive, got {self.repetition_penalty}"
            )

    @property
    def is_greedy(self) -> bool:
        return self.temperature == 0.0


def greedy_sampling(logits: torch.Tensor) -> torch.Tensor:
    """Greedy sampling (argmax)."""
    return logits.argmax(dim=-1)


def temperature_scaling(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    """Apply temperature scaling."""
    return logits / temperature


def top_k_filtering(logits: torch.Tensor, k: int) -> torch.Tensor:
    """Keep the k largest logits and mask the rest with -inf."""
    if k <= 0 or k >= logits.shape[-1]:
        return logits

    top_k_logits, top_k_indices = torch.topk(logits, k, dim=-1)

    mask = torch.full_like(logits, float('-inf'))
    mask.scatter_(-1, top_k_indices, top_k_logits)

    return mask


def top_p_filtering(logits: torch.Tensor, p: float) -> torch.Tensor:
    """Nucleus filtering: keep the smallest set of tokens whose probability mass exceeds p."""
    if p >= 1.0:
        return logits

    sorted_logits, sorted_indices = torch.sort(logits, descending=True, dim=-1)
    cumulative_probs = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)

    # Remove tokens with cumulative probability above threshold, always keeping the first
    sorted_indices_to_remove = cumulative_probs > p
    sorted_indices_to_remove[..., 1:] = sorted_indices_to_remove[..., :-1].clone()
    sorted_indices_to_remove[..., 0] = False

    indices_to_remove = sorted_indices_to_remove.scatter(-1, sorted_indices, sorted_indices_to_remove)
    return logits.masked_fill(indices_to_remove, float('-inf'))


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


def apply_repetition_penalty(logits: torch.Tensor, previous_tokens: torch.Tensor, penalty: float) -> torch.Tensor:
    """Divide positive logits and multiply negative logits of previously seen tokens."""
    if penalty == 1.0 or previous_tokens.numel() == 0:
        return logits

    logits = logits.clone()
    seen = torch.unique(previous_tokens)
    scores = logits[..., seen]
    logits[..., seen] = torch.where(scores > 0, scores / penalty, scores * penalty)
    return logits


def apply_penalties(
    logits: torch.Tensor,
    previous_tokens: Sequence[int],
    params: SamplingParams,
) -> torch.Tensor:
    """Apply repetition, frequency and presence penalties for previously generated tokens."""
    if not previous_tokens:
        return logits

    history = torch.tensor(list(previous_tokens), dtype=torch.long, device=logits.device)
    logits = apply_repetition_penalty(logits, history, params.repetition_penalty)

    if params.frequency_penalty != 0.0 or params.presence_penalty != 0.0:
        counts = torch.bincount(history, minlength=logits.shape[-1]).to(logits.dtype)
        logits = apply_frequency_penalty(logits, counts, params.frequency_penalty)
        logits = apply_presence_penalty(logits, (counts > 0).to(logits.dtype), params.presence_penalty)

    return logits


def sample(
    logits: torch.Tensor,
    params: SamplingParams,
    previous_tokens: Optional[Sequence[int]] = None,
    generator: Optional[torch.Generator] = None,
) -> int:
    """Sample the next token id.

    Args:
        logits: Next-token logits of shape [vocab_size].
        params: Sampling parameters.
        previous_tokens: Tokens generated so far, used for penalties.
        generator: Random generator for reproducible sampling.

    Returns:
        The selected token id.
    """
    logits = logits.float()
    logits = apply_penalties(logits, previous_tokens or (), params)

    if params.is_greedy:
        return int(greedy_sampling(logits))

    logits = temperature_scaling(logits, params.temperature)
    logits = top_k_filtering(logits, params.top_k)
    logits = top_p_filtering(logits, params.top_p)

    probs = torch.softmax(logits, dim=-1)
    if generator is not None and generator.device != probs.device:
        probs = probs.to(generator.device)

    return int(torch.multinomial(probs, num_samples=1, generator=generator))
