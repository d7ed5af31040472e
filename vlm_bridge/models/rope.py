"""
RoPE (Rotary Position Embeddings).

RoPE encodes positional information by rotating query and key vectors in the
attention mechanism. The attention score between two entries depends only on
their relative position, which is what lets the inference context evict old
entries from the KV cache while positions keep growing monotonically.

Frequencies are computed for an explicit tensor of positions instead of a
precomputed table bounded by the context length.

References:
- RoFormer: Enhanced Transformer with Rotary Position Embedding
  https://arxiv.org/abs/2104.09864
"""

import torch
from typing import Tuple


def rope_frequencies(
    dim: int,
    positions: torch.Tensor,
    theta: float = 10000.0,
) -> torch.Tensor:
    """
    Compute rotation frequencies for the given positions.

    The frequencies follow freq_i = theta^(-2i/dim) for i in [0, dim/2), and
    each position p is rotated by p * freq_i.

    Args:
        dim: Dimension of each attention head (must be even)
        positions: 1-D integer tensor of absolute positions
        theta: Base value for frequency computation (default: 10000.0)

    Returns:
        Complex tensor of shape [len(positions), dim // 2]
    """
    freqs = 1.0 / (theta ** (torch.arange(0, dim, 2, device=positions.device).float() / dim))

    angles = torch.outer(positions.float(), freqs)

    # cos(angle) + i*sin(angle)
    return torch.polar(torch.ones_like(angles), angles)


def apply_rotary_emb(
    q: torch.Tensor,
    k: torch.Tensor,
    freqs_cis: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Apply rotary position embeddings to query and key tensors.

    Pairs of dimensions are treated as complex numbers and multiplied by the
    per-position rotation.

    Args:
        q: Query tensor of shape [batch_size, seq_len, num_heads, head_dim]
        k: Key tensor of shape [batch_size, seq_len, num_kv_heads, head_dim]
        freqs_cis: Frequencies of shape [seq_len, head_dim // 2]

    Returns:
        Tuple of (rotated_q, rotated_k) with same shapes as inputs
    """
    q_complex = torch.view_as_complex(q.float().reshape(*q.shape[:-1], -1, 2))
    k_complex = torch.view_as_complex(k.float().reshape(*k.shape[:-1], -1, 2))

    # [seq_len, head_dim // 2] -> [1, seq_len, 1, head_dim // 2]
    freqs_cis_broadcast = freqs_cis.unsqueeze(0).unsqueeze(2)

    q_out = torch.view_as_real(q_complex * freqs_cis_broadcast).flatten(-2)
    k_out = torch.view_as_real(k_complex * freqs_cis_broadcast).flatten(-2)

    return q_out.type_as(q), k_out.type_as(k)
