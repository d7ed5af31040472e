"""
Attention layer implementation.

This module implements the decoder attention mechanism with support for:
- Grouped-Query Attention (GQA) with configurable key-value head grouping
- Rotary Position Embeddings (RoPE)
- KV cache for incremental decoding
- Causal masking of new entries against the cached prefix

The attention layer consists of:
- Q/K/V projection layers (nn.Linear)
- RoPE application to queries and keys
- Scaled dot-product attention with GQA
- Output projection layer
"""

import torch
import torch.nn as nn
import torch.nn.functional as F
from typing import Optional, Tuple

from vlm_bridge.models.config import ModelConfig
from vlm_bridge.models.rope import apply_rotary_emb

KVPair = Tuple[torch.Tensor, torch.Tensor]


def causal_mask(
    query_len: int,
    key_len: int,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """Build an additive causal mask for queries appended after a cached prefix.

    The last ``query_len`` keys belong to the queries themselves; query ``i``
    may attend to every cached key plus new keys up to and including ``i``.

    Args:
        query_len: Number of new entries.
        key_len: Cached entries plus new entries.
        device: Device for the mask.

    Returns:
        Tensor of shape [query_len, key_len] with 0 for allowed positions and
        -inf for masked ones.
    """
    offset = key_len - query_len
    rows = torch.arange(query_len, device=device).unsqueeze(1)
    cols = torch.arange(key_len, device=device).unsqueeze(0)
    mask = torch.zeros(query_len, key_len, device=device)
    return mask.masked_fill(cols > rows + offset, float("-inf"))


class Attention(nn.Module):
    """Multi-head attention layer with GQA and RoPE support.

    Attributes:
        num_heads: Number of query attention heads.
        num_key_value_heads: Number of key-value attention heads (for GQA).
        num_key_value_groups: Number of query heads per key-value head.
        head_dim: Dimension of each attention head.
        q_proj: Query projection layer.
        k_proj: Key projection layer.
        v_proj: Value projection layer.
        o_proj: Output projection layer.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__()

        self.num_heads = config.num_attention_heads
        self.num_key_value_heads = config.num_key_value_heads
        self.num_key_value_groups = self.num_heads // self.num_key_value_heads
        self.head_dim = config.head_dim

        # Q projection: hidden_size -> num_attention_heads * head_dim
        self.q_proj = nn.Linear(
            config.hidden_size,
            self.num_heads * self.head_dim,
            bias=False,
        )

        # K/V projections: hidden_size -> num_key_value_heads * head_dim
        # For GQA, K/V have fewer heads than Q
        self.k_proj = nn.Linear(
            config.hidden_size,
            self.num_key_value_heads * self.head_dim,
            bias=False,
        )
        self.v_proj = nn.Linear(
            config.hidden_size,
            self.num_key_value_heads * self.head_dim,
            bias=False,
        )

        self.o_proj = nn.Linear(
            self.num_heads * self.head_dim,
            config.hidden_size,
            bias=False,
        )

    @staticmethod
    def repeat_kv(hidden_states: torch.Tensor, n_rep: int) -> torch.Tensor:
        """Repeat key/value heads to match the number of query heads.

        Args:
            hidden_states: Tensor with shape [batch, num_kv_heads, seq_len, head_dim].
            n_rep: Number of times to repeat each KV head.

        Returns:
            Tensor with shape [batch, num_kv_heads * n_rep, seq_len, head_dim].
        """
        if n_rep == 1:
            return hidden_states

        batch, num_key_value_heads, slen, head_dim = hidden_states.shape
        hidden_states = hidden_states[:, :, None, :, :].expand(
            batch, num_key_value_heads, n_rep, slen, head_dim
        )
        return hidden_states.reshape(batch, num_key_value_heads * n_rep, slen, head_dim)

    def forward(
        self,
        hidden_states: torch.Tensor,
        freqs_cis: torch.Tensor,
        kv_cache: Optional[KVPair] = None,
    ) -> Tuple[torch.Tensor, KVPair]:
        """Forward pass with RoPE and KV cache support.

        Args:
            hidden_states: Input tensor of shape [batch_size, seq_len, hidden_size].
            freqs_cis: RoPE frequencies for the new entries, shape [seq_len, head_dim // 2].
            kv_cache: Optional (K, V) tensors from previous passes, each of shape
                [batch_size, num_kv_heads, cached_len, head_dim].

        Returns:
            Tuple of (output, (K, V)) where output has shape
            [batch_size, seq_len, hidden_size] and K/V include the new entries.
        """
        batch_size, seq_len, _ = hidden_states.shape

        q = self.q_proj(hidden_states).view(batch_size, seq_len, self.num_heads, self.head_dim)
        k = self.k_proj(hidden_states).view(
            batch_size, seq_len, self.num_key_value_heads, self.head_dim
        )
        v = self.v_proj(hidden_states).view(
            batch_size, seq_len, self.num_key_value_heads, self.head_dim
        )

        q, k = apply_rotary_emb(q, k, freqs_cis)

        # [batch_size, heads, seq_len, head_dim]
        q_t = q.transpose(1, 2)
        k_t = k.transpose(1, 2)
        v_t = v.transpose(1, 2)

        if kv_cache is not None:
            k_cache, v_cache = kv_cache
            k_t = torch.cat([k_cache, k_t], dim=2)
            v_t = torch.cat([v_cache, v_t], dim=2)

        k_repeated = self.repeat_kv(k_t, self.num_key_value_groups)
        v_repeated = self.repeat_kv(v_t, self.num_key_value_groups)

        # [batch_size, num_heads, seq_len, total_len]
        scores = torch.matmul(q_t, k_repeated.transpose(-2, -1)) / (self.head_dim ** 0.5)
        scores = scores + causal_mask(seq_len, k_t.shape[2], device=scores.device).to(scores.dtype)

        attn_weights = F.softmax(scores.float(), dim=-1).type_as(q_t)
        attn_output = torch.matmul(attn_weights, v_repeated)

        attn_output = attn_output.transpose(1, 2).contiguous()
        attn_output = attn_output.view(batch_size, seq_len, self.num_heads * self.head_dim)

        return self.o_proj(attn_output), (k_t, v_t)
