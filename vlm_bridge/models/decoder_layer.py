"""
Decoder layer implementation.

The decoder layer follows the pre-norm architecture:
    x = x + attention(norm(x))
    x = x + ffn(norm(x))
"""

import torch
import torch.nn as nn
from typing import Optional, Tuple

from vlm_bridge.models.attention import Attention, KVPair
from vlm_bridge.models.config import ModelConfig
from vlm_bridge.models.ffn import FeedForward
from vlm_bridge.models.rmsnorm import RMSNorm


class DecoderLayer(nn.Module):
    """Decoder layer with pre-norm architecture.

    Attributes:
        input_layernorm: RMSNorm layer applied before self-attention.
        self_attn: Self-attention layer with GQA and RoPE.
        post_attention_layernorm: RMSNorm layer applied before FFN.
        mlp: Feed-forward network with SwiGLU activation.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__()

        self.input_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.self_attn = Attention(config)
        self.post_attention_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.mlp = FeedForward(config)

    def forward(
        self,
        hidden_states: torch.Tensor,
        freqs_cis: torch.Tensor,
        kv_cache: Optional[KVPair] = None,
    ) -> Tuple[torch.Tensor, KVPair]:
        """Forward pass of the decoder layer.

        Args:
            hidden_states: Input tensor of shape [batch_size, seq_len, hidden_size].
            freqs_cis: RoPE frequencies for the new entries.
            kv_cache: Optional cached (K, V) for this layer.

        Returns:
            Tuple of (output, (K, V)) with K/V extended by the new entries.
        """
        attn_output, new_kv_cache = self.self_attn(
            self.input_layernorm(hidden_states),
            freqs_cis=freqs_cis,
            kv_cache=kv_cache,
        )
        hidden_states = hidden_states + attn_output

        hidden_states = hidden_states + self.mlp(self.post_attention_layernorm(hidden_states))

        return hidden_states, new_kv_cache
