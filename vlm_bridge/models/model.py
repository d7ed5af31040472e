"""
Vision-language decoder model.

This module implements the complete model that combines:
- Token embedding layer
- Vision projector for externally computed image embeddings
- Stack of decoder layers
- Final layer normalization
- LM head for logits computation

The model consumes hidden-state inputs rather than token IDs so that token
embeddings and projected image embeddings can share one sequence.
"""

import torch
import torch.nn as nn
from typing import List, Optional, Tuple

from vlm_bridge.models.attention import KVPair
from vlm_bridge.models.config import ModelConfig
from vlm_bridge.models.decoder_layer import DecoderLayer
from vlm_bridge.models.embedding import TokenEmbedding
from vlm_bridge.models.lm_head import LMHead
from vlm_bridge.models.projector import VisionProjector
from vlm_bridge.models.rmsnorm import RMSNorm
from vlm_bridge.models.rope import rope_frequencies


class VisionLanguageModel(nn.Module):
    """Decoder-only transformer with a vision embedding projector.

    Attributes:
        config: Model configuration.
        embed_tokens: Token embedding layer.
        projector: Vision embedding projector.
        layers: List of decoder layers.
        norm: Final RMSNorm layer.
        lm_head: Projection to vocabulary logits.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__()

        self.config = config

        self.embed_tokens = TokenEmbedding(config)
        self.projector = VisionProjector(config)
        self.layers = nn.ModuleList([
            DecoderLayer(config) for _ in range(config.num_hidden_layers)
        ])
        self.norm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.lm_head = LMHead(config)

    def embed(self, input_ids: torch.Tensor) -> torch.Tensor:
        """Embed token IDs of shape [seq_len] into [seq_len, hidden_size]."""
        return self.embed_tokens(input_ids.to(self.embed_tokens.weight.device))

    def project_embedding(self, embedding: torch.Tensor) -> torch.Tensor:
        """Project a vision embedding of shape [vision_dim] into [hidden_size]."""
        return self.projector(embedding)

    def forward(
        self,
        inputs_embeds: torch.Tensor,
        positions: torch.Tensor,
        kv_caches: Optional[List[KVPair]] = None,
    ) -> Tuple[torch.Tensor, List[KVPair]]:
        """Forward pass over new entries.

        Args:
            inputs_embeds: Hidden-state inputs of shape [batch_size, seq_len, hidden_size].
            positions: Absolute rotary positions of the new entries, shape [seq_len].
            kv_caches: Optional per-layer (K, V) caches from previous passes.

        Returns:
            Tuple of (logits, kv_caches) where logits has shape
            [batch_size, seq_len, vocab_size] and kv_caches holds the updated
            per-layer caches including the new entries.
        """
        hidden_states = inputs_embeds
        freqs_cis = rope_frequencies(
            self.config.head_dim,
            positions.to(hidden_states.device),
            theta=self.config.rope_theta,
        )

        new_kv_caches = []
        for layer_idx, decoder_layer in enumerate(self.layers):
            layer_kv_cache = kv_caches[layer_idx] if kv_caches else None
            hidden_states, layer_kv_cache = decoder_layer(
                hidden_states,
                freqs_cis=freqs_cis,
                kv_cache=layer_kv_cache,
            )
            new_kv_caches.append(layer_kv_cache)

        hidden_states = self.norm(hidden_states)
        return self.lm_head(hidden_states), new_kv_caches
