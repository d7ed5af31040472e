"""
Token embedding layer.

Converts token IDs to dense vectors; a thin wrapper around nn.Embedding
sized from the model configuration.
"""

import torch
import torch.nn as nn

from vlm_bridge.models.config import ModelConfig


class TokenEmbedding(nn.Module):
    """Token embedding layer.

    Attributes:
        vocab_size: Size of the vocabulary.
        hidden_size: Dimension of the embedding vectors.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__()

        self.vocab_size = config.vocab_size
        self.hidden_size = config.hidden_size

        self.embedding = nn.Embedding(
            num_embeddings=config.vocab_size,
            embedding_dim=config.hidden_size,
        )

    @property
    def weight(self) -> torch.Tensor:
        return self.embedding.weight

    def forward(self, input_ids: torch.Tensor) -> torch.Tensor:
        """Map token IDs of shape [..., seq_len] to [..., seq_len, hidden_size]."""
        return self.embedding(input_ids)
