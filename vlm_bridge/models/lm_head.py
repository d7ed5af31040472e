"""
Language modeling head.

Projects hidden states to logits over the vocabulary with a bias-free linear
layer.
"""

import torch
import torch.nn as nn

from vlm_bridge.models.config import ModelConfig


class LMHead(nn.Module):
    """Final projection from hidden states to vocabulary logits."""

    def __init__(self, config: ModelConfig) -> None:
        super().__init__()

        self.hidden_size = config.hidden_size
        self.vocab_size = config.vocab_size

        self.linear = nn.Linear(
            in_features=config.hidden_size,
            out_features=config.vocab_size,
            bias=False,
        )

    @property
    def weight(self) -> torch.Tensor:
        return self.linear.weight

    def forward(self, hidden_states: torch.Tensor) -> torch.Tensor:
        """Map [batch_size, seq_len, hidden_size] to [batch_size, seq_len, vocab_size]."""
        return self.linear(hidden_states)
