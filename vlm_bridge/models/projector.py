"""
Vision projector.

Maps image embeddings produced by an external vision encoder into the
decoder's hidden space. The projection is a single learned linear layer
(vision_embedding_dim -> hidden_size) stored in the model container next to
the decoder weights.
"""

import torch
import torch.nn as nn

from vlm_bridge.models.config import ModelConfig


class VisionProjector(nn.Module):
    """Linear projection from vision-encoder space to decoder hidden space.

    Attributes:
        vision_dim: Length of incoming embedding vectors.
        hidden_size: Decoder hidden dimension.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__()

        self.vision_dim = config.vision_embedding_dim
        self.hidden_size = config.hidden_size

        self.linear = nn.Linear(self.vision_dim, self.hidden_size, bias=True)

    def forward(self, embeddings: torch.Tensor) -> torch.Tensor:
        """Project embeddings of shape [..., vision_dim] to [..., hidden_size]."""
        weight = self.linear.weight
        return self.linear(embeddings.to(device=weight.device, dtype=weight.dtype))
