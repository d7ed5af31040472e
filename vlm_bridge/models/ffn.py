"""
Feed-Forward Network (FFN) layer with SwiGLU activation.

- up_proj: Projects hidden_size -> intermediate_size (for values)
- gate_proj: Projects hidden_size -> intermediate_size (for gating)
- down_proj: Projects intermediate_size -> hidden_size (output projection)

SwiGLU(x) = Swish(gate_proj(x)) * up_proj(x), where Swish(x) = x * sigmoid(x).
"""

import torch
import torch.nn as nn

from vlm_bridge.models.config import ModelConfig


class FeedForward(nn.Module):
    """Feed-forward network layer with SwiGLU activation.

    Attributes:
        hidden_size: Input/output dimension of the FFN.
        intermediate_size: Hidden dimension of the FFN.
        up_proj: Linear projection for values.
        gate_proj: Linear projection for gating.
        down_proj: Linear projection for output.
    """

    def __init__(self, config: ModelConfig) -> None:
        super().__init__()

        self.hidden_size = config.hidden_size
        self.intermediate_size = config.intermediate_size

        self.up_proj = nn.Linear(config.hidden_size, config.intermediate_size, bias=False)
        self.gate_proj = nn.Linear(config.hidden_size, config.intermediate_size, bias=False)
        self.down_proj = nn.Linear(config.intermediate_size, config.hidden_size, bias=False)

    def swiglu(self, x: torch.Tensor) -> torch.Tensor:
        """Compute SwiGLU activation: Swish(gate_proj(x)) * up_proj(x)."""
        gate = self.gate_proj(x)  # [batch, seq_len, intermediate_size]
        up = self.up_proj(x)      # [batch, seq_len, intermediate_size]
        return gate * torch.sigmoid(gate) * up

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.down_proj(self.swiglu(x))
