"""
RMSNorm (Root Mean Square Layer Normalization).

Formula: RMSNorm(x) = x * rsqrt(mean(x^2) + eps) * weight
"""

import torch
import torch.nn as nn


class RMSNorm(nn.Module):
    """
    Root Mean Square Layer Normalization.

    Args:
        hidden_size: The size of the hidden dimension (last dimension of input)
        eps: Small constant for numerical stability (default: 1e-6)
    """

    def __init__(self, hidden_size: int, eps: float = 1e-6) -> None:
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(hidden_size))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        # Normalize in float32 so half-precision weights stay stable
        x_float = x.float()
        variance = torch.mean(x_float * x_float, dim=-1, keepdim=True)
        x_normalized = (x_float * torch.rsqrt(variance + self.eps)).type_as(x)
        return x_normalized * self.weight
