"""
Embedding injection.

An image embedding arrives from the caller as a flat float buffer plus an
explicit length. EmbeddingInjector copies it into a tensor owned by the
bridge (the caller's memory is never referenced after the call returns) and
hands it to the context, which projects it into the model's hidden space and
appends it as one slot of the sequence.
"""

import logging
from typing import Any, Optional

import numpy as np
import torch
import torch.nn as nn

from vlm_bridge.core.context import InferenceContext
from vlm_bridge.errors import EmbeddingDimensionMismatchError

logger = logging.getLogger(__name__)


def copy_buffer(buffer: Any, length: int) -> torch.Tensor:
    """Copy the first ``length`` values of a float buffer into a new float32 tensor.

    Accepts torch tensors, numpy arrays, ``array.array`` and sequences of
    numbers.

    Raises:
        EmbeddingDimensionMismatchError: If ``length`` is negative, the buffer
            holds fewer than ``length`` values, or it is not one-dimensional.
    """
    if length < 0:
        raise EmbeddingDimensionMismatchError(0, length)

    if isinstance(buffer, torch.Tensor):
        values = buffer.detach().to(device="cpu", dtype=torch.float32).reshape(-1)
    else:
        data = np.array(buffer, dtype=np.float32)
        if data.ndim > 1:
            # Rows of a matrix are not one embedding
            raise EmbeddingDimensionMismatchError(length, data.shape[-1])
        values = torch.from_numpy(data.reshape(-1))

    if values.numel() < length:
        raise EmbeddingDimensionMismatchError(length, values.numel())

    return values[:length].clone()


class EmbeddingInjector:
    """Feeds caller-supplied image embeddings into an inference context.

    Args:
        projector: Projection from the embedding space into the model's
            hidden space. None uses the model's own projector.
    """

    def __init__(self, projector: Optional[nn.Module] = None):
        self.projector = projector

    def expected_length(self, context: InferenceContext) -> int:
        if self.projector is not None:
            return getattr(self.projector, "vision_dim", context.handle.embedding_dim)
        return context.handle.embedding_dim

    def inject(self, buffer: Any, length: int, context: InferenceContext) -> torch.Tensor:
        """Copy the buffer and append it to the context.

        Returns:
            The copied embedding.

        Raises:
            EmbeddingDimensionMismatchError: If ``length`` differs from the
                expected embedding dimension. The context is unchanged.
        """
        expected = self.expected_length(context)
        if length != expected:
            raise EmbeddingDimensionMismatchError(expected, length)

        vector = copy_buffer(buffer, length)
        context.append_embedding(vector, projector=self.projector)

        logger.debug("Injected embedding at position %d", context.current_position() - 1)
        return vector
