"""
Decoder model implementation.

Components:
- VisionLanguageModel: Full model consuming token and image embeddings
- DecoderLayer: Transformer decoder layer
- Attention: Multi-head attention with GQA, RoPE and causal KV cache
- FeedForward: Feed-forward network with SwiGLU activation
- VisionProjector: Linear projection of image embeddings into hidden space
- Weight loading utilities for the safetensors model container
"""

from vlm_bridge.models.config import SUPPORTED_ARCHITECTURES, ModelConfig
from vlm_bridge.models.model import VisionLanguageModel
from vlm_bridge.models.projector import VisionProjector
from vlm_bridge.models.rmsnorm import RMSNorm
from vlm_bridge.models.rope import apply_rotary_emb, rope_frequencies

__all__ = [
    "SUPPORTED_ARCHITECTURES",
    "ModelConfig",
    "VisionLanguageModel",
    "VisionProjector",
    "RMSNorm",
    "rope_frequencies",
    "apply_rotary_emb",
]
