"""
vlm_bridge: An on-device multimodal LLM inference bridge.

This package loads a local model container and keeps a warmed inference
context for it, implementing:
- Model loading and validation (safetensors container with embedded tokenizer)
- A decoder backbone with KV cache and a vision embedding projector
- Image embedding injection into the running context
- A streaming token generation loop with sampling and stop sequences
- Sliding-window or reject overflow handling for the context
"""

__version__ = "0.1.0"
__author__ = "vlm-bridge contributors"

from vlm_bridge.config import BridgeConfig, OverflowPolicy, get_config
from vlm_bridge.core import (
    Bridge,
    GenerationRequest,
    GenerationResult,
    GenerationState,
    StopReason,
    TextFragment,
)
from vlm_bridge.errors import (
    BridgeError,
    ContextBusyError,
    ContextFullError,
    DecodeFailureError,
    EmbeddingDimensionMismatchError,
    EmptyInputError,
    ModelFormatInvalidError,
    ModelIncompatibleError,
    ModelLoadError,
    ModelNotFoundError,
    ModelNotLoadedError,
    ResourceExhaustedError,
)
from vlm_bridge.sampling import SamplingParams

__all__ = [
    "Bridge",
    "BridgeConfig",
    "OverflowPolicy",
    "get_config",
    "GenerationRequest",
    "GenerationResult",
    "GenerationState",
    "StopReason",
    "TextFragment",
    "SamplingParams",
    "BridgeError",
    "ModelLoadError",
    "ModelNotFoundError",
    "ModelFormatInvalidError",
    "ModelIncompatibleError",
    "ResourceExhaustedError",
    "ModelNotLoadedError",
    "EmbeddingDimensionMismatchError",
    "EmptyInputError",
    "ContextFullError",
    "ContextBusyError",
    "DecodeFailureError",
]
