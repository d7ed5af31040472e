"""
Core inference components.

Provides:
- Bridge: Public entry point (load, prefetch, ingest, generate)
- ModelStore / ModelHandle: Model container loading and validation
- InferenceContext: Context entries, KV cache and overflow policy
- EmbeddingInjector: Image embedding ingestion
- GenerationEngine / GenerationStream: Decode loop and streaming output
- TokenizerManager: Tokenization and detokenization
- GenerationRequest / GenerationResult / TextFragment: Request and result types
"""

from vlm_bridge.core.bridge import Bridge
from vlm_bridge.core.context import ContextEntry, InferenceContext
from vlm_bridge.core.generation import GenerationEngine, GenerationStream
from vlm_bridge.core.injector import EmbeddingInjector
from vlm_bridge.core.model_store import ModelHandle, ModelStore
from vlm_bridge.core.request import (
    GenerationRequest,
    GenerationResult,
    GenerationState,
    StopReason,
    TextFragment,
)
from vlm_bridge.core.tokenizer_manager import TokenizerManager

__all__ = [
    "Bridge",
    "ContextEntry",
    "InferenceContext",
    "GenerationEngine",
    "GenerationStream",
    "EmbeddingInjector",
    "ModelHandle",
    "ModelStore",
    "GenerationRequest",
    "GenerationResult",
    "GenerationState",
    "StopReason",
    "TextFragment",
    "TokenizerManager",
]
