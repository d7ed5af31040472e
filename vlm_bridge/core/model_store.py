"""
Model loading and validation.

ModelStore resolves a filesystem path to a ModelHandle: the decoder with its
weights staged on the configured device, the tokenizer, and the architecture
metadata read from the container header. A handle is only returned once
every check has passed, so callers never observe a partially loaded model.
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import Dict, Optional

import torch
from safetensors import SafetensorError

from vlm_bridge.config import BridgeConfig, get_config, resolve_dtype
from vlm_bridge.core.tokenizer_manager import TokenizerManager
from vlm_bridge.errors import (
    ModelFormatInvalidError,
    ModelIncompatibleError,
    ModelNotFoundError,
    ResourceExhaustedError,
)
from vlm_bridge.models.config import SUPPORTED_ARCHITECTURES, ModelConfig
from vlm_bridge.models.model import VisionLanguageModel
from vlm_bridge.models.weight_loader import (
    load_and_map_weights,
    parameter_bytes,
    read_container_header,
    validate_weight_shapes,
)

logger = logging.getLogger(__name__)

PRECISION_KEY = "general.precision"
TOKENIZER_KEY = "tokenizer.json"
EOS_TOKEN_KEY = "tokenizer.eos_token_id"
PROMPT_TEMPLATE_KEY = "tokenizer.prompt_template"


@dataclass(frozen=True)
class ModelHandle:
    """A fully loaded, validated model. Read-only and shareable."""

    path: str
    architecture: str
    vocab_size: int
    max_context_length: int
    precision: str
    embedding_dim: int
    config: ModelConfig
    model: VisionLanguageModel
    tokenizer: TokenizerManager
    eos_token_id: int
    prompt_template: Optional[str]
    parameter_bytes: int

    @property
    def device(self) -> torch.device:
        return self.model.lm_head.linear.weight.device

    @property
    def dtype(self) -> torch.dtype:
        return self.model.lm_head.linear.weight.dtype


class ModelStore:
    """Loads model containers and caches the resulting handles by path."""

    def __init__(self, config: Optional[BridgeConfig] = None):
        self.config = config or get_config()
        self._handles: Dict[str, ModelHandle] = {}
        self._lock = threading.Lock()

    def load(self, path: str) -> ModelHandle:
        """Load and validate the model container at ``path``.

        Raises:
            ModelNotFoundError: The path does not resolve to a file.
            ModelFormatInvalidError: Header, metadata, tokenizer or tensors
                fail validation.
            ModelIncompatibleError: The architecture or precision is not
                supported by this build.
            ResourceExhaustedError: The parameters do not fit in memory.
        """
        if not path:
            raise ModelNotFoundError("model path cannot be empty", path=path)

        resolved = os.path.realpath(os.path.expanduser(path))
        with self._lock:
            handle = self._handles.get(resolved)
            if handle is None:
                handle = self._load(resolved)
                self._handles[resolved] = handle
            return handle

    def unload(self, path: str) -> bool:
        """Drop the cached handle for ``path``. Returns True if one was cached."""
        resolved = os.path.realpath(os.path.expanduser(path))
        with self._lock:
            return self._handles.pop(resolved, None) is not None

    def is_cached(self, path: str) -> bool:
        return os.path.realpath(os.path.expanduser(path)) in self._handles

    def _load(self, path: str) -> ModelHandle:
        if not os.path.isfile(path):
            raise ModelNotFoundError(f"No model file at '{path}'", path=path)

        try:
            metadata, shapes = read_container_header(path)
        except (SafetensorError, OSError, ValueError) as exc:
            raise ModelFormatInvalidError(
                f"'{path}' is not a readable model container: {exc}", path=path
            ) from exc

        architecture = metadata.get("general.architecture")
        if not architecture:
            raise ModelFormatInvalidError(
                "container metadata is missing 'general.architecture'", path=path
            )
        # Tensor layout is architecture specific, so check support before shapes
        if architecture not in SUPPORTED_ARCHITECTURES:
            raise ModelIncompatibleError(
                f"Architecture '{architecture}' is not supported "
                f"(supported: {', '.join(SUPPORTED_ARCHITECTURES)})",
                path=path,
            )

        try:
            model_config = ModelConfig.from_metadata(metadata)
            tokenizer = self._read_tokenizer(metadata, model_config)
            validate_weight_shapes(shapes, model_config)
        except ValueError as exc:
            raise ModelFormatInvalidError(str(exc), path=path) from exc

        precision = metadata.get(PRECISION_KEY)
        if precision is None:
            raise ModelFormatInvalidError(
                f"container metadata is missing '{PRECISION_KEY}'", path=path
            )
        try:
            container_dtype = resolve_dtype(precision)
        except ValueError as exc:
            raise ModelIncompatibleError(
                f"Precision '{precision}' is not supported", path=path
            ) from exc

        dtype = container_dtype if self.config.dtype == "auto" else resolve_dtype(self.config.dtype)
        device = self.config.resolved_device()

        size = parameter_bytes(shapes, dtype)
        budget = self.config.memory_budget_bytes
        if budget is not None and size > budget:
            raise ResourceExhaustedError(
                f"Model needs {size} bytes but the memory budget is {budget} bytes",
                path=path,
            )

        try:
            model = self._stage(path, model_config, device, dtype)
        except (MemoryError, torch.cuda.OutOfMemoryError) as exc:
            raise ResourceExhaustedError(
                f"Out of memory while staging '{path}' on {device}", path=path
            ) from exc
        except (SafetensorError, RuntimeError) as exc:
            raise ModelFormatInvalidError(
                f"Tensor data in '{path}' could not be loaded: {exc}", path=path
            ) from exc

        logger.info(
            "Loaded %s model from %s (%d layers, %.1f MB, %s on %s)",
            architecture, path, model_config.num_hidden_layers,
            size / (1024 * 1024), str(dtype).replace("torch.", ""), device,
        )

        return ModelHandle(
            path=path,
            architecture=architecture,
            vocab_size=model_config.vocab_size,
            max_context_length=model_config.max_position_embeddings,
            precision=str(dtype).replace("torch.", ""),
            embedding_dim=model_config.vision_embedding_dim,
            config=model_config,
            model=model,
            tokenizer=tokenizer,
            eos_token_id=tokenizer.eos_token_id,
            prompt_template=tokenizer.prompt_template,
            parameter_bytes=size,
        )

    @staticmethod
    def _read_tokenizer(metadata: Dict[str, str], model_config: ModelConfig) -> TokenizerManager:
        if TOKENIZER_KEY not in metadata:
            raise ValueError(f"metadata is missing '{TOKENIZER_KEY}'")
        if EOS_TOKEN_KEY not in metadata:
            raise ValueError(f"metadata is missing '{EOS_TOKEN_KEY}'")
        try:
            eos_token_id = int(metadata[EOS_TOKEN_KEY])
        except ValueError as exc:
            raise ValueError(
                f"metadata key '{EOS_TOKEN_KEY}' has invalid value {metadata[EOS_TOKEN_KEY]!r}"
            ) from exc

        tokenizer = TokenizerManager.from_serialized(
            metadata[TOKENIZER_KEY],
            eos_token_id,
            metadata.get(PROMPT_TEMPLATE_KEY),
        )
        if tokenizer.vocab_size > model_config.vocab_size:
            raise ValueError(
                f"tokenizer vocabulary ({tokenizer.vocab_size}) is larger than "
                f"the model vocabulary ({model_config.vocab_size})"
            )
        return tokenizer

    @staticmethod
    def _stage(path: str, model_config: ModelConfig, device: str, dtype: torch.dtype) -> VisionLanguageModel:
        state_dict = load_and_map_weights(path, model_config)

        model = VisionLanguageModel(model_config)
        model.load_state_dict(state_dict, strict=True)
        del state_dict

        model = model.to(device=device, dtype=dtype)
        model.eval()
        return model
