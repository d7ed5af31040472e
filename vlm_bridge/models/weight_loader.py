"""
Weight loading utilities for the model container.

The model container is a single safetensors file. Its header carries the
architecture metadata and tokenizer as a string map; its tensors use the
HuggingFace-style names listed by create_weight_name_mapping. This module
reads the header without materializing tensors, maps container names to
module parameter names, validates shapes against the declared architecture,
and loads the parameters.
"""

from typing import Dict, Iterator, Tuple

import torch
from safetensors import safe_open
from safetensors.torch import load_file

from vlm_bridge.models.config import ModelConfig


def read_container_header(path: str) -> Tuple[Dict[str, str], Dict[str, Tuple[int, ...]]]:
    """Read header metadata and tensor shapes without loading tensor data.

    Args:
        path: Path to the safetensors container.

    Returns:
        Tuple of (metadata, shapes) where shapes maps tensor names to shapes.

    Raises:
        safetensors.SafetensorError: If the header cannot be parsed.
        OSError: If the file cannot be read.
    """
    with safe_open(path, framework="pt") as f:
        metadata = dict(f.metadata() or {})
        shapes = {name: tuple(f.get_slice(name).get_shape()) for name in f.keys()}
    return metadata, shapes


def create_weight_name_mapping(config: ModelConfig) -> Dict[str, str]:
    """Create mapping from container tensor names to module parameter names.

    Mapping examples:
        - "model.embed_tokens.weight" -> "embed_tokens.embedding.weight"
        - "model.layers.0.self_attn.q_proj.weight" -> "layers.0.self_attn.q_proj.weight"
        - "lm_head.weight" -> "lm_head.linear.weight"
        - "mm_projector.weight" -> "projector.linear.weight"

    Args:
        config: ModelConfig instance specifying model architecture.

    Returns:
        Dictionary mapping container names to module parameter names.
    """
    mapping = {
        "model.embed_tokens.weight": "embed_tokens.embedding.weight",
        "model.norm.weight": "norm.weight",
        "lm_head.weight": "lm_head.linear.weight",
        "mm_projector.weight": "projector.linear.weight",
        "mm_projector.bias": "projector.linear.bias",
    }

    for layer_idx in range(config.num_hidden_layers):
        prefix = f"layers.{layer_idx}"
        for name in ("q_proj", "k_proj", "v_proj", "o_proj"):
            mapping[f"model.{prefix}.self_attn.{name}.weight"] = f"{prefix}.self_attn.{name}.weight"
        for name in ("gate_proj", "up_proj", "down_proj"):
            mapping[f"model.{prefix}.mlp.{name}.weight"] = f"{prefix}.mlp.{name}.weight"
        for name in ("input_layernorm", "post_attention_layernorm"):
            mapping[f"model.{prefix}.{name}.weight"] = f"{prefix}.{name}.weight"

    return mapping


def expected_weight_shapes(config: ModelConfig) -> Dict[str, Tuple[int, ...]]:
    """Return the expected shape of every container tensor."""
    hidden = config.hidden_size
    kv_dim = config.num_key_value_heads * config.head_dim
    q_dim = config.num_attention_heads * config.head_dim

    shapes = {
        "model.embed_tokens.weight": (config.vocab_size, hidden),
        "model.norm.weight": (hidden,),
        "lm_head.weight": (config.vocab_size, hidden),
        "mm_projector.weight": (hidden, config.vision_embedding_dim),
        "mm_projector.bias": (hidden,),
    }

    for layer_idx in range(config.num_hidden_layers):
        prefix = f"model.layers.{layer_idx}"
        shapes[f"{prefix}.self_attn.q_proj.weight"] = (q_dim, hidden)
        shapes[f"{prefix}.self_attn.k_proj.weight"] = (kv_dim, hidden)
        shapes[f"{prefix}.self_attn.v_proj.weight"] = (kv_dim, hidden)
        shapes[f"{prefix}.self_attn.o_proj.weight"] = (hidden, q_dim)
        shapes[f"{prefix}.mlp.gate_proj.weight"] = (config.intermediate_size, hidden)
        shapes[f"{prefix}.mlp.up_proj.weight"] = (config.intermediate_size, hidden)
        shapes[f"{prefix}.mlp.down_proj.weight"] = (hidden, config.intermediate_size)
        shapes[f"{prefix}.input_layernorm.weight"] = (hidden,)
        shapes[f"{prefix}.post_attention_layernorm.weight"] = (hidden,)

    return shapes


def validate_weight_shapes(
    shapes: Dict[str, Tuple[int, ...]], config: ModelConfig
) -> None:
    """Validate that container tensors match the declared architecture.

    Every expected tensor must be present with the exact shape. Extra tensors
    are rejected too, since they indicate a different architecture layout.

    Args:
        shapes: Tensor names to shapes, as read from the container header.
        config: ModelConfig instance specifying expected dimensions.

    Raises:
        ValueError: If a tensor is missing, unexpected, or has the wrong shape.
    """
    expected = expected_weight_shapes(config)

    missing = sorted(set(expected) - set(shapes))
    if missing:
        raise ValueError(f"container is missing tensors: {', '.join(missing[:5])}")

    unexpected = sorted(set(shapes) - set(expected))
    if unexpected:
        raise ValueError(f"container has unexpected tensors: {', '.join(unexpected[:5])}")

    for weight_name, expected_shape in expected.items():
        actual_shape = tuple(shapes[weight_name])
        if actual_shape != expected_shape:
            raise ValueError(
                f"Weight '{weight_name}' shape mismatch: "
                f"expected {expected_shape}, got {actual_shape}"
            )


def parameter_bytes(shapes: Dict[str, Tuple[int, ...]], dtype: torch.dtype) -> int:
    """Number of bytes the parameters occupy once staged with ``dtype``."""
    element_size = torch.tensor([], dtype=dtype).element_size()
    total = 0
    for shape in shapes.values():
        count = 1
        for dim in shape:
            count *= dim
        total += count * element_size
    return total


def iter_mapped_weights(
    state_dict: Dict[str, torch.Tensor], config: ModelConfig
) -> Iterator[Tuple[str, torch.Tensor]]:
    """Yield (module_name, tensor) pairs for a container state dict."""
    for container_name, module_name in create_weight_name_mapping(config).items():
        yield module_name, state_dict[container_name]


def load_and_map_weights(
    path: str, config: ModelConfig, device: str = "cpu"
) -> Dict[str, torch.Tensor]:
    """Load container tensors and map them to module parameter names.

    Args:
        path: Path to the safetensors container.
        config: ModelConfig instance specifying model architecture.
        device: Device to stage the tensors on.

    Returns:
        Dictionary mapping module parameter names to tensors, ready for
        ``load_state_dict``.
    """
    state_dict = load_file(path, device=device)
    return dict(iter_mapped_weights(state_dict, config))
