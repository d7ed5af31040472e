"""
Tests for model container weight loading.

This module tests:
- Reading header metadata and tensor shapes without loading data
- Mapping container tensor names to module parameter names
- Shape validation against the declared architecture
- Parameter byte accounting
- Loading mapped weights into the model
"""

import pytest
import torch

from vlm_bridge.models.model import VisionLanguageModel
from vlm_bridge.models.weight_loader import (
    create_weight_name_mapping,
    expected_weight_shapes,
    load_and_map_weights,
    parameter_bytes,
    read_container_header,
    validate_weight_shapes,
)
from tests.utils.model_factory import build_model, tiny_model_config


@pytest.mark.unit
def test_read_container_header(model_path: str) -> None:
    """Test that metadata and shapes are read from the header."""
    metadata, shapes = read_container_header(model_path)

    assert metadata["general.architecture"] == "qwen3"
    assert metadata["general.precision"] == "float32"
    assert "tokenizer.json" in metadata
    assert shapes["model.embed_tokens.weight"] == (4, 32)
    assert shapes["mm_projector.weight"] == (32, 768)


@pytest.mark.unit
def test_mapping_covers_every_parameter() -> None:
    """Test that every module parameter has exactly one container name."""
    config = tiny_model_config()
    mapping = create_weight_name_mapping(config)
    model = VisionLanguageModel(config)

    assert sorted(mapping.values()) == sorted(model.state_dict().keys())
    assert mapping["model.layers.1.mlp.down_proj.weight"] == "layers.1.mlp.down_proj.weight"
    assert mapping["lm_head.weight"] == "lm_head.linear.weight"


@pytest.mark.unit
def test_validate_accepts_matching_shapes(model_path: str) -> None:
    """Test that a container written from the config validates."""
    _, shapes = read_container_header(model_path)
    validate_weight_shapes(shapes, tiny_model_config())


@pytest.mark.unit
def test_validate_rejects_missing_tensor() -> None:
    """Test that a missing tensor is reported."""
    config = tiny_model_config()
    shapes = expected_weight_shapes(config)
    del shapes["model.norm.weight"]

    with pytest.raises(ValueError, match="missing"):
        validate_weight_shapes(shapes, config)


@pytest.mark.unit
def test_validate_rejects_unexpected_tensor() -> None:
    """Test that an extra tensor is reported."""
    config = tiny_model_config()
    shapes = expected_weight_shapes(config)
    shapes["model.layers.2.input_layernorm.weight"] = (32,)

    with pytest.raises(ValueError, match="unexpected"):
        validate_weight_shapes(shapes, config)


@pytest.mark.unit
def test_validate_rejects_shape_mismatch() -> None:
    """Test that a wrongly shaped tensor is reported."""
    config = tiny_model_config()
    shapes = expected_weight_shapes(config)
    shapes["mm_projector.weight"] = (32, 1024)

    with pytest.raises(ValueError, match="shape mismatch"):
        validate_weight_shapes(shapes, config)


@pytest.mark.unit
def test_parameter_bytes_depends_on_dtype() -> None:
    """Test that half precision halves the byte count."""
    shapes = expected_weight_shapes(tiny_model_config())

    full = parameter_bytes(shapes, torch.float32)
    half = parameter_bytes(shapes, torch.float16)

    assert full == 2 * half
    assert full == 4 * sum(torch.Size(s).numel() for s in shapes.values())


@pytest.mark.unit
def test_load_and_map_weights_restores_model(model_path: str) -> None:
    """Test that loaded weights reproduce the model the container was written from."""
    config = tiny_model_config()
    original = build_model(config, seed=0)

    restored = VisionLanguageModel(config)
    restored.load_state_dict(load_and_map_weights(model_path, config), strict=True)

    for name, tensor in original.state_dict().items():
        assert torch.equal(tensor, restored.state_dict()[name]), name
