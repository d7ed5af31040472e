"""
Pytest configuration and shared fixtures for vlm-bridge tests.

This module provides reusable fixtures for testing, including:
- Tiny deterministic model containers written to a temporary directory
- A deterministic (greedy, CPU) bridge configuration
- Loaded model handles, contexts and bridges
- CPU device enforcement
"""

import os

import pytest
import torch

from vlm_bridge.config import BridgeConfig
from vlm_bridge.core.bridge import Bridge
from vlm_bridge.core.context import InferenceContext
from vlm_bridge.core.model_store import ModelHandle, ModelStore
from vlm_bridge.models.config import ModelConfig
from tests.utils.model_factory import tiny_model_config, write_model_container


# Force CPU-only testing by disabling CUDA
os.environ["CUDA_VISIBLE_DEVICES"] = ""


@pytest.fixture(autouse=True)
def clear_bridge_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep VLM_BRIDGE_* variables from the caller's shell out of the tests."""
    for name in list(os.environ):
        if name.startswith("VLM_BRIDGE_"):
            monkeypatch.delenv(name)


@pytest.fixture(scope="session")
def cpu_device() -> torch.device:
    """
    Force CPU device for all tests.

    Returns:
        torch.device: CPU device object
    """
    return torch.device("cpu")


@pytest.fixture
def tiny_config() -> ModelConfig:
    """Architecture of the test model: 4-token vocabulary, 768-dim vision embeddings."""
    return tiny_model_config()


@pytest.fixture
def model_path(tmp_path, tiny_config) -> str:
    """Path to a tiny model container whose greedy output never hits EOS."""
    return write_model_container(str(tmp_path / "tiny.safetensors"), tiny_config)


@pytest.fixture
def eos_model_path(tmp_path, tiny_config) -> str:
    """Path to a tiny model container whose greedy output is EOS straight away."""
    return write_model_container(str(tmp_path / "eos.safetensors"), tiny_config, eos_first=True)


@pytest.fixture
def bridge_config() -> BridgeConfig:
    """Deterministic runtime configuration: CPU, greedy sampling, fixed seed."""
    return BridgeConfig(device="cpu", temperature=0.0, seed=0, max_new_tokens=8)


@pytest.fixture
def store(bridge_config) -> ModelStore:
    return ModelStore(bridge_config)


@pytest.fixture
def handle(store, model_path) -> ModelHandle:
    return store.load(model_path)


@pytest.fixture
def context(handle, bridge_config) -> InferenceContext:
    return InferenceContext(handle, bridge_config)


@pytest.fixture
def bridge(model_path, bridge_config):
    """A loaded bridge over the tiny model, closed after the test."""
    bridge = Bridge(model_path, config=bridge_config)
    yield bridge
    bridge.close()
