"""
Tests for attention with causal masking and KV cache.

This module tests:
- Causal mask layout with and without a cached prefix
- Output and cache shapes
- Equivalence of incremental (cached) and full-sequence attention
- Grouped-query key/value repetition
"""

import pytest
import torch

from vlm_bridge.models.attention import Attention, causal_mask
from vlm_bridge.models.rope import rope_frequencies
from tests.utils.comparison import assert_tensors_close
from tests.utils.model_factory import tiny_model_config


@pytest.mark.unit
def test_causal_mask_without_prefix() -> None:
    """Test that each query sees itself and earlier entries only."""
    mask = causal_mask(3, 3)

    assert mask.shape == (3, 3)
    assert mask[0, 0] == 0
    assert mask[0, 1] == float("-inf")
    assert mask[2, 0] == 0
    assert mask[2, 2] == 0


@pytest.mark.unit
def test_causal_mask_with_cached_prefix() -> None:
    """Test that new queries see the whole cached prefix."""
    mask = causal_mask(2, 5)

    # First new query sits at key index 3
    assert torch.all(mask[0, :4] == 0)
    assert mask[0, 4] == float("-inf")
    assert torch.all(mask[1] == 0)


@pytest.mark.unit
def test_attention_output_and_cache_shapes() -> None:
    """Test that attention returns hidden-sized output and a KV cache per entry."""
    config = tiny_model_config()
    attention = Attention(config)

    hidden_states = torch.randn(1, 5, config.hidden_size)
    freqs_cis = rope_frequencies(config.head_dim, torch.arange(5), config.rope_theta)

    output, (k_cache, v_cache) = attention(hidden_states, freqs_cis)

    assert output.shape == (1, 5, config.hidden_size)
    assert k_cache.shape == (1, config.num_key_value_heads, 5, config.head_dim)
    assert v_cache.shape == k_cache.shape


@pytest.mark.unit
def test_incremental_attention_matches_full_sequence() -> None:
    """Test that attending with a KV cache gives the same output as a full pass."""
    torch.manual_seed(0)
    config = tiny_model_config()
    attention = Attention(config)
    attention.eval()

    hidden_states = torch.randn(1, 6, config.hidden_size)
    positions = torch.arange(6)

    with torch.no_grad():
        full_output, _ = attention(
            hidden_states, rope_frequencies(config.head_dim, positions, config.rope_theta)
        )

        prefix_output, kv_cache = attention(
            hidden_states[:, :4],
            rope_frequencies(config.head_dim, positions[:4], config.rope_theta),
        )
        suffix_output, _ = attention(
            hidden_states[:, 4:],
            rope_frequencies(config.head_dim, positions[4:], config.rope_theta),
            kv_cache=kv_cache,
        )

    assert_tensors_close(prefix_output, full_output[:, :4], atol=1e-5, rtol=1e-4)
    assert_tensors_close(suffix_output, full_output[:, 4:], atol=1e-5, rtol=1e-4)


@pytest.mark.unit
def test_repeat_kv_expands_heads() -> None:
    """Test that KV heads are repeated to match the query heads."""
    kv = torch.randn(1, 2, 3, 8)
    repeated = Attention.repeat_kv(kv, 2)

    assert repeated.shape == (1, 4, 3, 8)
    assert torch.equal(repeated[:, 0], repeated[:, 1])
    assert torch.equal(repeated[:, 2], kv[:, 1])
