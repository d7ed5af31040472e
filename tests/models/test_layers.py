"""
Tests for the building-block layers of the decoder.

This module tests:
- RMSNorm normalization and dtype handling
- RoPE frequencies for explicit positions and relative-position invariance
- SwiGLU feed-forward network
- Token embedding and LM head shapes
- Vision projector shape and dtype coercion
- Decoder layer residual structure and KV extension
"""

import pytest
import torch

from vlm_bridge.models.decoder_layer import DecoderLayer
from vlm_bridge.models.embedding import TokenEmbedding
from vlm_bridge.models.ffn import FeedForward
from vlm_bridge.models.lm_head import LMHead
from vlm_bridge.models.projector import VisionProjector
from vlm_bridge.models.rmsnorm import RMSNorm
from vlm_bridge.models.rope import apply_rotary_emb, rope_frequencies
from tests.utils.comparison import assert_tensors_close


# ---------------------------------------------------------------------------
# RMSNorm
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_rmsnorm_weight_initialized_to_ones() -> None:
    """Test that RMSNorm starts as a pure normalization."""
    norm = RMSNorm(32, eps=1e-5)

    assert norm.eps == 1e-5
    assert isinstance(norm.weight, torch.nn.Parameter)
    assert torch.equal(norm.weight, torch.ones(32))


@pytest.mark.unit
def test_rmsnorm_unit_root_mean_square() -> None:
    """Test that the output has a root mean square of one."""
    torch.manual_seed(0)
    norm = RMSNorm(32)
    x = torch.randn(2, 5, 32) * 7.0

    output = norm(x)
    rms = output.pow(2).mean(dim=-1).sqrt()

    assert output.shape == x.shape
    assert_tensors_close(rms, torch.ones(2, 5), atol=1e-4, rtol=1e-4)


@pytest.mark.unit
def test_rmsnorm_matches_formula() -> None:
    """Test RMSNorm against x * rsqrt(mean(x^2) + eps) * weight."""
    torch.manual_seed(0)
    norm = RMSNorm(8, eps=1e-6)
    with torch.no_grad():
        norm.weight.copy_(torch.arange(1.0, 9.0))
    x = torch.randn(3, 8)

    expected = x * torch.rsqrt(x.pow(2).mean(-1, keepdim=True) + 1e-6) * norm.weight

    assert_tensors_close(norm(x), expected)


@pytest.mark.unit
def test_rmsnorm_preserves_half_precision() -> None:
    """Test that half-precision input comes back in half precision."""
    norm = RMSNorm(16).to(torch.bfloat16)
    x = torch.randn(1, 4, 16, dtype=torch.bfloat16)

    assert norm(x).dtype == torch.bfloat16


# ---------------------------------------------------------------------------
# RoPE
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_rope_frequencies_shape_and_dtype() -> None:
    """Test that frequencies are complex with one row per position."""
    freqs = rope_frequencies(16, torch.tensor([0, 5, 100]))

    assert freqs.shape == (3, 8)
    assert freqs.dtype == torch.complex64


@pytest.mark.unit
def test_rope_position_zero_is_identity() -> None:
    """Test that position 0 applies no rotation."""
    torch.manual_seed(0)
    q = torch.randn(1, 1, 4, 16)
    k = torch.randn(1, 1, 2, 16)

    q_out, k_out = apply_rotary_emb(q, k, rope_frequencies(16, torch.tensor([0])))

    assert_tensors_close(q_out, q)
    assert_tensors_close(k_out, k)


@pytest.mark.unit
def test_rope_preserves_norm() -> None:
    """Test that rotation does not change vector length."""
    torch.manual_seed(0)
    q = torch.randn(1, 3, 4, 16)
    k = torch.randn(1, 3, 2, 16)

    q_out, k_out = apply_rotary_emb(q, k, rope_frequencies(16, torch.tensor([1, 7, 4096])))

    assert_tensors_close(q_out.norm(dim=-1), q.norm(dim=-1), atol=1e-4, rtol=1e-4)
    assert_tensors_close(k_out.norm(dim=-1), k.norm(dim=-1), atol=1e-4, rtol=1e-4)


@pytest.mark.unit
def test_rope_scores_depend_on_relative_position() -> None:
    """Test that shifting both positions leaves the q.k score unchanged."""
    torch.manual_seed(0)
    q = torch.randn(1, 1, 1, 16)
    k = torch.randn(1, 1, 1, 16)

    def score(q_pos: int, k_pos: int) -> torch.Tensor:
        q_rot, _ = apply_rotary_emb(q, q, rope_frequencies(16, torch.tensor([q_pos])))
        _, k_rot = apply_rotary_emb(k, k, rope_frequencies(16, torch.tensor([k_pos])))
        return (q_rot * k_rot).sum()

    assert_tensors_close(score(10, 3), score(110, 103), atol=1e-3, rtol=1e-3)


# ---------------------------------------------------------------------------
# Feed-forward, embedding, LM head, projector
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_ffn_swiglu(tiny_config) -> None:
    """Test the SwiGLU composition and projection shapes."""
    torch.manual_seed(0)
    ffn = FeedForward(tiny_config)
    x = torch.randn(1, 3, tiny_config.hidden_size)

    gate = ffn.gate_proj(x)
    expected = ffn.down_proj(torch.nn.functional.silu(gate) * ffn.up_proj(x))

    assert ffn.up_proj.weight.shape == (tiny_config.intermediate_size, tiny_config.hidden_size)
    assert ffn.down_proj.weight.shape == (tiny_config.hidden_size, tiny_config.intermediate_size)
    assert_tensors_close(ffn(x), expected)


@pytest.mark.unit
def test_embedding_and_lm_head_shapes(tiny_config) -> None:
    """Test token embedding and LM head dimensions."""
    embedding = TokenEmbedding(tiny_config)
    lm_head = LMHead(tiny_config)

    hidden = embedding(torch.tensor([[0, 2, 3]]))
    logits = lm_head(hidden)

    assert embedding.weight.shape == (tiny_config.vocab_size, tiny_config.hidden_size)
    assert lm_head.linear.bias is None
    assert hidden.shape == (1, 3, tiny_config.hidden_size)
    assert logits.shape == (1, 3, tiny_config.vocab_size)


@pytest.mark.unit
def test_projector_maps_vision_dim_to_hidden(tiny_config) -> None:
    """Test that the projector accepts vision-encoder vectors of any float dtype."""
    projector = VisionProjector(tiny_config)
    vector = torch.randn(tiny_config.vision_embedding_dim, dtype=torch.float64)

    projected = projector(vector)

    assert projector.vision_dim == 768
    assert projected.shape == (tiny_config.hidden_size,)
    assert projected.dtype == torch.float32


# ---------------------------------------------------------------------------
# Decoder layer
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_decoder_layer_extends_kv(tiny_config) -> None:
    """Test that each call appends its entries to the returned KV pair."""
    torch.manual_seed(0)
    layer = DecoderLayer(tiny_config).eval()
    head_dim = tiny_config.hidden_size // tiny_config.num_attention_heads

    with torch.no_grad():
        x = torch.randn(1, 3, tiny_config.hidden_size)
        out, (k, v) = layer(x, rope_frequencies(head_dim, torch.arange(3)))
        step = torch.randn(1, 1, tiny_config.hidden_size)
        _, (k2, v2) = layer(step, rope_frequencies(head_dim, torch.tensor([3])), kv_cache=(k, v))

    assert out.shape == x.shape
    assert k.shape[2] == 3 and v.shape[2] == 3
    assert k2.shape[2] == 4 and v2.shape[2] == 4
    assert_tensors_close(k2[:, :, :3], k)


@pytest.mark.unit
def test_decoder_layer_incremental_matches_full(tiny_config) -> None:
    """Test that a cached single-step pass equals the last row of a full pass."""
    torch.manual_seed(0)
    layer = DecoderLayer(tiny_config).eval()
    head_dim = tiny_config.hidden_size // tiny_config.num_attention_heads
    x = torch.randn(1, 4, tiny_config.hidden_size)

    with torch.no_grad():
        full, _ = layer(x, rope_frequencies(head_dim, torch.arange(4)))
        _, cache = layer(x[:, :3], rope_frequencies(head_dim, torch.arange(3)))
        last, _ = layer(x[:, 3:], rope_frequencies(head_dim, torch.tensor([3])), kv_cache=cache)

    assert_tensors_close(last[:, 0], full[:, 3], atol=1e-5, rtol=1e-4)
