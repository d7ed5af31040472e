"""Test utilities for vlm_bridge."""

from tests.utils.comparison import (
    assert_logits_close,
    assert_tensors_close,
    assert_tokens_equal,
)
from tests.utils.model_factory import (
    TEST_VOCAB,
    build_tokenizer_json,
    reference_greedy_decode,
    tiny_model_config,
    write_model_container,
)

__all__ = [
    # Comparison utilities
    "assert_tensors_close",
    "assert_logits_close",
    "assert_tokens_equal",
    # Model container utilities
    "TEST_VOCAB",
    "build_tokenizer_json",
    "reference_greedy_decode",
    "tiny_model_config",
    "write_model_container",
]
