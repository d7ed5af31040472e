"""
Tiny deterministic model containers for tests.

Real checkpoints are far too large for unit tests, so these helpers build a
randomly initialized (but seeded) model, serialize it into the safetensors
container format together with a word-level tokenizer, and provide an
uncached reference decode to compare the bridge against.
"""

from typing import Dict, List, Optional, Sequence

import torch
from safetensors.torch import save_file
from tokenizers import Tokenizer
from tokenizers.models import WordLevel
from tokenizers.pre_tokenizers import Whitespace

from vlm_bridge.models.config import ModelConfig
from vlm_bridge.models.model import VisionLanguageModel
from vlm_bridge.models.weight_loader import create_weight_name_mapping

TEST_VOCAB = {"<eos>": 0, "<unk>": 1, "hello": 2, "world": 3}
EOS_TOKEN_ID = 0


def tiny_model_config(**overrides) -> ModelConfig:
    """A 4-token vocabulary model small enough to run in milliseconds."""
    values = dict(
        architecture="qwen3",
        vocab_size=len(TEST_VOCAB),
        hidden_size=32,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=2,
        intermediate_size=64,
        max_position_embeddings=16,
        rms_norm_eps=1e-6,
        rope_theta=10000.0,
        vision_embedding_dim=768,
    )
    values.update(overrides)
    return ModelConfig(**values)


def build_tokenizer_json() -> str:
    """Serialize a whitespace word-level tokenizer over TEST_VOCAB."""
    tokenizer = Tokenizer(WordLevel(vocab=dict(TEST_VOCAB), unk_token="<unk>"))
    tokenizer.pre_tokenizer = Whitespace()
    tokenizer.add_special_tokens(["<eos>"])
    return tokenizer.to_str()


def build_model(config: ModelConfig, seed: int = 0, eos_first: bool = False) -> VisionLanguageModel:
    """Build a seeded model whose greedy output is deterministic.

    The LM head is arranged so greedy decoding never picks EOS: the EOS and
    unknown rows are zero and the "world" row is the negation of the "hello"
    row, so one of the two always scores above zero. With ``eos_first`` every
    row is zero and the argmax tie resolves to EOS immediately.
    """
    torch.manual_seed(seed)
    model = VisionLanguageModel(config)

    with torch.no_grad():
        weight = model.lm_head.linear.weight
        if eos_first:
            weight.zero_()
        else:
            weight[TEST_VOCAB["<eos>"]].zero_()
            weight[TEST_VOCAB["<unk>"]].zero_()
            weight[TEST_VOCAB["world"]].copy_(-weight[TEST_VOCAB["hello"]])

    model.eval()
    return model


def container_tensors(model: VisionLanguageModel) -> Dict[str, torch.Tensor]:
    """Map a model's parameters back to container tensor names."""
    state_dict = model.state_dict()
    mapping = create_weight_name_mapping(model.config)
    return {
        container_name: state_dict[module_name].detach().clone().contiguous()
        for container_name, module_name in mapping.items()
    }


def write_model_container(
    path: str,
    config: Optional[ModelConfig] = None,
    seed: int = 0,
    eos_first: bool = False,
    metadata: Optional[Dict[str, Optional[str]]] = None,
    drop_tensors: Sequence[str] = (),
    prompt_template: Optional[str] = None,
) -> str:
    """Write a tiny model container to ``path``.

    Args:
        path: Output file path.
        config: Architecture; defaults to tiny_model_config().
        seed: Seed for the random weights.
        eos_first: Make greedy decoding emit EOS immediately.
        metadata: Header entries to override; a value of None removes the key.
        drop_tensors: Container tensor names to leave out.
        prompt_template: Optional template containing "{prompt}".

    Returns:
        The path, for convenience.
    """
    config = config or tiny_model_config()
    model = build_model(config, seed=seed, eos_first=eos_first)

    header = config.to_metadata()
    header["general.precision"] = "float32"
    header["tokenizer.json"] = build_tokenizer_json()
    header["tokenizer.eos_token_id"] = str(EOS_TOKEN_ID)
    if prompt_template is not None:
        header["tokenizer.prompt_template"] = prompt_template
    for key, value in (metadata or {}).items():
        if value is None:
            header.pop(key, None)
        else:
            header[key] = value

    tensors = container_tensors(model)
    for name in drop_tensors:
        tensors.pop(name)

    save_file(tensors, path, metadata=header)
    return path


def reference_greedy_decode(
    model: VisionLanguageModel,
    prefix: torch.Tensor,
    prompt_ids: Sequence[int],
    max_tokens: int,
    eos_token_id: int = EOS_TOKEN_ID,
) -> List[int]:
    """Greedy decode by recomputing the full sequence at every step (no KV cache).

    Args:
        model: The model to decode with.
        prefix: Hidden-state rows to place before the prompt, shape [n, hidden_size].
        prompt_ids: Prompt token ids.
        max_tokens: Maximum number of tokens to generate.
        eos_token_id: Generation stops when this token is produced.

    Returns:
        Generated token ids, EOS excluded.
    """
    generated: List[int] = []
    with torch.no_grad():
        for _ in range(max_tokens):
            ids = torch.tensor(list(prompt_ids) + generated, dtype=torch.long)
            rows = [prefix] if prefix.numel() else []
            if ids.numel():
                rows.append(model.embed(ids))
            inputs = torch.cat(rows, dim=0).unsqueeze(0)
            positions = torch.arange(inputs.shape[1])
            logits, _ = model(inputs, positions)
            token_id = int(logits[0, -1].argmax())
            if token_id == eos_token_id:
                break
            generated.append(token_id)
    return generated

