"""
Model architecture configuration.

This module defines the ModelConfig class which stores all configuration
parameters for the decoder architecture, including dimensions, layer counts,
attention parameters, normalization settings and the vision embedding
dimension accepted by the projector.

The configuration travels inside the model container as a flat string map of
GGUF-style keys (``general.architecture``, ``<arch>.context_length``, ...).
"""

from typing import Any, Dict, Mapping

# Architectures this build can execute.
SUPPORTED_ARCHITECTURES = ("qwen3",)

# Container metadata keys, relative to the architecture prefix.
_ARCH_KEYS = {
    "vocab_size": ("vocab_size", int),
    "hidden_size": ("embedding_length", int),
    "num_hidden_layers": ("block_count", int),
    "num_attention_heads": ("attention.head_count", int),
    "num_key_value_heads": ("attention.head_count_kv", int),
    "intermediate_size": ("feed_forward_length", int),
    "max_position_embeddings": ("context_length", int),
    "rms_norm_eps": ("attention.layer_norm_rms_epsilon", float),
    "rope_theta": ("rope.freq_base", float),
    "vision_embedding_dim": ("vision.embedding_length", int),
}


class ModelConfig:
    """Configuration class for the decoder model.

    Attributes:
        architecture: Architecture identifier (e.g., "qwen3").
        vocab_size: Size of the vocabulary.
        hidden_size: Dimension of the hidden representations.
        num_hidden_layers: Number of transformer decoder layers.
        num_attention_heads: Number of attention heads for queries.
        num_key_value_heads: Number of attention heads for keys/values (GQA).
        intermediate_size: Dimension of the FFN intermediate layer.
        max_position_embeddings: Maximum context length supported.
        rms_norm_eps: Epsilon value for RMSNorm stability.
        rope_theta: Base frequency for rotary position embeddings.
        vision_embedding_dim: Length of the image embedding vectors the
            projector accepts.
    """

    def __init__(
        self,
        architecture: str = "qwen3",
        vocab_size: int = 151936,
        hidden_size: int = 896,
        num_hidden_layers: int = 24,
        num_attention_heads: int = 14,
        num_key_value_heads: int = 2,
        intermediate_size: int = 4864,
        max_position_embeddings: int = 32768,
        rms_norm_eps: float = 1e-6,
        rope_theta: float = 1000000.0,
        vision_embedding_dim: int = 768,
        **kwargs: Any,
    ) -> None:
        """Initialize ModelConfig with model hyperparameters.

        Args:
            architecture: Architecture identifier.
            vocab_size: Size of the vocabulary.
            hidden_size: Dimension of the hidden representations.
            num_hidden_layers: Number of transformer decoder layers.
            num_attention_heads: Number of attention heads for queries.
            num_key_value_heads: Number of attention heads for keys/values (GQA).
            intermediate_size: Dimension of the FFN intermediate layer.
            max_position_embeddings: Maximum context length supported.
            rms_norm_eps: Epsilon value for RMSNorm stability.
            rope_theta: Base frequency for rotary position embeddings.
            vision_embedding_dim: Length of incoming image embedding vectors.
            **kwargs: Additional configuration parameters (ignored).
        """
        self.architecture = architecture
        self.vocab_size = vocab_size
        self.hidden_size = hidden_size
        self.num_hidden_layers = num_hidden_layers
        self.num_attention_heads = num_attention_heads
        self.num_key_value_heads = num_key_value_heads
        self.intermediate_size = intermediate_size
        self.max_position_embeddings = max_position_embeddings
        self.rms_norm_eps = rms_norm_eps
        self.rope_theta = rope_theta
        self.vision_embedding_dim = vision_embedding_dim

        self._validate()

    @property
    def head_dim(self) -> int:
        return self.hidden_size // self.num_attention_heads

    def _validate(self) -> None:
        """Validate configuration parameters satisfy architecture constraints.

        Raises:
            ValueError: If configuration parameters are invalid.
        """
        for name in (
            "vocab_size",
            "hidden_size",
            "num_hidden_layers",
            "num_attention_heads",
            "num_key_value_heads",
            "intermediate_size",
            "max_position_embeddings",
            "vision_embedding_dim",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")

        if self.hidden_size % self.num_attention_heads != 0:
            raise ValueError(
                f"hidden_size ({self.hidden_size}) must be divisible by "
                f"num_attention_heads ({self.num_attention_heads})"
            )

        if self.num_attention_heads % self.num_key_value_heads != 0:
            raise ValueError(
                f"num_attention_heads ({self.num_attention_heads}) must be divisible by "
                f"num_key_value_heads ({self.num_key_value_heads})"
            )

        # RoPE rotates pairs of dimensions
        if self.head_dim % 2 != 0:
            raise ValueError(f"head_dim must be even, got {self.head_dim}")

        if self.rms_norm_eps <= 0:
            raise ValueError(f"rms_norm_eps must be positive, got {self.rms_norm_eps}")
        if self.rope_theta <= 0:
            raise ValueError(f"rope_theta must be positive, got {self.rope_theta}")

    @classmethod
    def from_metadata(cls, metadata: Mapping[str, str]) -> "ModelConfig":
        """Build a configuration from container header metadata.

        Args:
            metadata: String map read from the model container header.

        Returns:
            ModelConfig instance.

        Raises:
            ValueError: If a required key is missing or malformed.
        """
        architecture = metadata.get("general.architecture")
        if not architecture:
            raise ValueError("metadata is missing 'general.architecture'")

        values: Dict[str, Any] = {"architecture": architecture}
        for attr, (suffix, cast) in _ARCH_KEYS.items():
            key = f"{architecture}.{suffix}"
            if key not in metadata:
                raise ValueError(f"metadata is missing '{key}'")
            try:
                values[attr] = cast(metadata[key])
            except (TypeError, ValueError) as exc:
                raise ValueError(
                    f"metadata key '{key}' has invalid value {metadata[key]!r}"
                ) from exc

        return cls(**values)

    def to_metadata(self) -> Dict[str, str]:
        """Serialize the configuration to container header metadata."""
        metadata = {"general.architecture": self.architecture}
        for attr, (suffix, _) in _ARCH_KEYS.items():
            metadata[f"{self.architecture}.{suffix}"] = str(getattr(self, attr))
        return metadata

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a dictionary."""
        return {"architecture": self.architecture, **{
            attr: getattr(self, attr) for attr in _ARCH_KEYS
        }}

    def __repr__(self) -> str:
        return (
            f"ModelConfig("
            f"architecture='{self.architecture}', "
            f"vocab_size={self.vocab_size}, "
            f"hidden_size={self.hidden_size}, "
            f"num_hidden_layers={self.num_hidden_layers}, "
            f"num_attention_heads={self.num_attention_heads}, "
            f"num_key_value_heads={self.num_key_value_heads}, "
            f"intermediate_size={self.intermediate_size}, "
            f"max_position_embeddings={self.max_position_embeddings}, "
            f"rms_norm_eps={self.rms_norm_eps}, "
            f"rope_theta={self.rope_theta}, "
            f"vision_embedding_dim={self.vision_embedding_dim}"
            f")"
        )
