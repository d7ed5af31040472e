"""
Runtime configuration for the inference bridge.

Provides a BridgeConfig dataclass with every tunable runtime parameter. Each
field can be overridden through an environment variable named
VLM_BRIDGE_<FIELD_NAME_UPPERCASE> (e.g., VLM_BRIDGE_MAX_NEW_TOKENS=128).
Architecture parameters are not configured here; they come from the model
container header (see vlm_bridge.models.config).
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

import torch

from vlm_bridge.sampling.sampling import SamplingParams

ENV_PREFIX = "VLM_BRIDGE_"


class OverflowPolicy(str, Enum):
    """What the context does when an append would exceed its maximum length."""

    SLIDING_WINDOW = "sliding_window"  # Evict the oldest unpinned entries
    REJECT = "reject"  # Fail the append with ContextFullError


def detect_device() -> str:
    """Return "mps" on Apple Silicon, "cuda" on NVIDIA GPUs, "cpu" otherwise."""
    if torch.backends.mps.is_available():
        return "mps"
    if torch.cuda.is_available():
        return "cuda"
    return "cpu"


_DTYPES = {
    "float32": torch.float32,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}


def resolve_dtype(name: str) -> torch.dtype:
    """Convert a dtype name ("float32", "float16", "bfloat16") to a torch.dtype.

    Raises:
        ValueError: If the name is not a supported precision.
    """
    try:
        return _DTYPES[name]
    except KeyError:
        raise ValueError(
            f"Unsupported dtype '{name}'. Supported: {sorted(_DTYPES)}"
        ) from None


def _optional(cast: Callable) -> Callable:
    def convert(value: str):
        if value.strip().lower() in ("", "none", "null"):
            return None
        return cast(value)
    return convert


def _boolean(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


_FIELD_TYPES: Dict[str, Callable] = {
    "device": str,
    "dtype": str,
    "max_context_length": _optional(int),
    "overflow_policy": OverflowPolicy,
    "max_new_tokens": int,
    "temperature": float,
    "top_p": float,
    "top_k": int,
    "repetition_penalty": float,
    "seed": _optional(int),
    "queue_timeout": _optional(float),
    "memory_budget_bytes": _optional(int),
    "system_prompt": _optional(str),
    "prompt_cache_dir": _optional(str),
    "embedding_delta_threshold": float,
    "apply_prompt_template": _boolean,
    "num_threads": _optional(int),
    "log_level": str,
}


@dataclass
class BridgeConfig:
    """Runtime configuration for a Bridge and its inference context.

    All fields can be overridden via environment variables prefixed with
    VLM_BRIDGE_. Explicit constructor arguments are applied first and
    environment variables win, so deployments can tune a packaged default.
    """

    # -- Compute --
    device: str = "auto"  # "auto" picks mps, cuda or cpu
    dtype: str = "auto"  # "auto" keeps the container precision

    # -- Context --
    max_context_length: Optional[int] = None  # None uses the model's limit
    overflow_policy: OverflowPolicy = OverflowPolicy.SLIDING_WINDOW

    # -- Generation defaults --
    max_new_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 0
    repetition_penalty: float = 1.0
    seed: Optional[int] = None
    apply_prompt_template: bool = True

    # -- Concurrency --
    queue_timeout: Optional[float] = None  # None waits forever, 0 rejects immediately

    # -- Resources --
    memory_budget_bytes: Optional[int] = None
    num_threads: Optional[int] = None

    # -- Warm-up --
    system_prompt: Optional[str] = None
    prompt_cache_dir: Optional[str] = None

    # -- Ingestion --
    embedding_delta_threshold: float = 0.0  # 0 disables delta gating

    # -- Logging --
    log_level: str = "WARNING"

    def __post_init__(self):
        """Apply environment variable overrides and validate."""
        self._apply_env_overrides()
        self.overflow_policy = OverflowPolicy(self.overflow_policy)
        self._validate()

    def _apply_env_overrides(self):
        for field_name, field_type in _FIELD_TYPES.items():
            env_value = os.environ.get(f"{ENV_PREFIX}{field_name.upper()}")
            if env_value is not None:
                setattr(self, field_name, field_type(env_value))

    def _validate(self):
        if self.dtype != "auto":
            resolve_dtype(self.dtype)
        if self.max_context_length is not None and self.max_context_length <= 0:
            raise ValueError(
                f"max_context_length must be positive, got {self.max_context_length}"
            )
        if self.max_new_tokens < 0:
            raise ValueError(f"max_new_tokens must be non-negative, got {self.max_new_tokens}")
        if self.temperature < 0:
            raise ValueError(f"temperature must be non-negative, got {self.temperature}")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.queue_timeout is not None and self.queue_timeout < 0:
            raise ValueError(f"queue_timeout must be non-negative, got {self.queue_timeout}")

    def resolved_device(self) -> str:
        return detect_device() if self.device == "auto" else self.device

    def sampling_params(self) -> SamplingParams:
        """Default sampling parameters for requests that do not set their own."""
        return SamplingParams(
            temperature=self.temperature,
            top_p=self.top_p,
            top_k=self.top_k,
            repetition_penalty=self.repetition_penalty,
        )


# ---------------------------------------------------------------------------
# Process default
# ---------------------------------------------------------------------------
_config_instance: Optional[BridgeConfig] = None


def get_config() -> BridgeConfig:
    """Return the process-wide default BridgeConfig, creating it on first call."""
    global _config_instance
    if _config_instance is None:
        _config_instance = BridgeConfig()
    return _config_instance
