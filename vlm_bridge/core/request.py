"""
Generation request and result dataclasses.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from vlm_bridge.errors import DecodeFailureError
from vlm_bridge.sampling.sampling import SamplingParams


class GenerationState(Enum):
    """Terminal state of a generation."""

    COMPLETED = "completed"  # EOS or stop sequence
    TRUNCATED = "truncated"  # Token budget or context exhausted
    CANCELLED = "cancelled"  # Caller requested cancellation
    FAILED = "failed"  # Model execution error


class StopReason(Enum):
    """Why a generation stopped."""

    EOS = "eos"
    STOP_SEQUENCE = "stop_sequence"
    MAX_TOKENS = "max_tokens"
    CONTEXT_FULL = "context_full"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class GenerationRequest:
    """A single generation request.

    Attributes:
        prompt: Prompt text. May be empty when the context already holds
            entries (for example an ingested embedding) to condition on.
        max_tokens: Maximum number of tokens to generate, None for the
            configured default.
        stop_sequences: Strings that end generation when produced.
        sampling_params: Sampling parameters, None for the configured defaults.
        apply_template: Wrap the prompt in the model's prompt template.
        cancel_event: Optional event a caller sets to cancel generation.
    """

    prompt: str
    max_tokens: Optional[int] = None
    stop_sequences: Sequence[str] = ()
    sampling_params: Optional[SamplingParams] = None
    apply_template: bool = True
    cancel_event: Optional[threading.Event] = None

    def __post_init__(self):
        if self.prompt is None:
            raise TypeError("prompt cannot be None")
        if self.max_tokens is not None and self.max_tokens < 0:
            raise ValueError(f"max_tokens must be non-negative, got {self.max_tokens}")
        if isinstance(self.stop_sequences, str):
            self.stop_sequences = (self.stop_sequences,)


@dataclass
class TextFragment:
    """A piece of generated text, in generation order."""

    text: str
    token_id: int
    index: int


@dataclass
class GenerationResult:
    """Outcome of a finished generation.

    Attributes:
        text: All text emitted by the generation.
        state: Terminal state.
        stop_reason: Condition that ended generation.
        token_ids: Generated token ids (EOS excluded).
        error: The failure for FAILED generations.
    """

    text: str
    state: GenerationState
    stop_reason: StopReason
    token_ids: List[int] = field(default_factory=list)
    error: Optional[DecodeFailureError] = None

    @property
    def num_tokens(self) -> int:
        return len(self.token_ids)

    def is_failed(self) -> bool:
        return self.state == GenerationState.FAILED
