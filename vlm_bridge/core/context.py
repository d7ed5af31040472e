"""
Inference context.

The InferenceContext owns the runtime state of one conversation with a
model: the ordered sequence of context entries (prompt and generated tokens,
injected image embeddings), the key/value cache holding the attention state
of every entry computed so far, the rotary position counter and the sampling
random generator.

Entries are appended first and computed lazily by forward(), so a prompt and
an embedding appended back to back are processed in a single pass. The
context never holds more than max_length entries; what happens when an
append would exceed it is decided by the overflow policy:

- SLIDING_WINDOW evicts the oldest unpinned entries (embedding slots and the
  system prompt are pinned and only evicted once nothing else is left).
  Rotary positions keep increasing, so the relative distances the model sees
  stay correct after eviction.
- REJECT raises ContextFullError and leaves the context unchanged.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import torch
import torch.nn as nn

from vlm_bridge.cache.prompt_cache import PromptCache
from vlm_bridge.config import BridgeConfig, OverflowPolicy, get_config
from vlm_bridge.core.model_store import ModelHandle
from vlm_bridge.errors import ContextFullError, EmbeddingDimensionMismatchError
from vlm_bridge.memory.kv_cache import KVCache

logger = logging.getLogger(__name__)

TOKEN = "token"
EMBEDDING = "embedding"


@dataclass
class ContextEntry:
    """One slot of the context sequence.

    Attributes:
        kind: TOKEN or EMBEDDING.
        position: Rotary position assigned when the entry was appended.
        token_id: Token id for TOKEN entries.
        hidden: Projected hidden-state vector for EMBEDDING entries.
        pinned: Pinned entries are evicted only when no unpinned entry remains.
    """

    kind: str
    position: int
    token_id: Optional[int] = None
    hidden: Optional[torch.Tensor] = None
    pinned: bool = False


class InferenceContext:
    """Runtime state for generating with one model.

    Attributes:
        handle: The loaded model.
        config: Runtime configuration.
        max_length: Maximum number of live entries.
        kv_cache: Attention state of the computed entries.
        generator: Random generator used for sampling.
    """

    def __init__(
        self,
        handle: ModelHandle,
        config: Optional[BridgeConfig] = None,
        prompt_cache: Optional[PromptCache] = None,
    ):
        self.handle = handle
        self.config = config or get_config()

        max_length = handle.max_context_length
        if self.config.max_context_length is not None:
            max_length = min(max_length, self.config.max_context_length)
        self.max_length = max_length

        self.kv_cache = KVCache(handle.config.num_hidden_layers, max_length)
        self.prompt_cache = prompt_cache or PromptCache(self.config.prompt_cache_dir)
        self.generator = torch.Generator(device="cpu")

        self._entries: List[ContextEntry] = []
        self._num_cached = 0
        self._next_position = 0
        self._last_logits: Optional[torch.Tensor] = None
        self._evicted = 0
        self._warmed = False
        self._closed = False

        self._seed_generator()

    @property
    def model(self) -> nn.Module:
        return self.handle.model

    @property
    def overflow_policy(self) -> OverflowPolicy:
        return self.config.overflow_policy

    @property
    def entries(self) -> List[ContextEntry]:
        return list(self._entries)

    @property
    def num_pending(self) -> int:
        return len(self._entries) - self._num_cached

    @property
    def is_warmed(self) -> bool:
        return self._warmed

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _seed_generator(self) -> None:
        if self.config.seed is not None:
            self.generator.manual_seed(self.config.seed)
        else:
            self.generator.seed()

    def current_position(self) -> int:
        """Number of live entries in the context."""
        return len(self._entries)

    def remaining(self) -> int:
        return self.max_length - len(self._entries)

    def is_full(self) -> bool:
        return len(self._entries) >= self.max_length

    def reset(self) -> None:
        """Drop all entries and attention state and clear the warmed flag."""
        self._entries.clear()
        self.kv_cache.clear()
        self._num_cached = 0
        self._next_position = 0
        self._last_logits = None
        self._warmed = False
        self._seed_generator()
        logger.debug("Context reset")

    def close(self) -> None:
        self.reset()
        self._closed = True

    def warm_up(self) -> None:
        """Prepare the context for generation without producing output.

        Runs the model once over a one-token scratch sequence (the cache is
        not touched) so lazy kernel initialization happens now rather than
        during the first request. The first successful call also appends and
        computes the configured system prompt. Later calls only verify the
        context is still runnable.

        Raises:
            RuntimeError: If the context is closed or the model produces
                non-finite logits.
        """
        self._check_runnable()

        seed = torch.tensor([self.handle.eos_token_id], dtype=torch.long)
        with torch.no_grad():
            inputs = self.model.embed(seed).unsqueeze(0)
            logits, _ = self.model(inputs, torch.zeros(1, dtype=torch.long))
        if not torch.isfinite(logits).all():
            raise RuntimeError("Model produced non-finite logits during warm-up")

        if self._warmed:
            return

        if self.config.system_prompt:
            tokens = self.prompt_cache.warm_up(self.config.system_prompt, self.handle.tokenizer)
            if tokens:
                self.append_tokens(tokens, pinned=True)
                self.forward()
                logger.info("System prompt primed (%d tokens)", len(tokens))

        self._warmed = True
        logger.info("Context warmed up (max length %d)", self.max_length)

    def _check_runnable(self) -> None:
        if self._closed:
            raise RuntimeError("Context is closed")
        if len(self.kv_cache) != self._num_cached:
            raise RuntimeError(
                f"KV cache holds {len(self.kv_cache)} entries but "
                f"{self._num_cached} are marked computed"
            )
        if len(self._entries) > self.max_length:
            raise RuntimeError("Context holds more entries than its maximum length")

    def append_tokens(self, tokens: Sequence[int], pinned: bool = False) -> None:
        """Append token ids to the context.

        Raises:
            ValueError: If a token id is outside the vocabulary.
            ContextFullError: If the tokens do not fit and the overflow
                policy rejects input.
        """
        tokens = [int(t) for t in tokens]
        if not tokens:
            return

        vocab_size = self.handle.vocab_size
        for token in tokens:
            if not 0 <= token < vocab_size:
                raise ValueError(f"token id {token} is outside the vocabulary (size {vocab_size})")

        if len(tokens) > self.max_length and self.overflow_policy == OverflowPolicy.SLIDING_WINDOW:
            logger.warning(
                "Dropping the first %d of %d tokens that exceed the context length",
                len(tokens) - self.max_length, len(tokens),
            )
            self._next_position += len(tokens) - self.max_length
            tokens = tokens[-self.max_length:]

        self._make_room(len(tokens))
        for token in tokens:
            self._entries.append(
                ContextEntry(kind=TOKEN, position=self._next_position, token_id=token, pinned=pinned)
            )
            self._next_position += 1

    def append_embedding(self, vector: torch.Tensor, projector: Optional[nn.Module] = None) -> None:
        """Append an image embedding as one pinned slot.

        Args:
            vector: Embedding of shape [embedding_dim].
            projector: Projection into the model's hidden space. Defaults to
                the model's own projector.

        Raises:
            EmbeddingDimensionMismatchError: If the vector length differs from
                the projector's input dimension. The context is unchanged.
            ContextFullError: If the context is full and the overflow policy
                rejects input.
        """
        if projector is None:
            projector = self.model.projector
        expected = getattr(projector, "vision_dim", self.handle.embedding_dim)

        vector = vector.reshape(-1)
        if vector.numel() != expected:
            raise EmbeddingDimensionMismatchError(expected, vector.numel())

        with torch.no_grad():
            hidden = projector(vector)
        hidden = hidden.reshape(-1)
        if hidden.numel() != self.handle.config.hidden_size:
            raise ValueError(
                f"projector produced {hidden.numel()} values, "
                f"expected hidden size {self.handle.config.hidden_size}"
            )

        self._make_room(1)
        self._entries.append(
            ContextEntry(kind=EMBEDDING, position=self._next_position, hidden=hidden, pinned=True)
        )
        self._next_position += 1

    def _make_room(self, count: int) -> None:
        overflow = len(self._entries) + count - self.max_length
        if overflow <= 0:
            return

        if self.overflow_policy == OverflowPolicy.REJECT:
            raise ContextFullError(
                f"Appending {count} entries would exceed the maximum context "
                f"length {self.max_length} ({len(self._entries)} in use)"
            )

        unpinned = [i for i, e in enumerate(self._entries) if not e.pinned]
        pinned = [i for i, e in enumerate(self._entries) if e.pinned]
        victims = sorted((unpinned + pinned)[:overflow])
        self._evict(victims)

    def _evict(self, indices: List[int]) -> None:
        cached = [i for i in indices if i < self._num_cached]
        self.kv_cache.evict(cached)

        drop = set(indices)
        self._entries = [e for i, e in enumerate(self._entries) if i not in drop]
        if self._num_cached - 1 in cached:
            self._last_logits = None
        self._num_cached -= len(cached)
        self._evicted += len(indices)

        logger.debug(
            "Evicted %d entries (%d computed); %d entries remain",
            len(indices), len(cached), len(self._entries),
        )

    def forward(self) -> torch.Tensor:
        """Compute pending entries and return next-token logits of shape [vocab_size].

        A failing forward pass leaves entries and cache unchanged.

        Raises:
            RuntimeError: If nothing is pending and no logits are available
                (empty context, or the last computed entry was evicted).
        """
        pending = self._entries[self._num_cached:]
        if not pending:
            if self._last_logits is None:
                raise RuntimeError(
                    "Context is empty or its last computed entry was evicted; nothing to compute"
                )
            return self._last_logits

        with torch.no_grad():
            inputs = self._pending_inputs(pending)
            positions = torch.tensor([e.position for e in pending], dtype=torch.long)
            logits, layers = self.model(inputs, positions, self.kv_cache.layers())

        self.kv_cache.commit(layers)
        self._num_cached = len(self._entries)
        self._last_logits = logits[0, -1]
        return self._last_logits

    def _pending_inputs(self, pending: List[ContextEntry]) -> torch.Tensor:
        token_ids = [e.token_id for e in pending if e.kind == TOKEN]
        token_embeds = iter(())
        if token_ids:
            token_embeds = iter(self.model.embed(torch.tensor(token_ids, dtype=torch.long)))

        rows = [next(token_embeds) if e.kind == TOKEN else e.hidden for e in pending]
        dtype = self.handle.dtype
        return torch.stack([row.to(dtype) for row in rows]).unsqueeze(0)

    def stats(self) -> Dict[str, Any]:
        """Get context usage statistics."""
        cache_stats = self.kv_cache.get_stats()
        return {
            "position": len(self._entries),
            "max_length": self.max_length,
            "pending": self.num_pending,
            "embeddings": sum(1 for e in self._entries if e.kind == EMBEDDING),
            "next_rope_position": self._next_position,
            "evicted": self._evicted,
            "utilization": len(self._entries) / self.max_length,
            "kv_cache_bytes": cache_stats.bytes,
            "warmed": self._warmed,
        }
