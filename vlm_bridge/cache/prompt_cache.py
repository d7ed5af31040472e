"""
System prompt cache.

Tokenizing the system prompt on every warm-up is wasted work when the prompt
has not changed. PromptCache keys the token ids by a hash of the prompt text
and keeps them in memory and, optionally, in a ``.pt`` file under a cache
directory so later processes can reuse them.
"""

import hashlib
import logging
import os
from typing import Dict, List, Optional

import torch

from vlm_bridge.core.tokenizer_manager import TokenizerManager

logger = logging.getLogger(__name__)


def prompt_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class PromptCache:
    """Caches the tokenized system prompt by content hash."""

    def __init__(self, cache_dir: Optional[str] = None):
        self.cache_dir = cache_dir
        self._key: Optional[str] = None
        self._tokens: Optional[List[int]] = None
        self.hits = 0
        self.misses = 0

    def _cache_file(self, key: str) -> Optional[str]:
        if self.cache_dir is None:
            return None
        return os.path.join(self.cache_dir, f"prompt-{key[:32]}.pt")

    def warm_up(self, system_prompt: str, tokenizer: TokenizerManager) -> List[int]:
        """Return token ids for the system prompt, tokenizing only on a miss."""
        key = prompt_hash(system_prompt)

        if self._key == key and self._tokens is not None:
            self.hits += 1
            return list(self._tokens)

        tokens = self._load(key)
        if tokens is not None:
            self.hits += 1
            logger.debug("System prompt tokens loaded from %s", self._cache_file(key))
        else:
            self.misses += 1
            tokens = tokenizer.encode(system_prompt)
            self._store(key, tokens)

        self._key = key
        self._tokens = tokens
        return list(tokens)

    def get_cached_tokens(self) -> Optional[List[int]]:
        """Token ids of the most recently cached prompt, if any."""
        if self._tokens is None:
            return None
        return list(self._tokens)

    def invalidate(self) -> None:
        """Forget the in-memory entry and delete its file."""
        if self._key is not None:
            path = self._cache_file(self._key)
            if path is not None and os.path.exists(path):
                os.remove(path)
        self._key = None
        self._tokens = None

    def _load(self, key: str) -> Optional[List[int]]:
        path = self._cache_file(key)
        if path is None or not os.path.exists(path):
            return None
        try:
            payload = torch.load(path, weights_only=True)
        except (OSError, RuntimeError, EOFError) as exc:
            logger.warning("Ignoring unreadable prompt cache file %s: %s", path, exc)
            return None
        if payload.get("key") != key:
            return None
        return payload["tokens"].tolist()

    def _store(self, key: str, tokens: List[int]) -> None:
        path = self._cache_file(key)
        if path is None:
            return
        os.makedirs(self.cache_dir, exist_ok=True)
        torch.save({"key": key, "tokens": torch.tensor(tokens, dtype=torch.long)}, path)
        logger.debug("Stored %d system prompt tokens at %s", len(tokens), path)

    def stats(self) -> Dict:
        """Get cache statistics."""
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total > 0 else 0.0,
            "cached_tokens": len(self._tokens) if self._tokens is not None else 0,
        }
