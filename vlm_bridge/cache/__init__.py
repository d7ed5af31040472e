"""
Caching of tokenized prompts.

Provides:
- PromptCache: System prompt token cache keyed by content hash
"""

from vlm_bridge.cache.prompt_cache import PromptCache, prompt_hash

__all__ = ["PromptCache", "prompt_hash"]
