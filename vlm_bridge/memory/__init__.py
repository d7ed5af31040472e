"""
KV cache management.

Provides:
- KVCache: Per-layer key/value storage with arbitrary-index eviction
- CacheStats: Cache usage statistics
"""

from vlm_bridge.memory.kv_cache import CacheStats, KVCache

__all__ = ["KVCache", "CacheStats"]
