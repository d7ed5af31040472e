"""
Key/value cache for incremental decoding.

This module implements the KVCache that stores per-layer attention keys and
values for every computed context entry. Entries are addressed by their
index in cache order, which lets the inference context evict arbitrary
entries (not only a prefix) when its sliding window drops old unpinned
entries.

The cache supports:
- Committing per-layer caches returned by a forward pass
- Eviction of arbitrary entry indices
- Memory statistics tracking
"""

import threading
from dataclasses import dataclass
from typing import List, Optional, Sequence

import torch

from vlm_bridge.models.attention import KVPair


@dataclass
class CacheStats:
    """Statistics about KV cache usage."""
    capacity: int
    used: int
    free: int
    utilization: float
    evicted: int
    bytes: int


class KVCache:
    """Per-layer key/value storage bounded by the context length.

    Each layer holds a (K, V) pair of tensors of shape
    [batch_size, num_kv_heads, length, head_dim].

    Attributes:
        num_layers: Number of transformer layers.
        capacity: Maximum number of entries.
    """

    def __init__(self, num_layers: int, capacity: int) -> None:
        if num_layers <= 0:
            raise ValueError(f"num_layers must be positive, got {num_layers}")
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")

        self.num_layers = num_layers
        self.capacity = capacity

        self._layers: Optional[List[KVPair]] = None
        self._evicted = 0

        self.lock = threading.Lock()

    def __len__(self) -> int:
        if self._layers is None:
            return 0
        return self._layers[0][0].shape[2]

    def layers(self) -> Optional[List[KVPair]]:
        """Per-layer caches to pass to the model, or None when empty."""
        return self._layers

    def commit(self, layers: List[KVPair]) -> None:
        """Replace the stored caches with caches extended by a forward pass.

        Raises:
            ValueError: If the layer count is wrong or the caches exceed capacity.
        """
        if len(layers) != self.num_layers:
            raise ValueError(f"expected {self.num_layers} layer caches, got {len(layers)}")

        length = layers[0][0].shape[2]
        if length > self.capacity:
            raise ValueError(f"cache length {length} exceeds capacity {self.capacity}")

        with self.lock:
            self._layers = [(k, v) for k, v in layers]

    def evict(self, indices: Sequence[int]) -> None:
        """Drop the entries at the given cache indices.

        Args:
            indices: Entry indices in cache order.
        """
        if not indices:
            return

        with self.lock:
            length = len(self)
            drop = set(indices)
            if any(i < 0 or i >= length for i in drop):
                raise IndexError(f"eviction indices out of range for cache of length {length}")

            keep = [i for i in range(length) if i not in drop]
            if not keep:
                self._layers = None
            else:
                device = self._layers[0][0].device
                index = torch.tensor(keep, dtype=torch.long, device=device)
                self._layers = [
                    (k.index_select(2, index), v.index_select(2, index))
                    for k, v in self._layers
                ]
            self._evicted += len(drop)

    def clear(self) -> None:
        with self.lock:
            self._layers = None

    def nbytes(self) -> int:
        if self._layers is None:
            return 0
        return sum(k.numel() * k.element_size() + v.numel() * v.element_size() for k, v in self._layers)

    def get_stats(self) -> CacheStats:
        """Get cache usage statistics."""
        used = len(self)
        return CacheStats(
            capacity=self.capacity,
            used=used,
            free=self.capacity - used,
            utilization=used / self.capacity,
            evicted=self._evicted,
            bytes=self.nbytes(),
        )
