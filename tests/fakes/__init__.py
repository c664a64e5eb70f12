"""Shared test doubles: re-export memory backends."""

from __future__ import annotations

from collision_sync.persistence.memory_backend import (
    MemoryCacheBackend,
    MemoryEstimateStore,
    MemoryFileStore,
)

__all__ = ["MemoryCacheBackend", "MemoryEstimateStore", "MemoryFileStore"]
