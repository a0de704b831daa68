"""
sap_b1.storage - Shared state backends
======================================

- StorageBackend: atomic key-value primitives used by the engine
- MemoryBackend: single-process backend
- RedisBackend: multi-process backend (import from sap_b1.storage.redis_backend)
"""

from sap_b1.storage.backend import MemoryBackend, StorageBackend

__all__ = [
    "StorageBackend",
    "MemoryBackend",
]
