"""
Identity cache: record caching between a domain layer and a key-value store.

This package serves records and their relationships from cache and keeps
the cache invalidated as records change. It provides:

- api: ``IdentityCache`` facade with the query API and commit/touch hooks.
- models: Declarations of cached types, indexes and relationships.
- keys: Deterministic cache key derivation.
- cache: Backends, per-unit-of-work memoization and value encoding.
- query: Batch fetching, index lookups, relationship caching, invalidation.

Guidelines:
- The record store is the source of truth; the cache never writes to it.
- Backend errors on read/write paths propagate; invalidation logs and continues.
- Memoization is per execution context; nothing is shared between contexts.
"""

from .api import IdentityCache
from .cache.backends import CacheBackend, MemoryBackend
from .cache.memoized import ExecutionContext, MemoizedCacheProxy
from .keys import CacheKeyCodec
from .models import AssociationKind, AttributeIndex, CachedType, RelationshipSpec, TypeRegistry
from .store import RecordChanges, RecordStore

__all__ = [
    'IdentityCache',
    'CacheBackend',
    'MemoryBackend',
    'ExecutionContext',
    'MemoizedCacheProxy',
    'CacheKeyCodec',
    'AssociationKind',
    'AttributeIndex',
    'CachedType',
    'RelationshipSpec',
    'TypeRegistry',
    'RecordChanges',
    'RecordStore',
]
