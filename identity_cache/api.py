"""
Query API and mutation hooks.

``IdentityCache`` wires the key codec, the memoized proxy, the fetch engine,
the relationship populator and the invalidation engine around one backend
and one record store::

    cache = IdentityCache(MemoryBackend(), store)
    cache.register(CachedType("Blog", Blog, relationships=[...]))

    with cache.with_memoization():
        blog = await cache.fetch_by_id("Blog", 1)

    await cache.on_commit(blog, RecordChanges(previous={"title": "Old"}))
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from shared.config import IdentityCacheSettings, get_settings
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from .cache.backends import CacheBackend
from .cache.memoized import ExecutionContext, MemoizedCacheProxy
from .keys import CacheKeyCodec
from .models import CachedType, TypeRef, TypeRegistry
from .query.associations import AssociationCachePopulator
from .query.fetcher import BatchFetchEngine
from .query.indexes import IndexFetcher
from .query.invalidation import InvalidationEngine
from .store import Includes, RecordChanges, RecordStore


class IdentityCache:
    """Read-through/write-through cache in front of a record store."""

    def __init__(
        self,
        backend: CacheBackend,
        store: RecordStore,
        settings: Optional[IdentityCacheSettings] = None,
        registry: Optional[TypeRegistry] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry or TypeRegistry()
        self.metrics = metrics or get_metrics_collector(self.settings.service_name)
        self.logger = get_logger("identity_cache.api")

        self.backend = backend
        self.store = store
        self.codec = CacheKeyCodec(self.settings.namespace)
        self.cache = MemoizedCacheProxy(backend, self.metrics)

        self.associations = AssociationCachePopulator(self.registry, store, self.should_cache)
        self.fetcher = BatchFetchEngine(self.registry, self.codec, self.cache, store, self.metrics,
                                        self.should_cache)
        self.fetcher.populator = self.associations
        self.associations.fetcher = self.fetcher
        self.indexes = IndexFetcher(self.registry, self.codec, store, self.fetcher)
        self.invalidation = InvalidationEngine(self.registry, self.codec, backend, store, self.metrics)

    def register(self, cached_type: CachedType) -> CachedType:
        """Declare a cached type."""
        self.registry.register(cached_type)
        self.logger.debug(
            "Registered cached type",
            type=cached_type.name,
            indexes=[list(fields) for fields in cached_type.indexes],
            relationships=[spec.name for spec in cached_type.relationships]
        )
        return cached_type

    def should_cache(self) -> bool:
        return self.settings.enabled

    @contextmanager
    def with_memoization(self, context: Optional[ExecutionContext] = None) -> Iterator[ExecutionContext]:
        """Memoize backend reads for the duration of the block."""
        with self.cache.memoization(context) as active:
            yield active

    # Query API

    async def fetch_by_id(self, type_ref: TypeRef, record_id: Any) -> Optional[Any]:
        with self.metrics.time_operation("fetch_by_id"):
            return await self.fetcher.fetch_by_id(type_ref, record_id)

    async def fetch(self, type_ref: TypeRef, record_id: Any) -> Any:
        with self.metrics.time_operation("fetch"):
            return await self.fetcher.fetch(type_ref, record_id)

    async def fetch_multi(self, type_ref: TypeRef, ids: Sequence[Any], includes: Any = None) -> Dict[Any, Any]:
        with self.metrics.time_operation("fetch_multi"):
            return await self.fetcher.fetch_multi(type_ref, ids, includes)

    async def exists(self, type_ref: TypeRef, record_id: Any) -> bool:
        with self.metrics.time_operation("exists"):
            return await self.fetcher.exists(type_ref, record_id)

    async def fetch_by_index(self, type_ref: TypeRef, fields: Sequence[str], values: Sequence[Any],
                             unique: bool = False) -> Any:
        with self.metrics.time_operation("fetch_by_index"):
            return await self.indexes.fetch_by_index(type_ref, fields, values, unique=unique)

    async def fetch_attribute(self, type_ref: TypeRef, attribute: str, fields: Sequence[str],
                              values: Sequence[Any]) -> Any:
        with self.metrics.time_operation("fetch_attribute"):
            return await self.indexes.fetch_attribute(type_ref, attribute, fields, values)

    async def fetch_association(self, record: Any, name: str) -> Any:
        return await self.associations.fetch_association(record, name)

    def cache_fetch_includes(self, type_ref: TypeRef, additions: Any = None) -> Includes:
        return self.associations.cache_fetch_includes(type_ref, additions)

    async def prefetch_associations(self, type_ref: TypeRef, includes: Any, records: List[Any]) -> None:
        with self.metrics.time_operation("prefetch_associations"):
            await self.associations.prefetch(type_ref, includes, records)

    async def clear(self) -> None:
        """Discard the current overlay and clear the backend."""
        await self.cache.clear()
        self.logger.warning("Identity cache cleared")

    # Hooks invoked by the record store

    async def on_commit(self, record: Any, changes: Optional[RecordChanges] = None) -> List[str]:
        """Expire cached entries after a committed create, update or destroy."""
        return await self.invalidation.expire_cache(record, changes)

    async def on_touch(self, record: Any, changes: Optional[RecordChanges] = None) -> List[str]:
        """Expire cached entries after a touch-only update."""
        return await self.invalidation.expire_cache(record, changes)
