"""
Read-through fetching of records by id.

Single lookups go through the memoized proxy; batches use one multi-read
for every requested key and one bulk load for whatever the cache did not
have. Loaded records get their relationship caches populated before they
are written back.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from shared.errors import RecordNotFound, UsageError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..cache.memoized import MemoizedCacheProxy
from ..cache.serialization import ABSENT, CACHED_NIL, decode, encode
from ..keys import CacheKeyCodec
from ..models import CachedType, TypeRef, TypeRegistry
from ..store import RecordStore


class BatchFetchEngine:
    """Resolve one or many ids to records through the cache."""

    def __init__(
        self,
        registry: TypeRegistry,
        codec: CacheKeyCodec,
        cache: MemoizedCacheProxy,
        store: RecordStore,
        metrics: MetricsCollector,
        should_cache: Callable[[], bool] = lambda: True,
    ):
        self.registry = registry
        self.codec = codec
        self.cache = cache
        self.store = store
        self.metrics = metrics
        self.should_cache = should_cache
        self.logger = get_logger("identity_cache.fetcher")
        # Set by the facade once the populator exists
        self.populator = None

    def _require_primary_index(self, cached_type: CachedType, operation: str):
        if not cached_type.primary_index:
            raise UsageError(
                f"{operation} needs the primary index enabled on {cached_type.name}",
                {"type": cached_type.name, "operation": operation}
            )

    async def read_through(self, key: str, resolve: Callable[[], Awaitable[Any]]) -> Any:
        """Return the cached value for ``key``, resolving and caching it on a miss.

        A resolved ``None`` is cached as a negative result.
        """
        value = decode(await self.cache.read(key), self.registry)
        if value is ABSENT:
            return None
        if value is not None:
            return value

        value = await resolve()
        await self.cache.write(key, encode(value))
        return value

    async def fetch_by_id(self, type_ref: TypeRef, record_id: Any) -> Optional[Any]:
        """Fetch a record by id, or ``None`` when it does not exist."""
        cached_type = self.registry.resolve(type_ref)
        self._require_primary_index(cached_type, "fetch_by_id")
        record_id = cached_type.cast_id(record_id)

        if not self.should_cache():
            return await self.store.load_one(cached_type, record_id, [])

        key = self.codec.primary_key(cached_type, record_id)
        record = await self.read_through(key, lambda: self._resolve_cache_miss(cached_type, record_id))

        if record is not None and cached_type.record_id(record) != record_id:
            self._report_id_mismatch("fetch_by_id", cached_type, [record_id], [cached_type.record_id(record)])
        return record

    async def fetch(self, type_ref: TypeRef, record_id: Any) -> Any:
        """Fetch a record by id, raising ``RecordNotFound`` when it does not exist."""
        record = await self.fetch_by_id(type_ref, record_id)
        if record is None:
            raise RecordNotFound(self.registry.resolve(type_ref).name, record_id)
        return record

    async def exists(self, type_ref: TypeRef, record_id: Any) -> bool:
        """Whether a record with this id exists.

        A cached entry answers without decoding it.
        """
        cached_type = self.registry.resolve(type_ref)
        self._require_primary_index(cached_type, "exists")
        record_id = cached_type.cast_id(record_id)

        if not self.should_cache():
            return await self.store.load_one(cached_type, record_id, []) is not None

        key = self.codec.primary_key(cached_type, record_id)
        raw = await self.cache.read(key)
        if raw is not None:
            return raw != CACHED_NIL

        record = await self._resolve_cache_miss(cached_type, record_id)
        await self.cache.write(key, encode(record))
        return record is not None

    async def fetch_multi(self, type_ref: TypeRef, ids: Sequence[Any], includes: Any = None) -> Dict[Any, Any]:
        """Fetch many records by id.

        Returns an id -> record mapping in request order. Ids that do not
        resolve to a record are left out. ``includes`` names relationships
        to prefetch on the returned records.
        """
        cached_type = self.registry.resolve(type_ref)
        self._require_primary_index(cached_type, "fetch_multi")
        ids = list(dict.fromkeys(cached_type.cast_id(record_id) for record_id in ids))
        if not ids:
            return {}

        if not self.should_cache():
            records = await self.find_batch(cached_type, ids, includes)
            return {record_id: record for record_id, record in zip(ids, records) if record is not None}

        cache_keys = [self.codec.primary_key(cached_type, record_id) for record_id in ids]
        key_to_id = dict(zip(cache_keys, ids))

        found = await self.cache.read_multi(cache_keys)
        objects_by_key: Dict[str, Any] = {}
        unresolved_keys: List[str] = []
        for key in cache_keys:
            value = decode(found.get(key), self.registry)
            if value is None:
                unresolved_keys.append(key)
            else:
                objects_by_key[key] = value

        self.logger.debug(
            "Multi fetch",
            type=cached_type.name,
            requested=len(cache_keys),
            hits=len(objects_by_key),
            misses=len(unresolved_keys)
        )

        if unresolved_keys:
            unresolved_ids = [key_to_id[key] for key in unresolved_keys]
            records = await self.find_batch(cached_type, unresolved_ids, includes)
            for record in records:
                if record is not None:
                    await self.populator.populate(record, cached_type)

            for key, record in zip(unresolved_keys, records):
                await self.cache.write(key, encode(record))
                objects_by_key[key] = ABSENT if record is None else record
            self.metrics.record_miss_resolved("multi", len(unresolved_keys))

        records_by_id = {
            key_to_id[key]: objects_by_key[key]
            for key in cache_keys
            if objects_by_key[key] is not ABSENT
        }

        if includes:
            await self.populator.prefetch(cached_type, includes, list(records_by_id.values()))

        return records_by_id

    async def find_batch(self, cached_type: CachedType, ids: Sequence[Any], includes: Any = None) -> List[Optional[Any]]:
        """Bulk load ``ids`` from the record store, aligned to ``ids``.

        Loaded records are matched to requested ids by their own id; records
        the store returned for ids nobody asked for are reported and dropped.
        """
        store_includes = self.populator.cache_fetch_includes(cached_type, includes)
        self.metrics.record_bulk_load(len(ids))
        loaded = await self.store.load_bulk(cached_type, list(ids), store_includes)

        records_by_id = {}
        for record in loaded:
            if record is not None:
                records_by_id[cached_type.record_id(record)] = record

        requested = set(ids)
        mismatching_ids = [record_id for record_id in records_by_id if record_id not in requested]
        if mismatching_ids:
            self._report_id_mismatch("find_batch", cached_type, list(ids), mismatching_ids)

        return [records_by_id.get(record_id) for record_id in ids]

    async def _resolve_cache_miss(self, cached_type: CachedType, record_id: Any) -> Optional[Any]:
        includes = self.populator.cache_fetch_includes(cached_type)
        record = await self.store.load_one(cached_type, record_id, includes)
        if record is not None:
            await self.populator.populate(record, cached_type)
        self.metrics.record_miss_resolved("single")
        return record

    def _report_id_mismatch(self, operation: str, cached_type: CachedType,
                            requested: List[Any], got: List[Any]):
        self.logger.error(
            "IDC id mismatch",
            operation=operation,
            type=cached_type.name,
            requested=requested,
            got=got
        )
        self.metrics.record_integrity_fault(operation)
