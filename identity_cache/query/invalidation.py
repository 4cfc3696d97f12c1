"""
Key expiry on record mutation.

Called after a committed mutation or a touch. Every delete is best effort:
a failing key is logged and counted, and the remaining keys are still
expired. Deletes go to the backend only; memoization overlays belong to
their own units of work.
"""

from typing import Any, List, Optional, Set

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..cache.backends import CacheBackend
from ..keys import CacheKeyCodec
from ..models import CachedType, TypeRegistry
from ..store import RecordChanges, RecordStore


class InvalidationEngine:
    """Expire the primary, secondary and attribute keys of a changed record."""

    def __init__(self, registry: TypeRegistry, codec: CacheKeyCodec, backend: CacheBackend,
                 store: RecordStore, metrics: MetricsCollector):
        self.registry = registry
        self.codec = codec
        self.backend = backend
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("identity_cache.invalidation")

    async def expire_cache(self, record: Any, changes: Optional[RecordChanges] = None) -> List[str]:
        """Expire every key affected by a mutation of ``record``.

        Returns the keys that were deleted successfully.
        """
        cached_type = self.registry.for_record(record)
        changes = changes or RecordChanges()
        expired: List[str] = []

        await self.expire_primary_index(cached_type, record, changes, expired)
        await self.expire_secondary_indexes(cached_type, record, changes, expired)
        await self.expire_attribute_indexes(cached_type, record, changes, expired)
        await self.expire_parent_caches(cached_type, record, changes, expired, visited=set())

        return expired

    async def _delete(self, key: str, index: str, expired: List[str]) -> None:
        try:
            await self.backend.delete(key)
        except Exception as e:
            self.logger.error("Failed to expire cache key", key=key, index=index, error=str(e))
            self.metrics.record_invalidation(index, failed=True)
            return

        expired.append(key)
        self.metrics.record_invalidation(index)

    async def expire_primary_index(self, cached_type: CachedType, record: Any,
                                   changes: RecordChanges, expired: List[str]) -> None:
        if not cached_type.primary_index:
            return

        record_id = cached_type.record_id(record)
        if record_id is None:
            return

        if hasattr(record, "updated_at"):
            self.logger.debug(
                "Expiring record",
                type=cached_type.name,
                id=record_id,
                expiring_last_updated_at=str(changes.previous_value(record, "updated_at"))
            )
        else:
            self.logger.debug("Expiring record", type=cached_type.name, id=record_id)

        await self._delete(self.codec.primary_key(cached_type, record_id), "primary", expired)

    async def expire_secondary_indexes(self, cached_type: CachedType, record: Any,
                                       changes: RecordChanges, expired: List[str]) -> None:
        if not cached_type.primary_index:
            return

        newly_created = changes.is_newly_created(record, cached_type.id_field)
        for fields in cached_type.indexes:
            old_key = self.codec.secondary_key(cached_type, fields, changes.previous_values(record, fields))

            if changes.destroyed:
                await self._delete(old_key, "secondary", expired)
                continue

            new_key = self.codec.secondary_key(cached_type, fields, [getattr(record, name) for name in fields])
            await self._delete(new_key, "secondary", expired)

            if not newly_created and old_key != new_key:
                await self._delete(old_key, "secondary", expired)

    async def expire_attribute_indexes(self, cached_type: CachedType, record: Any,
                                       changes: RecordChanges, expired: List[str]) -> None:
        if changes.is_newly_created(record, cached_type.id_field):
            return

        for spec in cached_type.attributes:
            key = self.codec.attribute_key(cached_type, spec.attribute, spec.fields,
                                           changes.previous_values(record, spec.fields))
            await self._delete(key, "attribute", expired)

    async def expire_parent_caches(self, cached_type: CachedType, record: Any, changes: RecordChanges,
                                   expired: List[str], visited: Set[str]) -> None:
        """Expire the cached values of records that embed this one, up the chain."""
        for parent_type, spec in self.registry.embedding_parents(cached_type.name):
            parent_ids = [getattr(record, spec.inverse_foreign_key, None)]
            if not changes.is_newly_created(record, cached_type.id_field):
                parent_ids.append(changes.previous_value(record, spec.inverse_foreign_key))

            for parent_id in dict.fromkeys(parent_ids):
                if parent_id is None or not parent_type.primary_index:
                    continue
                key = self.codec.primary_key(parent_type, parent_id)
                if key in visited:
                    continue
                visited.add(key)

                await self._delete(key, "parent", expired)

                if self.registry.embedding_parents(parent_type.name):
                    try:
                        parent = await self.store.load_one(parent_type, parent_type.cast_id(parent_id), [])
                    except Exception as e:
                        self.logger.error("Failed to load parent for cache expiry", type=parent_type.name,
                                          id=parent_id, error=str(e))
                        continue
                    if parent is not None:
                        await self.expire_parent_caches(parent_type, parent, RecordChanges(), expired, visited)
