"""
Secondary index and attribute lookups.
"""

from typing import Any, List, Optional, Sequence

from shared.errors import UsageError
from ..keys import CacheKeyCodec
from ..models import TypeRef, TypeRegistry
from ..store import RecordStore
from .fetcher import BatchFetchEngine


class IndexFetcher:
    """Read-through lookups keyed by declared field combinations.

    A secondary index entry caches the ids matching a field combination;
    the records themselves come from the primary index. An attribute entry
    caches a single denormalized value.
    """

    def __init__(self, registry: TypeRegistry, codec: CacheKeyCodec,
                 store: RecordStore, fetcher: BatchFetchEngine):
        self.registry = registry
        self.codec = codec
        self.store = store
        self.fetcher = fetcher

    async def fetch_ids_by_index(self, type_ref: TypeRef, fields: Sequence[str], values: Sequence[Any]) -> List[Any]:
        cached_type = self.registry.resolve(type_ref)
        fields = tuple(fields)
        if not cached_type.has_index(fields):
            raise UsageError(
                f"No cache index on {cached_type.name} for fields {list(fields)}",
                {"type": cached_type.name, "fields": list(fields)}
            )

        async def resolve():
            return list(await self.store.load_ids_by_fields(cached_type, fields, values))

        if not self.fetcher.should_cache():
            return await resolve()

        key = self.codec.secondary_key(cached_type, fields, values)
        ids = await self.fetcher.read_through(key, resolve)
        return list(ids or [])

    async def fetch_by_index(self, type_ref: TypeRef, fields: Sequence[str], values: Sequence[Any],
                             unique: bool = False) -> Any:
        """Fetch the records whose ``fields`` equal ``values``.

        With ``unique`` the first match (or ``None``) is returned instead of
        a list.
        """
        cached_type = self.registry.resolve(type_ref)
        ids = [cached_type.cast_id(record_id) for record_id in
               await self.fetch_ids_by_index(cached_type, fields, values)]

        if unique:
            ids = ids[:1]

        records_by_id = await self.fetcher.fetch_multi(cached_type, ids) if ids else {}
        records = [records_by_id[record_id] for record_id in ids if record_id in records_by_id]

        if unique:
            return records[0] if records else None
        return records

    async def fetch_attribute(self, type_ref: TypeRef, attribute: str, fields: Sequence[str],
                              values: Sequence[Any]) -> Optional[Any]:
        """Fetch a denormalized attribute value by a field combination."""
        cached_type = self.registry.resolve(type_ref)
        fields = tuple(fields)
        if cached_type.attribute_index(attribute, fields) is None:
            raise UsageError(
                f"No cached attribute {attribute} on {cached_type.name} for fields {list(fields)}",
                {"type": cached_type.name, "attribute": attribute, "fields": list(fields)}
            )

        async def resolve():
            return await self.store.load_attribute(cached_type, attribute, fields, values)

        if not self.fetcher.should_cache():
            return await resolve()

        key = self.codec.attribute_key(cached_type, attribute, fields, values)
        return await self.fetcher.read_through(key, resolve)
