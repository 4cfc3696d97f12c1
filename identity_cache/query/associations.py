"""
Relationship caching: population before write, lazy accessors after read,
and batched prefetching.

Embedded relationships are loaded when a record is cached and travel inside
its cached value. Referenced relationships only store ids; the related
records are fetched through the cache when first accessed, or for a whole
batch of parents at once by ``prefetch``.
"""

from typing import Any, Callable, Dict, List, Optional

from shared.errors import UsageError
from shared.logging import get_logger
from ..cache.serialization import ABSENT
from ..models import AssociationKind, CachedType, RelationshipSpec, TypeRef, TypeRegistry
from ..store import Includes, RecordStore


def hashify_includes(structure: Any) -> Dict[str, Any]:
    """Normalize an includes structure to ``{name: sub_includes}``."""
    if structure is None:
        return {}
    if isinstance(structure, str):
        return {structure: []}
    if isinstance(structure, dict):
        return dict(structure)
    if isinstance(structure, (list, tuple)):
        normalized: Dict[str, Any] = {}
        for member in structure:
            if isinstance(member, dict):
                normalized.update(member)
            elif isinstance(member, str):
                normalized[member] = []
            else:
                raise UsageError(f"Invalid includes entry {member!r}", {"entry": repr(member)})
        return normalized
    raise UsageError(f"Invalid includes structure {structure!r}", {"includes": repr(structure)})


def _as_list(value: Any) -> List[Any]:
    if value is None or value is ABSENT:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


class AssociationCachePopulator:
    """Populate, read and prefetch cached relationships."""

    def __init__(self, registry: TypeRegistry, store: RecordStore,
                 should_cache: Callable[[], bool] = lambda: True):
        self.registry = registry
        self.store = store
        self.should_cache = should_cache
        self.logger = get_logger("identity_cache.associations")
        # Set by the facade; referenced relationships resolve through it
        self.fetcher = None

    def cache_fetch_includes(self, type_ref: TypeRef, additions: Any = None) -> Includes:
        """Eager-load spec handed to the record store when resolving a miss.

        One entry per embedded relationship, recursing into registered child
        types, with caller ``additions`` merged in.
        """
        cached_type = self.registry.resolve(type_ref)
        additions = hashify_includes(additions)
        includes: Includes = []

        for spec in cached_type.embedded_relationships:
            child_includes = additions.pop(spec.name, None)
            child_type = self.registry.get(spec.target)
            if child_type is not None:
                child_includes = self.cache_fetch_includes(child_type, child_includes)

            if not child_includes:
                includes.append(spec.name)
            else:
                includes.append({spec.name: child_includes})

        if additions:
            includes.append(additions)
        return includes

    async def populate(self, record: Any, cached_type: Optional[CachedType] = None) -> None:
        """Fill the record's relationship slots before it is cached."""
        cached_type = cached_type or self.registry.for_record(record)

        for spec in cached_type.relationships_needing_population:
            await self._populate_relationship(record, spec)

            child_type = self.registry.get(spec.target) if spec.embed else None
            if child_type is not None and child_type.relationships_needing_population:
                for child in _as_list(getattr(record, spec.cached_slot, None)):
                    await self.populate(child, child_type)

    async def _populate_relationship(self, record: Any, spec: RelationshipSpec) -> None:
        if spec.embed:
            loaded = await self.store.load_association(record, spec)
            if spec.kind == AssociationKind.HAS_MANY:
                setattr(record, spec.cached_slot, list(loaded or []))
            else:
                setattr(record, spec.cached_slot, ABSENT if loaded is None else loaded)
        elif spec.kind == AssociationKind.HAS_MANY:
            setattr(record, spec.cached_ids_slot, await self._referenced_ids(record, spec))
        elif spec.kind == AssociationKind.HAS_ONE:
            ids = await self._referenced_ids(record, spec)
            setattr(record, spec.cached_ids_slot, ids[0] if ids else None)
        else:
            raise UsageError(f"Referenced belongs_to {spec.name} is not populated", {"relationship": spec.name})

    async def _referenced_ids(self, record: Any, spec: RelationshipSpec) -> List[Any]:
        if spec.ids_field is not None:
            return _as_list(getattr(record, spec.ids_field))

        target_type = self.registry.get(spec.target)
        id_field = target_type.id_field if target_type is not None else "id"
        loaded = await self.store.load_association(record, spec)
        return [getattr(child, id_field) for child in _as_list(loaded)]

    async def fetch_association(self, record: Any, name: str) -> Any:
        """Denormalized accessor for a cached relationship.

        Reads the record's slot when populated; otherwise loads the
        relationship and keeps it in the slot for the lifetime of this
        in-memory record.
        """
        cached_type = self.registry.for_record(record)
        spec = cached_type.relationship(name)
        if spec is None:
            raise UsageError(f"Unknown cached association {name} on {cached_type.name}",
                             {"type": cached_type.name, "relationship": name})

        if not self.should_cache():
            return await self.store.load_association(record, spec)

        value = getattr(record, spec.cached_slot, None)
        if value is None:
            value = await self._load_for_accessor(record, spec)
            if value is None:
                value = ABSENT
            setattr(record, spec.cached_slot, value)

        return None if value is ABSENT else value

    async def _load_for_accessor(self, record: Any, spec: RelationshipSpec) -> Any:
        if spec.embed:
            loaded = await self.store.load_association(record, spec)
            return list(loaded or []) if spec.kind == AssociationKind.HAS_MANY else loaded

        if spec.kind == AssociationKind.HAS_MANY:
            target_type = self.registry.resolve(spec.target)
            ids = [target_type.cast_id(child_id) for child_id in await self._cached_ids(record, spec)]
            children = await self.fetcher.fetch_multi(target_type, ids) if ids else {}
            return [children[child_id] for child_id in ids if child_id in children]

        if spec.kind == AssociationKind.HAS_ONE:
            related_id = await self._cached_ids(record, spec)
            if related_id is None:
                return None
            return await self.fetcher.fetch_by_id(spec.target, related_id)

        if spec.kind == AssociationKind.BELONGS_TO:
            foreign_key = getattr(record, spec.foreign_key)
            if foreign_key is None:
                return None
            return await self.fetcher.fetch_by_id(spec.target, foreign_key)

        raise UsageError(f"Unsupported relationship kind {spec.kind}", {"relationship": spec.name})

    async def _cached_ids(self, record: Any, spec: RelationshipSpec) -> Any:
        if not hasattr(record, spec.cached_ids_slot):
            await self._populate_relationship(record, spec)
        return getattr(record, spec.cached_ids_slot)

    async def prefetch(self, type_ref: TypeRef, includes: Any, records: List[Any]) -> None:
        """Load the named relationships for all ``records`` with one fetch per hop.

        ``includes`` may nest (``{"comments": ["author"]}``) to prefetch
        further hops on the related records.
        """
        cached_type = self.registry.resolve(type_ref)
        associations = hashify_includes(includes)
        records = [record for record in records if record is not None]

        specs = []
        for name, sub_includes in associations.items():
            spec = cached_type.relationship(name)
            if spec is None:
                raise UsageError(f"Unknown cached association {name} listed for prefetching",
                                 {"type": cached_type.name, "relationship": name})
            if spec.kind == AssociationKind.BELONGS_TO and spec.embed:
                raise UsageError("Embedded belongs_to associations do not support prefetching yet.",
                                 {"type": cached_type.name, "relationship": name})
            if spec.kind == AssociationKind.HAS_ONE and not spec.embed:
                raise UsageError("Non-embedded has_one associations do not support prefetching yet.",
                                 {"type": cached_type.name, "relationship": name})
            specs.append((spec, sub_includes))

        if not records:
            return

        for spec, sub_includes in specs:
            if spec.kind == AssociationKind.HAS_MANY and spec.embed:
                next_level_records = []
                for record in records:
                    next_level_records.extend(await self.fetch_association(record, spec.name))
            elif spec.kind == AssociationKind.HAS_MANY:
                next_level_records = await self._prefetch_referenced_has_many(records, spec)
            elif spec.kind == AssociationKind.BELONGS_TO:
                next_level_records = await self._prefetch_belongs_to(records, spec)
            else:
                next_level_records = []
                for record in records:
                    related = await self.fetch_association(record, spec.name)
                    if related is not None:
                        next_level_records.append(related)

            target_type = self.registry.get(spec.target)
            if target_type is not None and sub_includes:
                await self.prefetch(target_type, sub_includes, next_level_records)

    async def _prefetch_referenced_has_many(self, records: List[Any], spec: RelationshipSpec) -> List[Any]:
        target_type = self.registry.resolve(spec.target)

        ids_by_parent = []
        all_ids = []
        for record in records:
            child_ids = [target_type.cast_id(child_id) for child_id in await self._cached_ids(record, spec)]
            ids_by_parent.append((record, child_ids))
            all_ids.extend(child_ids)

        children = await self.fetcher.fetch_multi(target_type, all_ids) if all_ids else {}

        for record, child_ids in ids_by_parent:
            setattr(record, spec.cached_slot, [children[child_id] for child_id in child_ids if child_id in children])

        self.logger.debug("Prefetched association", relationship=spec.name, parents=len(records),
                          children=len(children))
        return list(children.values())

    async def _prefetch_belongs_to(self, records: List[Any], spec: RelationshipSpec) -> List[Any]:
        target_type = self.registry.resolve(spec.target)

        foreign_keys = [getattr(record, spec.foreign_key) for record in records]
        parent_ids = [target_type.cast_id(foreign_key) for foreign_key in foreign_keys if foreign_key is not None]
        parents = await self.fetcher.fetch_multi(target_type, parent_ids) if parent_ids else {}

        for record, foreign_key in zip(records, foreign_keys):
            parent = parents.get(target_type.cast_id(foreign_key)) if foreign_key is not None else None
            setattr(record, spec.cached_slot, ABSENT if parent is None else parent)

        self.logger.debug("Prefetched association", relationship=spec.name, children=len(records),
                          parents=len(parents))
        return list(parents.values())
