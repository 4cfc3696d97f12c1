"""
Declaration models for cached record types.

A ``CachedType`` says how one record class is cached: its identity field,
which field groups have a secondary index, which scalar attributes are
denormalized, and which relationships travel with the cached record.
"""

import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple, Union, get_args, get_type_hints
from dataclasses import dataclass, field
from enum import Enum

from shared.errors import UsageError


class AssociationKind(str, Enum):
    """Relationship kinds."""
    HAS_MANY = "has_many"
    HAS_ONE = "has_one"
    BELONGS_TO = "belongs_to"


@dataclass(frozen=True)
class RelationshipSpec:
    """One declared cached relationship.

    ``embed`` decides whether the related data is stored inline in the
    parent's cached value or only by reference. Referenced has-many
    relationships may read child ids from ``ids_field`` on the parent;
    referenced belongs-to relationships resolve through ``foreign_key``.
    For embedded has-many and has-one, ``inverse_foreign_key`` names the
    child field holding the parent id, so a changed child expires its
    parent's cached value.
    """
    name: str
    kind: AssociationKind
    target: str
    embed: bool = False
    foreign_key: Optional[str] = None
    ids_field: Optional[str] = None
    inverse_foreign_key: Optional[str] = None

    def __post_init__(self):
        if self.kind == AssociationKind.BELONGS_TO and not self.embed and self.foreign_key is None:
            object.__setattr__(self, "foreign_key", f"{self.name}_id")

    @property
    def cached_slot(self) -> str:
        """Attribute on the record holding the loaded related object(s)."""
        return f"_cached_{self.name}"

    @property
    def cached_ids_slot(self) -> str:
        """Attribute on the record holding referenced child ids."""
        return f"_cached_{self.name}_ids"

    @property
    def needs_population(self) -> bool:
        """Whether the populator writes anything for this relationship.

        A referenced belongs-to already carries its foreign key on the record.
        """
        return self.embed or self.kind != AssociationKind.BELONGS_TO


@dataclass(frozen=True)
class AttributeIndex:
    """A denormalized scalar attribute looked up by a field combination."""
    attribute: str
    fields: Tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, "fields", tuple(self.fields))


_INFERRED_ID_TYPES = (int, str, uuid.UUID)


def _infer_id_cast(model: Optional[type], id_field: str) -> Optional[type]:
    if model is None:
        return None
    try:
        hint = get_type_hints(model).get(id_field)
    except (NameError, TypeError):
        return None

    args = [arg for arg in get_args(hint) if arg is not type(None)]
    if args and len(args) < len(get_args(hint)):
        hint = args[0] if len(args) == 1 else None
    return hint if hint in _INFERRED_ID_TYPES else None


@dataclass
class CachedType:
    """Cache declaration for one record class.

    When ``id_cast`` is not given it defaults from the annotation of
    ``id_field`` on ``model`` (``int``, ``str`` or ``uuid.UUID``, optionally
    wrapped in ``Optional``), so ids arriving as strings key the same entry
    as the typed ids the record store hands back.
    """
    name: str
    model: Optional[type] = None
    id_field: str = "id"
    primary_index: bool = True
    version: str = "1"
    indexes: List[Tuple[str, ...]] = field(default_factory=list)
    attributes: List[AttributeIndex] = field(default_factory=list)
    relationships: List[RelationshipSpec] = field(default_factory=list)
    id_cast: Optional[Callable[[Any], Any]] = None

    def __post_init__(self):
        self.indexes = [tuple(fields) for fields in self.indexes]
        names = [spec.name for spec in self.relationships]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise UsageError(
                f"Relationship declared twice on {self.name}: {', '.join(sorted(duplicates))}",
                {"type": self.name}
            )
        if self.id_cast is None:
            self.id_cast = _infer_id_cast(self.model, self.id_field)

    def cast_id(self, record_id: Any) -> Any:
        """Normalize an incoming id the way the record store types it."""
        if record_id is None or self.id_cast is None:
            return record_id
        if isinstance(self.id_cast, type) and type(record_id) is self.id_cast:
            return record_id
        return self.id_cast(record_id)

    def record_id(self, record: Any) -> Any:
        """Identity of a record of this type."""
        return getattr(record, self.id_field)

    def relationship(self, name: str) -> Optional[RelationshipSpec]:
        """Look up a declared relationship by name."""
        for spec in self.relationships:
            if spec.name == name:
                return spec
        return None

    def relationships_of(self, kind: AssociationKind) -> Dict[str, RelationshipSpec]:
        """Declared relationships of one kind, keyed by name."""
        return {spec.name: spec for spec in self.relationships if spec.kind == kind}

    @property
    def cached_has_manys(self) -> Dict[str, RelationshipSpec]:
        return self.relationships_of(AssociationKind.HAS_MANY)

    @property
    def cached_has_ones(self) -> Dict[str, RelationshipSpec]:
        return self.relationships_of(AssociationKind.HAS_ONE)

    @property
    def cached_belongs_tos(self) -> Dict[str, RelationshipSpec]:
        return self.relationships_of(AssociationKind.BELONGS_TO)

    @property
    def embedded_relationships(self) -> List[RelationshipSpec]:
        return [spec for spec in self.relationships if spec.embed]

    @property
    def relationships_needing_population(self) -> List[RelationshipSpec]:
        return [spec for spec in self.relationships if spec.needs_population]

    def has_index(self, fields: Tuple[str, ...]) -> bool:
        return tuple(fields) in self.indexes

    def attribute_index(self, attribute: str, fields: Tuple[str, ...]) -> Optional[AttributeIndex]:
        fields = tuple(fields)
        for spec in self.attributes:
            if spec.attribute == attribute and spec.fields == fields:
                return spec
        return None


TypeRef = Union[str, type, CachedType]


class TypeRegistry:
    """Registry of cached types by name and by model class."""

    def __init__(self):
        self._by_name: Dict[str, CachedType] = {}
        self._by_model: Dict[type, CachedType] = {}

    def register(self, cached_type: CachedType) -> CachedType:
        """Register a cached type, replacing any previous declaration of the same name."""
        previous = self._by_name.get(cached_type.name)
        if previous is not None and previous.model is not None:
            self._by_model.pop(previous.model, None)

        self._by_name[cached_type.name] = cached_type
        if cached_type.model is not None:
            self._by_model[cached_type.model] = cached_type
        return cached_type

    def get(self, name: str) -> Optional[CachedType]:
        return self._by_name.get(name)

    def resolve(self, ref: TypeRef) -> CachedType:
        """Resolve a type name, model class or declaration to its declaration."""
        if isinstance(ref, CachedType):
            return ref
        if isinstance(ref, str):
            cached_type = self._by_name.get(ref)
        elif isinstance(ref, type):
            cached_type = self._by_model.get(ref)
        else:
            cached_type = self._by_model.get(type(ref))

        if cached_type is None:
            raise UsageError(f"{ref!r} is not a registered cached type", {"type": repr(ref)})
        return cached_type

    def for_record(self, record: Any) -> CachedType:
        return self.resolve(type(record))

    def embedding_parents(self, type_name: str) -> List[Tuple[CachedType, RelationshipSpec]]:
        """Types that embed ``type_name`` and know how to find the parent id."""
        return [
            (parent_type, spec)
            for parent_type in self._by_name.values()
            for spec in parent_type.embedded_relationships
            if spec.target == type_name
            and spec.kind != AssociationKind.BELONGS_TO
            and spec.inverse_foreign_key is not None
        ]

    def model_named(self, class_name: str) -> Optional[type]:
        """Find a registered model class by its class name or qualified name."""
        for model in self._by_model:
            if class_name in (model.__name__, model.__qualname__):
                return model
        return None

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __iter__(self):
        return iter(self._by_name.values())
