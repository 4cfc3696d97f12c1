"""
Record store interface consumed by the cache layer.

The record store is the source of truth. It owns record instances and
change tracking; the cache only reads fields and writes ``_cached_*`` slots.
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence, Union
from dataclasses import dataclass, field

from .models import CachedType, RelationshipSpec

Includes = List[Union[str, Dict[str, Any]]]


class RecordStore(Protocol):
    """Narrow persistence interface used on cache misses."""

    async def load_one(self, cached_type: CachedType, record_id: Any, includes: Includes) -> Optional[Any]:
        ...

    async def load_bulk(self, cached_type: CachedType, ids: Sequence[Any],
                        includes: Includes) -> Sequence[Optional[Any]]:
        """Load records for ``ids``; the result is aligned to ``ids``."""
        ...

    async def load_association(self, record: Any, spec: RelationshipSpec) -> Any:
        """Load a relationship through the normal accessor."""
        ...

    async def load_ids_by_fields(self, cached_type: CachedType, fields: Sequence[str],
                                 values: Sequence[Any]) -> List[Any]:
        ...

    async def load_attribute(self, cached_type: CachedType, attribute: str,
                             fields: Sequence[str], values: Sequence[Any]) -> Any:
        ...


@dataclass
class RecordChanges:
    """Pre-mutation snapshot handed to the commit and touch hooks.

    ``previous`` holds the old value of every field changed in the
    transaction. Fields absent from it are unchanged.
    """
    previous: Dict[str, Any] = field(default_factory=dict)
    destroyed: bool = False

    def is_newly_created(self, record: Any, id_field: str = "id") -> bool:
        """True when the record's id went from None to a value in this transaction."""
        return (
            not self.destroyed
            and id_field in self.previous
            and self.previous[id_field] is None
            and getattr(record, id_field, None) is not None
        )

    def previous_value(self, record: Any, field_name: str) -> Any:
        if field_name in self.previous:
            return self.previous[field_name]
        return getattr(record, field_name)

    def previous_values(self, record: Any, fields: Sequence[str]) -> List[Any]:
        return [self.previous_value(record, name) for name in fields]
