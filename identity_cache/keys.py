"""
Cache key derivation.

Keys look like::

    IDC:blob:Blog:v1:1
    IDC:index:Blog:v1:["slug"]:["hello-world"]
    IDC:attr:Blog:v1:"title":["slug"]:["hello-world"]

Ids, field names and values are rendered as compact JSON so that ``1`` and
``"1"`` stay distinct and field order is part of the key. Reordering a
declared field group therefore changes its keys. Values JSON has no type
for (datetimes, decimals, UUIDs) are rendered as an object tagged with
their class, so they never collide with a string of the same text.
"""

import json
from typing import Any, Dict, Sequence

from .models import CachedType

PRIMARY = "blob"
SECONDARY = "index"
ATTRIBUTE = "attr"


def _tagged(value: Any) -> Dict[str, str]:
    value_type = type(value)
    text = value.isoformat() if hasattr(value, "isoformat") else str(value)
    return {"__type__": f"{value_type.__module__}.{value_type.__qualname__}", "value": text}


def _render(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=_tagged)


class CacheKeyCodec:
    """Derive deterministic keys for primary, secondary and attribute lookups."""

    def __init__(self, namespace: str = "IDC"):
        self.namespace = namespace

    def _prefix(self, kind: str, cached_type: CachedType) -> str:
        return f"{self.namespace}:{kind}:{cached_type.name}:v{cached_type.version}"

    def primary_key(self, cached_type: CachedType, record_id: Any) -> str:
        """Key for a record looked up by id."""
        return f"{self._prefix(PRIMARY, cached_type)}:{_render(cached_type.cast_id(record_id))}"

    def secondary_key(self, cached_type: CachedType, fields: Sequence[str], values: Sequence[Any]) -> str:
        """Key for the ids matching a field combination."""
        fields, values = self._pair(fields, values)
        return f"{self._prefix(SECONDARY, cached_type)}:{_render(fields)}:{_render(values)}"

    def attribute_key(self, cached_type: CachedType, attribute: str,
                      fields: Sequence[str], values: Sequence[Any]) -> str:
        """Key for a denormalized attribute looked up by a field combination."""
        fields, values = self._pair(fields, values)
        return f"{self._prefix(ATTRIBUTE, cached_type)}:{_render(attribute)}:{_render(fields)}:{_render(values)}"

    @staticmethod
    def _pair(fields: Sequence[str], values: Sequence[Any]):
        fields, values = list(fields), list(values)
        if len(fields) != len(values):
            raise ValueError(f"Expected {len(fields)} values for fields {fields}, got {len(values)}")
        return fields, values

    def namespace_pattern(self) -> str:
        """Glob matching every key this codec produces."""
        return f"{self.namespace}:*"
