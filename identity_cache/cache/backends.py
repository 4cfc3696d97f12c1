"""
Cache backend interface and an in-process implementation.
"""

from typing import Any, Dict, Iterable, Optional, Protocol


class CacheBackend(Protocol):
    """Key-value store the cache layer reads from and writes to.

    No ordering is assumed across independent keys and multi-key calls are
    not transactional.
    """

    async def read(self, key: str) -> Optional[Any]:
        ...

    async def read_multi(self, keys: Iterable[str]) -> Dict[str, Any]:
        """Return only the keys that are present."""
        ...

    async def write(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        """Remove a key; removing an absent key is a no-op."""
        ...

    async def clear(self) -> None:
        ...


class MemoryBackend:
    """Dict-backed backend for a single process, tests and local runs."""

    def __init__(self):
        self._data: Dict[str, Any] = {}

    async def read(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    async def read_multi(self, keys: Iterable[str]) -> Dict[str, Any]:
        return {key: self._data[key] for key in keys if key in self._data}

    async def write(self, key: str, value: Any) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def keys(self):
        return list(self._data)
