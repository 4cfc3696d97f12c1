"""
Per-unit-of-work memoization in front of a cache backend.

Inside a memoization scope, repeated single-key reads are answered from an
overlay table owned by the scope's ``ExecutionContext``, so each key hits
the backend at most once per scope (absent results included). The tables
live in a dict keyed by context id; one context never sees another's
entries. Deduplication is per context only: two contexts reading the same
key concurrently will both reach the backend.
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, Optional

from shared.logging import get_logger, context_id_var
from shared.metrics import MetricsCollector
from .backends import CacheBackend

_current_context: ContextVar[Optional["ExecutionContext"]] = ContextVar("idc_execution_context", default=None)


@dataclass(eq=False)
class ExecutionContext:
    """Handle for one unit of work (a request, a job, a transaction)."""
    context_id: str = field(default_factory=lambda: uuid.uuid4().hex)


def current_context() -> Optional[ExecutionContext]:
    """The execution context bound to the running task or thread, if any."""
    return _current_context.get()


class MemoizedCacheProxy:
    """Backend wrapper adding a per-context read overlay."""

    def __init__(self, backend: CacheBackend, metrics: Optional[MetricsCollector] = None):
        self.backend = backend
        self.metrics = metrics
        self.logger = get_logger("identity_cache.memoized")
        self._key_value_maps: Dict[str, Dict[str, Any]] = {}

    # Scope management

    def enter(self, context: ExecutionContext) -> bool:
        """Open a scope for ``context``; returns False if it was already open."""
        if context.context_id in self._key_value_maps:
            return False
        self._key_value_maps[context.context_id] = {}
        return True

    def exit(self, context: ExecutionContext) -> None:
        """Close the scope for ``context`` and discard its overlay."""
        self._key_value_maps.pop(context.context_id, None)

    @contextmanager
    def memoization(self, context: Optional[ExecutionContext] = None) -> Iterator[ExecutionContext]:
        """Run a block inside a memoization scope.

        Re-entering an open scope extends it; only the outermost exit
        discards the overlay. The overlay is discarded on every exit path.
        """
        context = context or current_context() or ExecutionContext()
        opened = self.enter(context)
        token = _current_context.set(context)
        log_token = context_id_var.set(context.context_id)
        try:
            yield context
        finally:
            context_id_var.reset(log_token)
            _current_context.reset(token)
            if opened:
                self.exit(context)

    def _overlay(self, context: Optional[ExecutionContext]) -> Optional[Dict[str, Any]]:
        context = context or current_context()
        if context is None:
            return None
        return self._key_value_maps.get(context.context_id)

    def memoizing(self, context: Optional[ExecutionContext] = None) -> bool:
        return self._overlay(context) is not None

    # Cache operations

    async def write(self, key: str, value: Any, context: Optional[ExecutionContext] = None) -> None:
        overlay = self._overlay(context)
        if overlay is not None:
            overlay[key] = value
        await self.backend.write(key, value)

    async def read(self, key: str, context: Optional[ExecutionContext] = None) -> Optional[Any]:
        overlay = self._overlay(context)
        memoized = False

        if overlay is None:
            result = await self.backend.read(key)
        elif key in overlay:
            memoized = True
            result = overlay[key]
        else:
            result = await self.backend.read(key)
            overlay[key] = result

        if result is not None:
            self.logger.debug("Cache hit", key=key, memoized=memoized)
        else:
            self.logger.debug("Cache miss", key=key, memoized=memoized)

        if self.metrics is not None:
            if result is None:
                self.metrics.record_read("miss")
            else:
                self.metrics.record_read("memoized_hit" if memoized else "hit")

        return result

    async def read_multi(self, keys: Iterable[str], context: Optional[ExecutionContext] = None) -> Dict[str, Any]:
        """Read many keys with one backend call for those not in the overlay.

        Values fetched here are returned to the caller but not added to the
        overlay.
        """
        keys = list(keys)
        overlay = self._overlay(context)
        if overlay is None:
            return await self.backend.read_multi(keys)

        found: Dict[str, Any] = {}
        missing_keys = []
        for key in keys:
            if key in overlay:
                found[key] = overlay[key]
            else:
                missing_keys.append(key)

        if missing_keys:
            found.update(await self.backend.read_multi(missing_keys))
        return found

    async def delete(self, key: str, context: Optional[ExecutionContext] = None) -> None:
        overlay = self._overlay(context)
        if overlay is not None:
            overlay.pop(key, None)
        await self.backend.delete(key)

    async def clear(self, context: Optional[ExecutionContext] = None) -> None:
        """Drop the active overlay and clear the backend entirely."""
        context = context or current_context()
        if context is not None and context.context_id in self._key_value_maps:
            self._key_value_maps[context.context_id] = {}
        await self.backend.clear()
