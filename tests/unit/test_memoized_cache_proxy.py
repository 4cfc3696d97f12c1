"""
Unit tests for MemoizedCacheProxy.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock
from prometheus_client import CollectorRegistry

from identity_cache import ExecutionContext, MemoizedCacheProxy
from identity_cache.cache.memoized import current_context
from shared.logging import context_id_var
from shared.metrics import MetricsCollector
from shared.test_helpers import CountingBackend


class TestMemoizedCacheProxy:
    """Test cases for MemoizedCacheProxy."""

    @pytest.fixture
    def backend(self):
        """Create counting backend."""
        return CountingBackend()

    @pytest.fixture
    def registry(self):
        """Fresh metrics registry."""
        return CollectorRegistry()

    @pytest.fixture
    def proxy(self, backend, registry):
        """Create proxy over the counting backend."""
        return MemoizedCacheProxy(backend, MetricsCollector("identity_cache_test", registry=registry))

    @pytest.mark.asyncio
    async def test_read_outside_scope_delegates(self, proxy, backend):
        """Test every read goes to the backend without a scope."""
        await backend.write("k", b"v")

        assert await proxy.read("k") == b"v"
        assert await proxy.read("k") == b"v"
        assert backend.calls["read"] == 2
        assert not proxy.memoizing()

    @pytest.mark.asyncio
    async def test_read_is_memoized_in_scope(self, proxy, backend):
        """Test a key is read from the backend at most once per scope."""
        await backend.write("k", b"v")

        with proxy.memoization():
            results = [await proxy.read("k") for _ in range(3)]

        assert results == [b"v", b"v", b"v"]
        assert backend.calls["read"] == 1

    @pytest.mark.asyncio
    async def test_absent_result_is_memoized(self, proxy, backend):
        """Test a miss is remembered for the rest of the scope."""
        with proxy.memoization():
            assert await proxy.read("missing") is None
            assert await proxy.read("missing") is None

        assert backend.calls["read"] == 1

    @pytest.mark.asyncio
    async def test_read_metrics(self, proxy, backend, registry):
        """Test read outcomes are counted."""
        await backend.write("k", b"v")

        with proxy.memoization():
            await proxy.read("k")
            await proxy.read("k")
            await proxy.read("missing")

        assert registry.get_sample_value("identity_cache_reads_total", {"result": "hit"}) == 1.0
        assert registry.get_sample_value("identity_cache_reads_total", {"result": "memoized_hit"}) == 1.0
        assert registry.get_sample_value("identity_cache_reads_total", {"result": "miss"}) == 1.0

    @pytest.mark.asyncio
    async def test_write_in_scope_updates_overlay(self, proxy, backend):
        """Test a write inside a scope is served from the overlay."""
        with proxy.memoization():
            await proxy.write("k", b"v")
            assert await proxy.read("k") == b"v"

        assert backend.calls["read"] == 0
        assert await backend.read("k") == b"v"

    @pytest.mark.asyncio
    async def test_write_outside_scope_skips_overlay(self, proxy, backend):
        """Test a write outside any scope only reaches the backend."""
        await proxy.write("k", b"v")

        with proxy.memoization():
            assert await proxy.read("k") == b"v"

        assert backend.calls["read"] == 1

    @pytest.mark.asyncio
    async def test_read_multi_partitions_on_overlay(self, proxy, backend):
        """Test only keys missing from the overlay reach the backend."""
        await backend.write("a", b"1")
        await backend.write("b", b"2")

        with proxy.memoization():
            await proxy.read("a")
            result = await proxy.read_multi(["a", "b", "c"])

        assert result == {"a": b"1", "b": b"2"}
        assert backend.read_multi_keys == [["b", "c"]]

    @pytest.mark.asyncio
    async def test_read_multi_does_not_warm_overlay(self, proxy, backend):
        """Test values from a multi-read are not memoized."""
        await backend.write("b", b"2")

        with proxy.memoization():
            await proxy.read_multi(["b"])
            await proxy.read("b")

        assert backend.calls["read"] == 1

    @pytest.mark.asyncio
    async def test_read_multi_fully_memoized_skips_backend(self, proxy, backend):
        """Test no backend call when the overlay has every key."""
        with proxy.memoization():
            await proxy.write("a", b"1")
            result = await proxy.read_multi(["a"])

        assert result == {"a": b"1"}
        assert backend.calls["read_multi"] == 0

    @pytest.mark.asyncio
    async def test_read_multi_outside_scope(self, proxy, backend):
        """Test multi-read delegates every key without a scope."""
        await backend.write("a", b"1")

        assert await proxy.read_multi(["a", "b"]) == {"a": b"1"}
        assert backend.read_multi_keys == [["a", "b"]]

    @pytest.mark.asyncio
    async def test_delete_removes_from_overlay_and_backend(self, proxy, backend):
        """Test delete clears both layers."""
        with proxy.memoization():
            await proxy.write("k", b"v")
            await proxy.delete("k")
            assert await proxy.read("k") is None

        assert "k" not in backend
        assert backend.calls["read"] == 1

    @pytest.mark.asyncio
    async def test_clear_resets_overlay(self, proxy, backend):
        """Test clear empties the overlay but keeps the scope open."""
        await backend.write("k", b"v")

        with proxy.memoization():
            await proxy.read("k")
            await proxy.clear()

            assert proxy.memoizing()
            assert await proxy.read("k") is None

        assert backend.calls["clear"] == 1
        assert backend.calls["read"] == 2

    @pytest.mark.asyncio
    async def test_scope_discarded_on_exit(self, proxy):
        """Test the overlay is dropped when the scope ends."""
        with proxy.memoization() as context:
            assert proxy.memoizing()
            assert current_context() is context
            assert context_id_var.get() == context.context_id

        assert not proxy.memoizing()
        assert current_context() is None
        assert context_id_var.get() is None
        assert proxy._key_value_maps == {}

    @pytest.mark.asyncio
    async def test_scope_discarded_on_exception(self, proxy):
        """Test the overlay is dropped when the block raises."""
        with pytest.raises(RuntimeError):
            with proxy.memoization():
                await proxy.read("k")
                raise RuntimeError("boom")

        assert not proxy.memoizing()
        assert proxy._key_value_maps == {}

    @pytest.mark.asyncio
    async def test_nested_scope_reuses_overlay(self, proxy, backend):
        """Test re-entering keeps one overlay until the outermost exit."""
        await backend.write("k", b"v")

        with proxy.memoization() as outer:
            await proxy.read("k")
            with proxy.memoization() as inner:
                assert inner is outer
                await proxy.read("k")
            assert proxy.memoizing()
            await proxy.read("k")

        assert backend.calls["read"] == 1
        assert not proxy.memoizing()

    @pytest.mark.asyncio
    async def test_explicit_context(self, proxy, backend):
        """Test passing a context instead of binding one."""
        context = ExecutionContext()
        await backend.write("k", b"v")

        assert proxy.enter(context) is True
        assert proxy.enter(context) is False

        await proxy.read("k", context=context)
        await proxy.read("k", context=context)
        await proxy.read("k")

        proxy.exit(context)

        assert backend.calls["read"] == 2
        assert not proxy.memoizing(context)

    @pytest.mark.asyncio
    async def test_concurrent_scopes_are_isolated(self, proxy, backend):
        """Test one context never observes another context's overlay."""
        await backend.write("k", b"base")
        first_read = asyncio.Event()
        second_wrote = asyncio.Event()

        async def reader():
            with proxy.memoization():
                before = await proxy.read("k")
                first_read.set()
                await second_wrote.wait()
                after = await proxy.read("k")
                return before, after

        async def writer():
            await first_read.wait()
            with proxy.memoization():
                await proxy.write("k", b"changed")
                value = await proxy.read("k")
            second_wrote.set()
            return value

        (before, after), written = await asyncio.gather(reader(), writer())

        assert before == b"base"
        assert after == b"base"
        assert written == b"changed"
        assert await backend.read("k") == b"changed"
        assert proxy._key_value_maps == {}

    @pytest.mark.asyncio
    async def test_backend_error_propagates(self, proxy, backend):
        """Test a failing read raises and is not memoized."""
        backend.read = AsyncMock(side_effect=ConnectionError("down"))

        with proxy.memoization():
            with pytest.raises(ConnectionError):
                await proxy.read("k")
            with pytest.raises(ConnectionError):
                await proxy.read("k")

        assert backend.read.await_count == 2
