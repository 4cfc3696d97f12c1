"""
Integration tests for the identity cache end-to-end flow.
"""

import asyncio
import dataclasses

import pytest

from identity_cache import RecordChanges
from shared.test_helpers import Comment, CountingBackend, InMemoryRecordStore, TestDataFactory


class TestBlogFlow:
    """Blog and comment lifecycle through the cache."""

    @pytest.fixture
    def store(self):
        """Seeded record store."""
        return TestDataFactory.seed_store(InMemoryRecordStore())

    @pytest.fixture
    def backend(self):
        """Counting backend shared by every cache in a test."""
        return CountingBackend()

    @pytest.mark.asyncio
    async def test_embedded_comments_flow(self, backend, store):
        """Test a blog with embedded comments is cached in one value."""
        cache = TestDataFactory.create_cache(backend=backend, store=store)

        blog = await cache.fetch_by_id("Blog", 1)

        assert [comment.id for comment in blog._cached_comments] == [10, 11]
        assert store.count("load_association") == 1

        records = await cache.fetch_multi("Blog", [1, 2], includes="comments")

        assert backend.calls["read_multi"] == 1
        assert store.count("load_bulk") == 1
        assert [comment.id for comment in records[2]._cached_comments] == [20, 21]

    @pytest.mark.asyncio
    async def test_referenced_comments_flow(self, backend, store):
        """Test referenced comments of many blogs come from one multi-read."""
        cache = TestDataFactory.create_cache(backend=backend, store=store, embed_comments=False)

        records = await cache.fetch_multi("Blog", [1, 2], includes="comments")

        assert backend.calls["read_multi"] == 2
        assert sorted(backend.read_multi_keys[1]) == sorted(
            cache.codec.primary_key(cache.registry.get("Comment"), comment_id) for comment_id in [10, 11, 20, 21]
        )
        assert [comment.body for comment in records[1]._cached_comments] == ["First", "Second"]

    @pytest.mark.asyncio
    async def test_changed_index_value(self, backend, store):
        """Test a changed slug moves the record between index entries."""
        cache = TestDataFactory.create_cache(backend=backend, store=store)
        assert [blog.id for blog in await cache.fetch_by_index("Blog", ["slug"], ["engines"])] == [1]

        blog = await cache.fetch_by_id("Blog", 1)
        updated = store.insert("Blog", dataclasses.replace(blog, slug="turbines"))
        await cache.on_commit(updated, RecordChanges(previous={"slug": "engines"}))

        assert await cache.fetch_by_index("Blog", ["slug"], ["engines"]) == []
        moved = await cache.fetch_by_index("Blog", ["slug"], ["turbines"])
        assert [(blog.id, blog.slug) for blog in moved] == [(1, "turbines")]
        assert await cache.fetch_attribute("Blog", "title", ["slug"], ["turbines"]) == "Engines"

    @pytest.mark.asyncio
    async def test_new_comment_shows_on_parent(self, backend, store):
        """Test a created comment expires the blog embedding it."""
        cache = TestDataFactory.create_cache(backend=backend, store=store)
        await cache.fetch_by_id("Blog", 2)

        comment = store.insert("Comment", Comment(id=22, blog_id=2, body="Late"))
        await cache.on_commit(comment, RecordChanges(previous={"id": None, "blog_id": None}))

        blog = await cache.fetch_by_id("Blog", 2)
        comments = await cache.fetch_association(blog, "comments")
        assert [comment.id for comment in comments] == [20, 21, 22]

    @pytest.mark.asyncio
    async def test_destroyed_record(self, backend, store):
        """Test a destroyed record is gone from every lookup."""
        cache = TestDataFactory.create_cache(backend=backend, store=store)
        blog = await cache.fetch_by_id("Blog", 2)
        await cache.fetch_by_index("Blog", ["slug"], ["compilers"])

        store.remove("Blog", 2)
        await cache.on_commit(blog, RecordChanges(destroyed=True))

        assert await cache.fetch_by_id("Blog", 2) is None
        assert await cache.exists("Blog", 2) is False
        assert await cache.fetch_by_index("Blog", ["slug"], ["compilers"]) == []

    @pytest.mark.asyncio
    async def test_shared_backend_between_caches(self, backend, store):
        """Test two caches over one backend see each other's writes."""
        writer = TestDataFactory.create_cache(backend=backend, store=store)
        reader = TestDataFactory.create_cache(backend=backend, store=store)

        await writer.fetch_by_id("Blog", 1)
        blog = await reader.fetch_by_id("Blog", 1)

        assert blog.title == "Engines"
        assert store.count("load_one") == 1

    @pytest.mark.asyncio
    async def test_concurrent_units_of_work(self, backend, store):
        """Test parallel scopes memoize independently."""
        cache = TestDataFactory.create_cache(backend=backend, store=store)
        await cache.fetch_multi("Blog", [1, 2, 3])
        reads_before = backend.calls["read"]

        async def unit_of_work(record_id):
            with cache.with_memoization() as context:
                for _ in range(3):
                    await cache.fetch_by_id("Blog", record_id)
                return context

        contexts = await asyncio.gather(*(unit_of_work(record_id) for record_id in [1, 2, 3, 1]))

        assert len({context.context_id for context in contexts}) == 4
        assert backend.calls["read"] - reads_before == 4
        assert cache.cache._key_value_maps == {}

    @pytest.mark.asyncio
    async def test_clear(self, backend, store):
        """Test clearing empties the backend."""
        cache = TestDataFactory.create_cache(backend=backend, store=store)
        await cache.fetch_multi("Blog", [1, 2])

        await cache.clear()

        assert len(backend) == 0
        await cache.fetch_by_id("Blog", 1)
        assert store.count("load_one") == 1

    @pytest.mark.asyncio
    async def test_toggle_cache(self, backend, store):
        """Test turning caching off and on never serves stale data."""
        cache = TestDataFactory.create_cache(backend=backend, store=store)
        blog = await cache.fetch_by_id("Blog", 1)

        cache.settings.enabled = False
        renamed = store.insert("Blog", dataclasses.replace(blog, title="Renamed"))
        await cache.on_commit(renamed, RecordChanges(previous={"title": "Engines"}))
        assert (await cache.fetch_by_id("Blog", 1)).title == "Renamed"

        cache.settings.enabled = True
        assert (await cache.fetch_by_id("Blog", 1)).title == "Renamed"
