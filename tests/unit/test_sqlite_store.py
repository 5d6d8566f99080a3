"""
Unit tests for the SQLite item and grant store.

Tests cover:
- Experience storage and membership scans
- Access-set union, remove and replace batches
- Cursor paging
- Grant storage and chunk-capped queries
- Category namespace checks
- Mapping of SQLite failures to TransientStoreError
"""

import os
import tempfile

import pytest

from sharing.access_sync.errors import TransientStoreError
from sharing.access_sync.store.base import (
    Category,
    CategoryKind,
    Cursor,
    Experience,
    Grant,
    GrantScope,
)
from sharing.access_sync.store.sqlite import SqliteStore


class TestSqliteStore:
    """Tests for SqliteStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def store(self, data_dir):
        return SqliteStore(data_dir, wal_mode=False, max_batch_size=5)

    @pytest.mark.asyncio
    async def test_experience_round_trip(self, store):
        await store.initialize()
        await store.put_experience(
            Experience(
                "e1",
                owner="u1",
                primary_category="catA",
                secondary_categories=frozenset({"catB", "catC"}),
                color_category="colorX",
                access_set=frozenset({"u2"}),
                created_at=100,
            )
        )

        fetched = await store.get_experience("e1")

        assert fetched is not None
        assert fetched.owner == "u1"
        assert fetched.primary_category == "catA"
        assert fetched.secondary_categories == frozenset({"catB", "catC"})
        assert fetched.color_category == "colorX"
        assert fetched.access_set == frozenset({"u2"})
        assert fetched.created_at == 100

    @pytest.mark.asyncio
    async def test_missing_experience(self, store):
        await store.initialize()
        assert await store.get_experience("nope") is None

    @pytest.mark.asyncio
    async def test_put_overwrites_memberships(self, store):
        await store.initialize()
        await store.put_experience(
            Experience("e1", owner="u1", secondary_categories=frozenset({"catA"}), created_at=1)
        )
        await store.put_experience(
            Experience("e1", owner="u1", secondary_categories=frozenset({"catB"}), created_at=1)
        )

        fetched = await store.get_experience("e1")
        assert fetched.secondary_categories == frozenset({"catB"})

    @pytest.mark.asyncio
    async def test_find_by_each_membership(self, store):
        await store.initialize()
        await store.put_experience(Experience("e1", owner="u1", primary_category="catA"))
        await store.put_experience(
            Experience("e2", owner="u1", secondary_categories=frozenset({"catA"}))
        )
        await store.put_experience(Experience("e3", owner="u1", color_category="catA"))
        await store.put_experience(Experience("e4", owner="u9", primary_category="catA"))

        primary = await store.find_experiences("u1", primary_category="catA")
        secondary = await store.find_experiences("u1", secondary_category="catA")
        color = await store.find_experiences("u1", color_category="catA")

        assert [e.experience_id for e in primary] == ["e1"]
        assert [e.experience_id for e in secondary] == ["e2"]
        assert [e.experience_id for e in color] == ["e3"]

    @pytest.mark.asyncio
    async def test_find_requires_one_predicate(self, store):
        await store.initialize()
        with pytest.raises(ValueError):
            await store.find_experiences("u1", primary_category="a", color_category="b")

    @pytest.mark.asyncio
    async def test_union_remove_replace(self, store):
        await store.initialize()
        await store.put_experience(Experience("e1", owner="u1"))

        batch = store.batch()
        batch.union_access("e1", "u2")
        batch.union_access("e1", "u3")
        batch.union_access("e1", "u2")
        await batch.commit()
        assert (await store.get_experience("e1")).access_set == frozenset({"u2", "u3"})

        batch = store.batch()
        batch.remove_access("e1", "u2")
        batch.remove_access("e1", "u9")
        await batch.commit()
        assert (await store.get_experience("e1")).access_set == frozenset({"u3"})

        batch = store.batch()
        batch.replace_access("e1", {"u7", "u8"})
        await batch.commit()
        assert (await store.get_experience("e1")).access_set == frozenset({"u7", "u8"})

    @pytest.mark.asyncio
    async def test_union_on_missing_experience_is_noop(self, store):
        await store.initialize()

        batch = store.batch()
        batch.union_access("ghost", "u2")
        await batch.commit()

        assert await store.get_experience("ghost") is None
        assert await store.experiences_shared_with("u2") == []

    @pytest.mark.asyncio
    async def test_replace_on_missing_experience_is_noop(self, store):
        await store.initialize()

        batch = store.batch()
        batch.replace_access("ghost", {"u2", "u3"})
        await batch.commit()

        assert await store.get_experience("ghost") is None
        assert await store.experiences_shared_with("u2") == []
        assert (await store.get_stats())["experience_access"] == 0

    @pytest.mark.asyncio
    async def test_batch_cap_from_store(self, store):
        assert store.batch().max_size == 5

    @pytest.mark.asyncio
    async def test_paging_is_strictly_after_cursor(self, store):
        await store.initialize()
        for eid, ts in [("b", 1), ("a", 1), ("c", 2), ("d", 3)]:
            await store.put_experience(Experience(eid, owner="u1", created_at=ts))

        first = await store.page_experiences(None, 2)
        rest = await store.page_experiences(first[-1].cursor, 10)

        assert [e.experience_id for e in first] == ["a", "b"]
        assert [e.experience_id for e in rest] == ["c", "d"]
        assert await store.page_experiences(Cursor(3, "d"), 10) == []

    @pytest.mark.asyncio
    async def test_experiences_shared_with(self, store):
        await store.initialize()
        await store.put_experience(
            Experience("e1", owner="u1", access_set=frozenset({"u2"}), created_at=1)
        )
        await store.put_experience(
            Experience("e2", owner="u1", access_set=frozenset({"u2", "u3"}), created_at=2)
        )
        await store.put_experience(Experience("e3", owner="u1", created_at=3))

        shared = await store.experiences_shared_with("u2")

        assert [e.experience_id for e in shared] == ["e2", "e1"]
        assert len(await store.experiences_shared_with("u2", limit=1)) == 1

    @pytest.mark.asyncio
    async def test_grant_lifecycle(self, store):
        await store.initialize()
        grant = Grant("g1", "u1", GrantScope.CATEGORY, "catA", "u2", created_at=5)

        await store.put_grant(grant)
        assert await store.get_grant("g1") == grant

        assert await store.delete_grant("g1") == grant
        assert await store.get_grant("g1") is None
        assert await store.delete_grant("g1") is None

    @pytest.mark.asyncio
    async def test_query_grants_filters(self, store):
        await store.initialize()
        await store.put_grant(Grant("g1", "u1", GrantScope.CATEGORY, "catA", "u2"))
        await store.put_grant(Grant("g2", "u1", GrantScope.CATEGORY, "catB", "u3"))
        await store.put_grant(Grant("g3", "u1", GrantScope.COLOR_CATEGORY, "catA", "u2"))
        await store.put_grant(Grant("g4", "u9", GrantScope.CATEGORY, "catA", "u2"))

        found = await store.query_grants("u1", GrantScope.CATEGORY, ["catA", "catB"])
        assert {g.grant_id for g in found} == {"g1", "g2"}

        found = await store.query_grants("u1", GrantScope.CATEGORY, ["catA", "catB"], grantee="u3")
        assert [g.grant_id for g in found] == ["g2"]

        assert await store.query_grants("u1", GrantScope.CATEGORY, []) == []

    @pytest.mark.asyncio
    async def test_query_grants_predicate_cap(self, store):
        await store.initialize()
        with pytest.raises(ValueError):
            await store.query_grants("u1", GrantScope.CATEGORY, [f"c{i}" for i in range(31)])

    @pytest.mark.asyncio
    async def test_category_namespaces(self, store):
        await store.initialize()
        await store.put_category(Category("u1", "catA", CategoryKind.PLAIN, "Trips"))

        assert await store.category_exists("u1", "catA", CategoryKind.PLAIN)
        assert not await store.category_exists("u1", "catA", CategoryKind.COLOR)
        assert not await store.category_exists("u2", "catA", CategoryKind.PLAIN)

    @pytest.mark.asyncio
    async def test_stats(self, store):
        await store.initialize()
        await store.put_experience(Experience("e1", owner="u1", access_set=frozenset({"u2"})))

        stats = await store.get_stats()

        assert stats["experiences"] == 1
        assert stats["experience_access"] == 1
        assert stats["grants"] == 0

    @pytest.mark.asyncio
    async def test_unopenable_database_is_transient(self, data_dir):
        os.mkdir(os.path.join(data_dir, "access.db"))
        store = SqliteStore(data_dir, wal_mode=False)

        with pytest.raises(TransientStoreError) as exc_info:
            await store.initialize()
        assert exc_info.value.operation == "initialize"
