"""
Unit tests for store types and helpers.

Tests cover:
- Grant parsing and validation
- Cursor encoding and ordering
- Experience source extraction
- Chunking
- WriteBatch limits and lifecycle
"""

import pytest

from sharing.access_sync.errors import BatchLimitExceeded, ValidationError
from sharing.access_sync.store.base import (
    AccessLevel,
    Cursor,
    Experience,
    ExperienceSources,
    Grant,
    GrantScope,
    MutationOp,
    WriteBatch,
    check_predicate_values,
    check_single_predicate,
    chunked,
)


class TestGrantFromDict:
    """Tests for Grant.from_dict()."""

    def test_valid_grant(self):
        grant = Grant.from_dict(
            {
                "grant_id": "g1",
                "owner": "u1",
                "scope": "color-category",
                "scope_id": "colorX",
                "grantee": "u4",
                "access_level": "edit",
                "created_at": 1700000000000,
            }
        )

        assert grant.scope == GrantScope.COLOR_CATEGORY
        assert grant.access_level == AccessLevel.EDIT
        assert grant.created_at == 1700000000000

    def test_access_level_defaults_to_view(self):
        grant = Grant.from_dict(
            {"owner": "u1", "scope": "category", "scope_id": "catA", "grantee": "u2"}
        )
        assert grant.access_level == AccessLevel.VIEW
        assert grant.grant_id == ""

    def test_missing_grantee(self):
        with pytest.raises(ValidationError) as exc_info:
            Grant.from_dict({"owner": "u1", "scope": "category", "scope_id": "catA"})
        assert exc_info.value.field_name == "grantee"

    def test_unknown_scope(self):
        with pytest.raises(ValidationError, match="Invalid grant scope"):
            Grant.from_dict(
                {"owner": "u1", "scope": "folder", "scope_id": "f1", "grantee": "u2"}
            )

    def test_unknown_access_level(self):
        with pytest.raises(ValidationError) as exc_info:
            Grant.from_dict(
                {
                    "owner": "u1",
                    "scope": "category",
                    "scope_id": "catA",
                    "grantee": "u2",
                    "access_level": "admin",
                }
            )
        assert exc_info.value.field_name == "access_level"

    def test_not_an_object(self):
        with pytest.raises(ValidationError):
            Grant.from_dict(["u1", "u2"])

    def test_self_grant(self):
        grant = Grant("g1", "u1", GrantScope.CATEGORY, "catA", "u1")
        assert grant.is_self_grant

    def test_to_dict_round_trip(self):
        grant = Grant("g1", "u1", GrantScope.DIRECT_ITEM, "e1", "u3", AccessLevel.EDIT, 5)
        assert Grant.from_dict(grant.to_dict()) == grant


class TestCursor:
    """Tests for Cursor."""

    def test_encode_decode(self):
        cursor = Cursor(created_at=1700000000000, experience_id="e42")
        assert cursor.encode() == "1700000000000:e42"
        assert Cursor.decode(cursor.encode()) == cursor

    def test_id_may_contain_colon(self):
        assert Cursor.decode("5:exp:7").experience_id == "exp:7"

    @pytest.mark.parametrize("value", ["", "123", "abc:e1", "12:"])
    def test_decode_rejects_malformed(self, value):
        with pytest.raises(ValueError):
            Cursor.decode(value)

    def test_ordering_by_time_then_id(self):
        assert Cursor(1, "b") < Cursor(2, "a")
        assert Cursor(1, "a") < Cursor(1, "b")

    def test_experience_cursor(self):
        experience = Experience("e1", owner="u1", created_at=10)
        assert experience.cursor == Cursor(10, "e1")


class TestExperienceSources:
    """Tests for ExperienceSources.of()."""

    def test_collects_all_sources(self):
        experience = Experience(
            "e1",
            owner="u1",
            primary_category="catB",
            secondary_categories=frozenset({"catA", "catB", "catC"}),
            color_category="colorX",
        )

        sources = ExperienceSources.of(experience)

        assert sources.experience_id == "e1"
        assert sources.categories == ("catA", "catB", "catC")
        assert sources.color_category == "colorX"

    def test_uncategorized(self):
        sources = ExperienceSources.of(Experience("e1", owner="u1", color_category=""))
        assert sources.categories == ()
        assert sources.color_category is None


class TestChunking:
    """Tests for chunked() and predicate checks."""

    def test_chunk_sizes(self):
        chunks = list(chunked(list(range(65)), 30))
        assert [len(c) for c in chunks] == [30, 30, 5]
        assert [v for c in chunks for v in c] == list(range(65))

    def test_empty(self):
        assert list(chunked([], 30)) == []

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            list(chunked([1], 0))

    def test_predicate_cap(self):
        check_predicate_values(["x"] * 30, 30)
        with pytest.raises(ValueError, match="must chunk"):
            check_predicate_values(["x"] * 31, 30)

    def test_single_predicate(self):
        assert check_single_predicate(a=None, b="x") == ("b", "x")
        with pytest.raises(ValueError):
            check_single_predicate(a="x", b="y")
        with pytest.raises(ValueError):
            check_single_predicate(a=None)


class TestWriteBatch:
    """Tests for WriteBatch."""

    @pytest.fixture
    def committed(self):
        return []

    @pytest.fixture
    def batch(self, committed):
        async def commit(mutations):
            committed.append(mutations)

        return WriteBatch(commit, max_size=3)

    @pytest.mark.asyncio
    async def test_commit_hands_over_all_mutations(self, batch, committed):
        batch.union_access("e1", "u2")
        batch.remove_access("e2", "u3")
        batch.replace_access("e3", ["u4", "u5"])

        await batch.commit()

        assert len(committed) == 1
        ops = [m.op for m in committed[0]]
        assert ops == [MutationOp.UNION, MutationOp.REMOVE, MutationOp.REPLACE]
        assert committed[0][2].user_ids == frozenset({"u4", "u5"})

    def test_limit_enforced(self, batch):
        for i in range(3):
            batch.union_access(f"e{i}", "u2")
        with pytest.raises(BatchLimitExceeded):
            batch.union_access("e4", "u2")
        assert len(batch) == 3

    @pytest.mark.asyncio
    async def test_empty_commit_is_noop(self, batch, committed):
        await batch.commit()
        assert committed == []

    @pytest.mark.asyncio
    async def test_single_use(self, batch):
        await batch.commit()
        with pytest.raises(RuntimeError):
            await batch.commit()
        with pytest.raises(RuntimeError):
            batch.union_access("e1", "u2")
