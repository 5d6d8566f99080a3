"""
In-memory item and grant store for testing.

This module provides a dict-backed store implementing both ItemStore and
GrantStore for:
- Unit tests
- Integration tests of the handlers and reconciliation job
- Local development without a database file

Invariants:
    - All data is lost on process exit
    - Enforces the same batch and predicate caps as production backends
    - A batch is applied all-or-nothing

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the ItemStore and GrantStore protocols
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import replace

from .base import (
    AccessMutation,
    Category,
    CategoryKind,
    Cursor,
    Experience,
    Grant,
    GrantScope,
    MutationOp,
    WriteBatch,
    check_predicate_values,
    check_single_predicate,
)

logger = logging.getLogger(__name__)


class InMemoryStore:
    """In-memory implementation of ItemStore and GrantStore.

    Besides the protocol methods it records what the engine asked of it
    (commit sizes, grant query sizes) and can fail selected operations,
    so tests can check batching and error paths.

    Example:
        >>> store = InMemoryStore()
        >>> await store.put_experience(Experience("e1", owner="u1"))
        >>> store.fail_next("commit_batch", TransientStoreError("down"))
    """

    def __init__(self, max_batch_size: int = 450, max_predicate_values: int = 30) -> None:
        self.max_batch_size = max_batch_size
        self.max_predicate_values = max_predicate_values
        self._experiences: dict[str, Experience] = {}
        self._grants: dict[str, Grant] = {}
        self._categories: dict[tuple[str, CategoryKind, str], Category] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._lock = asyncio.Lock()
        self.commit_sizes: list[int] = []
        self.grant_query_sizes: list[int] = []

    async def initialize(self) -> None:
        """No-op; present for parity with SqliteStore."""

    # Testing helpers

    def fail_next(self, operation: str, exc: Exception, times: int = 1) -> None:
        """Make the next `times` calls of `operation` raise `exc`.

        Operation names match the method names, plus "commit_batch" for
        WriteBatch.commit().
        """
        self._failures.setdefault(operation, []).extend([exc] * times)

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def access_set(self, experience_id: str) -> frozenset[str]:
        """Current access-set of an experience (testing helper)."""
        experience = self._experiences.get(experience_id)
        return experience.access_set if experience else frozenset()

    def corrupt_access_set(self, experience_id: str, user_ids: set[str]) -> None:
        """Overwrite an access-set bypassing batches (testing helper)."""
        experience = self._experiences[experience_id]
        self._experiences[experience_id] = replace(experience, access_set=frozenset(user_ids))

    # Experiences

    async def get_experience(self, experience_id: str) -> Experience | None:
        self._maybe_fail("get_experience")
        return self._experiences.get(experience_id)

    async def put_experience(self, experience: Experience) -> None:
        self._maybe_fail("put_experience")
        if not experience.created_at:
            experience = replace(experience, created_at=int(time.time() * 1000))
        self._experiences[experience.experience_id] = experience

    async def find_experiences(
        self,
        owner: str,
        *,
        primary_category: str | None = None,
        secondary_category: str | None = None,
        color_category: str | None = None,
    ) -> list[Experience]:
        name, value = check_single_predicate(
            primary_category=primary_category,
            secondary_category=secondary_category,
            color_category=color_category,
        )
        self._maybe_fail("find_experiences")

        def matches(experience: Experience) -> bool:
            if name == "secondary_category":
                return value in experience.secondary_categories
            return getattr(experience, name) == value

        return sorted(
            (e for e in self._experiences.values() if e.owner == owner and matches(e)),
            key=lambda e: e.experience_id,
        )

    async def page_experiences(self, after: Cursor | None, limit: int) -> list[Experience]:
        self._maybe_fail("page_experiences")
        ordered = sorted(self._experiences.values(), key=lambda e: e.cursor)
        if after is not None:
            ordered = [e for e in ordered if e.cursor > after]
        return ordered[:limit]

    async def experiences_shared_with(self, user_id: str, limit: int = 100) -> list[Experience]:
        self._maybe_fail("experiences_shared_with")
        shared = [e for e in self._experiences.values() if user_id in e.access_set]
        shared.sort(key=lambda e: (-e.created_at, e.experience_id))
        return shared[:limit]

    # Categories

    async def put_category(self, category: Category) -> None:
        self._categories[(category.owner, category.kind, category.category_id)] = category

    async def category_exists(self, owner: str, category_id: str, kind: CategoryKind) -> bool:
        self._maybe_fail("category_exists")
        return (owner, kind, category_id) in self._categories

    # Access-set writes

    def batch(self) -> WriteBatch:
        return WriteBatch(self._commit_mutations, self.max_batch_size)

    async def _commit_mutations(self, mutations: list[AccessMutation]) -> None:
        async with self._lock:
            self._maybe_fail("commit_batch")

            # Stage every mutation before publishing any of them
            staged: dict[str, Experience] = {}
            for mutation in mutations:
                current = staged.get(mutation.experience_id) or self._experiences.get(
                    mutation.experience_id
                )
                if current is None:
                    continue
                if mutation.op == MutationOp.UNION:
                    access = current.access_set | mutation.user_ids
                elif mutation.op == MutationOp.REMOVE:
                    access = current.access_set - mutation.user_ids
                else:
                    access = mutation.user_ids
                staged[mutation.experience_id] = replace(current, access_set=frozenset(access))

            self._experiences.update(staged)
            self.commit_sizes.append(len(mutations))

    # Grants

    async def put_grant(self, grant: Grant) -> None:
        self._maybe_fail("put_grant")
        if not grant.grant_id:
            grant = replace(grant, grant_id=str(uuid.uuid4()))
        if not grant.created_at:
            grant = replace(grant, created_at=int(time.time() * 1000))
        self._grants[grant.grant_id] = grant

    async def get_grant(self, grant_id: str) -> Grant | None:
        self._maybe_fail("get_grant")
        return self._grants.get(grant_id)

    async def delete_grant(self, grant_id: str) -> Grant | None:
        self._maybe_fail("delete_grant")
        return self._grants.pop(grant_id, None)

    async def query_grants(
        self,
        owner: str,
        scope: GrantScope,
        scope_ids: Sequence[str],
        grantee: str | None = None,
    ) -> list[Grant]:
        check_predicate_values(scope_ids, self.max_predicate_values)
        self._maybe_fail("query_grants")
        self.grant_query_sizes.append(len(scope_ids))

        wanted = set(scope_ids)
        return [
            g
            for g in self._grants.values()
            if g.owner == owner
            and g.scope == scope
            and g.scope_id in wanted
            and (grantee is None or g.grantee == grantee)
        ]
