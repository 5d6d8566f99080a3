"""
Base protocols and types for the item and grant stores.

This module defines the ItemStore and GrantStore protocols that every
backend implements, the document types they exchange, and the small
data-access helpers shared by the engine (write batches, predicate
chunking, experience source extraction).

Invariants:
    - Access-set mutations are expressed as union, remove or full replace
    - A WriteBatch never holds more mutations than the store's atomic cap
    - query_grants never receives more scope IDs than max_predicate_values
    - Experiences page in (created_at, experience_id) order

How to change safely:
    - Protocol changes require updating all implementations
    - New grant scopes must be reflected in ExperienceSources
    - Keep Grant.from_dict strict; malformed grants are dropped, not guessed
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable

from ..errors import BatchLimitExceeded, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GrantScope(Enum):
    """What a grant targets."""

    DIRECT_ITEM = "direct-item"
    CATEGORY = "category"
    COLOR_CATEGORY = "color-category"


class AccessLevel(Enum):
    """Access level carried on a grant.

    Only downstream authorization reads this; access-set membership
    does not depend on it.
    """

    VIEW = "view"
    EDIT = "edit"


class CategoryKind(Enum):
    """Category namespace."""

    PLAIN = "plain"
    COLOR = "color"


@dataclass(frozen=True)
class Grant:
    """A record authorizing one user to access an item or category of another.

    Attributes:
        grant_id: Document identifier
        owner: User who controls the shared item or category
        scope: What the grant targets
        scope_id: Experience ID (direct-item) or category ID
        grantee: User receiving access
        access_level: View or edit
        created_at: Creation timestamp (Unix ms)
    """

    grant_id: str
    owner: str
    scope: GrantScope
    scope_id: str
    grantee: str
    access_level: AccessLevel = AccessLevel.VIEW
    created_at: int = 0

    @property
    def is_self_grant(self) -> bool:
        return self.owner == self.grantee

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage or transport."""
        return {
            "grant_id": self.grant_id,
            "owner": self.owner,
            "scope": self.scope.value,
            "scope_id": self.scope_id,
            "grantee": self.grantee,
            "access_level": self.access_level.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Grant:
        """Create from dictionary representation.

        Args:
            data: Grant dictionary

        Returns:
            Grant instance

        Raises:
            ValidationError: If required fields are missing or invalid
        """
        if not isinstance(data, dict):
            raise ValidationError(f"Grant must be an object, got {type(data).__name__}")

        required = ["owner", "scope", "scope_id", "grantee"]
        missing = [f for f in required if not data.get(f)]
        if missing:
            raise ValidationError(f"Missing required grant fields: {missing}", field_name=missing[0])

        try:
            scope = GrantScope(data["scope"])
        except ValueError:
            valid = [s.value for s in GrantScope]
            raise ValidationError(
                f"Invalid grant scope '{data['scope']}', must be one of {valid}",
                field_name="scope",
            )

        try:
            access_level = AccessLevel(data.get("access_level") or AccessLevel.VIEW.value)
        except ValueError:
            raise ValidationError(
                f"Invalid access level '{data.get('access_level')}'",
                field_name="access_level",
            )

        try:
            created_at = int(data.get("created_at") or 0)
        except (TypeError, ValueError):
            raise ValidationError(
                f"Invalid grant created_at '{data.get('created_at')}', must be Unix ms",
                field_name="created_at",
            )

        return cls(
            grant_id=str(data.get("grant_id") or ""),
            owner=str(data["owner"]),
            scope=scope,
            scope_id=str(data["scope_id"]),
            grantee=str(data["grantee"]),
            access_level=access_level,
            created_at=created_at,
        )


@dataclass(frozen=True)
class Experience:
    """An owned item and its category memberships.

    Attributes:
        experience_id: Document identifier
        owner: Owning user
        primary_category: Primary category ID (optional)
        secondary_categories: Additional category IDs
        color_category: Color category ID (optional)
        access_set: Denormalized grantee IDs able to read this experience
        created_at: Creation timestamp (Unix ms), first paging key
    """

    experience_id: str
    owner: str
    primary_category: str | None = None
    secondary_categories: frozenset[str] = field(default_factory=frozenset)
    color_category: str | None = None
    access_set: frozenset[str] = field(default_factory=frozenset)
    created_at: int = 0

    @property
    def cursor(self) -> Cursor:
        return Cursor(created_at=self.created_at, experience_id=self.experience_id)


@dataclass(frozen=True)
class Category:
    """A user-owned grouping; carries no access information."""

    owner: str
    category_id: str
    kind: CategoryKind = CategoryKind.PLAIN
    name: str = ""


@dataclass(frozen=True, order=True)
class Cursor:
    """Stable paging position over experiences.

    Ordered by creation time with the document ID as tiebreak. Encoded as
    "<created_at>:<experience_id>" for operators to pass back on resume.
    """

    created_at: int
    experience_id: str

    def encode(self) -> str:
        return f"{self.created_at}:{self.experience_id}"

    @classmethod
    def decode(cls, value: str) -> Cursor:
        """Parse an encoded cursor.

        Raises:
            ValueError: If the cursor is malformed
        """
        created_str, sep, experience_id = value.partition(":")
        if not sep or not experience_id:
            raise ValueError(f"Invalid cursor: {value!r}")
        try:
            created_at = int(created_str)
        except ValueError:
            raise ValueError(f"Invalid cursor timestamp: {value!r}")
        return cls(created_at=created_at, experience_id=experience_id)


@dataclass(frozen=True)
class ExperienceSources:
    """Every grant target that can reach one experience.

    Attributes:
        experience_id: Target for direct-item grants
        categories: Plain category IDs (primary and secondary), sorted
        color_category: Target for color-category grants
    """

    experience_id: str
    categories: tuple[str, ...]
    color_category: str | None

    @classmethod
    def of(cls, experience: Experience) -> ExperienceSources:
        categories = set(experience.secondary_categories)
        if experience.primary_category:
            categories.add(experience.primary_category)
        return cls(
            experience_id=experience.experience_id,
            categories=tuple(sorted(categories)),
            color_category=experience.color_category or None,
        )


def chunked(values: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Split a sequence into consecutive chunks of at most `size` items."""
    if size < 1:
        raise ValueError("Chunk size must be positive")
    for i in range(0, len(values), size):
        yield values[i : i + size]


class MutationOp(Enum):
    """Access-set mutation primitives."""

    UNION = "union"
    REMOVE = "remove"
    REPLACE = "replace"


@dataclass(frozen=True)
class AccessMutation:
    """One access-set write inside a batch."""

    op: MutationOp
    experience_id: str
    user_ids: frozenset[str]


class WriteBatch:
    """Bounded atomic multi-document batch of access-set mutations.

    Mutations are buffered and handed to the store in one call on commit();
    the store applies them all or none. Adding past the store's cap raises
    BatchLimitExceeded instead of silently splitting.

    Example:
        >>> batch = store.batch()
        >>> batch.union_access("exp_1", "user_2")
        >>> await batch.commit()
    """

    def __init__(
        self,
        committer: Callable[[list[AccessMutation]], Awaitable[None]],
        max_size: int,
    ) -> None:
        self._committer = committer
        self.max_size = max_size
        self._mutations: list[AccessMutation] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._mutations)

    @property
    def mutations(self) -> list[AccessMutation]:
        return list(self._mutations)

    def union_access(self, experience_id: str, user_id: str) -> None:
        self._append(AccessMutation(MutationOp.UNION, experience_id, frozenset({user_id})))

    def remove_access(self, experience_id: str, user_id: str) -> None:
        self._append(AccessMutation(MutationOp.REMOVE, experience_id, frozenset({user_id})))

    def replace_access(self, experience_id: str, user_ids: Iterable[str]) -> None:
        self._append(AccessMutation(MutationOp.REPLACE, experience_id, frozenset(user_ids)))

    def _append(self, mutation: AccessMutation) -> None:
        if self._committed:
            raise RuntimeError("WriteBatch already committed")
        if len(self._mutations) >= self.max_size:
            raise BatchLimitExceeded(self.max_size)
        self._mutations.append(mutation)

    async def commit(self) -> None:
        """Apply every buffered mutation atomically.

        Raises:
            TransientStoreError: If the store is unavailable
        """
        if self._committed:
            raise RuntimeError("WriteBatch already committed")
        self._committed = True
        if not self._mutations:
            return
        await self._committer(list(self._mutations))


@runtime_checkable
class ItemStore(Protocol):
    """Protocol for the experience (item) store.

    Besides point reads and scans, the store owns the denormalized
    access-set field and exposes it only through WriteBatch primitives.
    """

    max_batch_size: int

    @abstractmethod
    async def get_experience(self, experience_id: str) -> Experience | None:
        """Point read of one experience."""
        ...

    @abstractmethod
    async def put_experience(self, experience: Experience) -> None:
        """Create or overwrite an experience document, access_set included."""
        ...

    @abstractmethod
    async def find_experiences(
        self,
        owner: str,
        *,
        primary_category: str | None = None,
        secondary_category: str | None = None,
        color_category: str | None = None,
    ) -> list[Experience]:
        """Scan an owner's experiences on exactly one membership predicate.

        Raises:
            ValueError: If zero or several predicates are given
            TransientStoreError: If the store is unavailable
        """
        ...

    @abstractmethod
    async def page_experiences(self, after: Cursor | None, limit: int) -> list[Experience]:
        """Return up to `limit` experiences strictly after `after` in cursor order."""
        ...

    @abstractmethod
    async def experiences_shared_with(self, user_id: str, limit: int = 100) -> list[Experience]:
        """Single-predicate read path: experiences whose access_set contains the user."""
        ...

    @abstractmethod
    async def put_category(self, category: Category) -> None:
        ...

    @abstractmethod
    async def category_exists(self, owner: str, category_id: str, kind: CategoryKind) -> bool:
        ...

    @abstractmethod
    def batch(self) -> WriteBatch:
        """Start a bounded atomic write batch."""
        ...


@runtime_checkable
class GrantStore(Protocol):
    """Protocol for the normalized grant table."""

    max_predicate_values: int

    @abstractmethod
    async def put_grant(self, grant: Grant) -> None:
        ...

    @abstractmethod
    async def get_grant(self, grant_id: str) -> Grant | None:
        ...

    @abstractmethod
    async def delete_grant(self, grant_id: str) -> Grant | None:
        """Delete a grant document, returning it if it existed."""
        ...

    @abstractmethod
    async def query_grants(
        self,
        owner: str,
        scope: GrantScope,
        scope_ids: Sequence[str],
        grantee: str | None = None,
    ) -> list[Grant]:
        """Live grants from `owner` with `scope` and scope_id in `scope_ids`.

        Raises:
            ValueError: If scope_ids exceeds max_predicate_values
            TransientStoreError: If the store is unavailable
        """
        ...


def check_predicate_values(scope_ids: Sequence[str], limit: int) -> None:
    """Enforce the per-query `in` predicate cap shared by all backends."""
    if len(scope_ids) > limit:
        raise ValueError(
            f"Predicate list of {len(scope_ids)} values exceeds store limit of {limit}; "
            "callers must chunk"
        )


def check_single_predicate(**predicates: str | None) -> tuple[str, str]:
    """Return the one (name, value) membership predicate that was set."""
    given = [(name, value) for name, value in predicates.items() if value is not None]
    if len(given) != 1:
        raise ValueError(
            f"Exactly one membership predicate is required, got {[name for name, _ in given]}"
        )
    return given[0]
