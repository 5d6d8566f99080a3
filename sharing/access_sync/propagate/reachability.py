"""
Reachability evaluation for revocation.

Before a grantee is removed from an experience's access-set, every other
route to that experience is checked: a direct-item grant, a grant on any
of its plain categories, or a grant on its color category. Removal only
happens when none survives.

Invariants:
    - Grant queries are filtered by owner and grantee
    - Category IDs are queried in chunks no larger than the store's cap
    - False is returned only after every source has been checked
    - The owner never "still has access" through a grant
"""

from __future__ import annotations

import logging

from ..store.base import Experience, ExperienceSources, GrantScope, GrantStore, chunked

logger = logging.getLogger(__name__)


class ReachabilityEvaluator:
    """Decides whether a grantee still reaches an experience."""

    def __init__(self, grants: GrantStore, chunk_size: int = 30) -> None:
        if chunk_size > grants.max_predicate_values:
            raise ValueError(
                f"Chunk size {chunk_size} exceeds store predicate limit "
                f"{grants.max_predicate_values}"
            )
        self.grants = grants
        self.chunk_size = chunk_size

    async def still_has_access(self, owner: str, grantee: str, experience: Experience) -> bool:
        """Whether any live grant from owner to grantee reaches the experience.

        Raises:
            TransientStoreError: If the grant store is unavailable
        """
        if owner == grantee:
            return False

        sources = ExperienceSources.of(experience)

        if await self.grants.query_grants(
            owner, GrantScope.DIRECT_ITEM, [sources.experience_id], grantee=grantee
        ):
            return True

        if sources.color_category and await self.grants.query_grants(
            owner, GrantScope.COLOR_CATEGORY, [sources.color_category], grantee=grantee
        ):
            return True

        for chunk in chunked(sources.categories, self.chunk_size):
            if await self.grants.query_grants(owner, GrantScope.CATEGORY, chunk, grantee=grantee):
                return True

        logger.debug(
            "No remaining grant reaches experience",
            extra={"owner": owner, "grantee": grantee, "experience_id": experience.experience_id},
        )
        return False
