"""
Category membership resolution.

Given (owner, category_id, namespace), return every experience of that
owner belonging to the category:
- Plain category: union of the primary_category scan and the
  secondary_categories scan, deduplicated by experience ID
- Color category: one scan on color_category

Invariants:
    - Only the owner's experiences are returned
    - The grant's scope tag picks the namespace; IDs are never reinterpreted
    - Namespace checks only log, they never change which scan runs

How to change safely:
    - A new membership field needs a new scan here and a new source in
      ExperienceSources
"""

from __future__ import annotations

import logging

from ..store.base import CategoryKind, Experience, ItemStore

logger = logging.getLogger(__name__)


class CategoryMembershipResolver:
    """Resolves a category grant's target to experiences.

    Example:
        >>> resolver = CategoryMembershipResolver(store)
        >>> ids = await resolver.resolve("u1", "catA", is_color_category=False)
    """

    def __init__(self, items: ItemStore, verify_namespace: bool = True) -> None:
        """Initialize the resolver.

        Args:
            items: Item store to scan
            verify_namespace: Check both category namespaces and log mismatches
        """
        self.items = items
        self.verify_namespace = verify_namespace

    async def resolve(self, owner: str, category_id: str, is_color_category: bool) -> set[str]:
        """Return the IDs of the owner's experiences in the category."""
        return set(await self.resolve_experiences(owner, category_id, is_color_category))

    async def resolve_experiences(
        self, owner: str, category_id: str, is_color_category: bool
    ) -> dict[str, Experience]:
        """Return the owner's experiences in the category, keyed by ID.

        Raises:
            TransientStoreError: If the store is unavailable
        """
        if self.verify_namespace:
            await self._check_namespace(owner, category_id, is_color_category)

        if is_color_category:
            found = await self.items.find_experiences(owner, color_category=category_id)
        else:
            found = await self.items.find_experiences(owner, primary_category=category_id)
            found += await self.items.find_experiences(owner, secondary_category=category_id)

        members = {e.experience_id: e for e in found}
        logger.debug(
            "Resolved category membership",
            extra={
                "owner": owner,
                "category_id": category_id,
                "color": is_color_category,
                "members": len(members),
            },
        )
        return members

    async def _check_namespace(self, owner: str, category_id: str, is_color_category: bool) -> None:
        tagged = CategoryKind.COLOR if is_color_category else CategoryKind.PLAIN
        other = CategoryKind.PLAIN if is_color_category else CategoryKind.COLOR

        in_tagged = await self.items.category_exists(owner, category_id, tagged)
        in_other = await self.items.category_exists(owner, category_id, other)

        if in_tagged and in_other:
            logger.warning(
                "Category ID exists in both namespaces; using grant scope",
                extra={"owner": owner, "category_id": category_id, "scope_kind": tagged.value},
            )
        elif not in_tagged and in_other:
            logger.warning(
                "Category ID only exists in the other namespace; using grant scope",
                extra={"owner": owner, "category_id": category_id, "scope_kind": tagged.value},
            )
        elif not in_tagged:
            logger.info(
                "Category record not found",
                extra={"owner": owner, "category_id": category_id, "scope_kind": tagged.value},
            )
