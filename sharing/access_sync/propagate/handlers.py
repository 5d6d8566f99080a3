"""
Grant lifecycle handlers.

Each grant moves absent -> live -> removed. The handlers translate those
transitions into access-set mutations:

- created: union the grantee into every experience the grant reaches
- updated: access-level changes touch nothing; a changed grantee or
  target re-runs the create-side union for the new grant
- deleted: for every experience the grant reached, remove the grantee
  only if no other live grant still reaches it

Invariants:
    - Self-grants never change any access-set
    - Mutations are set-union or set-remove, never read-splice-write
    - No batch exceeds write_batch_size experiences
    - Redelivering an event leaves the same final state as one delivery

How to change safely:
    - Every change must keep the duplicate and reordered delivery tests green
    - Never make a removal unconditional; check reachability first
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from ..config import PropagationConfig
from ..store.base import Experience, Grant, GrantScope, GrantStore, ItemStore, WriteBatch, chunked
from .reachability import ReachabilityEvaluator
from .resolver import CategoryMembershipResolver

logger = logging.getLogger(__name__)


@dataclass
class HandlerResult:
    """Outcome of handling one grant lifecycle event.

    Attributes:
        action: "union", "remove" or "noop"
        grant_id: Grant the event was about
        targeted: Experiences the grant reaches
        mutated: Access-set mutations committed
        retained: Removals skipped because another grant still reaches
        batches: Atomic batches committed
        reason: Why nothing was written, for noops
    """

    action: str
    grant_id: str
    targeted: int = 0
    mutated: int = 0
    retained: int = 0
    batches: int = 0
    reason: str | None = None


class GrantEventHandlers:
    """Applies grant created/updated/deleted events to access-sets.

    Example:
        >>> handlers = GrantEventHandlers(store, store)
        >>> await handlers.on_grant_created(grant)
    """

    def __init__(
        self,
        items: ItemStore,
        grants: GrantStore,
        config: PropagationConfig | None = None,
        resolver: CategoryMembershipResolver | None = None,
        evaluator: ReachabilityEvaluator | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the handlers.

        Args:
            items: Item store holding experiences and access-sets
            grants: Grant store
            config: Batch size, pacing and chunking settings
            resolver: Category membership resolver (built from items if omitted)
            evaluator: Reachability evaluator (built from grants if omitted)
            sleep: Coroutine used for the inter-batch pause

        Raises:
            ValueError: If the batch size exceeds the store's atomic cap
        """
        self.config = config or PropagationConfig()
        if self.config.write_batch_size > items.max_batch_size:
            raise ValueError(
                f"Write batch size {self.config.write_batch_size} exceeds store limit "
                f"{items.max_batch_size}"
            )

        self.items = items
        self.grants = grants
        self.resolver = resolver or CategoryMembershipResolver(
            items, verify_namespace=self.config.verify_category_namespace
        )
        self.evaluator = evaluator or ReachabilityEvaluator(
            grants, chunk_size=self.config.predicate_chunk_size
        )
        self._sleep = sleep

    async def on_grant_created(self, grant: Grant) -> HandlerResult:
        """Union the grantee into every experience the grant reaches.

        Raises:
            TransientStoreError: If the store is unavailable
        """
        if grant.is_self_grant:
            return self._noop(grant, "self-grant")

        targets = await self._targets(grant)
        if not targets:
            return self._noop(grant, "no matching experiences")

        batches = await self._write_in_batches(
            sorted(targets), lambda batch, eid: batch.union_access(eid, grant.grantee)
        )

        logger.info(
            "Propagated grant",
            extra={
                "grant_id": grant.grant_id,
                "owner": grant.owner,
                "grantee": grant.grantee,
                "scope": grant.scope.value,
                "scope_id": grant.scope_id,
                "experiences": len(targets),
                "batches": batches,
            },
        )
        return HandlerResult(
            action="union",
            grant_id=grant.grant_id,
            targeted=len(targets),
            mutated=len(targets),
            batches=batches,
        )

    async def on_grant_updated(self, before: Grant, after: Grant) -> HandlerResult:
        """Handle a grant document update.

        Only the access level normally changes and that never affects
        membership. If the grantee or target changed, the new grant is
        propagated like a creation; the old grantee stays until the old
        grant's deletion is processed.
        """
        same_target = (
            before.owner == after.owner
            and before.grantee == after.grantee
            and before.scope == after.scope
            and before.scope_id == after.scope_id
        )
        if same_target:
            if before.access_level != after.access_level:
                logger.info(
                    "Grant access level changed",
                    extra={
                        "grant_id": after.grant_id,
                        "grantee": after.grantee,
                        "before": before.access_level.value,
                        "after": after.access_level.value,
                    },
                )
            return self._noop(after, "metadata-only update")

        logger.warning(
            "Grant target changed in place; propagating new grant",
            extra={
                "grant_id": after.grant_id,
                "before_grantee": before.grantee,
                "after_grantee": after.grantee,
                "before_scope_id": before.scope_id,
                "after_scope_id": after.scope_id,
            },
        )
        return await self.on_grant_created(after)

    async def on_grant_deleted(self, grant: Grant) -> HandlerResult:
        """Remove the grantee where no other live grant still reaches.

        Raises:
            TransientStoreError: If the store is unavailable
        """
        if grant.is_self_grant:
            return self._noop(grant, "self-grant")

        targets = await self._targets(grant)
        if not targets:
            return self._noop(grant, "no matching experiences")

        to_remove = []
        for experience_id in sorted(targets):
            experience = targets[experience_id]
            if await self.evaluator.still_has_access(grant.owner, grant.grantee, experience):
                continue
            to_remove.append(experience_id)

        retained = len(targets) - len(to_remove)
        batches = await self._write_in_batches(
            to_remove, lambda batch, eid: batch.remove_access(eid, grant.grantee)
        )

        logger.info(
            "Revoked grant",
            extra={
                "grant_id": grant.grant_id,
                "owner": grant.owner,
                "grantee": grant.grantee,
                "scope": grant.scope.value,
                "scope_id": grant.scope_id,
                "removed": len(to_remove),
                "retained": retained,
            },
        )
        return HandlerResult(
            action="remove",
            grant_id=grant.grant_id,
            targeted=len(targets),
            mutated=len(to_remove),
            retained=retained,
            batches=batches,
        )

    async def _targets(self, grant: Grant) -> dict[str, Experience]:
        """Experiences the grant reaches, keyed by ID."""
        if grant.scope == GrantScope.DIRECT_ITEM:
            experience = await self.items.get_experience(grant.scope_id)
            if experience is None:
                logger.info(
                    "Direct grant target not found",
                    extra={"grant_id": grant.grant_id, "experience_id": grant.scope_id},
                )
                return {}
            if experience.owner != grant.owner:
                logger.warning(
                    "Direct grant owner does not own target experience",
                    extra={
                        "grant_id": grant.grant_id,
                        "experience_id": grant.scope_id,
                        "grant_owner": grant.owner,
                        "experience_owner": experience.owner,
                    },
                )
                return {}
            return {experience.experience_id: experience}

        return await self.resolver.resolve_experiences(
            grant.owner,
            grant.scope_id,
            is_color_category=grant.scope == GrantScope.COLOR_CATEGORY,
        )

    async def _write_in_batches(
        self,
        experience_ids: Sequence[str],
        add: Callable[[WriteBatch, str], None],
    ) -> int:
        """Commit one mutation per experience in bounded batches, pausing between them."""
        batches = 0
        for chunk in chunked(experience_ids, self.config.write_batch_size):
            if batches:
                await self._sleep(self.config.inter_batch_delay_ms / 1000.0)
            batch = self.items.batch()
            for experience_id in chunk:
                add(batch, experience_id)
            await batch.commit()
            batches += 1
        return batches

    def _noop(self, grant: Grant, reason: str) -> HandlerResult:
        logger.debug(
            "Grant event needs no access change",
            extra={"grant_id": grant.grant_id, "reason": reason},
        )
        return HandlerResult(action="noop", grant_id=grant.grant_id, reason=reason)
