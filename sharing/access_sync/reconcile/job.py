"""
Reconciliation job for access-sync.

Rebuilds every experience's access-set from the grant table alone. It is
the repair path for anything the incremental handlers missed: dropped
events, re-categorized experiences, races on delete, corrupted caches.

For each experience, in (created_at, experience_id) order:
1. Derive its sources (direct ID, plain categories, color category)
2. Query every grant from its owner on any of those sources
3. Replace the access-set with exactly that grantee set (owner excluded)

Invariants:
    - Writes are full replacements, so re-running a page is harmless
    - Dry runs never write and report would-be counts
    - A live run requires explicit confirmation
    - Pages resume strictly after the given cursor
    - One failed document or page never stops the job; a failed page read does

How to change safely:
    - New grant scopes must be queried in compute_access
    - Always dry-run against production data before a live run
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from ..config import ReconcileConfig
from ..errors import ConfirmationRequiredError, PartialBatchFailure, ValidationError
from ..store.base import (
    Cursor,
    Experience,
    ExperienceSources,
    GrantScope,
    GrantStore,
    ItemStore,
    chunked,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOptions:
    """Operator-supplied reconciliation parameters.

    Attributes:
        batch_size: Experiences read per page
        max_items: Experiences processed in this invocation
        dry_run: Compute and count, write nothing
        confirm: Explicit confirmation for a live run
        cursor: Encoded cursor to resume after
    """

    batch_size: int = 100
    max_items: int = 1000
    dry_run: bool = False
    confirm: bool = False
    cursor: str | None = None

    def validate(self) -> Cursor | None:
        """Check the options and decode the cursor.

        Raises:
            ConfirmationRequiredError: If a live run is not confirmed
            ValidationError: If a size or the cursor is invalid
        """
        if self.batch_size < 1:
            raise ValidationError("batch_size must be positive", field_name="batch_size")
        if self.max_items < 1:
            raise ValidationError("max_items must be positive", field_name="max_items")
        if not self.dry_run and not self.confirm:
            raise ConfirmationRequiredError()
        if not self.cursor:
            return None
        try:
            return Cursor.decode(self.cursor)
        except ValueError as e:
            raise ValidationError(str(e), field_name="cursor") from e


@dataclass
class ReconcileResult:
    """Summary of one reconciliation invocation.

    Attributes:
        processed: Experiences examined
        updated: Experiences whose access-set changed (or would change)
        failed: Experiences whose recomputation failed
        duration_ms: Wall time of the invocation
        dry_run: Whether writes were suppressed
        next_cursor: Cursor to resume after, None if nothing was read
        done: Whether the scan reached the last experience
        failed_pages: Cursors of pages whose commit failed
    """

    processed: int = 0
    updated: int = 0
    failed: int = 0
    duration_ms: int = 0
    dry_run: bool = False
    next_cursor: str | None = None
    done: bool = False
    failed_pages: list[str | None] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ReconciliationJob:
    """Rebuilds access-sets from the grant table.

    Safe to run alongside live handlers and alongside other instances of
    itself: every write is an idempotent full replacement.

    Example:
        >>> job = ReconciliationJob(store, store)
        >>> result = await job.reconcile(batch_size=100, max_items=1000, dry_run=True)
        >>> result.next_cursor
        '1730000000000:exp_42'
    """

    def __init__(
        self,
        items: ItemStore,
        grants: GrantStore,
        config: ReconcileConfig | None = None,
        chunk_size: int = 30,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if chunk_size > grants.max_predicate_values:
            raise ValueError(
                f"Chunk size {chunk_size} exceeds store predicate limit "
                f"{grants.max_predicate_values}"
            )
        self.items = items
        self.grants = grants
        self.config = config or ReconcileConfig()
        self.chunk_size = chunk_size
        self._sleep = sleep

    async def run(self, options: ReconcileOptions) -> ReconcileResult:
        """Operator entry point: validate options, then reconcile.

        Raises:
            ConfirmationRequiredError: If a live run is not confirmed
            ValidationError: If the options are invalid
        """
        after = options.validate()
        return await self.reconcile(
            batch_size=options.batch_size,
            max_items=options.max_items,
            dry_run=options.dry_run,
            after=after,
        )

    async def reconcile(
        self,
        batch_size: int,
        max_items: int,
        dry_run: bool,
        after: Cursor | None = None,
    ) -> ReconcileResult:
        """Rebuild access-sets for up to max_items experiences after `after`.

        Raises:
            TransientStoreError: If a page cannot be read
        """
        started = time.monotonic()
        result = ReconcileResult(dry_run=dry_run)
        cursor = after

        logger.info(
            "Starting reconciliation",
            extra={
                "batch_size": batch_size,
                "max_items": max_items,
                "dry_run": dry_run,
                "cursor": cursor.encode() if cursor else None,
            },
        )

        while result.processed < max_items:
            if result.processed:
                await self._sleep(self.config.page_delay_ms / 1000.0)

            limit = min(batch_size, max_items - result.processed)
            page = await self.items.page_experiences(cursor, limit)
            if not page:
                result.done = True
                break

            page_start = cursor
            rewrites = await self._reconcile_page(page, result)

            if rewrites and not dry_run:
                try:
                    await self._commit_page(rewrites, page_start, len(page))
                except PartialBatchFailure as e:
                    logger.error(
                        e.message, extra={"cursor": e.cursor, "page_size": e.page_size}
                    )
                    result.failed_pages.append(e.cursor)
                else:
                    result.updated += len(rewrites)
            else:
                result.updated += len(rewrites)

            result.processed += len(page)
            cursor = page[-1].cursor
            result.next_cursor = cursor.encode()

            if len(page) < limit:
                result.done = True
                break

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Reconciliation finished", extra=result.to_dict())
        return result

    async def _reconcile_page(
        self, page: list[Experience], result: ReconcileResult
    ) -> dict[str, set[str]]:
        """Compute access-sets for a page; return the ones that differ."""
        rewrites: dict[str, set[str]] = {}
        for experience in page:
            try:
                computed = await self.compute_access(experience)
            except Exception as e:
                result.failed += 1
                logger.error(
                    f"Failed to recompute access for experience: {e}",
                    extra={"experience_id": experience.experience_id},
                )
                continue

            if computed != set(experience.access_set):
                rewrites[experience.experience_id] = computed
                logger.debug(
                    "Access-set drift",
                    extra={
                        "experience_id": experience.experience_id,
                        "missing": sorted(computed - experience.access_set),
                        "extra": sorted(experience.access_set - computed),
                    },
                )
        return rewrites

    async def _commit_page(
        self, rewrites: dict[str, set[str]], page_start: Cursor | None, page_size: int
    ) -> None:
        """Write a page of rewrites.

        Raises:
            PartialBatchFailure: If any batch of the page fails to commit
        """
        ids = sorted(rewrites)
        try:
            for chunk in chunked(ids, self.items.max_batch_size):
                batch = self.items.batch()
                for experience_id in chunk:
                    batch.replace_access(experience_id, rewrites[experience_id])
                await batch.commit()
        except Exception as e:
            raise PartialBatchFailure(
                f"Failed to commit reconciliation page: {e}",
                cursor=page_start.encode() if page_start else None,
                page_size=page_size,
            ) from e

    async def compute_access(self, experience: Experience) -> set[str]:
        """Grantees of every live grant reaching the experience, owner excluded."""
        sources = ExperienceSources.of(experience)
        owner = experience.owner

        grants = await self.grants.query_grants(
            owner, GrantScope.DIRECT_ITEM, [sources.experience_id]
        )
        if sources.color_category:
            grants += await self.grants.query_grants(
                owner, GrantScope.COLOR_CATEGORY, [sources.color_category]
            )
        for chunk in chunked(sources.categories, self.chunk_size):
            grants += await self.grants.query_grants(owner, GrantScope.CATEGORY, chunk)

        return {g.grantee for g in grants if g.grantee != owner}
