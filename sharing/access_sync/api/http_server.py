"""
Operator HTTP API for access-sync.

This module provides a small FastAPI application for:
- Triggering reconciliation runs (dry-run or confirmed live)
- The single-predicate read path (experiences shared with a user)
- Inspecting one experience's access-set
- Health checks

Invariants:
    - Maintenance endpoints require the shared secret when one is configured
    - A live reconciliation without confirm=yes is rejected with 400
    - Read endpoints never write

How to change safely:
    - Keep request field names stable; operators script against them
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import json
import logging
import secrets
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .._version import __version__
from ..config import HttpConfig
from ..errors import (
    AccessSyncError,
    ConfirmationRequiredError,
    TransientStoreError,
    ValidationError,
)
from ..reconcile import ReconcileOptions, ReconciliationJob
from ..store.base import Experience, ItemStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["access-sync"])


# --- Request/Response Models ---


class ReconcileRequest(BaseModel):
    """Reconciliation parameters, from query string and/or JSON body."""

    batch_size: int = Field(100, description="Experiences read per page")
    max_items: int = Field(1000, description="Experiences processed in this run")
    dry_run: bool = Field(False, description="Compute and count only")
    confirm: bool | str | None = Field(None, description="Must be 'yes' for a live run")
    cursor: str | None = Field(None, description="Resume after this cursor")
    secret: str | None = Field(None, description="Maintenance secret")

    @property
    def confirmed(self) -> bool:
        return str(self.confirm).lower() in ("yes", "true")


class ReconcileResponse(BaseModel):
    """Reconciliation summary."""

    processed: int
    updated: int
    failed: int
    duration_ms: int
    dry_run: bool
    next_cursor: str | None = None
    done: bool
    failed_pages: list[str | None] = Field(default_factory=list)


class ExperienceResponse(BaseModel):
    """Experience as seen by the read path."""

    experience_id: str
    owner: str
    primary_category: str | None = None
    secondary_categories: list[str] = Field(default_factory=list)
    color_category: str | None = None
    created_at: int

    @classmethod
    def from_experience(cls, experience: Experience) -> ExperienceResponse:
        return cls(
            experience_id=experience.experience_id,
            owner=experience.owner,
            primary_category=experience.primary_category,
            secondary_categories=sorted(experience.secondary_categories),
            color_category=experience.color_category,
            created_at=experience.created_at,
        )


class SharedExperiencesResponse(BaseModel):
    """Experiences visible to one user."""

    user_id: str
    items: list[ExperienceResponse]
    count: int


class AccessSetResponse(BaseModel):
    """One experience's current access-set."""

    experience_id: str
    owner: str
    access_set: list[str]


# --- Dependencies ---


def get_items(request: Request) -> ItemStore:
    """Get the item store from app state."""
    return request.app.state.items


def get_job(request: Request) -> ReconciliationJob:
    """Get the reconciliation job from app state."""
    return request.app.state.job


def get_http_config(request: Request) -> HttpConfig:
    return request.app.state.http_config


def check_secret(config: HttpConfig, presented: str | None) -> None:
    """Reject the call unless it carries the maintenance secret.

    Raises:
        HTTPException: 403 if a secret is configured and does not match
    """
    if not config.maintenance_secret:
        return
    if not presented or not secrets.compare_digest(presented, config.maintenance_secret):
        logger.warning("Rejected maintenance call with missing or wrong secret")
        raise HTTPException(status_code=403, detail="Forbidden")


# --- Maintenance Routes ---


@router.post("/maintenance/reconcile", response_model=ReconcileResponse)
async def reconcile(
    request: Request,
    job: ReconciliationJob = Depends(get_job),
    config: HttpConfig = Depends(get_http_config),
) -> ReconcileResponse:
    """Rebuild access-sets from the grant table.

    Parameters may come from the query string or a JSON body; body fields
    win. A live run needs confirm=yes; run with dry_run=true first.
    """
    params: dict[str, Any] = {
        "batch_size": job.config.page_size,
        "max_items": job.config.max_items,
    }
    params.update(request.query_params)
    raw = await request.body()
    if raw:
        try:
            body = json.loads(raw)
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Request body must be JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Request body must be a JSON object")
        params.update(body)

    body_secret = params.get("secret")
    check_secret(
        config,
        request.headers.get("X-Admin-Secret")
        or (body_secret if isinstance(body_secret, str) else None),
    )

    try:
        req = ReconcileRequest.model_validate(params)
    except PydanticValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))

    options = ReconcileOptions(
        batch_size=req.batch_size,
        max_items=req.max_items,
        dry_run=req.dry_run,
        confirm=req.confirmed,
        cursor=req.cursor,
    )
    try:
        result = await job.run(options)
    except ConfirmationRequiredError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except TransientStoreError as e:
        logger.error(f"Reconciliation aborted: {e.message}", extra={"operation": e.operation})
        raise HTTPException(status_code=503, detail=e.message)
    except AccessSyncError as e:
        logger.error(f"Reconciliation failed: {e.message}", extra={"code": e.code})
        raise HTTPException(status_code=500, detail=e.message)

    return ReconcileResponse(**result.to_dict())


# --- Read Routes ---


@router.get("/users/{user_id}/shared-experiences", response_model=SharedExperiencesResponse)
async def shared_experiences(
    user_id: str,
    limit: int = Query(100, ge=1, le=500, description="Maximum experiences to return"),
    items: ItemStore = Depends(get_items),
) -> SharedExperiencesResponse:
    """Experiences whose access-set contains the user, newest first."""
    try:
        found = await items.experiences_shared_with(user_id, limit=limit)
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return SharedExperiencesResponse(
        user_id=user_id,
        items=[ExperienceResponse.from_experience(e) for e in found],
        count=len(found),
    )


@router.get("/experiences/{experience_id}/access", response_model=AccessSetResponse)
async def experience_access(
    experience_id: str,
    items: ItemStore = Depends(get_items),
) -> AccessSetResponse:
    try:
        experience = await items.get_experience(experience_id)
    except TransientStoreError as e:
        raise HTTPException(status_code=503, detail=e.message)
    if experience is None:
        raise HTTPException(status_code=404, detail=f"Experience {experience_id} not found")
    return AccessSetResponse(
        experience_id=experience.experience_id,
        owner=experience.owner,
        access_set=sorted(experience.access_set),
    )


def create_app(
    items: ItemStore,
    job: ReconciliationJob,
    config: HttpConfig | None = None,
    consumer_stats: Callable[[], dict[str, Any]] | None = None,
) -> FastAPI:
    """Create the operator FastAPI application.

    Args:
        items: Item store for the read endpoints
        job: Reconciliation job for the maintenance endpoint
        config: HTTP configuration (maintenance secret)
        consumer_stats: Optional callable reporting grant consumer stats

    Returns:
        FastAPI application
    """
    app = FastAPI(
        title="access-sync",
        description="Maintenance and diagnostics for shared-experience access-sets.",
        version=__version__,
    )
    app.state.items = items
    app.state.job = job
    app.state.http_config = config or HttpConfig()

    app.include_router(router, prefix="/v1")

    @app.get("/v1/health")
    async def health() -> dict[str, Any]:
        status: dict[str, Any] = {"status": "healthy", "service": "access-sync"}
        if consumer_stats is not None:
            status["consumer"] = consumer_stats()
        return status

    return app
