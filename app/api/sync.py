"""Caller-facing sync, backfill, duplicate and reprocessing endpoints.

User authentication is handled upstream; these routes take the user id as a
path parameter.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.dedup.service import DuplicateGroup, MergeReport, find_duplicates, merge_duplicates
from app.ingestion.sync_service import (
    UnsupportedProviderError,
    request_backfill_for_user,
    request_history_for_user,
    trigger_sync,
)
from app.integrations.garmin.summary_backfill import BackfillOutcome
from app.webhooks.reprocess import reprocess_failed_events
from app.webhooks.status import WebhookStatus, webhook_status

router = APIRouter(tags=["sync"])


class MergeRequest(BaseModel):
    groups: list[DuplicateGroup]
    dry_run: bool = False


class MergeResponse(BaseModel):
    report: MergeReport
    merged_count: int
    deleted_count: int


class DuplicatesResponse(BaseModel):
    user_id: str
    groups: list[DuplicateGroup] = Field(default_factory=list)
    total_duplicates: int = 0


@router.post("/integrations/{user_id}/{provider}/sync", response_model=BackfillOutcome)
def sync_integration(user_id: str, provider: str, db: Session = Depends(get_db)) -> BackfillOutcome:
    try:
        return trigger_sync(db, user_id, provider)
    except UnsupportedProviderError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e


@router.post("/integrations/{user_id}/{provider}/backfill", response_model=BackfillOutcome)
def backfill_integration(
    user_id: str,
    provider: str,
    days: int = Query(default=30, ge=1, le=3650),
    db: Session = Depends(get_db),
) -> BackfillOutcome:
    """Ask the provider to redeliver `days` days of history (clamped per request)."""
    try:
        return request_backfill_for_user(db, user_id, days, provider)
    except UnsupportedProviderError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e


@router.post("/integrations/{user_id}/{provider}/backfill/history", response_model=list[BackfillOutcome])
def backfill_history(
    user_id: str,
    provider: str,
    days: int = Query(default=90, ge=1, le=3650),
    db: Session = Depends(get_db),
) -> list[BackfillOutcome]:
    """Ask the provider to redeliver a long history range, one window per request."""
    try:
        return request_history_for_user(db, user_id, days, provider)
    except UnsupportedProviderError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e


@router.get("/integrations/{user_id}/garmin/webhook-status", response_model=WebhookStatus)
def garmin_webhook_status(user_id: str, db: Session = Depends(get_db)) -> WebhookStatus:
    return webhook_status(db, user_id)


@router.get("/activities/{user_id}/duplicates", response_model=DuplicatesResponse)
def list_duplicates(user_id: str, db: Session = Depends(get_db)) -> DuplicatesResponse:
    groups = find_duplicates(db, user_id)
    return DuplicatesResponse(
        user_id=user_id,
        groups=groups,
        total_duplicates=sum(len(group.activities) - 1 for group in groups),
    )


@router.post("/activities/{user_id}/duplicates/merge", response_model=MergeResponse)
def merge_duplicate_groups(user_id: str, body: MergeRequest, db: Session = Depends(get_db)) -> MergeResponse:
    if not body.groups:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="groups must not be empty")
    report = merge_duplicates(db, user_id, body.groups, dry_run=body.dry_run)
    logger.info(f"[DEDUP] user_id={user_id} dry_run={body.dry_run}: merged {report.merged_count} group(s)")
    return MergeResponse(report=report, merged_count=report.merged_count, deleted_count=report.deleted_count)


@router.post("/admin/webhooks/reprocess")
def reprocess_webhooks(limit: int = Query(default=100, ge=1, le=1000)) -> dict[str, int]:
    """Operator-triggered reprocessing pass."""
    return reprocess_failed_events(limit=limit)
