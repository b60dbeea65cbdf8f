"""Reconciliation (sync) endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
import structlog

from progress_engine.core.dependencies import (
    ensure_self_or_admin,
    get_current_user,
    get_reconciliation_engine,
    require_admin,
)
from progress_engine.gamification.reconciliation import ReconciliationEngine
from progress_engine.schemas.progress import ReconcileAllResponse, ReconcileResponse, ReconcileStats

logger = structlog.get_logger()
router = APIRouter(prefix="/sync", tags=["sync"])


async def _reconcile(engine: ReconciliationEngine, user_id: str) -> ReconcileResponse:
    result = await engine.reconcile(user_id)
    return ReconcileResponse(user_id=user_id, synced_stats=ReconcileStats(**result.to_dict()))


@router.post("", response_model=ReconcileResponse)
async def sync_progress(
    user_id: Optional[str] = Query(None, alias="userId"),
    current_user: dict = Depends(get_current_user),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine)
):
    """Recount the caller's counters (admins may pass ``userId``)."""
    target = user_id or current_user["sub"]
    ensure_self_or_admin(current_user, target)
    return await _reconcile(engine, target)


@router.post("/all", response_model=ReconcileAllResponse)
async def sync_all(
    current_user: dict = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine)
):
    """Recount counters for every user."""
    logger.info("Global reconciliation requested", admin=current_user["sub"])
    summary = await engine.reconcile_all()
    return ReconcileAllResponse(
        success=summary.failed == 0,
        processed=summary.processed,
        failed=summary.failed,
        failures=summary.failures,
    )


@router.post("/{user_id}", response_model=ReconcileResponse)
async def sync_user(
    user_id: str,
    current_user: dict = Depends(require_admin),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine)
):
    """Recount counters for one user."""
    return await _reconcile(engine, user_id)
