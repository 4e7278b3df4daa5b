"""Read-only operational and tier-gating routes for synchronized subscriptions."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, status

from ...reconcile_scheduler import get_reconcile_metrics, run_reconciliation_job
from ..schemas.sync import OutcomeListResponse, ReconciliationListResponse, SubscriptionAccessResponse
from ..services.sync import get_sync_engine
from ..sync import ReconciliationInProgress, ReconciliationReport, StoreUnavailable

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.get("/subscriptions/{subscription_id}/access", response_model=SubscriptionAccessResponse)
def get_subscription_access(subscription_id: str) -> SubscriptionAccessResponse:
    engine = get_sync_engine()
    try:
        subscription = engine.store.get(subscription_id)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_detail()) from exc
    if subscription is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")
    return SubscriptionAccessResponse.from_subscription(subscription)


@router.get("/outcomes", response_model=OutcomeListResponse)
def list_outcomes(limit: int = Query(50, ge=1, le=500)) -> OutcomeListResponse:
    engine = get_sync_engine()
    try:
        ledger_counts = engine.ledger.outcome_counts()
    except StoreUnavailable as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.to_detail()) from exc
    return OutcomeListResponse(
        summary=engine.outcome_log.summary(),
        recent=engine.outcome_log.recent_events(limit),
        ledger=ledger_counts,
    )


@router.get("/reconciliations", response_model=ReconciliationListResponse)
def list_reconciliations(limit: int = Query(10, ge=1, le=100)) -> ReconciliationListResponse:
    engine = get_sync_engine()
    return ReconciliationListResponse(
        reports=engine.outcome_log.recent_reconciliations(limit),
        running=engine.reconciliation_job.is_running,
        scheduler=get_reconcile_metrics(),
    )


@router.post("/reconcile", response_model=ReconciliationReport)
def trigger_reconciliation() -> ReconciliationReport:
    try:
        return run_reconciliation_job()
    except ReconciliationInProgress as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.to_detail()) from exc


__all__ = ["router"]
