"""Operator API for inspecting entitlements and driving maintenance.

Implements:
- GET /entitlements/lineages/{lineage_id} - Record of a lineage
- GET /entitlements/tokens/{token} - Record a token belongs to
- GET /entitlements/users/{user_id} - All records of a user
- GET /entitlements/stats - Store, queue and acknowledgment counters
- POST /entitlements/sweep - Run one expiry sweep now
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from iap_reconciler.api.dependencies import api_error, get_context
from iap_reconciler.context import ReconcilerContext
from iap_reconciler.logging_config import get_logger
from iap_reconciler.models import PurchaseRecord, PurchaseRecordResponse, SweepResponse, UserEntitlementsResponse
from iap_reconciler.repositories.entitlement_store import RecordNotFoundError

logger = get_logger(__name__)
router = APIRouter(tags=["Operator API"], prefix="/entitlements")


def _record_response(context: ReconcilerContext, record: PurchaseRecord) -> PurchaseRecordResponse:
    return PurchaseRecordResponse(record=record, entitled=context.is_entitled(record))


@router.get("/lineages/{lineage_id}", response_model=PurchaseRecordResponse)
async def get_lineage(lineage_id: str, context: ReconcilerContext = Depends(get_context)) -> PurchaseRecordResponse:
    """Get the record of a lineage.

    Raises:
        404: Lineage not found
    """
    try:
        record = context.store.get_by_lineage(lineage_id)
    except RecordNotFoundError as e:
        raise api_error(404, "NOT_FOUND", str(e))
    return _record_response(context, record)


@router.get("/tokens/{token}", response_model=PurchaseRecordResponse)
async def get_by_token(token: str, context: ReconcilerContext = Depends(get_context)) -> PurchaseRecordResponse:
    """Get the record a token belongs to, current or superseded.

    Raises:
        404: No lineage has used the token
    """
    try:
        record = context.store.get_by_token(token)
    except RecordNotFoundError as e:
        raise api_error(404, "NOT_FOUND", str(e))
    return _record_response(context, record)


@router.get("/users/{user_id}", response_model=UserEntitlementsResponse)
async def get_user_entitlements(
    user_id: str, context: ReconcilerContext = Depends(get_context)
) -> UserEntitlementsResponse:
    """All records owned by a user, most recently created first."""
    records = context.store.get_by_user(user_id)
    return UserEntitlementsResponse(
        user_id=user_id,
        records=[_record_response(context, record) for record in records],
    )


@router.get("/stats")
async def get_stats(context: ReconcilerContext = Depends(get_context)) -> Dict[str, Any]:
    """Store statistics plus worker, acknowledgment and downstream counters."""
    return {
        "store": context.store.get_statistics(),
        "worker": {
            "running": context.worker.running,
            "queued": context.worker.qsize(),
            "processed": context.worker.processed,
            "failed": context.worker.failed,
        },
        "acknowledgments": {
            "in_flight": context.scheduler.in_flight,
            "overdue": len(context.scheduler.overdue),
        },
        "downstream": {
            "enabled": context.dispatcher.is_enabled(),
            "dispatched": context.dispatcher.dispatched,
        },
        "now_millis": context.clock.now_millis(),
    }


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(context: ReconcilerContext = Depends(get_context)) -> SweepResponse:
    """Run one expiry sweep immediately."""
    logger.info("manual_sweep_requested")
    report = await context.sweeper.sweep()
    return SweepResponse(
        signals_emitted=report.signals_emitted,
        refreshed=report.refreshed,
        skipped=report.skipped,
        ledger_entries_pruned=report.ledger_entries_pruned,
        outcomes=report.outcomes,
    )
