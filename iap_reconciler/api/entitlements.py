"""Client-facing entitlement endpoints.

Implements:
- POST /verify
- GET /subscription-status
"""

import math
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, Header

from iap_reconciler.api.dependencies import api_error, get_context
from iap_reconciler.context import ReconcilerContext
from iap_reconciler.logging_config import bind_context, get_logger
from iap_reconciler.models import (
    PurchaseRecord,
    ReconcileOutcome,
    SubscriptionStatusResponse,
    VerifyRequest,
    VerifyResponse,
)
from iap_reconciler.models.api_response import millis_to_datetime
from iap_reconciler.services.reconciler import ReconcileConflict
from iap_reconciler.services.token_verifier import (
    AuthorityUnreachable,
    InvalidVerificationRequest,
    MismatchedContext,
    RateLimited,
    TokenNotFound,
)
from iap_reconciler.utils.identifiers import generate_signal_id, mask_token

logger = get_logger(__name__)
router = APIRouter(tags=["Entitlements"])


def _require_user(header_user: Optional[str], body_user: Optional[str] = None) -> str:
    user_id = header_user or body_user
    if not user_id:
        raise api_error(400, "INVALID_ARGUMENT", "User identity is required (X-User-Id header)")
    return user_id


def best_entitlement(
    records: List[PurchaseRecord], is_entitled: Callable[[PurchaseRecord], bool]
) -> Optional[PurchaseRecord]:
    """Pick the record that best describes a user's access.

    Entitled records win over the rest; among them the latest expiry wins,
    lifetime purchases first. Without any entitled record the most recently
    created one is returned.
    """
    if not records:
        return None
    entitled = [r for r in records if is_entitled(r)]
    if entitled:
        return max(
            entitled,
            key=lambda r: math.inf if r.expiry_time_millis is None else r.expiry_time_millis,
        )
    return max(records, key=lambda r: r.created_millis)


@router.post("/verify", response_model=VerifyResponse)
async def verify_purchase(
    body: VerifyRequest,
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    context: ReconcilerContext = Depends(get_context),
) -> VerifyResponse:
    """Verify a purchase token and reconcile the answer into the user's entitlement."""
    user_id = _require_user(x_user_id, body.user_id)
    bind_context(user_id=user_id, product_id=body.product_id)
    logger.info("verify_request", token=mask_token(body.token), order_id=body.order_id)

    try:
        result = await context.verifier.verify(
            body.token, body.product_id, body.package_name, kind=body.purchase_type
        )
    except (InvalidVerificationRequest, MismatchedContext) as e:
        raise api_error(400, "INVALID_ARGUMENT", str(e))
    except TokenNotFound:
        raise api_error(404, "NOT_FOUND", "The purchase token was not found.", isValid=False)
    except RateLimited as e:
        headers = None
        if e.retry_after_seconds is not None:
            headers = {"Retry-After": str(math.ceil(e.retry_after_seconds))}
        raise api_error(429, "RESOURCE_EXHAUSTED", "Verification authority is rate limiting", headers=headers)
    except AuthorityUnreachable as e:
        raise api_error(503, "UNAVAILABLE", f"Verification authority unreachable: {e}")

    signal = result.to_signal(
        signal_id=body.nonce or generate_signal_id(),
        token=body.token,
        product_id=body.product_id,
        package_name=body.package_name,
        user_id=user_id,
    )
    try:
        outcome = context.reconciler.reconcile(signal)
    except ReconcileConflict as e:
        raise api_error(409, "ABORTED", str(e))

    if outcome.outcome == ReconcileOutcome.REJECTED and outcome.reason == "owner_mismatch":
        raise api_error(409, "ALREADY_EXISTS", "The purchase token belongs to another user")

    record = outcome.record
    if record is None:
        return VerifyResponse(
            isValid=False,
            expiryDate=millis_to_datetime(result.expiry_time_millis),
            subscriptionType=body.product_id,
            autoRenewing=result.auto_renewing,
            outcome=outcome.outcome.value,
        )

    return VerifyResponse(
        isValid=context.is_entitled(record),
        expiryDate=millis_to_datetime(record.expiry_time_millis),
        subscriptionType=record.product_id,
        autoRenewing=record.auto_renewing,
        state=record.state.name,
        lineageId=record.lineage_id,
        outcome=outcome.outcome.value,
    )


@router.get("/subscription-status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    context: ReconcilerContext = Depends(get_context),
) -> SubscriptionStatusResponse:
    """Current entitlement of the calling user. Reads the store only."""
    user_id = _require_user(x_user_id)
    record = best_entitlement(context.store.get_by_user(user_id), context.is_entitled)

    if record is None:
        return SubscriptionStatusResponse(isActive=False)

    return SubscriptionStatusResponse(
        isActive=context.is_entitled(record),
        expiryDate=millis_to_datetime(record.expiry_time_millis),
        subscriptionType=record.product_id,
        state=record.state.name,
        lineageId=record.lineage_id,
    )
