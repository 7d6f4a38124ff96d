"""Push endpoint for lifecycle notifications.

The push is authenticated and decoded in a worker thread (OIDC checks
block on certificate fetches), then queued for the signal worker; the
platform gets its answer without waiting for the reconciler. Non-2xx
answers make the platform redeliver.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from starlette.concurrency import run_in_threadpool

from iap_reconciler.api.dependencies import api_error, get_context
from iap_reconciler.context import ReconcilerContext
from iap_reconciler.logging_config import bind_context, get_logger
from iap_reconciler.services.notification_decoder import (
    MalformedEnvelope,
    NotificationDecoder,
    PackageMismatch,
    Unauthenticated,
    UnsupportedNotification,
)
from iap_reconciler.services.signal_worker import QueueFull
from iap_reconciler.utils.identifiers import mask_token

logger = get_logger(__name__)
router = APIRouter(tags=["Webhook"])


@router.post("/webhook", status_code=204, response_class=Response)
async def receive_push(
    request: Request,
    token: Optional[str] = Query(None, description="Push verification token"),
    authorization: Optional[str] = Header(None),
    context: ReconcilerContext = Depends(get_context),
) -> Response:
    """Accept a lifecycle notification push."""
    body = await request.body()

    try:
        event = await run_in_threadpool(context.decoder.decode, body, authorization=authorization, query_token=token)
    except Unauthenticated as e:
        logger.warning("push_unauthenticated", error=str(e))
        raise api_error(401, "UNAUTHENTICATED", "Push is not authenticated")
    except MalformedEnvelope as e:
        logger.warning("push_malformed", error=str(e))
        raise api_error(400, "INVALID_ARGUMENT", str(e))
    except (UnsupportedNotification, PackageMismatch) as e:
        # Redelivery would never succeed; acknowledge and drop
        logger.info("push_dropped", reason=type(e).__name__, error=str(e))
        return Response(status_code=204)

    bind_context(message_id=event.message_id)

    try:
        context.worker.enqueue(NotificationDecoder.to_signal(event))
    except QueueFull as e:
        raise api_error(503, "UNAVAILABLE", str(e), headers={"Retry-After": "10"})

    logger.info("push_accepted", variant=event.variant, token=mask_token(event.lineage_token))
    return Response(status_code=204)
