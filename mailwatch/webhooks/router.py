"""FastAPI routers for the Graph webhook and notification maintenance.

Webhook contract:
- GET/POST with ?validationToken=... echoes the token as text/plain (200)
- POST with {"value": [...]} returns 202 immediately; the batch is processed
  in a background task so no downstream forward delays the response
- Any other POST body is a 400
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from ..config import get_settings
from ..dependencies import get_dispatcher
from .dispatcher import NotificationDispatcher, ProcessingStatus
from .schemas import ProcessingResultResponse, PurgeResponse, ReprocessResponse
from .validator import Handshake, InvalidWebhookPayload, validate_webhook

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

maintenance_router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "invalid_webhook_payload", "message": message},
    )


@router.get("/api/webhooks/graph")
@router.get("/webhooks/microsoft-graph")
async def webhook_liveness(request: Request):
    """Validation handshake, or a liveness message when no token is given."""
    token = request.query_params.get("validationToken")
    if token is not None:
        logger.info("Answering Graph validation handshake")
        return PlainTextResponse(token, status_code=status.HTTP_200_OK)
    return {"status": "ok", "message": "Graph webhook endpoint is active"}


@router.post("/api/webhooks/graph")
@router.post("/webhooks/microsoft-graph")
async def receive_notifications(
    request: Request,
    background_tasks: BackgroundTasks,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Accept a change-notification batch for background processing."""
    body = None
    if "validationToken" not in request.query_params:
        try:
            body = await request.json()
        except ValueError:
            logger.warning("Webhook body is not valid JSON")
            return _bad_request("Request body must be JSON")

    try:
        result = validate_webhook(request.query_params, body)
    except InvalidWebhookPayload as e:
        logger.warning(f"Rejected webhook request: {e}")
        return _bad_request(str(e))

    if isinstance(result, Handshake):
        logger.info("Answering Graph validation handshake")
        return PlainTextResponse(result.token, status_code=status.HTTP_200_OK)

    logger.info(
        f"Accepted {len(result.notifications)} notification(s), dropped {result.dropped}"
    )
    if result.notifications:
        background_tasks.add_task(dispatcher.process_batch, result.notifications)
    return PlainTextResponse("OK", status_code=status.HTTP_202_ACCEPTED)


@maintenance_router.post("/reprocess", response_model=ReprocessResponse)
async def reprocess_notifications(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> ReprocessResponse:
    """Resubmit unprocessed notifications, oldest first."""
    summary = await dispatcher.reprocess_unprocessed(limit or get_settings().REPROCESS_BATCH_LIMIT)
    return ReprocessResponse(
        total=summary.total,
        forwarded=summary.count(ProcessingStatus.FORWARDED),
        failed=summary.count(ProcessingStatus.FAILED),
        results=[ProcessingResultResponse.model_validate(r) for r in summary.results],
    )


@maintenance_router.delete("/processed", response_model=PurgeResponse)
def purge_processed_notifications(
    days_to_keep: int = Query(30, ge=0, le=3650),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> PurgeResponse:
    """Delete processed notification records older than days_to_keep."""
    deleted = dispatcher.purge_processed(days_to_keep)
    return PurgeResponse(deleted=deleted, days_to_keep=days_to_keep)
