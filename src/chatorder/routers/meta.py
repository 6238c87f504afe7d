"""
Meta Cloud API webhook router.

GET answers Meta's subscription challenge; POST receives messages, business
echoes and delivery statuses. The ``tenant`` query parameter is optional on
POST: without it, each change is attributed through the ``phone_number_id``
it arrived on.
"""

from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from ..config import settings
from ..dependencies import get_pipeline
from ..exceptions import TenantNotFound
from ..services.pipeline import IngestionPipeline
from ..utils.logging import get_logger
from .bsp import schedule_jobs

logger = get_logger(__name__)

router = APIRouter()

# Initialize rate limiter (uses client IP address as key)
limiter = Limiter(key_func=get_remote_address)


@router.get("/meta")
@limiter.limit(settings.rate_limit_verify)
async def verify_meta_webhook(
    request: Request,
    hub_mode: Optional[str] = Query(default=None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    tenant: Optional[str] = Query(default=None),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> Response:
    """
    Meta webhook verification endpoint (GET).

    Echoes ``hub.challenge`` as plain text when ``hub.mode`` is "subscribe"
    and the verify token belongs to one of the tenant's Meta numbers (any
    tenant's, when no tenant is given).

    Raises:
        HTTPException: 403 if verification fails
    """
    logger.info(
        "Webhook verification attempt",
        extra={"hub_mode": hub_mode, "has_tenant": bool(tenant)},
    )

    if hub_mode != "subscribe":
        logger.warning("Webhook verification failed: invalid hub.mode", extra={"hub_mode": hub_mode})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid hub.mode - expected 'subscribe'",
        )

    tenant_id = None
    if tenant:
        try:
            tenant_id = await pipeline.tenants.resolve(tenant)
        except TenantNotFound:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown tenant")

    if not await pipeline.channels.verify_token_matches(hub_verify_token or "", tenant_id):
        logger.warning(
            "Webhook verification failed: invalid verify token",
            extra={"tenant_id": tenant_id, "provided_token_length": len(hub_verify_token or "")},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid verify token",
        )

    logger.info("Webhook verification successful", extra={"tenant_id": tenant_id})
    return Response(content=hub_challenge or "", media_type="text/plain")


@router.post("/meta")
async def receive_meta_webhook(
    payload: dict[str, Any],
    background_tasks: BackgroundTasks,
    tenant: Optional[str] = Query(default=None),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """
    Meta webhook receiver (POST).

    Raises:
        TenantNotFound: Unresolvable tenant or phone_number_id (400)
    """
    tenant_id = await pipeline.tenants.resolve(tenant) if tenant else None
    logger.info(
        "Meta webhook received",
        extra={"tenant_id": tenant_id, "object_type": payload.get("object")},
    )

    result = await pipeline.handle_meta(tenant_id, payload)
    schedule_jobs(background_tasks, pipeline, result)
    return result.summary()
