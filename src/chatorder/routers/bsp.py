"""
BSP webhook router.

Receives ``messages.upsert`` deliveries from a BSP (Evolution-style) gateway.
The tenant is identified by the ``tenant`` query parameter: a tenant id or an
opaque webhook token.
"""

from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from ..dependencies import get_pipeline
from ..services.pipeline import IngestionPipeline, IngestResult
from ..utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def schedule_jobs(
    background_tasks: BackgroundTasks,
    pipeline: IngestionPipeline,
    result: IngestResult,
) -> None:
    """Queue media downloads and automation flows to run after the response is sent."""
    for job in result.media_jobs:
        background_tasks.add_task(pipeline.media.process, job)
    for flow_job in result.flow_jobs:
        background_tasks.add_task(pipeline.flows.dispatch, flow_job)


@router.post("/bsp")
async def receive_bsp_webhook(
    payload: dict[str, Any],
    background_tasks: BackgroundTasks,
    tenant: Optional[str] = Query(default=None),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """
    BSP webhook receiver (POST).

    Always answers 200 once the tenant is known, including for duplicates
    and messages that failed processing, so the gateway stops retrying.

    Args:
        payload: Raw BSP webhook JSON
        tenant: Tenant id or webhook token

    Returns:
        Delivery summary with per-message media status

    Raises:
        TenantNotFound: Unresolvable tenant (400)
    """
    tenant_id = await pipeline.tenants.resolve(tenant)
    logger.info(
        "BSP webhook received",
        extra={
            "tenant_id": tenant_id,
            "event": payload.get("event"),
            "instance_name": payload.get("instance"),
        },
    )

    result = await pipeline.handle_bsp(tenant_id, payload)
    schedule_jobs(background_tasks, pipeline, result)
    return result.summary()
