"""
Agent response router.

Agents post their replies here: a send instruction (text and/or image for a
customer) or an order instruction. Agents built against the older contract
identify the tenant with ``user_id`` in the body instead of the query string.
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query

from ..dependencies import get_pipeline
from ..services.pipeline import IngestionPipeline
from ..utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.post("/agent")
async def receive_agent_response(
    payload: Any = Body(...),
    tenant: Optional[str] = Query(default=None),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """
    Apply an agent's send or order instruction.

    Returns:
        Delivery summary for sends, OrderResult fields for orders

    Raises:
        TenantNotFound, InvalidAgentResponse, OrderValidationError: 400
        CustomerNotFound, ChatNotFound: 404
    """
    reference = tenant
    if not reference and isinstance(payload, dict) and payload.get("user_id"):
        reference = str(payload["user_id"])
    tenant_id = await pipeline.tenants.resolve(reference)

    result = await pipeline.agent_responses.handle(tenant_id, payload)
    logger.info(
        "Agent response applied",
        extra={"tenant_id": tenant_id, "type": result.get("type")},
    )
    return result
