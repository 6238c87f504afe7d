"""
Internal endpoints for cron schedulers and operators.

Every route requires the ``X-Internal-Key`` header to equal
``settings.internal_api_key``; with no key configured the routes answer 503.
"""

import secrets
from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from ..config import settings
from ..dependencies import get_pipeline
from ..services.pipeline import IngestionPipeline
from ..services.tenants import is_uuid
from ..utils.logging import get_logger

logger = get_logger(__name__)


async def require_internal_key(x_internal_key: Optional[str] = Header(default=None)) -> None:
    if not settings.internal_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API is disabled",
        )
    if not x_internal_key or not secrets.compare_digest(x_internal_key, settings.internal_api_key):
        logger.warning("Internal API call with invalid key")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal key")


router = APIRouter(dependencies=[Depends(require_internal_key)])


@router.post("/groups/flush-due")
async def flush_due_groups(
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Run one flush sweep: due groups, abandoned flushes, timed-out media."""
    return await pipeline.sweep()


@router.post("/groups/{group_id}/flush")
async def flush_group(
    group_id: str,
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Flush one group now, ignoring its quiet window."""
    if not is_uuid(group_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Group not found")
    outcome = await pipeline.buffer.flush_group(group_id, force=True)
    logger.info("Forced flush", extra={"group_id": group_id, "status": outcome.status})
    return {"success": True, **asdict(outcome)}


@router.post("/agents/reactivate")
async def reactivate(
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Re-enable agents on conversations idle past the tenant's threshold."""
    return await pipeline.reactivate()
