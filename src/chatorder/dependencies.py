"""
FastAPI dependencies.

The pipeline is built once per process by the application lifespan and kept
on ``app.state``. When the lifespan did not run (no Supabase credentials at
startup), it is built on first use. Tests override ``get_pipeline``.
"""

from fastapi import Request

from .db import get_supabase
from .services.pipeline import IngestionPipeline, build_pipeline
from .utils.logging import get_logger

logger = get_logger(__name__)


async def get_pipeline(request: Request) -> IngestionPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        pipeline = build_pipeline(get_supabase())
        request.app.state.pipeline = pipeline
        await pipeline.scheduler.start()
        logger.info("Pipeline built on first request")
    return pipeline
