"""
Supabase client setup for chatorder.

Provides the lazily created Supabase client and the FastAPI dependency that
hands it to route handlers. The service_role key is used, so row level
security does not apply; every query in the services filters by tenant.
"""

from typing import Optional

from supabase import Client, create_client

from .config import settings
from .utils.logging import get_logger

logger = get_logger(__name__)

# Module-level client cache for lazy initialization
_supabase_client: Optional[Client] = None


def get_supabase() -> Client:
    """
    Get or create the Supabase client instance.

    The client is created on first use and cached, so importing the
    application never requires credentials (tests override this dependency).

    Returns:
        Client: A Supabase client instance.

    Raises:
        ValueError: If SUPABASE_URL or SUPABASE_SECRET_KEY is empty
        Exception: If client initialization fails
    """
    global _supabase_client

    if _supabase_client is None:
        logger.info(
            "Initializing Supabase client",
            extra={"supabase_url": settings.supabase_url},
        )

        if not settings.supabase_url or not settings.supabase_secret_key:
            logger.error("SUPABASE_URL or SUPABASE_SECRET_KEY is empty")
            raise ValueError("SUPABASE_URL and SUPABASE_SECRET_KEY must be set")

        try:
            _supabase_client = create_client(
                supabase_url=settings.supabase_url,
                supabase_key=settings.supabase_secret_key,
            )
            logger.info("Supabase client initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {e}", exc_info=True)
            raise

    return _supabase_client
