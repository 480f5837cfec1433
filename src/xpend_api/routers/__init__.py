"""API routers."""

from xpend_api.routers.ingestion import router as ingestion_router

__all__ = ["ingestion_router"]
