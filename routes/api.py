"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from app.http.controllers import shopify, shopify_webhooks

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    prefix = f"{settings.API_PREFIX}/shopify"
    # Webhooks first so /webhooks/... never matches a management route
    app.include_router(shopify_webhooks.router, prefix=f"{prefix}/webhooks", tags=["shopify-webhooks"])
    app.include_router(shopify.router, prefix=prefix, tags=["shopify"])
    logger.info("Shopify routes mounted at %s", prefix)
