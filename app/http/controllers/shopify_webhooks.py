"""
Shopify webhook receiver. Public (no JWT); every request is HMAC-verified over the raw body
before it is parsed. Mounted under /api/shopify/webhooks/{resource}/{action}.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.config import ShopifyApiConfig
from app.database import get_db
from app.http.controllers.shopify import get_shopify_config
from app.services.shopify_signature import verify_webhook
from app.services.shopify_webhook_handler import WebhookDelivery, WebhookIngestor

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{resource}/{action}")
async def shopify_webhook_receive(
    resource: str,
    action: str,
    request: Request,
    db: Session = Depends(get_db),
    config: ShopifyApiConfig = Depends(get_shopify_config),
):
    """
    Topics: orders/create, orders/updated, orders/cancelled, products/create, products/update,
    products/delete, refunds/create, app/uninstalled.
    401 on a bad signature; 200 for everything else so Shopify does not retry.
    """
    topic = f"{resource}/{action}"
    raw_body = await request.body()
    hmac_header = request.headers.get("X-Shopify-Hmac-Sha256")
    shop_domain = (request.headers.get("X-Shopify-Shop-Domain") or "").strip().lower()

    if not verify_webhook(raw_body, hmac_header, config.api_secret):
        logger.warning("Shopify webhook: HMAC verification failed for shop=%s topic=%s", shop_domain, topic)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
    if not shop_domain:
        logger.warning("Shopify webhook: missing X-Shopify-Shop-Domain for topic %s", topic)
        return {"ok": True, "message": "Missing shop domain"}

    try:
        payload = json.loads(raw_body.decode("utf-8")) if raw_body else {}
    except (UnicodeDecodeError, ValueError) as e:
        logger.warning("Shopify webhook: invalid JSON %s", e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    delivery = WebhookDelivery(
        raw_body=raw_body,
        payload=payload,
        topic=topic,
        shop_domain=shop_domain,
        hmac_header=hmac_header,
        webhook_id=request.headers.get("X-Shopify-Webhook-Id"),
    )
    return WebhookIngestor(db, config).ingest(delivery)
