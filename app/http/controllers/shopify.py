"""
Shopify routes: OAuth install/callback, integration management, manual sync and outbound pushes.
Mounted under /api/shopify. Everything except the OAuth callback requires a bearer token
and is scoped to the caller's tenant.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from app.auth import get_current_user
from app.config import ShopifyApiConfig, settings
from app.database import get_db
from app.http.requests import FulfillmentPushRequest, IntegrationUpdateRequest, ShippingMappingCreateRequest
from app.models import (
    CarrierService,
    Integration,
    Order,
    Product,
    ShippingMethodMapping,
    User,
    WebhookEvent,
)
from app.services.errors import IntegrationSuspended, OAuthError, PreconditionError, SyncError
from app.services.integration_store import IntegrationStore
from app.services.shopify_client import ShopifyClient
from app.services.shopify_oauth import ShopifyOAuthService, normalize_shop_domain
from app.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)
router = APIRouter()

SETTINGS_PAGE = "/dashboard/settings/integrations"


def get_shopify_config() -> ShopifyApiConfig:
    return ShopifyApiConfig.from_settings()


def get_shopify_client(config: ShopifyApiConfig = Depends(get_shopify_config)) -> ShopifyClient:
    return ShopifyClient(config)


def _settings_redirect(query: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.APP_URL}{SETTINGS_PAGE}?{query}", status_code=status.HTTP_302_FOUND)


def _get_integration_or_404(store: IntegrationStore, current_user: User, integration_id: str) -> Integration:
    integration = store.get_for_tenant(current_user.tenant_id, integration_id)
    if not integration:
        raise HTTPException(status_code=404, detail="Integration not found")
    return integration


# OAuth

@router.get("/install")
async def shopify_install(
    shop: str = Query(..., description="Shop domain (e.g., mystore or mystore.myshopify.com)"),
    current_user: User = Depends(get_current_user),
    config: ShopifyApiConfig = Depends(get_shopify_config),
    client: ShopifyClient = Depends(get_shopify_client),
):
    """Build the Shopify authorize URL for the caller's tenant"""
    oauth = ShopifyOAuthService(config, client)
    try:
        normalized_shop = normalize_shop_domain(shop)
        install_url = oauth.begin_install(current_user.tenant_id, normalized_shop)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OAuthError as e:
        logger.error("OAuth install refused for tenant %s: %s", current_user.tenant_id, e.code)
        raise HTTPException(status_code=400, detail="Shopify app credentials are not configured")
    return {"installUrl": install_url, "shop": normalized_shop}


@router.get("/callback")
async def shopify_callback(
    request: Request,
    db: Session = Depends(get_db),
    config: ShopifyApiConfig = Depends(get_shopify_config),
    client: ShopifyClient = Depends(get_shopify_client),
):
    """PUBLIC endpoint (no JWT): Shopify redirects the merchant here after consent."""
    oauth = ShopifyOAuthService(config, client)
    try:
        await oauth.handle_callback(db, dict(request.query_params))
    except OAuthError as e:
        db.rollback()
        logger.error("OAuth callback failed at %s: %s", getattr(e.step, "value", e.step), e.code)
        return _settings_redirect(f"error={e.code}")
    except Exception as e:
        db.rollback()
        logger.error("OAuth callback error: %s", e, exc_info=True)
        return _settings_redirect("error=oauth_failed")
    return _settings_redirect("success=shopify")


# Integrations

@router.get("/integrations")
async def list_integrations(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    store = IntegrationStore(db)
    return {"integrations": [store.to_response(i) for i in store.list_for_tenant(current_user.tenant_id)]}


@router.patch("/integrations/{integration_id}")
async def update_integration(
    integration_id: str,
    request: IntegrationUpdateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    store = IntegrationStore(db)
    integration = _get_integration_or_404(store, current_user, integration_id)
    integration = store.update_settings(integration, request.changes())
    return store.to_response(integration)


@router.delete("/integrations/{integration_id}")
async def delete_integration(
    integration_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    store = IntegrationStore(db)
    integration = _get_integration_or_404(store, current_user, integration_id)
    store.delete(integration)
    logger.info("Deleted integration %s (%s) for tenant %s", integration_id, integration.shop_domain, current_user.tenant_id)
    return {"success": True}


@router.get("/integrations/{integration_id}/history")
async def integration_history(
    integration_id: str,
    limit: int = Query(50, le=200),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    client: ShopifyClient = Depends(get_shopify_client),
):
    store = IntegrationStore(db)
    integration = _get_integration_or_404(store, current_user, integration_id)
    jobs = SyncEngine(db, client, store).history(integration, limit)
    return {
        "jobs": [
            {
                "id": job.id,
                "type": job.job_type.value,
                "status": job.status.value if job.status else None,
                "startedAt": job.started_at.isoformat() if job.started_at else None,
                "finishedAt": job.finished_at.isoformat() if job.finished_at else None,
                "recordsProcessed": job.records_processed or 0,
                "recordsFailed": job.records_failed or 0,
                "errorMessage": job.error_message,
            }
            for job in jobs
        ]
    }


def _sync_error_response(integration_id: str, kind: str, e: Exception) -> JSONResponse:
    logger.error(
        "Manual %s sync failed for integration %s: %s", kind, integration_id, e,
        exc_info=not isinstance(e, SyncError),
    )
    return JSONResponse(status_code=500, content={"error": str(e)})


@router.post("/integrations/{integration_id}/sync/products")
async def sync_products(
    integration_id: str,
    force: bool = Query(False),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    client: ShopifyClient = Depends(get_shopify_client),
):
    store = IntegrationStore(db)
    integration = _get_integration_or_404(store, current_user, integration_id)
    try:
        counts = await SyncEngine(db, client, store).sync_products_inbound(integration, force=force)
    except IntegrationSuspended as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        return _sync_error_response(integration_id, "product", e)
    return {
        "success": True,
        "message": f"Synced products: {counts['created']} created, {counts['updated']} updated",
        **counts,
    }


@router.post("/integrations/{integration_id}/sync/orders")
async def sync_orders(
    integration_id: str,
    force: bool = Query(False),
    since: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    client: ShopifyClient = Depends(get_shopify_client),
):
    store = IntegrationStore(db)
    integration = _get_integration_or_404(store, current_user, integration_id)
    try:
        created = await SyncEngine(db, client, store).sync_orders_inbound(integration, since=since, force=force)
    except IntegrationSuspended as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        return _sync_error_response(integration_id, "order", e)
    return {"success": True, "message": f"Imported {created} orders", "created": created}


@router.post("/integrations/{integration_id}/sync/inventory")
async def sync_inventory(
    integration_id: str,
    force: bool = Query(False),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    client: ShopifyClient = Depends(get_shopify_client),
):
    store = IntegrationStore(db)
    integration = _get_integration_or_404(store, current_user, integration_id)
    try:
        pushed = await SyncEngine(db, client, store).sync_inventory_outbound(integration, force=force)
    except IntegrationSuspended as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        return _sync_error_response(integration_id, "inventory", e)
    return {"success": True, "message": f"Pushed inventory for {pushed} products", "pushed": pushed}


# Shipping method mappings

def _mapping_response(row: ShippingMethodMapping) -> dict:
    return {
        "id": row.id,
        "integrationId": row.integration_id,
        "externalShippingMethod": row.external_shipping_method,
        "carrierServiceId": row.carrier_service_id,
        "carrierId": row.carrier_service.carrier_id if row.carrier_service else None,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }


@router.get("/shipping-mappings")
async def list_shipping_mappings(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    rows = (
        db.query(ShippingMethodMapping)
        .filter(ShippingMethodMapping.tenant_id == current_user.tenant_id)
        .order_by(ShippingMethodMapping.external_shipping_method)
        .all()
    )
    return {"mappings": [_mapping_response(r) for r in rows]}


@router.post("/shipping-mappings", status_code=status.HTTP_201_CREATED)
async def create_shipping_mapping(
    request: ShippingMappingCreateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if not db.query(CarrierService.id).filter(CarrierService.id == request.carrier_service_id).first():
        raise HTTPException(status_code=404, detail="Carrier service not found")
    if request.integration_id:
        _get_integration_or_404(IntegrationStore(db), current_user, request.integration_id)
    duplicate = (
        db.query(ShippingMethodMapping.id)
        .filter(
            ShippingMethodMapping.tenant_id == current_user.tenant_id,
            ShippingMethodMapping.external_shipping_method == request.external_shipping_method,
        )
        .first()
    )
    if duplicate:
        raise HTTPException(status_code=409, detail="A mapping for this shipping method already exists")

    row = ShippingMethodMapping(
        tenant_id=current_user.tenant_id,
        integration_id=request.integration_id,
        external_shipping_method=request.external_shipping_method,
        carrier_service_id=request.carrier_service_id,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return _mapping_response(row)


@router.delete("/shipping-mappings/{mapping_id}")
async def delete_shipping_mapping(
    mapping_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    row = (
        db.query(ShippingMethodMapping)
        .filter(ShippingMethodMapping.id == mapping_id, ShippingMethodMapping.tenant_id == current_user.tenant_id)
        .first()
    )
    if not row:
        raise HTTPException(status_code=404, detail="Shipping mapping not found")
    db.delete(row)
    db.commit()
    return {"success": True}


# Outbound pushes

@router.post("/orders/{order_id}/fulfillment")
async def push_order_fulfillment(
    order_id: str,
    request: FulfillmentPushRequest,
    force: bool = Query(False),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    client: ShopifyClient = Depends(get_shopify_client),
):
    order = db.query(Order).filter(Order.id == order_id, Order.tenant_id == current_user.tenant_id).first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    try:
        result = await SyncEngine(db, client).push_fulfillment(
            order.id, request.tracking_number, request.carrier_name, request.tracking_url, force=force
        )
    except IntegrationSuspended as e:
        raise HTTPException(status_code=503, detail=str(e))
    except PreconditionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SyncError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if result is None:
        return {"success": False, "message": "Order is not linked to Shopify"}
    return {"success": True, **result}


@router.post("/products/{product_id}/push-status")
async def push_product_status(
    product_id: str,
    force: bool = Query(False),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    client: ShopifyClient = Depends(get_shopify_client),
):
    product = db.query(Product).filter(Product.id == product_id, Product.tenant_id == current_user.tenant_id).first()
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    try:
        result = await SyncEngine(db, client).push_product_status(product.id, force=force)
    except IntegrationSuspended as e:
        raise HTTPException(status_code=503, detail=str(e))
    except PreconditionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SyncError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if result is None:
        return {"success": False, "message": "Product is not linked to Shopify"}
    return {"success": True, **result}


# Webhook event log

@router.get("/webhook-events")
async def list_webhook_events(
    limit: int = Query(50, le=100),
    topic: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Persisted webhook events for the current tenant's connected shops only."""
    shops = [
        row.shop_domain
        for row in db.query(Integration.shop_domain).filter(Integration.tenant_id == current_user.tenant_id).all()
    ]
    if not shops:
        return {"events": []}
    query = db.query(WebhookEvent).filter(WebhookEvent.shop_domain.in_(shops))
    if topic:
        query = query.filter(WebhookEvent.topic == topic)
    rows = query.order_by(WebhookEvent.created_at.desc()).limit(limit).all()
    return {
        "events": [
            {
                "id": r.id,
                "source": r.source,
                "shopDomain": r.shop_domain,
                "topic": r.topic,
                "deliveryId": r.delivery_id,
                "payloadSummary": r.payload_summary,
                "processedAt": r.processed_at.isoformat() if r.processed_at else None,
                "error": r.error,
                "createdAt": r.created_at.isoformat() if r.created_at else None,
            }
            for r in rows
        ]
    }
