"""
Reconciliation between the warehouse and Shopify.

Inbound: full product and order pulls that fill whatever webhooks missed.
Outbound: inventory levels, fulfillment/tracking and product status.
Every call that reaches Shopify records its outcome on the Integration; each pull or
inventory push also writes a SyncJob row.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import ShopifyApiConfig
from app.models import (
    SHOPIFY,
    Integration,
    Inventory,
    InventoryStatus,
    Order,
    Product,
    SyncJob,
    SyncJobStatus,
    SyncJobType,
)
from app.services import shopify_mapping as mapping
from app.services.errors import ExternalApiError, PreconditionError
from app.services.integration_store import IntegrationStore
from app.services.order_import import create_order_from_payload
from app.services.shopify_client import ShopifyClient
from app.services.warehouse_helper import HighestPriorityWarehousePolicy, default_warehouse_policy

logger = logging.getLogger(__name__)

OPEN_FULFILLMENT_ORDER_STATUSES = ("open", "in_progress")


class SyncEngine:
    """Pull and push reconciliation for Shopify integrations"""

    def __init__(
        self,
        db: Session,
        client: ShopifyClient,
        store: Optional[IntegrationStore] = None,
        warehouse_policy: HighestPriorityWarehousePolicy = default_warehouse_policy,
    ):
        self.db = db
        self.client = client
        self.config: ShopifyApiConfig = client.config
        self.store = store or IntegrationStore(db)
        self.warehouse_policy = warehouse_policy

    # Job bookkeeping

    def _start_job(self, integration: Integration, job_type: SyncJobType) -> SyncJob:
        job = SyncJob(
            integration_id=integration.id,
            job_type=job_type,
            status=SyncJobStatus.RUNNING,
            started_at=datetime.now(timezone.utc),
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def _finish_job(self, job: SyncJob, processed: int, failed: int = 0, error: Optional[str] = None) -> None:
        job.status = SyncJobStatus.FAILED if error else SyncJobStatus.SUCCESS
        job.finished_at = datetime.now(timezone.utc)
        job.records_processed = processed
        job.records_failed = failed
        job.error_message = error[:2000] if error else None
        self.db.commit()

    def _fail(self, integration: Integration, job: Optional[SyncJob], error: Exception, processed: int = 0) -> None:
        self.db.rollback()
        if job is not None:
            self._finish_job(job, processed, error=str(error))
        self.store.record_failure(integration, error)

    # Inbound

    def _upsert_product(self, integration: Integration, product: Dict[str, Any], variant: Dict[str, Any]) -> str:
        fields = mapping.product_fields(product, variant, self.config.sku_prefix)
        local = (
            self.db.query(Product)
            .filter(Product.tenant_id == integration.tenant_id, Product.sku == fields["sku"])
            .first()
        )
        if local is not None:
            for column, value in fields.items():
                setattr(local, column, value)
            local.external_source = SHOPIFY
            local.external_shop = integration.shop_domain
            return "updated"
        try:
            with self.db.begin_nested():
                self.db.add(
                    Product(
                        tenant_id=integration.tenant_id,
                        external_source=SHOPIFY,
                        external_shop=integration.shop_domain,
                        **fields,
                    )
                )
                self.db.flush()
        except IntegrityError:
            # Same SKU inserted concurrently (webhook); next run updates it
            return "skipped"
        return "created"

    async def sync_products_inbound(self, integration: Integration, force: bool = False) -> Dict[str, int]:
        """Upsert every variant of every product by SKU. Returns created/updated/skipped counts."""
        self.store.ensure_available(integration, force)
        job = self._start_job(integration, SyncJobType.PULL_PRODUCTS)
        creds = integration.credentials
        counts = {"created": 0, "updated": 0, "skipped": 0}
        try:
            async for page in self.client.paginate(creds.shop, creds.access_token, "products.json", "products"):
                for product in page:
                    for variant in product.get("variants") or []:
                        try:
                            outcome = self._upsert_product(integration, product, variant)
                        except (KeyError, TypeError, ValueError) as e:
                            outcome = "skipped"
                            logger.warning(
                                "Skipping Shopify variant %s of product %s for %s: %s",
                                variant.get("id") if isinstance(variant, dict) else None,
                                product.get("id"), integration.shop_domain, e,
                            )
                        counts[outcome] += 1
                self.db.commit()
        except Exception as e:
            logger.error("Product sync failed for %s: %s", integration.shop_domain, e)
            self._fail(integration, job, e, counts["created"] + counts["updated"])
            raise

        self.store.record_success(integration, "last_product_sync_at")
        self._finish_job(job, counts["created"] + counts["updated"], counts["skipped"])
        logger.info(
            "Product sync for %s: %s created, %s updated, %s skipped",
            integration.shop_domain, counts["created"], counts["updated"], counts["skipped"],
        )
        return counts

    async def sync_orders_inbound(
        self, integration: Integration, since: Optional[datetime] = None, force: bool = False
    ) -> int:
        """Create every Shopify order not yet known locally. Returns the number created."""
        self.store.ensure_available(integration, force)
        job = self._start_job(integration, SyncJobType.PULL_ORDERS)

        warehouse = self.warehouse_policy.choose(self.db, integration.tenant_id)
        if warehouse is None:
            error = PreconditionError(f"No active warehouse for tenant {integration.tenant_id}")
            self._fail(integration, job, error)
            raise error

        params: Dict[str, Any] = {"status": "any"}
        if since is not None:
            params["created_at_min"] = since.isoformat()

        creds = integration.credentials
        created = failed = 0
        try:
            async for page in self.client.paginate(creds.shop, creds.access_token, "orders.json", "orders", params):
                for payload in page:
                    try:
                        _, was_created = create_order_from_payload(
                            self.db, integration, payload, warehouse, self.config.sku_prefix
                        )
                        self.db.commit()
                    except (SQLAlchemyError, KeyError, TypeError, ValueError) as e:
                        self.db.rollback()
                        failed += 1
                        logger.warning("Skipping Shopify order %s for %s: %s", payload.get("id"), integration.shop_domain, e)
                        continue
                    if was_created:
                        created += 1
        except Exception as e:
            logger.error("Order sync failed for %s: %s", integration.shop_domain, e)
            self._fail(integration, job, e, created)
            raise

        self.store.record_success(integration, "last_order_sync_at")
        self._finish_job(job, created, failed)
        logger.info("Order sync for %s: %s created, %s failed", integration.shop_domain, created, failed)
        return created

    # Outbound

    def available_quantity(self, tenant_id: str, product_id: str) -> int:
        """Sum of on-hand minus reserved over AVAILABLE inventory rows."""
        total = (
            self.db.query(
                func.coalesce(func.sum(Inventory.quantity_on_hand - Inventory.quantity_reserved), 0)
            )
            .filter(
                Inventory.tenant_id == tenant_id,
                Inventory.product_id == product_id,
                Inventory.status == InventoryStatus.AVAILABLE,
            )
            .scalar()
        )
        return int(total or 0)

    async def _resolve_location_id(self, integration: Integration) -> str:
        if integration.fulfillment_location_id:
            return integration.fulfillment_location_id
        creds = integration.credentials
        data = await self.client.request(creds.shop, creds.access_token, "locations.json")
        for location in data.get("locations") or []:
            if location.get("name") == self.config.fulfillment_location_name:
                self.store.set_fulfillment_location(integration, location["id"])
                return integration.fulfillment_location_id
        raise PreconditionError(
            f"Fulfillment location '{self.config.fulfillment_location_name}' not found in {integration.shop_domain}"
        )

    def _linked_products(self, integration: Integration) -> List[Product]:
        return (
            self.db.query(Product)
            .filter(
                Product.tenant_id == integration.tenant_id,
                Product.external_source == SHOPIFY,
                Product.external_shop == integration.shop_domain,
                Product.external_inventory_item_id.isnot(None),
            )
            .all()
        )

    async def sync_inventory_outbound(self, integration: Integration, force: bool = False) -> int:
        """Set Shopify available quantities at the fulfillment location. Returns items pushed."""
        self.store.ensure_available(integration, force)
        job = self._start_job(integration, SyncJobType.PUSH_INVENTORY)
        creds = integration.credentials
        try:
            location_id = await self._resolve_location_id(integration)
        except Exception as e:
            logger.error("Inventory sync for %s cannot start: %s", integration.shop_domain, e)
            self._fail(integration, job, e)
            raise

        pushed = failed = 0
        last_error: Optional[ExternalApiError] = None
        for product in self._linked_products(integration):
            try:
                inventory_item_id = int(product.external_inventory_item_id)
            except (TypeError, ValueError):
                failed += 1
                logger.warning(
                    "Skipping SKU %s on %s: bad inventory item id %r",
                    product.sku, integration.shop_domain, product.external_inventory_item_id,
                )
                continue
            body = {
                "location_id": int(location_id),
                "inventory_item_id": inventory_item_id,
                "available": self.available_quantity(integration.tenant_id, product.id),
            }
            try:
                await self.client.request(
                    creds.shop, creds.access_token, "inventory_levels/set.json", method="POST", body=body
                )
                pushed += 1
            except ExternalApiError as e:
                failed += 1
                last_error = e
                logger.warning("Inventory push failed for SKU %s on %s: %s", product.sku, integration.shop_domain, e)

        if last_error is not None and not pushed:
            self._fail(integration, job, last_error, 0)
            raise last_error
        self.store.record_success(integration, "last_inventory_sync_at")
        self._finish_job(job, pushed, failed)
        logger.info("Inventory sync for %s: %s pushed, %s failed", integration.shop_domain, pushed, failed)
        return pushed

    def _integration_for(self, tenant_id: str, shop: Optional[str]) -> Integration:
        integration = self.store.find_active_for_tenant(tenant_id, shop)
        if integration is None:
            raise PreconditionError(f"No active Shopify integration for {shop or 'tenant ' + tenant_id}")
        return integration

    async def push_fulfillment(
        self,
        order_id: str,
        tracking_number: str,
        carrier_name: Optional[str] = None,
        tracking_url: Optional[str] = None,
        force: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Send tracking for a shipped order. None when the order did not come from Shopify."""
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if order is None or order.external_source != SHOPIFY or not order.external_order_id:
            return None
        integration = self._integration_for(order.tenant_id, order.external_shop)
        self.store.ensure_available(integration, force)

        carrier = order.carrier
        if carrier_name is None and carrier is not None:
            carrier_name = carrier.name
        if tracking_url is None and carrier is not None:
            tracking_url = mapping.tracking_url(carrier.tracking_url_template, tracking_number)
        tracking_info = {"number": tracking_number}
        if carrier_name:
            tracking_info["company"] = carrier_name
        if tracking_url:
            tracking_info["url"] = tracking_url

        creds = integration.credentials
        try:
            if order.external_fulfillment_id:
                await self.client.request(
                    creds.shop,
                    creds.access_token,
                    f"fulfillments/{order.external_fulfillment_id}/update_tracking.json",
                    method="POST",
                    body={"fulfillment": {"tracking_info": tracking_info, "notify_customer": True}},
                )
                result = {"fulfillmentId": order.external_fulfillment_id, "created": False}
            else:
                fulfillment_id = await self._create_fulfillment(integration, order, tracking_info)
                order.external_fulfillment_id = fulfillment_id
                self.db.commit()
                result = {"fulfillmentId": fulfillment_id, "created": True}
        except (ExternalApiError, PreconditionError) as e:
            logger.error("Fulfillment push failed for order %s: %s", order.id, e)
            self._fail(integration, None, e)
            raise

        self.store.record_success(integration)
        logger.info("Pushed tracking %s for order %s to %s", tracking_number, order.id, integration.shop_domain)
        return {**result, "trackingUrl": tracking_url}

    async def _create_fulfillment(self, integration: Integration, order: Order, tracking_info: Dict[str, Any]) -> str:
        creds = integration.credentials
        data = await self.client.request(
            creds.shop, creds.access_token, f"orders/{order.external_order_id}/fulfillment_orders.json"
        )
        open_orders = [
            fo for fo in data.get("fulfillment_orders") or []
            if fo.get("status") in OPEN_FULFILLMENT_ORDER_STATUSES
        ]
        if not open_orders:
            raise PreconditionError(f"No open fulfillment order for Shopify order {order.external_order_id}")
        chosen = next(
            (
                fo for fo in open_orders
                if integration.fulfillment_location_id
                and str(fo.get("assigned_location_id")) == integration.fulfillment_location_id
            ),
            open_orders[0],
        )
        line_items = [
            {"id": li["id"], "quantity": li["fulfillable_quantity"]}
            for li in chosen.get("line_items") or []
            if (li.get("fulfillable_quantity") or 0) > 0
        ]
        body = {
            "fulfillment": {
                "line_items_by_fulfillment_order": [
                    {"fulfillment_order_id": chosen["id"], "fulfillment_order_line_items": line_items}
                ],
                "tracking_info": tracking_info,
                "notify_customer": True,
            }
        }
        created = await self.client.request(creds.shop, creds.access_token, "fulfillments.json", method="POST", body=body)
        fulfillment = created.get("fulfillment") or {}
        if fulfillment.get("id") is None:
            raise ExternalApiError(200, "fulfillment response has no id", path="fulfillments.json")
        return str(fulfillment["id"])

    async def push_product_status(self, product_id: str, force: bool = False) -> Optional[Dict[str, Any]]:
        """Mirror Product.is_active as Shopify status active/draft. None for unlinked products."""
        product = self.db.query(Product).filter(Product.id == product_id).first()
        if product is None or product.external_source != SHOPIFY or not product.external_product_id:
            return None
        integration = self._integration_for(product.tenant_id, product.external_shop)
        self.store.ensure_available(integration, force)

        status = "active" if product.is_active else "draft"
        creds = integration.credentials
        try:
            await self.client.request(
                creds.shop,
                creds.access_token,
                f"products/{product.external_product_id}.json",
                method="PUT",
                body={"product": {"id": int(product.external_product_id), "status": status}},
            )
        except ExternalApiError as e:
            logger.error("Product status push failed for %s: %s", product.sku, e)
            self._fail(integration, None, e)
            raise

        self.store.record_success(integration)
        return {"productId": product.id, "externalProductId": product.external_product_id, "status": status}

    def history(self, integration: Integration, limit: int = 50) -> List[SyncJob]:
        return (
            self.db.query(SyncJob)
            .filter(SyncJob.integration_id == integration.id)
            .order_by(SyncJob.created_at.desc(), SyncJob.started_at.desc())
            .limit(limit)
            .all()
        )
