"""
Shopify webhook ingestion: delivery dedup, event persistence and per-topic handlers.

The controller verifies the HMAC over the raw body and hands over a WebhookDelivery.
Every handler is scoped to the tenant of the single active Integration for the shop.
Handlers never raise to the caller: failures are rolled back, stored on the
WebhookEvent and acknowledged so Shopify does not retry forever.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import ShopifyApiConfig
from app.models import (
    SHOPIFY,
    TERMINAL_ORDER_STATUSES,
    Integration,
    OrderLine,
    OrderStatus,
    Product,
    Return,
    ReturnLine,
    ReturnStatus,
    ReturnType,
    WebhookEvent,
)
from app.services import shopify_mapping as mapping
from app.services.errors import PreconditionError
from app.services.integration_store import IntegrationStore
from app.services.order_import import create_order_from_payload, find_order
from app.services.shopify_signature import verify_webhook
from app.services.warehouse_helper import HighestPriorityWarehousePolicy, default_warehouse_policy

logger = logging.getLogger(__name__)

DEFAULT_CANCEL_REASON = "Cancelled in Shopify"
DEFAULT_REFUND_REASON = "Refund from Shopify"
UNKNOWN_SKU = "UNKNOWN"
UNKNOWN_ITEM = "Unknown Item"


@dataclass(frozen=True)
class WebhookDelivery:
    """One webhook request: the exact bytes Shopify signed plus the JSON parsed from them."""

    raw_body: bytes
    payload: Dict[str, Any]
    topic: str
    shop_domain: str
    hmac_header: Optional[str] = None
    webhook_id: Optional[str] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_authentic(self, secret: str) -> bool:
        return verify_webhook(self.raw_body, self.hmac_header, secret)

    @property
    def summary(self) -> Optional[str]:
        oid = self.payload.get("id") or self.payload.get("order_id")
        return f"id={oid}" if oid is not None else None


def _ack(message: str, **extra: Any) -> Dict[str, Any]:
    return {"ok": True, "message": message, **extra}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WebhookIngestor:
    """Dispatch verified deliveries by topic."""

    def __init__(
        self,
        db: Session,
        config: ShopifyApiConfig,
        warehouse_policy: HighestPriorityWarehousePolicy = default_warehouse_policy,
    ):
        self.db = db
        self.config = config
        self.store = IntegrationStore(db)
        self.warehouse_policy = warehouse_policy
        self._handlers: Dict[str, Callable[[WebhookDelivery], Dict[str, Any]]] = {
            "orders/create": self.handle_order_created,
            "orders/updated": self.handle_order_updated,
            "orders/cancelled": self.handle_order_cancelled,
            "products/create": self.handle_product_created,
            "products/update": self.handle_product_updated,
            "products/delete": self.handle_product_deleted,
            "refunds/create": self.handle_refund_created,
            "app/uninstalled": self.handle_app_uninstalled,
        }

    def _already_processed(self, delivery: WebhookDelivery) -> bool:
        if not delivery.webhook_id:
            return False
        return (
            self.db.query(WebhookEvent.id)
            .filter(
                WebhookEvent.source == SHOPIFY,
                WebhookEvent.delivery_id == delivery.webhook_id,
                WebhookEvent.processed_at.isnot(None),
            )
            .first()
            is not None
        )

    def ingest(self, delivery: WebhookDelivery) -> Dict[str, Any]:
        """Persist the event, run its handler and return the acknowledgement body."""
        if self._already_processed(delivery):
            logger.info("Shopify webhook %s %s already processed; skipping", delivery.topic, delivery.webhook_id)
            return _ack("Duplicate delivery")

        event = WebhookEvent(
            source=SHOPIFY,
            shop_domain=delivery.shop_domain,
            topic=delivery.topic,
            delivery_id=delivery.webhook_id,
            payload_summary=delivery.summary,
        )
        self.db.add(event)
        self.db.commit()
        event_id = event.id

        handler = self._handlers.get(delivery.topic)
        if handler is None:
            logger.info("Shopify webhook: unhandled topic %s from %s", delivery.topic, delivery.shop_domain)
            self._finish(event_id, None)
            return _ack("Unhandled topic")

        try:
            result = handler(delivery)
            self.db.commit()
        except PreconditionError as e:
            self.db.rollback()
            logger.error("Shopify webhook %s for %s: %s", delivery.topic, delivery.shop_domain, e)
            self._finish(event_id, str(e))
            return {"ok": True, "error": str(e)}
        except Exception as e:
            # Shopify retries anything but 2xx; the event row keeps the failure for operators
            self.db.rollback()
            logger.exception("Shopify webhook %s processing failed for %s: %s", delivery.topic, delivery.shop_domain, e)
            self._finish(event_id, str(e))
            return {"ok": True, "error": "Processing failed"}

        self._finish(event_id, None)
        return result

    def _finish(self, event_id: str, error: Optional[str]) -> None:
        event = self.db.query(WebhookEvent).filter(WebhookEvent.id == event_id).first()
        if event is None:
            return
        event.processed_at = _now()
        event.error = error[:500] if error else None
        self.db.commit()

    def _integration(self, delivery: WebhookDelivery, toggle: Optional[str] = None) -> Optional[Integration]:
        integration = self.store.find_active_by_shop(delivery.shop_domain)
        if integration is None:
            logger.warning("Shopify webhook %s: no active integration for shop %s", delivery.topic, delivery.shop_domain)
            return None
        if toggle and not getattr(integration, toggle):
            logger.info("Shopify webhook %s: %s disabled for integration %s", delivery.topic, toggle, integration.id)
            return None
        return integration

    # Orders

    def handle_order_created(self, delivery: WebhookDelivery) -> Dict[str, Any]:
        integration = self._integration(delivery, "sync_orders")
        if integration is None:
            return _ack("Integration inactive or order sync disabled")

        warehouse = self.warehouse_policy.choose(self.db, integration.tenant_id)
        if warehouse is None:
            raise PreconditionError(f"No active warehouse for tenant {integration.tenant_id}")

        order, created = create_order_from_payload(
            self.db, integration, delivery.payload, warehouse, self.config.sku_prefix
        )
        if not created:
            return _ack("Order already exists", orderId=order.id)
        return _ack("Order created", orderId=order.id)

    def handle_order_updated(self, delivery: WebhookDelivery) -> Dict[str, Any]:
        integration = self._integration(delivery, "sync_orders")
        if integration is None:
            return _ack("Integration inactive or order sync disabled")
        order = find_order(self.db, integration.tenant_id, str(delivery.payload.get("id") or ""))
        if order is None:
            return _ack("Order not found")

        # Address and note only; warehouse workflow owns status
        for column, value in mapping.shipping_fields(delivery.payload.get("shipping_address")).items():
            setattr(order, column, value)
        order.customer_note = delivery.payload.get("note")
        logger.info("Updated order %s from Shopify order %s", order.id, order.external_order_id)
        return _ack("Order updated", orderId=order.id)

    def handle_order_cancelled(self, delivery: WebhookDelivery) -> Dict[str, Any]:
        integration = self._integration(delivery, "sync_orders")
        if integration is None:
            return _ack("Integration inactive or order sync disabled")
        order = find_order(self.db, integration.tenant_id, str(delivery.payload.get("id") or ""))
        if order is None:
            return _ack("Order not found")
        if order.status in TERMINAL_ORDER_STATUSES:
            logger.warning("Shopify cancelled order %s but it is already %s; leaving it", order.id, order.status.value)
            return _ack(f"Order already {order.status.value.lower()}; not cancelled", orderId=order.id)
        if order.status == OrderStatus.CANCELLED:
            return _ack("Order already cancelled", orderId=order.id)

        order.status = OrderStatus.CANCELLED
        order.cancelled_at = mapping.parse_timestamp(delivery.payload.get("cancelled_at")) or _now()
        order.cancellation_reason = delivery.payload.get("cancel_reason") or DEFAULT_CANCEL_REASON
        logger.info("Cancelled order %s (%s)", order.id, order.cancellation_reason)
        return _ack("Order cancelled", orderId=order.id)

    # Products

    def _find_product(self, tenant_id: str, sku: str) -> Optional[Product]:
        return self.db.query(Product).filter(Product.tenant_id == tenant_id, Product.sku == sku).first()

    def _variant_fields(self, product: Dict[str, Any], variant: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            return mapping.product_fields(product, variant, self.config.sku_prefix)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Skipping malformed variant %s of Shopify product %s: %s",
                variant.get("id") if isinstance(variant, dict) else None, product.get("id"), e,
            )
            return None

    def handle_product_created(self, delivery: WebhookDelivery) -> Dict[str, Any]:
        integration = self._integration(delivery, "sync_products")
        if integration is None:
            return _ack("Integration inactive or product sync disabled")
        product = delivery.payload
        created = skipped = 0
        for variant in product.get("variants") or []:
            fields = self._variant_fields(product, variant)
            if fields is None or self._find_product(integration.tenant_id, fields["sku"]):
                skipped += 1
                continue
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
                created += 1
            except IntegrityError:
                skipped += 1
        return _ack("Products created", created=created, skipped=skipped)

    def handle_product_updated(self, delivery: WebhookDelivery) -> Dict[str, Any]:
        integration = self._integration(delivery, "sync_products")
        if integration is None:
            return _ack("Integration inactive or product sync disabled")
        product = delivery.payload
        updated = 0
        for variant in product.get("variants") or []:
            fields = self._variant_fields(product, variant)
            if fields is None:
                continue
            local = self._find_product(integration.tenant_id, fields["sku"])
            if local is None:
                continue
            for column, value in fields.items():
                setattr(local, column, value)
            local.external_source = SHOPIFY
            local.external_shop = integration.shop_domain
            updated += 1
        return _ack("Products updated", updated=updated)

    def handle_product_deleted(self, delivery: WebhookDelivery) -> Dict[str, Any]:
        integration = self._integration(delivery, "sync_products")
        if integration is None:
            return _ack("Integration inactive or product sync disabled")
        product_id = delivery.payload.get("id")
        if product_id is None:
            return _ack("No product id")
        count = (
            self.db.query(Product)
            .filter(
                Product.tenant_id == integration.tenant_id,
                Product.external_product_id == str(product_id),
            )
            .update({Product.is_active: False}, synchronize_session=False)
        )
        return _ack("Products deactivated", deactivated=count)

    # Refunds

    def _return_exists(self, order_id: str, refund_id: str) -> Optional[Return]:
        return (
            self.db.query(Return)
            .filter(Return.order_id == order_id, Return.external_id == refund_id)
            .first()
        )

    def handle_refund_created(self, delivery: WebhookDelivery) -> Dict[str, Any]:
        integration = self._integration(delivery)
        if integration is None:
            return _ack("Integration inactive")
        refund = delivery.payload
        refund_id = str(refund.get("id") or "")
        if not refund_id:
            return _ack("No refund id")
        order = find_order(self.db, integration.tenant_id, str(refund.get("order_id") or ""))
        if order is None:
            return _ack("Order not found")
        if self._return_exists(order.id, refund_id):
            return _ack("Return already exists")

        try:
            with self.db.begin_nested():
                return_record = Return(
                    tenant_id=integration.tenant_id,
                    order_id=order.id,
                    customer_id=order.customer_id,
                    return_number=f"RET-{refund_id}",
                    external_id=refund_id,
                    external_source=SHOPIFY,
                    status=ReturnStatus.PENDING,
                    return_type=ReturnType.REFUND,
                    reason=refund.get("note") or DEFAULT_REFUND_REASON,
                    requested_at=mapping.parse_timestamp(refund.get("created_at")) or _now(),
                )
                self.db.add(return_record)
                self.db.flush()
                for refund_line in refund.get("refund_line_items") or []:
                    try:
                        line = self._return_line(return_record.id, order.id, integration.tenant_id, refund_line)
                    except (KeyError, TypeError, ValueError) as e:
                        logger.warning("Skipping malformed refund line on refund %s: %s", refund_id, e)
                        continue
                    self.db.add(line)
                self.db.flush()
        except IntegrityError:
            return _ack("Return already exists")

        logger.info("Created return %s for order %s", return_record.return_number, order.id)
        return _ack("Return created", returnId=return_record.id)

    def _return_line(self, return_id: str, order_id: str, tenant_id: str, refund_line: Dict[str, Any]) -> ReturnLine:
        """Raises ValueError/TypeError for a line that cannot be mapped."""
        if not isinstance(refund_line, dict):
            raise TypeError(f"refund line is {type(refund_line).__name__}, not an object")
        quantity = int(refund_line.get("quantity") or 0)
        line_item = refund_line.get("line_item") or {}
        line_item_id = refund_line.get("line_item_id") or line_item.get("id")
        order_line = None
        if line_item_id is not None:
            order_line = (
                self.db.query(OrderLine)
                .filter(OrderLine.order_id == order_id, OrderLine.external_line_id == str(line_item_id))
                .first()
            )
        sku = (line_item.get("sku") or "").strip() or (order_line.sku if order_line else None) or UNKNOWN_SKU
        name = line_item.get("name") or line_item.get("title") or (order_line.name if order_line else None) or UNKNOWN_ITEM
        product_id = order_line.product_id if order_line else None
        if product_id is None and sku != UNKNOWN_SKU:
            product = self._find_product(tenant_id, sku)
            product_id = product.id if product else None
        return ReturnLine(
            return_id=return_id,
            order_line_id=order_line.id if order_line else None,
            product_id=product_id,
            sku=sku,
            name=name,
            quantity=quantity,
            reason="Customer Return" if refund_line.get("restock_type") == "return" else "Refund",
        )

    # App lifecycle

    def handle_app_uninstalled(self, delivery: WebhookDelivery) -> Dict[str, Any]:
        count = self.store.deactivate_shop(delivery.shop_domain)
        logger.info("Shopify app uninstalled from %s; deactivated %s integration(s)", delivery.shop_domain, count)
        return _ack("Integration deactivated", deactivated=count)
