"""
Order creation from a Shopify order payload.
Shared by the orders/create webhook and the inbound order reconciliation so both
produce identical orders and share the same idempotency check.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import (
    SHOPIFY,
    Customer,
    Integration,
    Order,
    OrderLine,
    OrderStatus,
    Product,
    ShippingMethodMapping,
    Warehouse,
)
from app.services import shopify_mapping as mapping

logger = logging.getLogger(__name__)


def find_order(db: Session, tenant_id: str, external_order_id: str) -> Optional[Order]:
    return (
        db.query(Order)
        .filter(
            Order.tenant_id == tenant_id,
            Order.external_source == SHOPIFY,
            Order.external_order_id == external_order_id,
        )
        .first()
    )


def find_customer(db: Session, tenant_id: str, email: str) -> Optional[Customer]:
    return db.query(Customer).filter(Customer.tenant_id == tenant_id, Customer.email == email).first()


def resolve_customer(db: Session, tenant_id: str, payload: Dict[str, Any]) -> Optional[Customer]:
    """Match by (tenant, email); create on first sight. Orders without an email get no customer."""
    shop_customer = payload.get("customer") or {}
    email = (payload.get("email") or shop_customer.get("email") or "").strip().lower()
    if not email:
        return None
    customer = find_customer(db, tenant_id, email)
    if customer:
        return customer
    customer = Customer(
        tenant_id=tenant_id,
        email=email,
        first_name=shop_customer.get("first_name"),
        last_name=shop_customer.get("last_name"),
        phone=shop_customer.get("phone") or payload.get("phone"),
        external_id=str(shop_customer["id"]) if shop_customer.get("id") is not None else None,
        external_source=SHOPIFY,
    )
    try:
        with db.begin_nested():
            db.add(customer)
            db.flush()
    except IntegrityError:
        # Another order from the same email created the customer first
        customer = find_customer(db, tenant_id, email)
        if customer is None:
            raise
        logger.info("Customer %s created concurrently; reusing it", email)
    return customer


def resolve_shipping_method(db: Session, tenant_id: str, title: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """(carrier_id, carrier_service_id) for a shipping line title, or (None, None) when unmapped."""
    if not title:
        return None, None
    mapping_row = (
        db.query(ShippingMethodMapping)
        .filter(
            ShippingMethodMapping.tenant_id == tenant_id,
            ShippingMethodMapping.external_shipping_method == title,
        )
        .first()
    )
    if not mapping_row or not mapping_row.carrier_service:
        logger.debug("No shipping mapping for %r (tenant %s)", title, tenant_id)
        return None, None
    return mapping_row.carrier_service.carrier_id, mapping_row.carrier_service_id


def _build_line(db: Session, tenant_id: str, order_id: str, item: Dict[str, Any], sku_prefix: str) -> OrderLine:
    sku = mapping.variant_sku(item.get("sku"), item.get("variant_id"), sku_prefix)
    quantity = int(item["quantity"])
    if quantity <= 0:
        raise ValueError(f"non-positive quantity {quantity}")
    product = db.query(Product).filter(Product.tenant_id == tenant_id, Product.sku == sku).first()
    return OrderLine(
        order_id=order_id,
        product_id=product.id if product else None,
        sku=sku,
        name=(item.get("name") or item.get("title") or sku)[:255],
        quantity=quantity,
        unit_price_cents=mapping.to_cents(item.get("price")),
        external_line_id=str(item["id"]) if item.get("id") is not None else None,
    )


def create_order_from_payload(
    db: Session,
    integration: Integration,
    payload: Dict[str, Any],
    warehouse: Warehouse,
    sku_prefix: str = "SHOPIFY",
) -> Tuple[Order, bool]:
    """
    Create the local order for a Shopify order unless it already exists.
    Returns (order, created). The caller commits.
    """
    external_id = str(payload.get("id") or "")
    if not external_id:
        raise ValueError("Order payload has no id")
    tenant_id = integration.tenant_id

    existing = find_order(db, tenant_id, external_id)
    if existing:
        return existing, False

    try:
        with db.begin_nested():
            customer = resolve_customer(db, tenant_id, payload)
            carrier_id, carrier_service_id = resolve_shipping_method(
                db, tenant_id, mapping.shipping_method_title(payload)
            )
            order = Order(
                tenant_id=tenant_id,
                warehouse_id=warehouse.id,
                customer_id=customer.id if customer else None,
                carrier_id=carrier_id,
                carrier_service_id=carrier_service_id,
                order_number=mapping.order_number(payload),
                external_source=SHOPIFY,
                external_order_id=external_id,
                external_shop=integration.shop_domain,
                status=OrderStatus.PENDING,
                priority=mapping.order_priority(payload.get("tags")),
                order_placed_at=mapping.parse_timestamp(payload.get("created_at")),
                subtotal_cents=mapping.to_cents(payload.get("subtotal_price")),
                shipping_cents=mapping.shipping_cents(payload),
                tax_cents=mapping.to_cents(payload.get("total_tax")),
                total_cents=mapping.to_cents(payload.get("total_price")),
                customer_note=payload.get("note"),
                **mapping.shipping_fields(payload.get("shipping_address")),
            )
            db.add(order)
            db.flush()

            for item in payload.get("line_items") or []:
                try:
                    db.add(_build_line(db, tenant_id, order.id, item, sku_prefix))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(
                        "Skipping malformed line item %s on Shopify order %s: %s",
                        item.get("id") if isinstance(item, dict) else None, external_id, e,
                    )
            db.flush()
    except IntegrityError:
        # A concurrent delivery inserted the same order first
        existing = find_order(db, tenant_id, external_id)
        if existing is None:
            raise
        logger.info("Shopify order %s created concurrently; treating as existing", external_id)
        return existing, False

    logger.info("Created order %s from Shopify order %s (tenant %s)", order.order_number, external_id, tenant_id)
    return order, True
