"""
Pure conversions from Shopify payloads to local field values.
No database or network access here.
"""
import html
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional

DEFAULT_VARIANT_TITLE = "Default Title"
PRIORITY_TAG = "priority"
HIGH_PRIORITY = 10
NORMAL_PRIORITY = 5

_TAG_RE = re.compile(r"<[^>]*>")


def to_cents(value: Any) -> int:
    """Shopify money strings ("19.99") to integer cents; blank or malformed values are 0."""
    if value is None or value == "":
        return 0
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return 0
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def variant_sku(variant_sku_value: Optional[str], variant_id: Any, prefix: str = "SHOPIFY") -> str:
    """Variant SKU, or `{prefix}-{variant_id}` when the merchant left it blank."""
    sku = (variant_sku_value or "").strip()
    if sku:
        return sku
    return f"{prefix}-{variant_id}"


def strip_html(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    text = html.unescape(_TAG_RE.sub("", value)).strip()
    return text or None


def product_name(product_title: Optional[str], variant_title: Optional[str]) -> str:
    title = (product_title or "").strip() or "Untitled"
    variant_title = (variant_title or "").strip()
    if variant_title and variant_title != DEFAULT_VARIANT_TITLE:
        return f"{title} - {variant_title}"
    return title


def product_fields(product: Dict[str, Any], variant: Dict[str, Any], prefix: str = "SHOPIFY") -> Dict[str, Any]:
    """Local Product column values for one Shopify variant."""
    grams = variant.get("grams")
    return {
        "sku": variant_sku(variant.get("sku"), variant.get("id"), prefix),
        "name": product_name(product.get("title"), variant.get("title")),
        "description": strip_html(product.get("body_html")),
        "weight_grams": int(grams) if grams not in (None, "") else None,
        "price_cents": to_cents(variant.get("price")),
        "is_active": product.get("status") == "active",
        "external_id": str(variant.get("id")) if variant.get("id") is not None else None,
        "external_product_id": str(product.get("id")) if product.get("id") is not None else None,
        "external_inventory_item_id": (
            str(variant.get("inventory_item_id")) if variant.get("inventory_item_id") is not None else None
        ),
    }


def shipping_fields(addr: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    """Order shipping_* columns from a Shopify address; all None when the address is absent."""
    if not addr or not isinstance(addr, dict):
        return {
            "shipping_name": None,
            "shipping_address_line1": None,
            "shipping_address_line2": None,
            "shipping_city": None,
            "shipping_postal_code": None,
            "shipping_country_code": None,
            "shipping_phone": None,
        }
    name = (addr.get("name") or "").strip()
    if not name:
        name = " ".join(p for p in [(addr.get("first_name") or "").strip(), (addr.get("last_name") or "").strip()] if p)
    return {
        "shipping_name": name or None,
        "shipping_address_line1": (addr.get("address1") or "").strip() or None,
        "shipping_address_line2": (addr.get("address2") or "").strip() or None,
        "shipping_city": (addr.get("city") or "").strip() or None,
        "shipping_postal_code": (addr.get("zip") or "").strip() or None,
        "shipping_country_code": (addr.get("country_code") or "").strip() or None,
        "shipping_phone": (addr.get("phone") or "").strip() or None,
    }


def order_number(payload: Dict[str, Any]) -> str:
    return f"SH-{payload.get('order_number') or payload.get('id')}"


def order_priority(tags: Optional[str]) -> int:
    """Orders tagged `priority` jump the pick queue."""
    tag_list = [t.strip().lower() for t in (tags or "").split(",")]
    return HIGH_PRIORITY if PRIORITY_TAG in tag_list else NORMAL_PRIORITY


def shipping_method_title(payload: Dict[str, Any]) -> Optional[str]:
    lines = payload.get("shipping_lines") or []
    if not lines:
        return None
    return (lines[0].get("title") or "").strip() or None


def shipping_cents(payload: Dict[str, Any]) -> int:
    total_set = payload.get("total_shipping_price_set") or {}
    shop_money = total_set.get("shop_money") or {}
    if shop_money.get("amount") is not None:
        return to_cents(shop_money.get("amount"))
    return sum(to_cents(line.get("price")) for line in payload.get("shipping_lines") or [])


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Shopify ISO-8601 timestamps ("2024-01-05T10:00:00-05:00")."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def tracking_url(template: Optional[str], tracking_number: str) -> Optional[str]:
    if not template or not tracking_number:
        return None
    return template.replace("{tracking}", tracking_number)
