"""
Integration persistence: lookup by tenant or shop, OAuth upsert, sync bookkeeping
and the consecutive-failure circuit breaker.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models import SHOPIFY, Integration
from app.services.credentials import ShopCredentials
from app.services.errors import IntegrationSuspended

logger = logging.getLogger(__name__)

# Integration columns stamped by record_success
SYNC_TIMESTAMP_FIELDS = ("last_order_sync_at", "last_product_sync_at", "last_inventory_sync_at")
TOGGLE_FIELDS = ("sync_orders", "sync_products", "sync_inventory", "auto_fulfill", "is_active")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return _as_utc(value).isoformat() if value else None


class IntegrationStore:
    """All Integration reads and writes go through here; every method commits its own change."""

    def __init__(
        self,
        db: Session,
        error_threshold: Optional[int] = None,
        cooldown_seconds: Optional[int] = None,
    ):
        self.db = db
        self.error_threshold = error_threshold if error_threshold is not None else settings.SYNC_ERROR_THRESHOLD
        self.cooldown = timedelta(
            seconds=cooldown_seconds if cooldown_seconds is not None else settings.SYNC_ERROR_COOLDOWN_SECONDS
        )

    # Lookups

    def get_for_tenant(self, tenant_id: str, integration_id: str) -> Optional[Integration]:
        return (
            self.db.query(Integration)
            .filter(Integration.id == integration_id, Integration.tenant_id == tenant_id)
            .first()
        )

    def list_for_tenant(self, tenant_id: str) -> List[Integration]:
        return (
            self.db.query(Integration)
            .filter(Integration.tenant_id == tenant_id)
            .order_by(Integration.created_at.desc())
            .all()
        )

    def list_active(self) -> List[Integration]:
        return (
            self.db.query(Integration)
            .filter(Integration.platform == SHOPIFY, Integration.is_active == True)  # noqa: E712
            .all()
        )

    def find_active_by_shop(self, shop: str) -> Optional[Integration]:
        """
        The single active integration for a shop domain. Webhooks carry only the shop,
        so more than one match means routing is ambiguous and nothing is returned.
        """
        matches = (
            self.db.query(Integration)
            .filter(
                Integration.platform == SHOPIFY,
                Integration.shop_domain == shop,
                Integration.is_active == True,  # noqa: E712
            )
            .limit(2)
            .all()
        )
        if len(matches) > 1:
            logger.error("Shop %s has more than one active integration; refusing to route", shop)
            return None
        return matches[0] if matches else None

    def find_active_for_tenant(self, tenant_id: str, shop: Optional[str] = None) -> Optional[Integration]:
        query = self.db.query(Integration).filter(
            Integration.tenant_id == tenant_id,
            Integration.platform == SHOPIFY,
            Integration.is_active == True,  # noqa: E712
        )
        if shop:
            query = query.filter(Integration.shop_domain == shop)
        return query.order_by(Integration.created_at.asc()).first()

    def shop_active_elsewhere(self, shop: str, tenant_id: str) -> bool:
        return (
            self.db.query(Integration.id)
            .filter(
                Integration.platform == SHOPIFY,
                Integration.shop_domain == shop,
                Integration.is_active == True,  # noqa: E712
                Integration.tenant_id != tenant_id,
            )
            .first()
            is not None
        )

    # Writes

    def upsert_from_oauth(self, tenant_id: str, creds: ShopCredentials) -> Integration:
        """Refresh credentials and reactivate, or insert with every sync toggle on."""
        integration = (
            self.db.query(Integration)
            .filter(
                Integration.tenant_id == tenant_id,
                Integration.platform == SHOPIFY,
                Integration.shop_domain == creds.shop,
            )
            .first()
        )
        name = creds.shop_name or creds.shop
        if integration:
            integration.credentials = creds
            integration.name = name
            integration.is_active = True
            integration.last_error = None
            integration.last_error_at = None
            integration.error_count = 0
            logger.info("Updated Shopify integration %s for shop %s", integration.id, creds.shop)
        else:
            integration = Integration(
                tenant_id=tenant_id,
                platform=SHOPIFY,
                name=name,
                is_active=True,
                sync_orders=True,
                sync_products=True,
                sync_inventory=True,
                auto_fulfill=True,
                error_count=0,
            )
            integration.credentials = creds
            self.db.add(integration)
            logger.info("Created Shopify integration for shop %s (tenant %s)", creds.shop, tenant_id)
        self.db.commit()
        self.db.refresh(integration)
        return integration

    def set_fulfillment_location(self, integration: Integration, location_id: Any) -> None:
        integration.fulfillment_location_id = str(location_id) if location_id is not None else None
        self.db.commit()

    def record_success(self, integration: Integration, stamp: Optional[str] = None) -> None:
        """Clear error state; `stamp` names a last_*_sync_at column to set to now."""
        if stamp is not None:
            if stamp not in SYNC_TIMESTAMP_FIELDS:
                raise ValueError(f"Unknown sync timestamp field: {stamp}")
            setattr(integration, stamp, _utcnow())
        integration.last_error = None
        integration.last_error_at = None
        integration.error_count = 0
        self.db.commit()

    def record_failure(self, integration: Integration, error: Any) -> None:
        integration.last_error = str(error)[:2000]
        integration.last_error_at = _utcnow()
        integration.error_count = (integration.error_count or 0) + 1
        self.db.commit()
        logger.warning(
            "Integration %s (%s) failure #%s: %s",
            integration.id, integration.shop_domain, integration.error_count, integration.last_error[:200],
        )

    def deactivate_shop(self, shop: str) -> int:
        integrations = (
            self.db.query(Integration)
            .filter(Integration.platform == SHOPIFY, Integration.shop_domain == shop)
            .all()
        )
        for integration in integrations:
            integration.is_active = False
        self.db.commit()
        return len(integrations)

    def update_settings(self, integration: Integration, changes: Dict[str, Any]) -> Integration:
        for field_name, value in changes.items():
            if field_name in TOGGLE_FIELDS:
                setattr(integration, field_name, bool(value))
            elif field_name == "name" and value:
                integration.name = str(value)[:255]
        self.db.commit()
        self.db.refresh(integration)
        return integration

    def delete(self, integration: Integration) -> None:
        self.db.delete(integration)
        self.db.commit()

    # Circuit breaker

    def is_suspended(self, integration: Integration, now: Optional[datetime] = None) -> bool:
        if (integration.error_count or 0) < self.error_threshold:
            return False
        last_error_at = _as_utc(integration.last_error_at)
        if last_error_at is None:
            return False
        return (now or _utcnow()) - last_error_at < self.cooldown

    def ensure_available(self, integration: Integration, force: bool = False) -> None:
        """Raise IntegrationSuspended instead of calling Shopify for a failing integration."""
        if force or not self.is_suspended(integration):
            return
        raise IntegrationSuspended(integration.id, integration.error_count)

    # Serialization

    def to_response(self, integration: Integration) -> Dict[str, Any]:
        return {
            "id": integration.id,
            "platform": integration.platform,
            "name": integration.name,
            "shopDomain": integration.shop_domain,
            "isActive": integration.is_active,
            "syncOrders": integration.sync_orders,
            "syncProducts": integration.sync_products,
            "syncInventory": integration.sync_inventory,
            "autoFulfill": integration.auto_fulfill,
            "credentials": integration.credentials.redacted(),
            "fulfillmentLocationId": integration.fulfillment_location_id,
            "lastOrderSyncAt": _iso(integration.last_order_sync_at),
            "lastProductSyncAt": _iso(integration.last_product_sync_at),
            "lastInventorySyncAt": _iso(integration.last_inventory_sync_at),
            "lastError": integration.last_error,
            "lastErrorAt": _iso(integration.last_error_at),
            "errorCount": integration.error_count or 0,
            "suspended": self.is_suspended(integration),
            "createdAt": _iso(integration.created_at),
        }
