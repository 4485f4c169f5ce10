#!/usr/bin/env python3
"""
Reconcile every active Shopify integration: pull orders and products, push inventory.
Run from cron; each integration's toggles decide which steps run.
"""
import argparse
import asyncio
import logging
import os
import sys
from typing import Dict, Optional

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import ShopifyApiConfig, settings
from app.database import SessionLocal
from app.models import Integration
from app.services.errors import IntegrationSuspended, SyncError
from app.services.integration_store import IntegrationStore
from app.services.shopify_client import ShopifyClient
from app.services.sync_engine import SyncEngine

logger = logging.getLogger("reconcile_integrations")


async def reconcile_integration(engine: SyncEngine, integration: Integration) -> Dict[str, Optional[int]]:
    """Run the enabled steps for one integration. A failed step does not stop the others."""
    result: Dict[str, Optional[int]] = {"orders": None, "products": None, "inventory": None}
    steps = []
    if integration.sync_orders:
        steps.append(("orders", lambda: engine.sync_orders_inbound(integration, since=integration.last_order_sync_at)))
    if integration.sync_products:
        steps.append(("products", lambda: engine.sync_products_inbound(integration)))
    if integration.sync_inventory:
        steps.append(("inventory", lambda: engine.sync_inventory_outbound(integration)))

    for name, run in steps:
        try:
            outcome = await run()
        except IntegrationSuspended as e:
            logger.warning("Skipping %s: %s", integration.shop_domain, e)
            break
        except SyncError as e:
            logger.error("%s sync failed for %s: %s", name, integration.shop_domain, e)
            continue
        except Exception as e:
            logger.exception("%s sync crashed for %s: %s", name, integration.shop_domain, e)
            continue
        result[name] = sum(outcome.values()) if isinstance(outcome, dict) else outcome
    return result


async def reconcile_all(shop: Optional[str] = None) -> int:
    """Returns the number of integrations processed."""
    db = SessionLocal()
    try:
        store = IntegrationStore(db)
        engine = SyncEngine(db, ShopifyClient(ShopifyApiConfig.from_settings()), store)
        integrations = store.list_active()
        if shop:
            integrations = [i for i in integrations if i.shop_domain == shop]
        logger.info("Reconciling %s active integration(s)", len(integrations))
        for integration in integrations:
            result = await reconcile_integration(engine, integration)
            logger.info("Reconciled %s: %s", integration.shop_domain, result)
        return len(integrations)
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--shop", help="Only reconcile this shop domain")
    args = parser.parse_args()
    count = asyncio.run(reconcile_all(args.shop))
    logger.info("Done: %s integration(s)", count)


if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    main()
