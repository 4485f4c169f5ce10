"""
Shopify OAuth connector.

install: validate shop -> signed state -> authorize URL
callback: verify HMAC -> decode state -> exchange code -> shop.json -> upsert Integration
          -> register webhooks -> ensure fulfillment location

Anything that fails before the Integration is written raises OAuthError and persists nothing.
Webhook and location setup afterwards is best effort: logged, never fatal.
"""
import enum
import logging
import re
import secrets
import time
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session

from app.config import ShopifyApiConfig
from app.models import Integration, Tenant
from app.services.credentials import ShopCredentials
from app.services.errors import ExternalApiError, OAuthError
from app.services.integration_store import IntegrationStore
from app.services.shopify_client import ShopifyClient
from app.services.shopify_signature import verify_install_callback

logger = logging.getLogger(__name__)

SHOP_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-]*\.myshopify\.com$")

CALLBACK_PATH = "/api/shopify/callback"
WEBHOOK_PATH = "/api/shopify/webhooks"

WEBHOOK_TOPICS = (
    "orders/create",
    "orders/updated",
    "orders/cancelled",
    "products/create",
    "products/update",
    "products/delete",
    "refunds/create",
    "app/uninstalled",
)

LOCATION_ADDRESS = "Managed by WMS"


class OAuthStep(str, enum.Enum):
    INSTALL_REQUESTED = "INSTALL_REQUESTED"
    CALLBACK_RECEIVED = "CALLBACK_RECEIVED"
    TOKEN_EXCHANGED = "TOKEN_EXCHANGED"
    SHOP_INFO_FETCHED = "SHOP_INFO_FETCHED"
    INTEGRATION_UPSERTED = "INTEGRATION_UPSERTED"
    WEBHOOKS_REGISTERED = "WEBHOOKS_REGISTERED"
    FULFILLMENT_LOCATION_ENSURED = "FULFILLMENT_LOCATION_ENSURED"
    COMPLETE = "COMPLETE"


def normalize_shop_domain(shop_domain: Optional[str]) -> str:
    """Lower-case, strip scheme and slashes, append .myshopify.com to bare names, then validate."""
    if not shop_domain or not shop_domain.strip():
        raise ValueError("Shop domain is required")
    shop = shop_domain.lower().strip()
    shop = shop.replace("https://", "").replace("http://", "")
    shop = shop.rstrip("/")
    if "." not in shop:
        shop = f"{shop}.myshopify.com"
    if not SHOP_DOMAIN_RE.match(shop):
        raise ValueError(f"Invalid shop domain: {shop_domain}. Must be 'shopname' or 'shopname.myshopify.com'")
    return shop


def is_valid_shop_domain(shop: Optional[str]) -> bool:
    return bool(shop) and SHOP_DOMAIN_RE.match(shop) is not None


class ShopifyOAuthService:
    """Handle the Shopify OAuth install flow for one app configuration."""

    def __init__(self, config: ShopifyApiConfig, client: ShopifyClient):
        self.config = config
        self.client = client

    @property
    def redirect_uri(self) -> str:
        return f"{self.config.app_url}{CALLBACK_PATH}"

    def webhook_address(self, topic: str) -> str:
        return f"{self.config.app_url}{WEBHOOK_PATH}/{topic}"

    # State token

    def create_state(self, tenant_id: str, shop: str) -> str:
        now = int(time.time())
        state_data = {
            "tenant_id": tenant_id,
            "shop": shop,
            "nonce": secrets.token_urlsafe(32),
            "iat": now,
            "exp": now + self.config.state_ttl_seconds,
        }
        return jwt.encode(state_data, self.config.state_secret, algorithm=self.config.state_algorithm)

    def decode_state(self, state: str) -> Dict[str, Any]:
        try:
            data = jwt.decode(state, self.config.state_secret, algorithms=[self.config.state_algorithm])
        except ExpiredSignatureError:
            raise OAuthError(OAuthStep.CALLBACK_RECEIVED, "state_expired")
        except JWTError as e:
            logger.warning("OAuth state rejected: %s", e)
            raise OAuthError(OAuthStep.CALLBACK_RECEIVED, "invalid_state")
        if not data.get("tenant_id") or not data.get("shop") or not data.get("nonce"):
            raise OAuthError(OAuthStep.CALLBACK_RECEIVED, "invalid_state")
        return data

    # Install

    def begin_install(self, tenant_id: str, shop_domain: str) -> str:
        """Authorize URL for the shop. Raises ValueError for a malformed shop domain."""
        if not self.config.api_key or not self.config.api_secret:
            raise OAuthError(OAuthStep.INSTALL_REQUESTED, "oauth_not_configured")
        shop = normalize_shop_domain(shop_domain)
        params = {
            "client_id": self.config.api_key,
            "scope": self.config.scope_string,
            "redirect_uri": self.redirect_uri,
            "state": self.create_state(tenant_id, shop),
        }
        logger.info("Generated OAuth install URL for shop %s (tenant %s)", shop, tenant_id)
        return f"https://{shop}/admin/oauth/authorize?{urlencode(params)}"

    # Callback

    async def handle_callback(self, db: Session, query_params: Mapping[str, str]) -> Integration:
        params = dict(query_params or {})
        shop = (params.get("shop") or "").strip().lower()
        code = params.get("code")
        state = params.get("state")
        logger.info(
            "OAuth callback received - shop: %s, has_code: %s, has_state: %s, has_hmac: %s",
            shop, bool(code), bool(state), bool(params.get("hmac")),
        )

        if not shop or not code or not state:
            raise OAuthError(OAuthStep.CALLBACK_RECEIVED, "missing_params")
        if not verify_install_callback(params, self.config.api_secret):
            raise OAuthError(OAuthStep.CALLBACK_RECEIVED, "invalid_hmac")
        if not is_valid_shop_domain(shop):
            raise OAuthError(OAuthStep.CALLBACK_RECEIVED, "invalid_shop")

        state_data = self.decode_state(state)
        if state_data["shop"] != shop:
            logger.error("OAuth shop mismatch - state: %s, callback: %s", state_data["shop"], shop)
            raise OAuthError(OAuthStep.CALLBACK_RECEIVED, "shop_mismatch")
        tenant_id = state_data["tenant_id"]
        if db.query(Tenant.id).filter(Tenant.id == tenant_id).first() is None:
            raise OAuthError(OAuthStep.CALLBACK_RECEIVED, "tenant_not_found")

        store = IntegrationStore(db)
        if store.shop_active_elsewhere(shop, tenant_id):
            logger.error("OAuth rejected: shop %s is already connected to another tenant", shop)
            raise OAuthError(OAuthStep.CALLBACK_RECEIVED, "shop_in_use")

        try:
            token_data = await self.client.exchange_code(shop, code)
        except ExternalApiError as e:
            logger.error("Token exchange failed for shop %s: HTTP %s", shop, e.status_code)
            raise OAuthError(OAuthStep.CALLBACK_RECEIVED, "token_exchange_failed", str(e))
        access_token = token_data.get("access_token")
        if not access_token:
            raise OAuthError(OAuthStep.TOKEN_EXCHANGED, "no_access_token")

        try:
            shop_info = (await self.client.request(shop, access_token, "shop.json")).get("shop") or {}
        except ExternalApiError as e:
            logger.error("Fetching shop.json failed for %s: HTTP %s", shop, e.status_code)
            raise OAuthError(OAuthStep.TOKEN_EXCHANGED, "shop_info_failed", str(e))

        scopes = tuple(s.strip() for s in (token_data.get("scope") or "").split(",") if s.strip())
        creds = ShopCredentials(
            shop=shop,
            access_token=access_token,
            shop_name=shop_info.get("name"),
            shop_email=shop_info.get("email"),
            shop_domain=shop_info.get("domain"),
            scopes=scopes,
        )
        integration = store.upsert_from_oauth(tenant_id, creds)

        await self.register_webhooks(shop, access_token)
        await self.ensure_fulfillment_location(store, integration, access_token)

        logger.info("OAuth completed for shop %s (tenant %s, integration %s)", shop, tenant_id, integration.id)
        return integration

    async def register_webhooks(self, shop: str, access_token: str) -> Dict[str, List[str]]:
        """Subscribe every handled topic; an existing subscription (422) counts as registered."""
        result: Dict[str, List[str]] = {"registered": [], "existing": [], "failed": []}
        for topic in WEBHOOK_TOPICS:
            body = {"webhook": {"topic": topic, "address": self.webhook_address(topic), "format": "json"}}
            try:
                await self.client.request(shop, access_token, "webhooks.json", method="POST", body=body)
                result["registered"].append(topic)
            except ExternalApiError as e:
                if e.status_code == 422 and "already been taken" in e.body:
                    result["existing"].append(topic)
                else:
                    logger.warning("Failed to register webhook %s for %s: %s", topic, shop, e)
                    result["failed"].append(topic)
        logger.info(
            "Webhooks for %s: %s registered, %s existing, %s failed",
            shop, len(result["registered"]), len(result["existing"]), len(result["failed"]),
        )
        return result

    async def find_fulfillment_location(self, shop: str, access_token: str) -> Optional[dict]:
        data = await self.client.request(shop, access_token, "locations.json")
        for location in data.get("locations") or []:
            if location.get("name") == self.config.fulfillment_location_name:
                return location
        return None

    async def ensure_fulfillment_location(
        self, store: IntegrationStore, integration: Integration, access_token: str
    ) -> Optional[str]:
        """Find or create the dedicated location and cache its id. Returns None on failure."""
        shop = integration.shop_domain
        try:
            location = await self.find_fulfillment_location(shop, access_token)
            if location is None:
                body = {"location": {"name": self.config.fulfillment_location_name, "address1": LOCATION_ADDRESS}}
                created = await self.client.request(shop, access_token, "locations.json", method="POST", body=body)
                location = created.get("location") or {}
                logger.info("Created fulfillment location %s for %s", location.get("id"), shop)
        except ExternalApiError as e:
            logger.warning("Could not ensure fulfillment location for %s: %s", shop, e)
            return None
        if location.get("id") is None:
            return None
        store.set_fulfillment_location(integration, location["id"])
        return integration.fulfillment_location_id
