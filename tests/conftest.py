"""
Shared fixtures: in-memory SQLite, tenant/warehouse/integration factories and a fake Shopify
served through httpx.MockTransport.
"""
import json
import os

# Settings are read at import time; point everything at test values first
os.environ["ENV"] = "DEV"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["AUTH_ALGORITHM"] = "HS256"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key-32-bytes-long"
os.environ["APP_URL"] = "https://wms.example.com"
os.environ["SHOPIFY_API_KEY"] = "test-api-key"
os.environ["SHOPIFY_API_SECRET"] = "test-api-secret"
os.environ["LOG_LEVEL"] = "WARNING"

import httpx
import pytest
from sqlalchemy import event

from app.database import Base, SessionLocal, engine

# pysqlite does not emit BEGIN itself, which breaks SAVEPOINT; take over transaction control
@event.listens_for(engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


from app import models  # noqa: E402,F401
from app.config import ShopifyApiConfig  # noqa: E402
from app.models import (  # noqa: E402
    Carrier,
    CarrierService,
    Integration,
    ShippingMethodMapping,
    Tenant,
    User,
    Warehouse,
)
from app.services.credentials import ShopCredentials  # noqa: E402
from app.services.shopify_client import ShopifyClient  # noqa: E402
from app.services.shopify_signature import compute_webhook_hmac  # noqa: E402
from app.services.shopify_webhook_handler import WebhookDelivery, WebhookIngestor  # noqa: E402

API_SECRET = "test-api-secret"
SHOP = "acme.myshopify.com"
ACCESS_TOKEN = "shpat_test_token_123"


class FakeShopify:
    """
    Minimal Shopify Admin API double. Routes match on method plus path suffix
    (e.g. ("GET", "products.json")); every request is recorded.
    """

    def __init__(self):
        self.routes = []
        self.requests = []
        self.transport = httpx.MockTransport(self.handle)

    def add(self, method, path, json_body=None, status=200, headers=None, handler=None):
        self.routes.append((method.upper(), path, json_body, status, headers or {}, handler))
        return self

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, path, json_body, status, headers, handler in self.routes:
            if request.method == method and request.url.path.endswith("/" + path):
                if handler is not None:
                    return handler(request)
                return httpx.Response(status, json=json_body if json_body is not None else {}, headers=headers)
        return httpx.Response(404, json={"errors": "Not Found"})

    def calls(self, method, path):
        return [r for r in self.requests if r.method == method.upper() and r.url.path.endswith("/" + path)]

    @staticmethod
    def body(request: httpx.Request) -> dict:
        return json.loads(request.content.decode("utf-8")) if request.content else {}


@pytest.fixture
def db_session():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def shopify_config():
    return ShopifyApiConfig(
        api_key="test-api-key",
        api_secret=API_SECRET,
        scopes=("read_orders", "write_orders", "read_products", "write_inventory"),
        app_url="https://wms.example.com",
        max_pages=200,
        state_secret="test-jwt-secret",
    )


@pytest.fixture
def fake_shopify():
    return FakeShopify()


@pytest.fixture
def shopify_client(shopify_config, fake_shopify):
    return ShopifyClient(shopify_config, transport=fake_shopify.transport)


@pytest.fixture
def make_tenant(db_session):
    def _make(name="Acme"):
        tenant = Tenant(name=name)
        db_session.add(tenant)
        db_session.commit()
        return tenant
    return _make


@pytest.fixture
def tenant(make_tenant):
    return make_tenant("Acme")


@pytest.fixture
def user(db_session, tenant):
    user = User(tenant_id=tenant.id, email="ops@acme.test", name="Ops")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def make_warehouse(db_session):
    def _make(tenant, name="Main", priority=10, is_active=True):
        warehouse = Warehouse(tenant_id=tenant.id, name=name, priority=priority, is_active=is_active)
        db_session.add(warehouse)
        db_session.commit()
        return warehouse
    return _make


@pytest.fixture
def warehouse(make_warehouse, tenant):
    return make_warehouse(tenant)


@pytest.fixture
def make_integration(db_session):
    def _make(tenant, shop=SHOP, token=ACCESS_TOKEN, **fields):
        integration = Integration(tenant_id=tenant.id, platform="shopify", name=shop, **fields)
        integration.credentials = ShopCredentials(
            shop=shop, access_token=token, shop_name="Acme Store", shop_email="owner@acme.test"
        )
        db_session.add(integration)
        db_session.commit()
        return integration
    return _make


@pytest.fixture
def integration(make_integration, tenant):
    return make_integration(tenant, fulfillment_location_id="555")


@pytest.fixture
def carrier_service(db_session):
    carrier = Carrier(name="Swiss Post", tracking_url_template="https://track.example.com/{tracking}")
    db_session.add(carrier)
    db_session.flush()
    service = CarrierService(carrier_id=carrier.id, name="Priority", code="PRI")
    db_session.add(service)
    db_session.commit()
    return service


@pytest.fixture
def shipping_mapping(db_session, tenant, integration, carrier_service):
    row = ShippingMethodMapping(
        tenant_id=tenant.id,
        integration_id=integration.id,
        external_shipping_method="Express",
        carrier_service_id=carrier_service.id,
    )
    db_session.add(row)
    db_session.commit()
    return row


def signed(payload: dict, secret: str = API_SECRET):
    raw = json.dumps(payload).encode("utf-8")
    return raw, compute_webhook_hmac(raw, secret)


@pytest.fixture
def deliver(db_session, shopify_config):
    """Run one verified delivery through the ingestor and return its acknowledgement."""
    def _deliver(topic, payload, shop=SHOP, webhook_id=None):
        raw, signature = signed(payload)
        delivery = WebhookDelivery(
            raw_body=raw,
            payload=payload,
            topic=topic,
            shop_domain=shop,
            hmac_header=signature,
            webhook_id=webhook_id,
        )
        assert delivery.is_authentic(API_SECRET)
        return WebhookIngestor(db_session, shopify_config).ingest(delivery)
    return _deliver


def order_payload(order_id=1001, order_number=1001, **overrides):
    payload = {
        "id": order_id,
        "order_number": order_number,
        "email": "Jane@Example.com",
        "created_at": "2024-01-05T10:00:00-05:00",
        "tags": "",
        "note": "Leave at the door",
        "subtotal_price": "39.98",
        "total_tax": "3.20",
        "total_price": "48.18",
        "total_shipping_price_set": {"shop_money": {"amount": "5.00"}},
        "customer": {"id": 77, "email": "jane@example.com", "first_name": "Jane", "last_name": "Doe"},
        "shipping_address": {
            "first_name": "Jane",
            "last_name": "Doe",
            "address1": "Bahnhofstrasse 1",
            "address2": "",
            "city": "Zurich",
            "zip": "8001",
            "country_code": "CH",
            "phone": "+41 44 000 00 00",
        },
        "shipping_lines": [{"title": "Express", "price": "5.00"}],
        "line_items": [
            {"id": 9001, "variant_id": 501, "sku": "TSHIRT-M", "name": "T-Shirt - M", "quantity": 2, "price": "19.99"},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_order_payload():
    return order_payload
