"""
Webhook ingestion: per-topic effects on local records, replay safety and tenant scoping
"""
from app.models import (
    Customer,
    Order,
    OrderLine,
    OrderStatus,
    Product,
    Return,
    ReturnLine,
    ReturnStatus,
    ReturnType,
    WebhookEvent,
)
from app.services import order_import
from app.services.shopify_webhook_handler import WebhookDelivery, WebhookIngestor

from conftest import SHOP, order_payload, signed


def _orders(db, tenant):
    return db.query(Order).filter(Order.tenant_id == tenant.id).all()


def _product_payload(product_id=301, status="active", variants=None):
    return {
        "id": product_id,
        "title": "Hoodie",
        "body_html": "<p>Warm &amp; soft</p>",
        "status": status,
        "variants": variants if variants is not None else [
            {"id": 401, "sku": "HOODIE-S", "title": "S", "price": "49.90", "grams": 600, "inventory_item_id": 801},
            {"id": 402, "sku": "", "title": "M", "price": "49.90", "grams": 650, "inventory_item_id": 802},
        ],
    }


class TestOrderCreated:
    def test_creates_order_with_lines(self, db_session, deliver, tenant, integration, warehouse):
        ack = deliver("orders/create", order_payload())

        assert ack["ok"] is True
        assert ack["message"] == "Order created"
        order = db_session.query(Order).one()
        assert order.id == ack["orderId"]
        assert order.tenant_id == tenant.id
        assert order.warehouse_id == warehouse.id
        assert order.order_number == "SH-1001"
        assert order.external_source == "shopify"
        assert order.external_order_id == "1001"
        assert order.external_shop == SHOP
        assert order.status == OrderStatus.PENDING
        assert order.priority == 5
        assert order.subtotal_cents == 3998
        assert order.tax_cents == 320
        assert order.shipping_cents == 500
        assert order.total_cents == 4818
        assert order.shipping_name == "Jane Doe"
        assert order.shipping_city == "Zurich"
        assert order.shipping_address_line2 is None
        assert order.customer_note == "Leave at the door"
        lines = db_session.query(OrderLine).filter(OrderLine.order_id == order.id).all()
        assert [(l.sku, l.quantity, l.unit_price_cents, l.external_line_id) for l in lines] == [
            ("TSHIRT-M", 2, 1999, "9001"),
        ]

    def test_customer_matched_by_lowercased_email(self, db_session, deliver, tenant, integration, warehouse):
        deliver("orders/create", order_payload(order_id=1, order_number=1))
        deliver("orders/create", order_payload(order_id=2, order_number=2, email="JANE@example.COM"))

        customers = db_session.query(Customer).filter(Customer.tenant_id == tenant.id).all()
        assert len(customers) == 1
        assert customers[0].email == "jane@example.com"
        assert customers[0].first_name == "Jane"
        assert {o.customer_id for o in _orders(db_session, tenant)} == {customers[0].id}

    def test_customer_created_concurrently_is_reused(self, db_session, deliver, monkeypatch, tenant, integration, warehouse):
        existing = Customer(tenant_id=tenant.id, email="jane@example.com", first_name="Jane")
        db_session.add(existing)
        db_session.commit()
        real_find = order_import.find_customer
        lookups = []

        def find_after_race(db, tenant_id, email):
            # the first lookup runs before the other order's customer is visible
            lookups.append(email)
            return None if len(lookups) == 1 else real_find(db, tenant_id, email)

        monkeypatch.setattr(order_import, "find_customer", find_after_race)

        ack = deliver("orders/create", order_payload())

        assert ack["message"] == "Order created"
        assert len(lookups) == 2
        assert db_session.query(Customer).filter(Customer.tenant_id == tenant.id).count() == 1
        assert db_session.query(Order).one().customer_id == existing.id

    def test_priority_tag(self, db_session, deliver, integration, warehouse):
        deliver("orders/create", order_payload(tags="gift, Priority"))
        assert db_session.query(Order).one().priority == 10

    def test_shipping_method_mapped_to_carrier(self, db_session, deliver, integration, warehouse, shipping_mapping, carrier_service):
        deliver("orders/create", order_payload())
        order = db_session.query(Order).one()
        assert order.carrier_service_id == carrier_service.id
        assert order.carrier_id == carrier_service.carrier_id

    def test_unmapped_shipping_method(self, db_session, deliver, integration, warehouse, shipping_mapping):
        deliver("orders/create", order_payload(shipping_lines=[{"title": "Economy", "price": "0.00"}]))
        order = db_session.query(Order).one()
        assert order.carrier_id is None
        assert order.carrier_service_id is None

    def test_blank_sku_falls_back_to_variant_id(self, db_session, deliver, integration, warehouse):
        payload = order_payload(line_items=[
            {"id": 9002, "variant_id": 12345, "sku": "", "name": "Mystery Box", "quantity": 1, "price": "10.00"},
        ])
        deliver("orders/create", payload)
        line = db_session.query(OrderLine).one()
        assert line.sku == "SHOPIFY-12345"

    def test_line_linked_to_known_product(self, db_session, deliver, tenant, integration, warehouse):
        product = Product(tenant_id=tenant.id, sku="TSHIRT-M", name="T-Shirt - M")
        db_session.add(product)
        db_session.commit()

        deliver("orders/create", order_payload())

        assert db_session.query(OrderLine).one().product_id == product.id

    def test_malformed_line_skipped(self, db_session, deliver, integration, warehouse):
        payload = order_payload(line_items=[
            {"id": 1, "sku": "GOOD", "name": "Good", "quantity": 1, "price": "1.00"},
            {"id": 2, "sku": "BAD", "name": "Bad", "quantity": "lots", "price": "1.00"},
            {"id": 3, "sku": "NOQTY", "name": "No quantity", "price": "1.00"},
        ])
        ack = deliver("orders/create", payload)
        assert ack["message"] == "Order created"
        assert [l.sku for l in db_session.query(OrderLine).all()] == ["GOOD"]

    def test_replay_is_idempotent(self, db_session, deliver, integration, warehouse):
        first = deliver("orders/create", order_payload())
        second = deliver("orders/create", order_payload())

        assert second["message"] == "Order already exists"
        assert second["orderId"] == first["orderId"]
        assert db_session.query(Order).count() == 1
        assert db_session.query(OrderLine).count() == 1

    def test_duplicate_delivery_id_short_circuits(self, db_session, deliver, integration, warehouse):
        deliver("orders/create", order_payload(), webhook_id="wh-1")
        ack = deliver("orders/create", order_payload(order_id=2002, order_number=2002), webhook_id="wh-1")

        assert ack == {"ok": True, "message": "Duplicate delivery"}
        assert db_session.query(Order).count() == 1
        assert db_session.query(WebhookEvent).count() == 1

    def test_no_warehouse_is_acknowledged_with_error(self, db_session, deliver, integration):
        ack = deliver("orders/create", order_payload())

        assert ack["ok"] is True
        assert "No active warehouse" in ack["error"]
        assert db_session.query(Order).count() == 0
        event = db_session.query(WebhookEvent).one()
        assert event.processed_at is not None
        assert "No active warehouse" in event.error

    def test_highest_priority_active_warehouse_wins(self, db_session, deliver, tenant, integration, make_warehouse):
        make_warehouse(tenant, name="Low", priority=1)
        high = make_warehouse(tenant, name="High", priority=50)
        make_warehouse(tenant, name="Closed", priority=99, is_active=False)

        deliver("orders/create", order_payload())

        assert db_session.query(Order).one().warehouse_id == high.id

    def test_order_sync_disabled(self, db_session, deliver, integration, warehouse):
        integration.sync_orders = False
        db_session.commit()

        ack = deliver("orders/create", order_payload())

        assert ack["ok"] is True
        assert db_session.query(Order).count() == 0

    def test_unknown_shop(self, db_session, deliver, integration, warehouse):
        ack = deliver("orders/create", order_payload(), shop="stranger.myshopify.com")
        assert ack["ok"] is True
        assert db_session.query(Order).count() == 0

    def test_event_recorded(self, db_session, deliver, integration, warehouse):
        deliver("orders/create", order_payload(), webhook_id="wh-42")
        event = db_session.query(WebhookEvent).one()
        assert event.source == "shopify"
        assert event.topic == "orders/create"
        assert event.shop_domain == SHOP
        assert event.delivery_id == "wh-42"
        assert event.payload_summary == "id=1001"
        assert event.error is None


class TestOrderUpdatedAndCancelled:
    def test_update_changes_address_and_note_only(self, db_session, deliver, integration, warehouse):
        deliver("orders/create", order_payload())
        order = db_session.query(Order).one()
        order.status = OrderStatus.PICKING
        db_session.commit()

        updated = order_payload(
            note="Ring twice",
            total_price="1.00",
            shipping_address={"first_name": "Jane", "last_name": "Roe", "address1": "Seestrasse 9", "city": "Bern", "zip": "3000", "country_code": "CH"},
        )
        ack = deliver("orders/updated", updated)

        assert ack["message"] == "Order updated"
        db_session.refresh(order)
        assert order.status == OrderStatus.PICKING
        assert order.shipping_name == "Jane Roe"
        assert order.shipping_city == "Bern"
        assert order.customer_note == "Ring twice"
        assert order.total_cents == 4818

    def test_update_for_unknown_order(self, deliver, integration, warehouse):
        assert deliver("orders/updated", order_payload(order_id=999))["message"] == "Order not found"

    def test_cancel_pending_order(self, db_session, deliver, integration, warehouse):
        deliver("orders/create", order_payload())

        ack = deliver("orders/cancelled", order_payload(cancel_reason="customer", cancelled_at="2024-01-06T09:00:00Z"))

        assert ack["message"] == "Order cancelled"
        order = db_session.query(Order).one()
        assert order.status == OrderStatus.CANCELLED
        assert order.cancellation_reason == "customer"
        assert order.cancelled_at is not None

    def test_cancel_reason_default(self, db_session, deliver, integration, warehouse):
        deliver("orders/create", order_payload())
        deliver("orders/cancelled", order_payload())
        assert db_session.query(Order).one().cancellation_reason == "Cancelled in Shopify"

    def test_cancel_leaves_shipped_order(self, db_session, deliver, integration, warehouse):
        deliver("orders/create", order_payload())
        order = db_session.query(Order).one()
        order.status = OrderStatus.SHIPPED
        db_session.commit()

        ack = deliver("orders/cancelled", order_payload(cancel_reason="fraud"))

        assert ack["ok"] is True
        db_session.refresh(order)
        assert order.status == OrderStatus.SHIPPED
        assert order.cancelled_at is None
        assert order.cancellation_reason is None

    def test_cancel_twice(self, db_session, deliver, integration, warehouse):
        deliver("orders/create", order_payload())
        deliver("orders/cancelled", order_payload())
        ack = deliver("orders/cancelled", order_payload())
        assert ack["message"] == "Order already cancelled"


class TestProducts:
    def test_create_one_product_per_variant(self, db_session, deliver, tenant, integration):
        ack = deliver("products/create", _product_payload())

        assert ack["created"] == 2
        products = {p.sku: p for p in db_session.query(Product).filter(Product.tenant_id == tenant.id)}
        assert set(products) == {"HOODIE-S", "SHOPIFY-402"}
        small = products["HOODIE-S"]
        assert small.name == "Hoodie - S"
        assert small.description == "Warm & soft"
        assert small.price_cents == 4990
        assert small.weight_grams == 600
        assert small.is_active is True
        assert small.external_id == "401"
        assert small.external_product_id == "301"
        assert small.external_inventory_item_id == "801"

    def test_create_skips_existing_sku(self, db_session, deliver, tenant, integration):
        db_session.add(Product(tenant_id=tenant.id, sku="HOODIE-S", name="Local hoodie"))
        db_session.commit()

        ack = deliver("products/create", _product_payload())

        assert ack["created"] == 1
        assert ack["skipped"] == 1
        assert db_session.query(Product).filter(Product.sku == "HOODIE-S").one().name == "Local hoodie"

    def test_default_variant_title_not_appended(self, db_session, deliver, integration):
        deliver("products/create", _product_payload(variants=[{"id": 5, "sku": "MUG", "title": "Default Title", "price": "9.00"}]))
        assert db_session.query(Product).one().name == "Hoodie"

    def test_update_existing_variants(self, db_session, deliver, integration):
        deliver("products/create", _product_payload())
        changed = _product_payload(status="draft")
        changed["title"] = "Zip Hoodie"
        changed["variants"][0]["price"] = "59.90"

        ack = deliver("products/update", changed)

        assert ack["updated"] == 2
        small = db_session.query(Product).filter(Product.sku == "HOODIE-S").one()
        assert small.name == "Zip Hoodie - S"
        assert small.price_cents == 5990
        assert small.is_active is False

    def test_update_ignores_unknown_variants(self, db_session, deliver, integration):
        ack = deliver("products/update", _product_payload())
        assert ack["updated"] == 0
        assert db_session.query(Product).count() == 0

    def test_delete_deactivates(self, db_session, deliver, integration):
        deliver("products/create", _product_payload())

        ack = deliver("products/delete", {"id": 301})

        assert ack["deactivated"] == 2
        assert all(not p.is_active for p in db_session.query(Product).all())
        assert db_session.query(Product).count() == 2

    def test_malformed_variant_skipped(self, db_session, deliver, integration):
        payload = _product_payload()
        payload["variants"][1]["grams"] = "n/a"

        ack = deliver("products/create", payload)

        assert ack["created"] == 1
        assert ack["skipped"] == 1
        assert [p.sku for p in db_session.query(Product).all()] == ["HOODIE-S"]

    def test_product_sync_disabled(self, db_session, deliver, integration):
        integration.sync_products = False
        db_session.commit()
        deliver("products/create", _product_payload())
        assert db_session.query(Product).count() == 0


class TestRefunds:
    def _order_with_two_lines(self, deliver):
        deliver("orders/create", order_payload(line_items=[
            {"id": 9001, "variant_id": 501, "sku": "TSHIRT-M", "name": "T-Shirt - M", "quantity": 2, "price": "19.99"},
            {"id": 9002, "variant_id": 502, "sku": "CAP", "name": "Cap", "quantity": 1, "price": "15.00"},
        ]))

    def _refund(self):
        return {
            "id": 7001,
            "order_id": 1001,
            "note": "Too small",
            "created_at": "2024-01-10T12:00:00Z",
            "refund_line_items": [
                {"line_item_id": 9001, "quantity": 1, "restock_type": "return", "line_item": {"id": 9001, "sku": "TSHIRT-M", "name": "T-Shirt - M"}},
                {"line_item_id": 9002, "quantity": 1, "restock_type": "no_restock", "line_item": {"id": 9002, "sku": "CAP", "name": "Cap"}},
            ],
        }

    def test_creates_return_with_lines(self, db_session, deliver, integration, warehouse):
        self._order_with_two_lines(deliver)
        order = db_session.query(Order).one()

        ack = deliver("refunds/create", self._refund())

        assert ack["message"] == "Return created"
        ret = db_session.query(Return).one()
        assert ret.return_number == "RET-7001"
        assert ret.order_id == order.id
        assert ret.customer_id == order.customer_id
        assert ret.status == ReturnStatus.PENDING
        assert ret.return_type == ReturnType.REFUND
        assert ret.reason == "Too small"
        lines = {l.sku: l for l in db_session.query(ReturnLine).filter(ReturnLine.return_id == ret.id)}
        assert set(lines) == {"TSHIRT-M", "CAP"}
        assert lines["TSHIRT-M"].reason == "Customer Return"
        assert lines["CAP"].reason == "Refund"
        assert lines["TSHIRT-M"].quantity == 1
        order_lines = {l.external_line_id: l for l in db_session.query(OrderLine).all()}
        assert lines["TSHIRT-M"].order_line_id == order_lines["9001"].id
        # the order itself is untouched
        assert order_lines["9001"].quantity == 2
        assert db_session.query(Order).one().status == OrderStatus.PENDING

    def test_replay_creates_one_return(self, db_session, deliver, integration, warehouse):
        self._order_with_two_lines(deliver)
        deliver("refunds/create", self._refund())

        ack = deliver("refunds/create", self._refund())

        assert ack["message"] == "Return already exists"
        assert db_session.query(Return).count() == 1
        assert db_session.query(ReturnLine).count() == 2

    def test_unknown_line_gets_placeholders(self, db_session, deliver, integration, warehouse):
        self._order_with_two_lines(deliver)
        refund = self._refund()
        refund["note"] = None
        refund["refund_line_items"] = [{"line_item_id": 5555, "quantity": 1}]

        deliver("refunds/create", refund)

        ret = db_session.query(Return).one()
        assert ret.reason == "Refund from Shopify"
        line = db_session.query(ReturnLine).one()
        assert line.sku == "UNKNOWN"
        assert line.name == "Unknown Item"
        assert line.order_line_id is None

    def test_malformed_refund_line_skipped(self, db_session, deliver, integration, warehouse):
        self._order_with_two_lines(deliver)
        refund = self._refund()
        refund["refund_line_items"][1]["quantity"] = "lots"

        ack = deliver("refunds/create", refund)

        assert ack["message"] == "Return created"
        assert [l.sku for l in db_session.query(ReturnLine).all()] == ["TSHIRT-M"]

    def test_refund_for_unknown_order(self, db_session, deliver, integration, warehouse):
        ack = deliver("refunds/create", self._refund())
        assert ack["message"] == "Order not found"
        assert db_session.query(Return).count() == 0

    def test_refund_ignores_order_sync_toggle(self, db_session, deliver, integration, warehouse):
        self._order_with_two_lines(deliver)
        integration.sync_orders = False
        db_session.commit()

        deliver("refunds/create", self._refund())

        assert db_session.query(Return).count() == 1


class TestLifecycleAndScoping:
    def test_app_uninstalled_deactivates(self, db_session, deliver, integration):
        ack = deliver("app/uninstalled", {"id": 1, "domain": SHOP})

        assert ack["deactivated"] == 1
        db_session.refresh(integration)
        assert integration.is_active is False

    def test_unhandled_topic_acknowledged(self, db_session, deliver, integration):
        ack = deliver("customers/create", {"id": 5})
        assert ack == {"ok": True, "message": "Unhandled topic"}
        assert db_session.query(WebhookEvent).one().processed_at is not None

    def test_orders_land_in_the_shop_owners_tenant(self, db_session, deliver, make_tenant, make_integration, make_warehouse):
        tenant_a = make_tenant("A")
        tenant_b = make_tenant("B")
        make_integration(tenant_a, shop="shop-a.myshopify.com")
        make_integration(tenant_b, shop="shop-b.myshopify.com")
        make_warehouse(tenant_a)
        make_warehouse(tenant_b)

        deliver("orders/create", order_payload(), shop="shop-b.myshopify.com")

        assert _orders(db_session, tenant_a) == []
        assert len(_orders(db_session, tenant_b)) == 1

    def test_cancel_does_not_cross_tenants(self, db_session, deliver, make_tenant, make_integration, make_warehouse):
        tenant_a = make_tenant("A")
        tenant_b = make_tenant("B")
        make_integration(tenant_a, shop="shop-a.myshopify.com")
        make_integration(tenant_b, shop="shop-b.myshopify.com")
        make_warehouse(tenant_a)
        make_warehouse(tenant_b)
        # same storefront order id in both shops
        deliver("orders/create", order_payload(), shop="shop-a.myshopify.com")
        deliver("orders/create", order_payload(), shop="shop-b.myshopify.com")

        deliver("orders/cancelled", order_payload(), shop="shop-b.myshopify.com")

        assert _orders(db_session, tenant_a)[0].status == OrderStatus.PENDING
        assert _orders(db_session, tenant_b)[0].status == OrderStatus.CANCELLED

    def test_ambiguous_shop_is_not_routed(self, db_session, deliver, make_tenant, make_integration, make_warehouse):
        tenant_a = make_tenant("A")
        tenant_b = make_tenant("B")
        make_integration(tenant_a)
        make_integration(tenant_b)
        make_warehouse(tenant_a)
        make_warehouse(tenant_b)

        ack = deliver("orders/create", order_payload())

        assert ack["ok"] is True
        assert db_session.query(Order).count() == 0

    def test_handler_crash_is_acknowledged_and_rolled_back(self, db_session, shopify_config, integration, warehouse):
        payload = order_payload(line_items="not-a-list")
        raw, signature = signed(payload)
        delivery = WebhookDelivery(raw_body=raw, payload=payload, topic="orders/create", shop_domain=SHOP, hmac_header=signature)

        ack = WebhookIngestor(db_session, shopify_config).ingest(delivery)

        assert ack == {"ok": True, "error": "Processing failed"}
        assert db_session.query(Order).count() == 0
        assert db_session.query(WebhookEvent).one().error is not None
