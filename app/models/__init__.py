"""
SQLAlchemy models for the warehouse tables the storefront sync touches.
All model and enum definitions live here for simplicity and to avoid circular imports.
Tenant/user/warehouse/carrier tables are owned by other services; only the columns sync needs are mapped.
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, ForeignKey, Enum as SQLEnum, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base
from app.services.credentials import ShopCredentials
import enum
import uuid

SHOPIFY = "shopify"

# Enums
class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PICKING = "PICKING"
    PACKING = "PACKING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    EXCEPTION = "EXCEPTION"

# Orders in these states are never reopened or cancelled by the storefront
TERMINAL_ORDER_STATUSES = (OrderStatus.SHIPPED, OrderStatus.DELIVERED)

class InventoryStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED_HOLD = "RESERVED_HOLD"
    DAMAGED = "DAMAGED"
    QUARANTINE = "QUARANTINE"

class ReturnStatus(str, enum.Enum):
    PENDING = "PENDING"
    RECEIVED = "RECEIVED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"

class ReturnType(str, enum.Enum):
    REFUND = "REFUND"
    EXCHANGE = "EXCHANGE"

class SyncJobType(str, enum.Enum):
    PULL_ORDERS = "PULL_ORDERS"
    PULL_PRODUCTS = "PULL_PRODUCTS"
    PUSH_INVENTORY = "PUSH_INVENTORY"

class SyncJobStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def _uuid() -> str:
    return str(uuid.uuid4())


# Collaborator tables
class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column("tenant_id", String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    is_active = Column("is_active", Boolean, default=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

class Warehouse(Base):
    __tablename__ = "warehouses"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column("tenant_id", String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    is_active = Column("is_active", Boolean, default=True)
    priority = Column(Integer, default=0, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())

class Carrier(Base):
    __tablename__ = "carriers"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    # e.g. "https://track.example.com/{tracking}"
    tracking_url_template = Column("tracking_url_template", String, nullable=True)

    services = relationship("CarrierService", back_populates="carrier")

class CarrierService(Base):
    __tablename__ = "carrier_services"

    id = Column(String, primary_key=True, default=_uuid)
    carrier_id = Column("carrier_id", String, ForeignKey("carriers.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    code = Column(String, nullable=True)

    carrier = relationship("Carrier", back_populates="services")

class Customer(Base):
    __tablename__ = "customers"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column("tenant_id", String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String, nullable=False)
    first_name = Column("first_name", String, nullable=True)
    last_name = Column("last_name", String, nullable=True)
    phone = Column(String, nullable=True)
    external_id = Column("external_id", String, nullable=True)
    external_source = Column("external_source", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    __table_args__ = (UniqueConstraint("tenant_id", "email", name="customers_tenant_email_unique"),)

class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column("tenant_id", String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    sku = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    weight_grams = Column("weight_grams", Integer, nullable=True)
    price_cents = Column("price_cents", Integer, nullable=True)
    is_active = Column("is_active", Boolean, default=True)
    external_source = Column("external_source", String, nullable=True)
    external_id = Column("external_id", String, nullable=True)  # variant id
    external_product_id = Column("external_product_id", String, nullable=True, index=True)
    external_inventory_item_id = Column("external_inventory_item_id", String, nullable=True)
    external_shop = Column("external_shop", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    inventory = relationship("Inventory", back_populates="product")

    __table_args__ = (UniqueConstraint("tenant_id", "sku", name="products_tenant_sku_unique"),)

class Inventory(Base):
    __tablename__ = "inventory"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column("tenant_id", String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column("product_id", String, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)
    warehouse_id = Column("warehouse_id", String, ForeignKey("warehouses.id", ondelete="CASCADE"), nullable=False)
    status = Column(SQLEnum(InventoryStatus), default=InventoryStatus.AVAILABLE, nullable=False)
    quantity_on_hand = Column("quantity_on_hand", Integer, default=0, nullable=False)
    quantity_reserved = Column("quantity_reserved", Integer, default=0, nullable=False)
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    product = relationship("Product", back_populates="inventory")


# Sync tables
class Integration(Base):
    __tablename__ = "integrations"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column("tenant_id", String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    platform = Column(String, nullable=False, default=SHOPIFY)
    name = Column(String, nullable=False)
    shop_domain = Column("shop_domain", String, nullable=False, index=True)
    credentials_data = Column("credentials", JSON, nullable=False)  # access token encrypted
    is_active = Column("is_active", Boolean, default=True, nullable=False)
    sync_orders = Column("sync_orders", Boolean, default=True, nullable=False)
    sync_products = Column("sync_products", Boolean, default=True, nullable=False)
    sync_inventory = Column("sync_inventory", Boolean, default=True, nullable=False)
    auto_fulfill = Column("auto_fulfill", Boolean, default=True, nullable=False)
    fulfillment_location_id = Column("fulfillment_location_id", String, nullable=True)
    last_order_sync_at = Column("last_order_sync_at", DateTime(timezone=True), nullable=True)
    last_product_sync_at = Column("last_product_sync_at", DateTime(timezone=True), nullable=True)
    last_inventory_sync_at = Column("last_inventory_sync_at", DateTime(timezone=True), nullable=True)
    last_error = Column("last_error", Text, nullable=True)
    last_error_at = Column("last_error_at", DateTime(timezone=True), nullable=True)
    error_count = Column("error_count", Integer, default=0, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    sync_jobs = relationship("SyncJob", back_populates="integration", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "shop_domain", name="integrations_tenant_platform_shop_unique"),
    )

    @property
    def credentials(self) -> ShopCredentials:
        return ShopCredentials.from_storage(self.credentials_data or {})

    @credentials.setter
    def credentials(self, creds: ShopCredentials) -> None:
        self.credentials_data = creds.to_storage()
        self.shop_domain = creds.shop

class ShippingMethodMapping(Base):
    __tablename__ = "shipping_method_mappings"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column("tenant_id", String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    integration_id = Column("integration_id", String, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=True)
    external_shipping_method = Column("external_shipping_method", String, nullable=False)
    carrier_service_id = Column("carrier_service_id", String, ForeignKey("carrier_services.id", ondelete="CASCADE"), nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())

    carrier_service = relationship("CarrierService")

    __table_args__ = (
        UniqueConstraint("tenant_id", "external_shipping_method", name="shipping_mappings_tenant_method_unique"),
    )

class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column("tenant_id", String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    warehouse_id = Column("warehouse_id", String, ForeignKey("warehouses.id", ondelete="SET NULL"), nullable=True)
    customer_id = Column("customer_id", String, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    carrier_id = Column("carrier_id", String, ForeignKey("carriers.id", ondelete="SET NULL"), nullable=True)
    carrier_service_id = Column("carrier_service_id", String, ForeignKey("carrier_services.id", ondelete="SET NULL"), nullable=True)
    order_number = Column("order_number", String, nullable=False)
    external_source = Column("external_source", String, nullable=True)
    external_order_id = Column("external_order_id", String, nullable=True)
    external_shop = Column("external_shop", String, nullable=True)
    external_fulfillment_id = Column("external_fulfillment_id", String, nullable=True)
    status = Column(SQLEnum(OrderStatus), default=OrderStatus.PENDING, nullable=False)
    priority = Column(Integer, default=5, nullable=False)
    order_placed_at = Column("order_placed_at", DateTime(timezone=True), nullable=True)
    shipping_name = Column("shipping_name", String, nullable=True)
    shipping_address_line1 = Column("shipping_address_line1", String, nullable=True)
    shipping_address_line2 = Column("shipping_address_line2", String, nullable=True)
    shipping_city = Column("shipping_city", String, nullable=True)
    shipping_postal_code = Column("shipping_postal_code", String, nullable=True)
    shipping_country_code = Column("shipping_country_code", String, nullable=True)
    shipping_phone = Column("shipping_phone", String, nullable=True)
    subtotal_cents = Column("subtotal_cents", Integer, default=0, nullable=False)
    shipping_cents = Column("shipping_cents", Integer, default=0, nullable=False)
    tax_cents = Column("tax_cents", Integer, default=0, nullable=False)
    total_cents = Column("total_cents", Integer, default=0, nullable=False)
    customer_note = Column("customer_note", Text, nullable=True)
    cancelled_at = Column("cancelled_at", DateTime(timezone=True), nullable=True)
    cancellation_reason = Column("cancellation_reason", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    lines = relationship("OrderLine", back_populates="order", cascade="all, delete-orphan")
    carrier = relationship("Carrier")
    customer = relationship("Customer")

    __table_args__ = (
        # Backstop for concurrent deliveries of the same storefront order
        UniqueConstraint("tenant_id", "external_source", "external_order_id", name="orders_tenant_external_unique"),
    )

class OrderLine(Base):
    __tablename__ = "order_lines"

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column("product_id", String, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    sku = Column(String, nullable=False)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column("unit_price_cents", Integer, default=0, nullable=False)
    external_line_id = Column("external_line_id", String, nullable=True)

    order = relationship("Order", back_populates="lines")

class Return(Base):
    __tablename__ = "returns"

    id = Column(String, primary_key=True, default=_uuid)
    tenant_id = Column("tenant_id", String, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    customer_id = Column("customer_id", String, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    return_number = Column("return_number", String, nullable=False)
    external_id = Column("external_id", String, nullable=True)
    external_source = Column("external_source", String, nullable=True)
    status = Column(SQLEnum(ReturnStatus), default=ReturnStatus.PENDING, nullable=False)
    return_type = Column("return_type", SQLEnum(ReturnType), default=ReturnType.REFUND, nullable=False)
    reason = Column(String, nullable=True)
    requested_at = Column("requested_at", DateTime(timezone=True), nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    lines = relationship("ReturnLine", back_populates="return_record", cascade="all, delete-orphan")

    __table_args__ = (UniqueConstraint("order_id", "external_id", name="returns_order_external_unique"),)

class ReturnLine(Base):
    __tablename__ = "return_lines"

    id = Column(String, primary_key=True, default=_uuid)
    return_id = Column("return_id", String, ForeignKey("returns.id", ondelete="CASCADE"), nullable=False, index=True)
    order_line_id = Column("order_line_id", String, ForeignKey("order_lines.id", ondelete="SET NULL"), nullable=True)
    product_id = Column("product_id", String, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    sku = Column(String, nullable=False)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)

    return_record = relationship("Return", back_populates="lines")

class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id = Column(String, primary_key=True, default=_uuid)
    integration_id = Column("integration_id", String, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False, index=True)
    job_type = Column("job_type", SQLEnum(SyncJobType), nullable=False)
    status = Column(SQLEnum(SyncJobStatus), default=SyncJobStatus.RUNNING)
    started_at = Column("started_at", DateTime(timezone=True), nullable=True)
    finished_at = Column("finished_at", DateTime(timezone=True), nullable=True)
    records_processed = Column("records_processed", Integer, default=0)
    records_failed = Column("records_failed", Integer, default=0)
    error_message = Column("error_message", Text, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    integration = relationship("Integration", back_populates="sync_jobs")

class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True, default=_uuid)
    source = Column("source", String, nullable=False, index=True)
    shop_domain = Column("shop_domain", String, nullable=True, index=True)
    topic = Column("topic", String, nullable=False, index=True)
    delivery_id = Column("delivery_id", String, nullable=True, index=True)
    payload_summary = Column("payload_summary", String, nullable=True)
    processed_at = Column("processed_at", DateTime(timezone=True), nullable=True)
    error = Column("error", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
