"""
Pydantic schemas for request/response validation (Http/Requests).
"""
from pydantic import BaseModel, Field, validator
from typing import Optional


# Integration Schemas
class IntegrationUpdateRequest(BaseModel):
    name: Optional[str] = None
    is_active: Optional[bool] = None
    sync_orders: Optional[bool] = None
    sync_products: Optional[bool] = None
    sync_inventory: Optional[bool] = None
    auto_fulfill: Optional[bool] = None

    def changes(self) -> dict:
        """Only the fields the caller actually sent"""
        return {k: v for k, v in self.dict().items() if v is not None}


# Shipping Mapping Schemas
class ShippingMappingCreateRequest(BaseModel):
    external_shipping_method: str = Field(..., max_length=255)
    carrier_service_id: str
    integration_id: Optional[str] = None

    @validator("external_shipping_method")
    def validate_method(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("external_shipping_method is required")
        return v


# Outbound push Schemas
class FulfillmentPushRequest(BaseModel):
    tracking_number: str = Field(..., max_length=255)
    carrier_name: Optional[str] = None
    tracking_url: Optional[str] = None

    @validator("tracking_number")
    def validate_tracking_number(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("tracking_number is required")
        return v
