from app.http.requests.schemas import (
    FulfillmentPushRequest,
    IntegrationUpdateRequest,
    ShippingMappingCreateRequest,
)

__all__ = [
    "FulfillmentPushRequest",
    "IntegrationUpdateRequest",
    "ShippingMappingCreateRequest",
]
