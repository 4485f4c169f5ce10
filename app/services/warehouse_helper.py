"""Default warehouse resolution for orders created from a storefront."""
from typing import Optional

from sqlalchemy.orm import Session

from app.models import Warehouse


class HighestPriorityWarehousePolicy:
    """
    Every imported order goes to the tenant's active warehouse with the highest priority.
    Ties break on creation order so the choice is stable.
    """

    def choose(self, db: Session, tenant_id: str) -> Optional[Warehouse]:
        return (
            db.query(Warehouse)
            .filter(Warehouse.tenant_id == tenant_id, Warehouse.is_active == True)  # noqa: E712
            .order_by(Warehouse.priority.desc(), Warehouse.created_at.asc(), Warehouse.id.asc())
            .first()
        )


default_warehouse_policy = HighestPriorityWarehousePolicy()
