"""Initial schema: sync tables and the collaborator tables they reference.

Revision ID: initial_schema
Revises:
Create Date: 2026-10-19

Creates integrations, orders, products, returns, shipping mappings, sync jobs and
webhook events, plus the minimal tenant/user/warehouse/carrier/inventory tables.
"""
from alembic import op


revision = "initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Same metadata as the app so the unique constraints match the models exactly
    from app.database import Base
    from app import models  # noqa: F401 - register models with Base

    Base.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    from app.database import Base
    from app import models  # noqa: F401

    Base.metadata.drop_all(bind=op.get_bind())
