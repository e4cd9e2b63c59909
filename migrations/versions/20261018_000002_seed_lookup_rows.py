"""seed admin roles and payment methods

Revision ID: 20261018_000002
Revises: 20261018_000001
Create Date: 2026-10-18 00:00:01.000000
"""

import uuid

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261018_000002"
down_revision = "20261018_000001"
branch_labels = None
depends_on = None

ADMIN_ROLES = (
    ("super_admin", "Super Admin"),
    ("admin", "Admin"),
    ("donor", "Donor"),
)
PAYMENT_METHODS = (
    ("cash", "Cash", 1),
    ("bank_transfer", "Bank Transfer", 2),
)


def upgrade() -> None:
    roles = sa.table(
        "admin_roles",
        sa.column("id", postgresql.UUID(as_uuid=True)),
        sa.column("name", sa.String()),
        sa.column("display_name", sa.String()),
        sa.column("is_active", sa.Boolean()),
    )
    op.bulk_insert(
        roles,
        [
            {"id": uuid.uuid4(), "name": name, "display_name": display_name, "is_active": True}
            for name, display_name in ADMIN_ROLES
        ],
    )

    methods = sa.table(
        "payment_methods",
        sa.column("id", postgresql.UUID(as_uuid=True)),
        sa.column("code", sa.String()),
        sa.column("name", sa.String()),
        sa.column("is_active", sa.Boolean()),
        sa.column("sort_order", sa.Integer()),
    )
    op.bulk_insert(
        methods,
        [
            {"id": uuid.uuid4(), "code": code, "name": name, "is_active": True, "sort_order": sort_order}
            for code, name, sort_order in PAYMENT_METHODS
        ],
    )


def downgrade() -> None:
    codes = ", ".join(f"'{code}'" for code, _, _ in PAYMENT_METHODS)
    names = ", ".join(f"'{name}'" for name, _ in ADMIN_ROLES)
    op.execute(f"DELETE FROM payment_methods WHERE code IN ({codes})")
    op.execute(f"DELETE FROM admin_roles WHERE name IN ({names})")
