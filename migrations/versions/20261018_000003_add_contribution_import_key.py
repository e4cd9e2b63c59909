"""add import key to contributions

Revision ID: 20261018_000003
Revises: 20261018_000002
Create Date: 2026-10-18 00:00:02.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "20261018_000003"
down_revision = "20261018_000002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("contributions", sa.Column("import_key", sa.String(length=255), nullable=True))
    op.create_index("ix_contributions_import_key", "contributions", ["import_key"])


def downgrade() -> None:
    op.drop_index("ix_contributions_import_key", table_name="contributions")
    op.drop_column("contributions", "import_key")
