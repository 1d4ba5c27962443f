"""Session backups table, one row per tenant."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_session_backups"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "session_backups",
        sa.Column("tenant_id", sa.Text(), primary_key=True),
        sa.Column("blob", sa.LargeBinary(), nullable=False),
        sa.Column(
            "device_info",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index("idx_session_backups_updated_at", "session_backups", ["updated_at"])


def downgrade() -> None:
    op.drop_index("idx_session_backups_updated_at", table_name="session_backups")
    op.drop_table("session_backups")
