"""Add session ownership token and heartbeat to agents."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261016_0003"
down_revision = "20261001_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("agents", sa.Column("session_token", sa.String(), nullable=True))
    op.add_column(
        "agents",
        sa.Column("session_heartbeat_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.execute(
        sa.text(
            """
            UPDATE agents
            SET session_heartbeat_at = session_started_at
            WHERE status = 'running'
            """,
        ),
    )


def downgrade() -> None:
    op.drop_column("agents", "session_heartbeat_at")
    op.drop_column("agents", "session_token")
