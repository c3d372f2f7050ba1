"""Add extended scores, last message direction and dispatch latch to threads."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0002"
down_revision = "20261017_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("threads", sa.Column("sales_ability", sa.Integer(), nullable=True))
    op.add_column("threads", sa.Column("girl_roleplay_skill", sa.Integer(), nullable=True))
    op.add_column("threads", sa.Column("last_message_direction", sa.String(length=10), nullable=True))
    op.add_column("threads", sa.Column("last_dispatched_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    op.drop_column("threads", "last_dispatched_at")
    op.drop_column("threads", "last_message_direction")
    op.drop_column("threads", "girl_roleplay_skill")
    op.drop_column("threads", "sales_ability")
