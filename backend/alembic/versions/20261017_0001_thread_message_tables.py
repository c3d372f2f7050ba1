"""Create thread and message tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "threads",
        sa.Column("thread_id", sa.String(length=50), nullable=False),
        sa.Column("operator", sa.String(length=50), nullable=False),
        sa.Column("model", sa.String(length=50), nullable=False),
        sa.Column("converted", sa.String(length=10), nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("avg_response_time", sa.Interval(), nullable=True),
        sa.Column("responded", sa.String(length=3), nullable=False, server_default="No"),
        sa.Column("acknowledgment_score", sa.Integer(), nullable=True),
        sa.Column("affection_score", sa.Integer(), nullable=True),
        sa.Column("personalization_score", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("thread_id"),
    )
    op.create_index("ix_threads_operator", "threads", ["operator"], unique=False)
    op.create_index("ix_threads_model", "threads", ["model"], unique=False)
    op.create_index("ix_threads_converted", "threads", ["converted"], unique=False)
    op.create_index("ix_threads_last_message_at", "threads", ["last_message_at"], unique=False)
    op.create_index("ix_threads_responded", "threads", ["responded"], unique=False)

    op.create_table(
        "messages",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), nullable=False, autoincrement=True),
        sa.Column("thread_id", sa.String(length=50), nullable=False),
        sa.Column("operator", sa.String(length=50), nullable=False),
        sa.Column("model", sa.String(length=50), nullable=False),
        sa.Column("type", sa.String(length=10), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["threads.thread_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_messages_thread_id", "messages", ["thread_id"], unique=False)
    op.create_index("ix_messages_operator", "messages", ["operator"], unique=False)
    op.create_index("ix_messages_model", "messages", ["model"], unique=False)
    op.create_index("ix_messages_date", "messages", ["date"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_messages_date", table_name="messages")
    op.drop_index("ix_messages_model", table_name="messages")
    op.drop_index("ix_messages_operator", table_name="messages")
    op.drop_index("ix_messages_thread_id", table_name="messages")
    op.drop_table("messages")

    op.drop_index("ix_threads_responded", table_name="threads")
    op.drop_index("ix_threads_last_message_at", table_name="threads")
    op.drop_index("ix_threads_converted", table_name="threads")
    op.drop_index("ix_threads_model", table_name="threads")
    op.drop_index("ix_threads_operator", table_name="threads")
    op.drop_table("threads")
