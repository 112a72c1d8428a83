"""Primary inbox schema: users, gmail_accounts, thread_index, content cache, deferred work, batch audit.

Revision ID: 001_primary_inbox
Revises:
Create Date: 2026-02-01

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_primary_inbox"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    ]


def _user_fk() -> sa.Column:
    return sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("last_active_at", sa.DateTime(), nullable=True),
        sa.Column("last_batch_sync_at", sa.DateTime(), nullable=True),
        sa.Column("last_batch_sync_status", sa.String(length=32), nullable=True),
        sa.Column("last_batch_sync_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_users_id"), "users", ["id"], unique=False)
    op.create_index(op.f("ix_users_email"), "users", ["email"], unique=True)

    op.create_table(
        "gmail_accounts",
        sa.Column("id", sa.Integer(), nullable=False),
        _user_fk(),
        sa.Column("email_address", sa.String(), nullable=True),
        sa.Column("history_cursor", sa.String(length=64), nullable=True),
        sa.Column("last_initial_sync_at", sa.DateTime(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_gmail_accounts_id"), "gmail_accounts", ["id"], unique=False)
    op.create_index(op.f("ix_gmail_accounts_user_id"), "gmail_accounts", ["user_id"], unique=True)

    op.create_table(
        "thread_index",
        sa.Column("id", sa.Integer(), nullable=False),
        _user_fk(),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("participants", sa.JSON(), nullable=True),
        sa.Column("from_name", sa.String(), nullable=True),
        sa.Column("from_email", sa.String(), nullable=True),
        sa.Column("snippet", sa.Text(), nullable=True),
        sa.Column("unsubscribe", sa.JSON(), nullable=True),
        sa.Column("last_message_id", sa.String(length=64), nullable=True),
        sa.Column("last_message_date", sa.DateTime(), nullable=True),
        sa.Column("unread_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("gmail_label_ids", sa.JSON(), nullable=True),
        sa.Column("in_primary_inbox", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("content_version", sa.String(length=128), nullable=True),
        sa.Column("last_gmail_history_id_seen", sa.String(length=64), nullable=True),
        sa.Column("priority_score", sa.Integer(), nullable=True),
        sa.Column("priority_reason", sa.Text(), nullable=True),
        sa.Column("suggested_action_type", sa.String(length=32), nullable=True),
        sa.Column("extracted", sa.JSON(), nullable=True),
        sa.Column("last_scored_at", sa.DateTime(), nullable=True),
        sa.Column("score_version", sa.String(length=64), nullable=True),
        sa.Column("scored_content_version", sa.String(length=128), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("thread_id", "user_id", name="uq_thread_index_thread_user"),
    )
    op.create_index(op.f("ix_thread_index_id"), "thread_index", ["id"], unique=False)
    op.create_index(op.f("ix_thread_index_user_id"), "thread_index", ["user_id"], unique=False)
    op.create_index("ix_thread_index_user_primary", "thread_index", ["user_id", "in_primary_inbox"], unique=False)
    op.create_index(
        "ix_thread_index_user_last_message_date", "thread_index", ["user_id", "last_message_date"], unique=False
    )

    op.create_table(
        "thread_content_cache",
        sa.Column("id", sa.Integer(), nullable=False),
        _user_fk(),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("content_text", sa.Text(), nullable=False),
        sa.Column("content_version", sa.String(length=128), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "thread_id", name="uq_thread_content_cache_user_thread"),
    )
    op.create_index(op.f("ix_thread_content_cache_id"), "thread_content_cache", ["id"], unique=False)
    op.create_index(op.f("ix_thread_content_cache_user_id"), "thread_content_cache", ["user_id"], unique=False)

    op.create_table(
        "deferred_prioritization",
        sa.Column("id", sa.Integer(), nullable=False),
        _user_fk(),
        sa.Column("thread_id", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.String(length=32), nullable=False, server_default="guardrail"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "thread_id", name="uq_deferred_prioritization_user_thread"),
    )
    op.create_index(op.f("ix_deferred_prioritization_id"), "deferred_prioritization", ["id"], unique=False)
    op.create_index(op.f("ix_deferred_prioritization_user_id"), "deferred_prioritization", ["user_id"], unique=False)

    op.create_table(
        "prioritization_batches",
        sa.Column("id", sa.Integer(), nullable=False),
        _user_fk(),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="running"),
        sa.Column("trigger", sa.String(length=64), nullable=True),
        sa.Column("total_threads_planned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_threads", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deferred_threads", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_prioritization_batches_id"), "prioritization_batches", ["id"], unique=False)
    op.create_index(op.f("ix_prioritization_batches_user_id"), "prioritization_batches", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_table("prioritization_batches")
    op.drop_table("deferred_prioritization")
    op.drop_table("thread_content_cache")
    op.drop_index("ix_thread_index_user_last_message_date", table_name="thread_index")
    op.drop_index("ix_thread_index_user_primary", table_name="thread_index")
    op.drop_table("thread_index")
    op.drop_table("gmail_accounts")
    op.drop_table("users")
