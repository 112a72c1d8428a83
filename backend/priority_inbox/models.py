"""SQLAlchemy models."""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy import JSON

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    last_active_at = Column(DateTime, nullable=True)
    # Periodic batch sync bookkeeping
    last_batch_sync_at = Column(DateTime, nullable=True)
    last_batch_sync_status = Column(String(32), nullable=True)  # ok, missing_token, missing_refresh, missing_scopes, error
    last_batch_sync_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class GmailAccount(Base):
    """Gmail history cursor per user (baseline for incremental sync)."""
    __tablename__ = "gmail_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    email_address = Column(String, nullable=True)
    history_cursor = Column(String(64), nullable=True)  # null = no incremental baseline yet
    last_initial_sync_at = Column(DateTime, nullable=True)
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ThreadIndex(Base):
    """Local view of the user's primary inbox: one row per (user, thread)."""
    __tablename__ = "thread_index"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    thread_id = Column(String(64), nullable=False)

    # Descriptive fields, overwritten on every sync touch
    subject = Column(Text, nullable=True)
    participants = Column(JSON, nullable=True)  # list of address strings
    from_name = Column(String, nullable=True)
    from_email = Column(String, nullable=True)
    snippet = Column(Text, nullable=True)
    unsubscribe = Column(JSON, nullable=True)  # List-Unsubscribe metadata of the latest message

    last_message_id = Column(String(64), nullable=True)
    last_message_date = Column(DateTime, nullable=True)
    unread_count = Column(Integer, default=0, nullable=False)
    gmail_label_ids = Column(JSON, nullable=True)
    in_primary_inbox = Column(Boolean, default=False, nullable=False)
    # "<lastMessageDate ISO>:<lastMessageId>"; recomputed whenever the anchor changes
    content_version = Column(String(128), nullable=True)
    last_gmail_history_id_seen = Column(String(64), nullable=True)

    # Scoring pass outputs (null score = never scored)
    priority_score = Column(Integer, nullable=True)
    priority_reason = Column(Text, nullable=True)
    suggested_action_type = Column(String(32), nullable=True)
    extracted = Column(JSON, nullable=True)  # {deadlines, asks, people}
    last_scored_at = Column(DateTime, nullable=True)
    score_version = Column(String(64), nullable=True)
    # content_version the stored score was computed from
    scored_content_version = Column(String(128), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("thread_id", "user_id", name="uq_thread_index_thread_user"),
    )


class ThreadContentCache(Base):
    """Normalized thread text, valid only while content_version matches the index row."""
    __tablename__ = "thread_content_cache"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    thread_id = Column(String(64), nullable=False)
    content_text = Column(Text, nullable=False, default="")
    content_version = Column(String(128), nullable=False, default="")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "thread_id", name="uq_thread_content_cache_user_thread"),
    )


class DeferredPrioritization(Base):
    """Thread that still needs a scoring pass (durable overflow of the prioritization queue)."""
    __tablename__ = "deferred_prioritization"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    thread_id = Column(String(64), nullable=False)
    reason = Column(String(32), nullable=False, default="guardrail")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "thread_id", name="uq_deferred_prioritization_user_thread"),
    )


class PrioritizationBatch(Base):
    """Audit record of one worker run. Finalized exactly once."""
    __tablename__ = "prioritization_batches"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(16), nullable=False, default="running")  # running, completed, failed
    trigger = Column(String(64), nullable=True)
    total_threads_planned = Column(Integer, default=0, nullable=False)
    processed_threads = Column(Integer, default=0, nullable=False)
    deferred_threads = Column(Integer, default=0, nullable=False)
    started_at = Column(DateTime, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)


# Indexes for the worker's candidate query and the threads listing
Index("ix_thread_index_user_primary", ThreadIndex.user_id, ThreadIndex.in_primary_inbox)
Index("ix_thread_index_user_last_message_date", ThreadIndex.user_id, ThreadIndex.last_message_date)
