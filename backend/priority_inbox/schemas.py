"""Pydantic schemas for API."""
from datetime import datetime
from pydantic import BaseModel
from typing import Optional, List


class SyncStarted(BaseModel):
    message: str
    status: str
    user_id: int


class SyncStatusResponse(BaseModel):
    user_id: int
    email_address: Optional[str] = None
    history_cursor: Optional[str] = None
    last_initial_sync_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    indexed_threads: int = 0
    primary_threads: int = 0
    deferred_threads: int = 0


class ThreadResponse(BaseModel):
    thread_id: str
    subject: Optional[str] = None
    participants: Optional[List[str]] = None
    from_name: Optional[str] = None
    from_email: Optional[str] = None
    snippet: Optional[str] = None
    last_message_date: Optional[datetime] = None
    unread_count: int = 0
    gmail_label_ids: Optional[List[str]] = None
    priority_score: Optional[int] = None
    priority_reason: Optional[str] = None
    suggested_action_type: Optional[str] = None
    extracted: Optional[dict] = None
    last_scored_at: Optional[datetime] = None
    unsubscribe: Optional[dict] = None

    class Config:
        from_attributes = True


class PaginatedThreads(BaseModel):
    items: List[ThreadResponse]
    total: int
    offset: int
    limit: int


class PrioritizeRequest(BaseModel):
    thread_ids: List[str] = []


class PrioritizeQueued(BaseModel):
    message: str
    user_id: int
    queued_thread_ids: int


class PrioritizationBatchResponse(BaseModel):
    id: int
    status: str
    trigger: Optional[str] = None
    total_threads_planned: int
    processed_threads: int
    deferred_threads: int
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True
