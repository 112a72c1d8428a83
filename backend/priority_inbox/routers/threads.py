"""Prioritized threads API: list primary threads, kick a prioritization cycle, list batch audit rows."""
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..models import PrioritizationBatch, ThreadIndex
from ..schemas import (
    PaginatedThreads,
    PrioritizationBatchResponse,
    PrioritizeQueued,
    PrioritizeRequest,
    ThreadResponse,
)
from ..services.prioritization_queue import get_scheduler
from .sync import get_user_or_404

router = APIRouter(prefix="/api", tags=["threads"])


@router.get("/users/{user_id}/threads", response_model=PaginatedThreads)
def list_threads(
    user_id: int,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Primary inbox threads: highest score first, unscored last, newest first within a score."""
    get_user_or_404(db, user_id)
    q = db.query(ThreadIndex).filter(ThreadIndex.user_id == user_id, ThreadIndex.in_primary_inbox.is_(True))
    total = q.count()
    rows = (
        q.order_by(
            ThreadIndex.priority_score.is_(None),
            ThreadIndex.priority_score.desc(),
            ThreadIndex.last_message_date.desc(),
            ThreadIndex.id.asc(),
        )
        .offset(offset)
        .limit(limit)
        .all()
    )
    return PaginatedThreads(
        items=[ThreadResponse.model_validate(r) for r in rows],
        total=total,
        offset=offset,
        limit=limit,
    )


@router.post("/users/{user_id}/prioritize", response_model=PrioritizeQueued)
def prioritize(
    user_id: int,
    payload: Optional[PrioritizeRequest] = Body(None),
    db: Session = Depends(get_db),
):
    """Run a prioritization cycle now: the given thread ids plus everything deferred."""
    get_user_or_404(db, user_id)
    thread_ids = list(dict.fromkeys(payload.thread_ids)) if payload else []
    get_scheduler().enqueue_now(user_id, thread_ids, "manual")
    return PrioritizeQueued(message="Prioritization queued.", user_id=user_id, queued_thread_ids=len(thread_ids))


@router.get("/users/{user_id}/prioritization/batches", response_model=list[PrioritizationBatchResponse])
def list_batches(user_id: int, limit: int = Query(20, ge=1, le=200), db: Session = Depends(get_db)):
    get_user_or_404(db, user_id)
    rows = (
        db.query(PrioritizationBatch)
        .filter(PrioritizationBatch.user_id == user_id)
        .order_by(PrioritizationBatch.started_at.desc(), PrioritizationBatch.id.desc())
        .limit(limit)
        .all()
    )
    return [PrioritizationBatchResponse.model_validate(r) for r in rows]
