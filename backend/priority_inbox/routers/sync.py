"""Inbox sync API: POST sync (runs in the background), GET sync-status."""
import logging
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from ..database import SessionLocal, get_db
from ..gmail_service import credential_problem, load_user_credentials
from ..models import User
from ..schemas import SyncStarted, SyncStatusResponse
from ..services.inbox_sync import run_primary_inbox_sync
from ..services.prioritization_queue import get_scheduler
from ..sync_state_db import get_state_from_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["sync"])


def get_user_or_404(db: Session, user_id: int) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _run_sync_task(user_id: int):
    session = SessionLocal()
    try:
        run_primary_inbox_sync(session, user_id, scheduler=get_scheduler())
    except Exception:
        logger.exception(f"Background sync failed for user_id={user_id}")
    finally:
        session.close()


@router.post("/users/{user_id}/sync", response_model=SyncStarted)
def start_sync(user_id: int, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """Start a primary inbox sync (initial or history delta). Poll GET /sync-status for the result."""
    user = get_user_or_404(db, user_id)
    problem = credential_problem(load_user_credentials(user_id))
    if problem:
        raise HTTPException(
            status_code=400,
            detail=f"Gmail authorization required ({problem}). Provision a token with Gmail scope and a refresh token.",
        )
    user.last_active_at = datetime.utcnow()
    db.commit()
    background_tasks.add_task(_run_sync_task, user_id)
    return SyncStarted(message="Inbox sync started.", status="syncing", user_id=user_id)


@router.get("/users/{user_id}/sync-status", response_model=SyncStatusResponse)
def sync_status(user_id: int, db: Session = Depends(get_db)):
    """History cursor, sync timestamps and index counts for this user."""
    get_user_or_404(db, user_id)
    return get_state_from_db(db, user_id)
