"""
Periodic batch sync: sync every recently active user whose last batch sync is
old enough, a few users at a time, then run one prioritization batch for each.

Runs from Celery beat or scripts/run_batch_sync.py, i.e. in processes that may
exit before an in-memory debounce timer fires, so prioritization runs inline
and anything the guardrails defer stays in the deferred table.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal
from ..gmail_service import GmailAuthRequiredError, get_gmail_credentials
from ..models import User
from .inbox_sync import sync_primary_inbox
from .prioritization_worker import run_prioritization_batch

logger = logging.getLogger(__name__)


@dataclass
class BatchSyncSummary:
    attempted: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    results: dict[int, str] = field(default_factory=dict)


def select_batch_sync_users(db: Session, now: Optional[datetime] = None) -> list[int]:
    """Ids of users active within BATCH_SYNC_ACTIVE_DAYS and not batch-synced for BATCH_SYNC_MIN_INTERVAL_MINUTES."""
    now = now or datetime.utcnow()
    active_since = now - timedelta(days=settings.batch_sync_active_days)
    min_sync_time = now - timedelta(minutes=settings.batch_sync_min_interval_minutes)
    rows = (
        db.query(User.id)
        .filter(
            User.last_active_at.isnot(None),
            User.last_active_at >= active_since,
            or_(User.last_batch_sync_at.is_(None), User.last_batch_sync_at < min_sync_time),
        )
        # Never-synced users first, then the longest-waiting.
        .order_by(User.last_batch_sync_at.isnot(None), User.last_batch_sync_at.asc(), User.id.asc())
        .limit(max(0, settings.batch_sync_max_users))
        .all()
    )
    return [uid for (uid,) in rows]


def mark_sync_result(db: Session, user_id: int, status: str, error: Optional[str]) -> None:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        return
    user.last_batch_sync_at = datetime.utcnow()
    user.last_batch_sync_status = status
    user.last_batch_sync_error = error[:2000] if error else None
    db.commit()


def sync_user(user_id: int, *, session_factory: Callable[[], Session] = SessionLocal) -> str:
    """
    Sync + prioritize one user in its own session. Returns "ok", "skipped" or
    "error"; the outcome is recorded on the user row and never raised.
    """
    db = session_factory()
    try:
        try:
            credentials = get_gmail_credentials(user_id)
        except GmailAuthRequiredError as e:
            logger.warning(f"Batch sync skipped user_id={user_id}: {e}")
            mark_sync_result(db, user_id, e.reason, str(e))
            return "skipped"

        try:
            outcome = sync_primary_inbox(db, credentials, user_id, skip_priority_enqueue=True)
            trigger = "initial_sync" if outcome.mode == "initial" else "history_delta"
            run_prioritization_batch(db, user_id, outcome.affected_thread_ids, trigger)
        except Exception as e:
            db.rollback()
            logger.warning(f"Batch sync failed for user_id={user_id}: {e}")
            mark_sync_result(db, user_id, "error", str(e))
            return "error"

        mark_sync_result(db, user_id, "ok", None)
        logger.info(
            f"Batch sync user_id={user_id}: mode={outcome.mode} fetched={outcome.fetched} "
            f"updated={outcome.updated} removed={outcome.removed}"
        )
        return "ok"
    finally:
        db.close()


def run_batch_sync(
    db: Session,
    *,
    user_ids: Optional[list[int]] = None,
    session_factory: Callable[[], Session] = SessionLocal,
) -> BatchSyncSummary:
    """Sync the given users (default: every eligible user) with BATCH_SYNC_CONCURRENCY workers."""
    targets = user_ids if user_ids is not None else select_batch_sync_users(db)
    summary = BatchSyncSummary(attempted=len(targets))
    logger.info(
        f"Batch sync start: users={len(targets)} concurrency={settings.batch_sync_concurrency} "
        f"active_days={settings.batch_sync_active_days} min_interval={settings.batch_sync_min_interval_minutes}m"
    )
    if not targets:
        logger.info("Batch sync: no eligible users")
        return summary

    workers = max(1, min(settings.batch_sync_concurrency, len(targets)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(sync_user, uid, session_factory=session_factory): uid for uid in targets}
        for fut in as_completed(futures):
            uid = futures[fut]
            result = fut.result()
            summary.results[uid] = result
            if result == "ok":
                summary.synced += 1
            elif result == "skipped":
                summary.skipped += 1
            else:
                summary.failed += 1

    logger.info(
        f"Batch sync done: attempted={summary.attempted} synced={summary.synced} "
        f"skipped={summary.skipped} failed={summary.failed}"
    )
    return summary
