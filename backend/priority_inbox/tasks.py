"""Celery tasks: per-user inbox sync and the periodic batch sync. DB session per task."""
from typing import Optional

from celery import shared_task

from .database import SessionLocal
from .services.batch_sync import run_batch_sync as run_batch_sync_job
from .services.inbox_sync import run_primary_inbox_sync
from .services.prioritization_worker import run_prioritization_batch


@shared_task(bind=True, name="priority_inbox.tasks.sync_primary_inbox")
def sync_primary_inbox(self, user_id: int, prioritize: bool = True) -> dict:
    """
    Sync one user's primary inbox, then (unless prioritize=False) score the
    affected threads inline: a worker process has no long-lived debounce timer.
    """
    db = SessionLocal()
    try:
        outcome = run_primary_inbox_sync(db, user_id, skip_priority_enqueue=True)
        if outcome is None:
            return {"status": "skipped", "user_id": user_id}
        result = {
            "status": "ok",
            "user_id": user_id,
            "mode": outcome.mode,
            "fetched": outcome.fetched,
            "updated": outcome.updated,
            "removed": outcome.removed,
            "history_cursor": outcome.history_cursor,
        }
        if prioritize:
            trigger = "initial_sync" if outcome.mode == "initial" else "history_delta"
            batch = run_prioritization_batch(db, user_id, outcome.affected_thread_ids, trigger)
            if batch is not None:
                result["batch_id"] = batch.batch_id
                result["processed"] = batch.processed
                result["deferred"] = batch.deferred
        return result
    finally:
        db.close()


@shared_task(bind=True, name="priority_inbox.tasks.run_batch_sync")
def run_batch_sync(self, user_ids: Optional[list[int]] = None) -> dict:
    db = SessionLocal()
    try:
        summary = run_batch_sync_job(db, user_ids=user_ids)
    finally:
        db.close()
    return {
        "attempted": summary.attempted,
        "synced": summary.synced,
        "skipped": summary.skipped,
        "failed": summary.failed,
    }
