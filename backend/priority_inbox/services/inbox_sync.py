"""
Primary inbox sync: full index build or history-cursor delta, then notify the prioritization scheduler.

Initial mode lists every primary-inbox thread in the sync window, upserts its
metadata and reconciles the local primary set against what was listed.
Incremental mode replays Gmail history since the stored cursor and re-fetches
only the threads it touched.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Iterator, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..database import commit_with_retry
from ..gmail_service import (
    GMAIL_CALL_ERRORS,
    HISTORY_TYPES,
    METADATA_HEADERS,
    CursorExpiredError,
    GmailAuthRequiredError,
    build_gmail_service,
    get_gmail_credentials,
    get_profile,
    get_thread,
    is_not_found,
    list_history,
    list_threads,
    service_for_current_thread,
)
from ..models import ThreadIndex
from ..sync_state_db import advance_history_cursor, get_history_cursor, newer_cursor, record_initial_sync
from .prioritization_queue import PrioritizationScheduler, enqueue_prioritization
from .thread_metadata import ThreadMetadata, extract_history_thread_ids, extract_thread_metadata

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 100


@dataclass
class SyncOutcome:
    mode: str  # "initial" | "history"
    fetched: int = 0
    updated: int = 0
    removed: int = 0
    affected_thread_ids: list[str] = field(default_factory=list)
    history_cursor: Optional[str] = None


def initial_sync_query() -> str:
    query = settings.gmail_primary_query.strip()
    if settings.initial_sync_days > 0:
        query = f"{query} newer_than:{settings.initial_sync_days}d"
    return query


def upsert_thread_index(db: Session, user_id: int, meta: ThreadMetadata) -> ThreadIndex:
    """
    Insert or overwrite the descriptive fields of one index row. Scoring fields
    are left alone; content_version always moves together with the anchor.
    Does not commit.
    """
    row = (
        db.query(ThreadIndex)
        .filter(ThreadIndex.user_id == user_id, ThreadIndex.thread_id == meta.thread_id)
        .first()
    )
    if row is None:
        row = ThreadIndex(user_id=user_id, thread_id=meta.thread_id)
        db.add(row)
    row.subject = meta.subject
    row.participants = list(meta.participants)
    row.from_name = meta.from_name
    row.from_email = meta.from_email
    row.snippet = meta.snippet
    row.unsubscribe = meta.unsubscribe
    row.last_message_id = meta.last_message_id
    row.last_message_date = meta.last_message_date
    row.content_version = meta.content_version
    row.unread_count = meta.unread_count
    row.gmail_label_ids = list(meta.gmail_label_ids)
    row.in_primary_inbox = meta.in_primary_inbox
    row.last_gmail_history_id_seen = meta.last_gmail_history_id_seen
    return row


def _save_thread(db: Session, user_id: int, meta: ThreadMetadata) -> None:
    commit_with_retry(db, partial(upsert_thread_index, db, user_id, meta))


def reconcile_primary_inbox_set(db: Session, user_id: int, fetched_ids: set[str]) -> int:
    """Flip in_primary_inbox off for local primary rows missing from the listing. Returns the row count."""
    q = db.query(ThreadIndex).filter(
        ThreadIndex.user_id == user_id,
        ThreadIndex.in_primary_inbox.is_(True),
    )
    if fetched_ids:
        q = q.filter(ThreadIndex.thread_id.notin_(list(fetched_ids)))
    removed = q.update({ThreadIndex.in_primary_inbox: False}, synchronize_session=False)
    db.commit()
    return removed


def fetch_thread_metadata(
    credentials,
    thread_ids: list[str],
    skip_error: Callable[[BaseException], bool],
) -> Iterator[ThreadMetadata]:
    """
    Fetch metadata for thread_ids in a bounded pool; yields extracted metadata
    on the calling thread as each fetch completes. API and transport errors
    accepted by skip_error are logged and skipped; anything else propagates.
    """
    if not thread_ids:
        return

    def _fetch(thread_id: str) -> dict:
        service = service_for_current_thread(credentials)
        return get_thread(service, thread_id, format="metadata", metadata_headers=METADATA_HEADERS)

    workers = max(1, min(settings.sync_metadata_concurrency, len(thread_ids)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(_fetch, tid): tid for tid in thread_ids}
        for fut in as_completed(futures):
            thread_id = futures[fut]
            try:
                thread = fut.result()
            except GMAIL_CALL_ERRORS as e:
                if not skip_error(e):
                    raise
                logger.warning(f"Skipping thread {thread_id}: metadata fetch failed ({e})")
                continue
            meta = extract_thread_metadata(thread)
            if meta is None:
                logger.info(f"Skipping thread {thread_id}: no messages")
                continue
            yield meta


def _notify_scheduler(
    user_id: int,
    thread_ids: list[str],
    trigger: str,
    scheduler: Optional[PrioritizationScheduler],
) -> None:
    if scheduler is not None:
        scheduler.enqueue(user_id, thread_ids, trigger)
    else:
        enqueue_prioritization(user_id, thread_ids, trigger)


def initial_index_build_primary_inbox(
    db: Session,
    credentials,
    user_id: int,
    *,
    scheduler: Optional[PrioritizationScheduler] = None,
    skip_priority_enqueue: bool = False,
) -> SyncOutcome:
    service = build_gmail_service(credentials)
    query = initial_sync_query()
    max_threads = max(0, settings.initial_sync_max_threads)

    fetched_ids: set[str] = set()
    primary_ids: list[str] = []
    page_token = None
    while len(fetched_ids) < max_threads:
        remaining = max_threads - len(fetched_ids)
        resp = list_threads(service, query, page_token=page_token, max_results=min(LIST_PAGE_SIZE, remaining))
        page_ids = [t["id"] for t in resp.get("threads") or [] if t.get("id") and t["id"] not in fetched_ids]
        page_ids = list(dict.fromkeys(page_ids))[:remaining]
        # Listed ids count as confirmed even if their fetch fails below.
        fetched_ids.update(page_ids)

        for meta in fetch_thread_metadata(credentials, page_ids, skip_error=lambda e: True):
            meta.in_primary_inbox = True
            _save_thread(db, user_id, meta)
            primary_ids.append(meta.thread_id)

        page_token = resp.get("nextPageToken")
        if not page_token:
            break

    removed = reconcile_primary_inbox_set(db, user_id, fetched_ids)
    profile = get_profile(service)
    history_cursor = profile.get("historyId")
    record_initial_sync(db, user_id, history_cursor, email_address=profile.get("emailAddress"))

    logger.info(
        f"Initial sync user_id={user_id}: listed={len(fetched_ids)} upserted={len(primary_ids)} "
        f"removed={removed} cursor={history_cursor}"
    )
    if not skip_priority_enqueue:
        _notify_scheduler(user_id, primary_ids, "initial_sync", scheduler)

    return SyncOutcome(
        mode="initial",
        fetched=len(fetched_ids),
        updated=len(primary_ids),
        removed=removed,
        affected_thread_ids=primary_ids,
        history_cursor=history_cursor,
    )


def incremental_sync_from_history_cursor(
    db: Session,
    credentials,
    user_id: int,
    *,
    scheduler: Optional[PrioritizationScheduler] = None,
    skip_priority_enqueue: bool = False,
) -> SyncOutcome:
    start_cursor = get_history_cursor(db, user_id)
    if not start_cursor:
        return initial_index_build_primary_inbox(
            db, credentials, user_id, scheduler=scheduler, skip_priority_enqueue=skip_priority_enqueue
        )

    service = build_gmail_service(credentials)
    affected: set[str] = set()
    history_cursor = start_cursor
    page_token = None
    try:
        while True:
            resp = list_history(
                service,
                start_cursor,
                page_token=page_token,
                max_results=settings.sync_history_page_limit,
                history_types=HISTORY_TYPES,
            )
            records = resp.get("history") or []
            affected |= extract_history_thread_ids(records)
            for record in records:
                history_cursor = newer_cursor(history_cursor, record.get("id"))
            history_cursor = newer_cursor(history_cursor, resp.get("historyId"))
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
    except CursorExpiredError:
        logger.warning(f"History cursor {start_cursor} expired for user_id={user_id}; falling back to initial sync")
        return initial_index_build_primary_inbox(
            db, credentials, user_id, scheduler=scheduler, skip_priority_enqueue=skip_priority_enqueue
        )

    affected_ids = sorted(affected)
    updated = 0
    removed = 0
    for meta in fetch_thread_metadata(credentials, affected_ids, skip_error=is_not_found):
        _save_thread(db, user_id, meta)
        updated += 1
        if not meta.in_primary_inbox:
            removed += 1

    history_cursor = advance_history_cursor(db, user_id, history_cursor)

    logger.info(
        f"History sync user_id={user_id}: affected={len(affected_ids)} updated={updated} "
        f"removed={removed} cursor={history_cursor}"
    )
    if not skip_priority_enqueue:
        _notify_scheduler(user_id, affected_ids, "history_delta", scheduler)

    return SyncOutcome(
        mode="history",
        fetched=len(affected_ids),
        updated=updated,
        removed=removed,
        affected_thread_ids=affected_ids,
        history_cursor=history_cursor,
    )


def sync_primary_inbox(
    db: Session,
    credentials,
    user_id: int,
    *,
    scheduler: Optional[PrioritizationScheduler] = None,
    skip_priority_enqueue: bool = False,
) -> SyncOutcome:
    """
    Sync one user's primary inbox. Initial mode when there is no stored cursor
    or no indexed thread yet; history delta otherwise.
    """
    kwargs = {"scheduler": scheduler, "skip_priority_enqueue": skip_priority_enqueue}
    if not get_history_cursor(db, user_id):
        return initial_index_build_primary_inbox(db, credentials, user_id, **kwargs)
    has_rows = db.query(ThreadIndex.id).filter(ThreadIndex.user_id == user_id).first() is not None
    if not has_rows:
        logger.info(f"No indexed threads for user_id={user_id}; rebuilding index")
        return initial_index_build_primary_inbox(db, credentials, user_id, **kwargs)
    return incremental_sync_from_history_cursor(db, credentials, user_id, **kwargs)


def run_primary_inbox_sync(
    db: Session,
    user_id: int,
    *,
    scheduler: Optional[PrioritizationScheduler] = None,
    skip_priority_enqueue: bool = False,
) -> Optional[SyncOutcome]:
    """Load the user's Gmail credentials and sync. Returns None (skip) when they are not usable."""
    try:
        credentials = get_gmail_credentials(user_id)
    except GmailAuthRequiredError as e:
        logger.warning(f"Skipping sync for user_id={user_id}: {e}")
        return None
    return sync_primary_inbox(
        db, credentials, user_id, scheduler=scheduler, skip_priority_enqueue=skip_priority_enqueue
    )
