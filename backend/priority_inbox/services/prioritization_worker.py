"""
Prioritization worker: score a bounded slice of a user's primary inbox per run.

Candidates are the requested thread ids plus everything left deferred by
earlier runs. Guardrails (thread count, wall-clock budget, total content
size) defer work into the deferred_prioritization table instead of failing,
and the scheduler keeps draining that table until it is empty.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Callable, Iterable, Optional

from googleapiclient.errors import HttpError
from sqlalchemy.orm import Session

from ..config import settings
from ..database import commit_with_retry
from ..gmail_service import (
    GMAIL_CALL_ERRORS,
    GmailAuthRequiredError,
    build_gmail_service,
    get_gmail_credentials,
    get_thread,
    is_not_found,
    is_permanent_client_error,
    normalize_body,
)
from ..models import DeferredPrioritization, PrioritizationBatch, ThreadContentCache, ThreadIndex
from .priority_scoring import ThreadScoreInput, ThreadScoreResult, ThreadScorer, get_default_scorer
from .redis_cache import get_cached_thread_content, set_cached_thread_content
from .thread_metadata import build_content_version, internal_date

logger = logging.getLogger(__name__)

MESSAGE_SEPARATOR = "\n\n---\n\n"
_EPOCH = datetime(1970, 1, 1)


@dataclass
class BatchBudget:
    """Count and size limits shared by the batch loop and apply_guardrails."""

    max_threads: int
    max_total_chars: int
    processed: int = 0
    total_chars: int = 0

    @classmethod
    def from_settings(cls) -> "BatchBudget":
        return cls(settings.max_threads_per_batch, settings.max_total_chars_per_batch)

    def count_exhausted(self) -> bool:
        return self.processed >= self.max_threads

    def fits(self, content_length: int) -> bool:
        return self.total_chars + content_length <= self.max_total_chars

    def mark_processed(self, content_length: int = 0) -> None:
        self.processed += 1
        self.total_chars += content_length


@dataclass
class GuardrailPlan:
    selected: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    total_chars: int = 0


@dataclass
class BatchResult:
    batch_id: int
    status: str
    planned: int
    processed: int
    deferred: int
    total_chars: int = 0
    processed_thread_ids: list[str] = field(default_factory=list)
    deferred_thread_ids: list[str] = field(default_factory=list)
    dropped_thread_ids: list[str] = field(default_factory=list)


def sort_candidates_for_scoring(candidates: Iterable) -> list:
    """
    Order candidates (anything with priority_score, last_message_date and
    unread_count): never-scored first, then newest last_message_date (missing
    dates last), then unread before read. Stable for full ties.
    """

    def _key(c):
        date = getattr(c, "last_message_date", None)
        age = -(date - _EPOCH).total_seconds() if date is not None else float("inf")
        unread = 0 if (getattr(c, "unread_count", 0) or 0) > 0 else 1
        return (getattr(c, "priority_score", None) is not None, age, unread)

    return sorted(candidates, key=_key)


def apply_guardrails(order: Iterable[tuple[str, int]], budget: Optional[BatchBudget] = None) -> GuardrailPlan:
    """Split (thread_id, content_length) pairs into selected/deferred under the count and size limits."""
    budget = budget or BatchBudget.from_settings()
    plan = GuardrailPlan()
    for thread_id, content_length in order:
        if budget.count_exhausted() or not budget.fits(content_length):
            plan.deferred.append(thread_id)
            continue
        budget.mark_processed(content_length)
        plan.selected.append(thread_id)
    plan.total_chars = budget.total_chars
    return plan


def is_score_fresh(row: ThreadIndex, content_version: Optional[str]) -> bool:
    return (
        row.priority_score is not None
        and row.score_version == settings.priority_score_version
        and row.scored_content_version == content_version
        and row.last_scored_at is not None
    )


def fetch_thread_content(service, thread_id: str) -> Optional[str]:
    """
    Normalized text of the thread's last MAX_MESSAGES_PER_THREAD messages, oldest
    first, capped at MAX_CHARS_PER_THREAD. None when the thread is gone or empty.
    """
    try:
        thread = get_thread(service, thread_id, format="full")
    except HttpError as e:
        if is_not_found(e):
            return None
        raise
    messages = [m for m in (thread.get("messages") or []) if m]
    if not messages:
        return None
    selected = sorted(messages, key=internal_date)[-max(1, settings.max_messages_per_thread):]
    parts = [normalize_body(m.get("payload")) for m in selected]
    combined = MESSAGE_SEPARATOR.join(p for p in parts if p)
    return combined[: settings.max_chars_per_thread]


def _store_content_cache(db: Session, user_id: int, thread_id: str, content_text: str, content_version: str) -> None:
    row = (
        db.query(ThreadContentCache)
        .filter(ThreadContentCache.user_id == user_id, ThreadContentCache.thread_id == thread_id)
        .first()
    )
    if row is None:
        row = ThreadContentCache(user_id=user_id, thread_id=thread_id)
        db.add(row)
    row.content_text = content_text
    row.content_version = content_version or ""


def load_thread_content(
    db: Session,
    user_id: int,
    thread_id: str,
    content_version: Optional[str],
    fetch: Callable[[str], Optional[str]],
) -> Optional[str]:
    """Redis L1, then the DB cache row for this content_version, then Gmail (refreshing both caches)."""
    cached = get_cached_thread_content(user_id, thread_id, content_version)
    if cached is not None:
        return cached

    row = (
        db.query(ThreadContentCache)
        .filter(ThreadContentCache.user_id == user_id, ThreadContentCache.thread_id == thread_id)
        .first()
    )
    if row is not None and content_version and row.content_version == content_version:
        set_cached_thread_content(user_id, thread_id, content_version, row.content_text)
        return row.content_text

    content_text = fetch(thread_id)
    if content_text is None:
        return None
    commit_with_retry(db, partial(_store_content_cache, db, user_id, thread_id, content_text, content_version))
    set_cached_thread_content(user_id, thread_id, content_version, content_text)
    return content_text


def _write_score(row: ThreadIndex, result: ThreadScoreResult, content_version: Optional[str]) -> None:
    row.priority_score = result.priority_score
    row.priority_reason = result.priority_reason
    row.suggested_action_type = result.suggested_action_type
    row.extracted = result.extracted
    row.last_scored_at = datetime.utcnow()
    row.score_version = settings.priority_score_version
    row.content_version = content_version
    row.scored_content_version = content_version


def _delete_deferred(db: Session, user_id: int, thread_ids: list[str]) -> None:
    if not thread_ids:
        return
    db.query(DeferredPrioritization).filter(
        DeferredPrioritization.user_id == user_id,
        DeferredPrioritization.thread_id.in_(thread_ids),
    ).delete(synchronize_session=False)


def _upsert_deferred(db: Session, user_id: int, thread_ids: list[str], reason: str = "guardrail") -> None:
    if not thread_ids:
        return
    existing = {
        row.thread_id: row
        for row in db.query(DeferredPrioritization).filter(
            DeferredPrioritization.user_id == user_id,
            DeferredPrioritization.thread_id.in_(thread_ids),
        )
    }
    now = datetime.utcnow()
    for thread_id in dict.fromkeys(thread_ids):
        row = existing.get(thread_id)
        if row is None:
            db.add(DeferredPrioritization(user_id=user_id, thread_id=thread_id, reason=reason, updated_at=now))
        else:
            row.reason = reason
            row.updated_at = now


def _record_bookkeeping(
    db: Session,
    user_id: int,
    batch_id: int,
    status: str,
    processed: int,
    processed_ids: list[str],
    deferred_ids: list[str],
    dropped_ids: list[str],
) -> None:
    _delete_deferred(db, user_id, processed_ids + dropped_ids)
    _upsert_deferred(db, user_id, deferred_ids)
    batch = db.query(PrioritizationBatch).filter(PrioritizationBatch.id == batch_id).first()
    batch.status = status
    batch.processed_threads = processed
    batch.deferred_threads = len(deferred_ids)
    batch.finished_at = datetime.utcnow()


def run_prioritization_batch(
    db: Session,
    user_id: int,
    thread_ids: Iterable[str],
    trigger: str,
    *,
    scorer: Optional[ThreadScorer] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[BatchResult]:
    """
    Score one bounded batch for a user. Returns None when skipped (unusable
    credentials, or nothing to do). Re-raises any exception from the candidate
    loop after the batch is finalized as failed.
    """
    try:
        credentials = get_gmail_credentials(user_id)
    except GmailAuthRequiredError as e:
        logger.warning(f"Skipping prioritization for user_id={user_id}: {e}")
        return None

    candidates = {tid for tid in thread_ids or [] if tid}
    deferred_rows = db.query(DeferredPrioritization.thread_id).filter(DeferredPrioritization.user_id == user_id)
    candidates.update(tid for (tid,) in deferred_rows)
    if not candidates:
        return None

    rows = (
        db.query(ThreadIndex)
        .filter(
            ThreadIndex.user_id == user_id,
            ThreadIndex.thread_id.in_(list(candidates)),
            ThreadIndex.in_primary_inbox.is_(True),
        )
        .all()
    )
    stale = sorted(candidates - {r.thread_id for r in rows})
    if stale:
        commit_with_retry(db, partial(_delete_deferred, db, user_id, stale))
        logger.info(f"Dropped {len(stale)} candidates no longer in the primary inbox for user_id={user_id}")

    ordered = sort_candidates_for_scoring(rows)
    ordered_ids = [r.thread_id for r in ordered]
    batch = PrioritizationBatch(
        user_id=user_id,
        status="running",
        trigger=trigger,
        total_threads_planned=len(ordered),
        processed_threads=0,
        deferred_threads=0,
    )
    db.add(batch)
    db.commit()
    batch_id = batch.id

    scorer = scorer or get_default_scorer()
    service = None

    def _fetch(thread_id: str) -> Optional[str]:
        nonlocal service
        if service is None:
            service = build_gmail_service(credentials)
        return fetch_thread_content(service, thread_id)

    budget = BatchBudget.from_settings()
    processed_ids: list[str] = []
    deferred_ids: list[str] = []
    dropped_ids: list[str] = []
    started = clock()
    status = "completed"
    position = 0
    try:
        for position, row in enumerate(ordered):
            thread_id = row.thread_id
            if budget.count_exhausted():
                deferred_ids.append(thread_id)
                continue
            if clock() - started > settings.batch_time_budget_seconds:
                deferred_ids.append(thread_id)
                continue

            content_version = row.content_version or build_content_version(row.last_message_date, row.last_message_id)
            if is_score_fresh(row, content_version):
                budget.mark_processed()
                processed_ids.append(thread_id)
                continue

            try:
                content = load_thread_content(db, user_id, thread_id, content_version, _fetch)
            except GMAIL_CALL_ERRORS as e:
                if is_permanent_client_error(e):
                    logger.warning(f"Dropping thread {thread_id} from prioritization: content fetch rejected ({e})")
                    dropped_ids.append(thread_id)
                else:
                    logger.warning(f"Deferring thread {thread_id}: content fetch failed ({e})")
                    deferred_ids.append(thread_id)
                continue
            if content is None:
                logger.info(f"Thread {thread_id} has no fetchable content; dropping from prioritization")
                dropped_ids.append(thread_id)
                continue
            if not budget.fits(len(content)):
                deferred_ids.append(thread_id)
                continue

            result = scorer.score(
                ThreadScoreInput(
                    thread_id=thread_id,
                    subject=row.subject or "",
                    participants=list(row.participants or []),
                    snippet=row.snippet or "",
                    content=content,
                )
            )
            commit_with_retry(db, partial(_write_score, row, result, content_version))
            budget.mark_processed(len(content))
            processed_ids.append(thread_id)
    except Exception as e:
        status = "failed"
        db.rollback()
        # Unvisited candidates and the one that failed go back to the deferred table.
        decided = set(processed_ids) | set(deferred_ids) | set(dropped_ids)
        deferred_ids.extend(tid for tid in ordered_ids[position:] if tid not in decided)
        logger.error(f"Prioritization batch {batch_id} failed for user_id={user_id}: {e}")
        raise
    finally:
        commit_with_retry(
            db,
            partial(
                _record_bookkeeping,
                db,
                user_id,
                batch_id,
                status,
                budget.processed,
                processed_ids,
                deferred_ids,
                dropped_ids,
            ),
        )

    logger.info(
        f"Prioritization batch {batch_id} completed for user_id={user_id} trigger={trigger}: "
        f"planned={len(ordered)} processed={budget.processed} deferred={len(deferred_ids)} "
        f"chars={budget.total_chars}"
    )
    return BatchResult(
        batch_id=batch_id,
        status=status,
        planned=len(ordered),
        processed=budget.processed,
        deferred=len(deferred_ids),
        total_chars=budget.total_chars,
        processed_thread_ids=processed_ids,
        deferred_thread_ids=deferred_ids,
        dropped_thread_ids=dropped_ids,
    )
