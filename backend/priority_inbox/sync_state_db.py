"""Gmail account sync state in DB (GmailAccount model) per user: history cursor and sync timestamps."""
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .models import GmailAccount, ThreadIndex, DeferredPrioritization


def get_gmail_account(db: Session, user_id: int) -> Optional[GmailAccount]:
    return db.query(GmailAccount).filter(GmailAccount.user_id == user_id).first()


def get_history_cursor(db: Session, user_id: int) -> Optional[str]:
    row = get_gmail_account(db, user_id)
    return row.history_cursor if row else None


def _cursor_value(cursor: Optional[str]) -> Optional[int]:
    try:
        return int(cursor) if cursor else None
    except (TypeError, ValueError):
        return None


def newer_cursor(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
    """
    Pick the later of two Gmail history ids. Gmail history ids increase
    monotonically, so a smaller candidate never replaces the stored cursor.
    """
    if not candidate:
        return current
    if not current:
        return candidate
    cur_val, cand_val = _cursor_value(current), _cursor_value(candidate)
    if cur_val is None or cand_val is None:
        return candidate
    return candidate if cand_val >= cur_val else current


def record_initial_sync(
    db: Session,
    user_id: int,
    history_cursor: Optional[str],
    email_address: Optional[str] = None,
) -> GmailAccount:
    """
    Upsert the account after a full index build. The cursor is taken as-is:
    an initial build re-derives the baseline from the current profile.
    """
    now = datetime.utcnow()
    row = get_gmail_account(db, user_id)
    if row:
        if email_address:
            row.email_address = email_address
        row.history_cursor = history_cursor
        row.last_initial_sync_at = now
        row.last_sync_at = now
        row.updated_at = now
    else:
        row = GmailAccount(
            user_id=user_id,
            email_address=email_address or "",
            history_cursor=history_cursor,
            last_initial_sync_at=now,
            last_sync_at=now,
            updated_at=now,
        )
        db.add(row)
    db.commit()
    return row


def advance_history_cursor(db: Session, user_id: int, history_cursor: Optional[str]) -> Optional[str]:
    """Move the stored cursor forward after a successful delta sync. Returns the stored cursor."""
    row = get_gmail_account(db, user_id)
    if not row:
        raise ValueError(f"No Gmail account for user {user_id}; run an initial sync first")
    now = datetime.utcnow()
    row.history_cursor = newer_cursor(row.history_cursor, history_cursor)
    row.last_sync_at = now
    row.updated_at = now
    db.commit()
    return row.history_cursor


def get_state_from_db(db: Session, user_id: int) -> dict:
    """Sync state dict for GET /sync-status."""
    row = get_gmail_account(db, user_id)
    indexed = db.query(ThreadIndex).filter(ThreadIndex.user_id == user_id).count()
    primary = (
        db.query(ThreadIndex)
        .filter(ThreadIndex.user_id == user_id, ThreadIndex.in_primary_inbox.is_(True))
        .count()
    )
    deferred = db.query(DeferredPrioritization).filter(DeferredPrioritization.user_id == user_id).count()
    return {
        "user_id": user_id,
        "email_address": row.email_address if row else None,
        "history_cursor": row.history_cursor if row else None,
        "last_initial_sync_at": row.last_initial_sync_at if row else None,
        "last_sync_at": row.last_sync_at if row else None,
        "indexed_threads": indexed,
        "primary_threads": primary,
        "deferred_threads": deferred,
    }
