"""Thread metadata extraction shared by the initial and incremental sync paths."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parseaddr
from typing import Iterable, Optional

from ..gmail_service import header_value
from ..unsubscribe import extract_unsubscribe_metadata

# Gmail exposes the Primary tab as CATEGORY_PERSONAL; CATEGORY_PRIMARY is accepted too.
PRIMARY_CATEGORY_LABELS = {"CATEGORY_PRIMARY", "CATEGORY_PERSONAL"}
EXCLUDED_LABELS = {"CHAT", "SPAM", "TRASH"}


@dataclass
class ThreadMetadata:
    thread_id: str
    subject: Optional[str]
    participants: list[str]
    last_message_date: datetime
    last_message_id: Optional[str]
    from_name: Optional[str]
    from_email: Optional[str]
    unread_count: int
    snippet: Optional[str]
    gmail_label_ids: list[str] = field(default_factory=list)
    in_primary_inbox: bool = False
    last_gmail_history_id_seen: Optional[str] = None
    content_version: Optional[str] = None
    unsubscribe: Optional[dict] = None


def build_content_version(last_message_date: Optional[datetime], last_message_id: Optional[str]) -> Optional[str]:
    """'2026-02-01T09:30:00.000Z:<messageId>' (UTC, millisecond precision)."""
    if last_message_date is None:
        return None
    stamp = f"{last_message_date:%Y-%m-%dT%H:%M:%S}.{last_message_date.microsecond // 1000:03d}Z"
    return f"{stamp}:{last_message_id}" if last_message_id else stamp


def internal_date(message: dict) -> int:
    """Gmail internalDate (epoch ms, delivered as a string); 0 when missing."""
    try:
        return int(message.get("internalDate") or 0)
    except (TypeError, ValueError):
        return 0


def _from_epoch_ms(ms: int) -> datetime:
    # Naive UTC, like every other timestamp column.
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).replace(tzinfo=None)


def parse_from(raw: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Split a From header into (display name, address)."""
    if not raw:
        return None, None
    name, address = parseaddr(raw)
    if "@" not in (address or ""):
        return raw.strip() or None, None
    return (name.strip().strip('"') or None), address.strip()


def collect_participants(messages: list[dict]) -> list[str]:
    """Unique From/To/Cc entries across every message, first-seen order."""
    seen: dict[str, None] = {}
    for msg in messages:
        headers = (msg.get("payload") or {}).get("headers") or []
        for name in ("From", "To", "Cc"):
            raw = header_value(headers, name)
            if not raw:
                continue
            for item in raw.split(","):
                value = item.strip()
                if value:
                    seen.setdefault(value, None)
    return list(seen)


def is_primary_inbox(label_ids: list[str]) -> bool:
    labels = set(label_ids or [])
    return "INBOX" in labels and bool(labels & PRIMARY_CATEGORY_LABELS) and not labels & EXCLUDED_LABELS


def extract_thread_metadata(thread: dict) -> Optional[ThreadMetadata]:
    """
    Index fields for a Gmail thread resource. The latest message (by internalDate)
    supplies subject, sender, labels and the change-detection anchor; participants
    and the unread count span the whole thread. Returns None for threads without
    an id or without messages.
    """
    messages = [m for m in (thread.get("messages") or []) if m]
    thread_id = thread.get("id")
    if not messages or not thread_id:
        return None

    ordered = sorted(messages, key=internal_date)
    latest = ordered[-1]
    headers = (latest.get("payload") or {}).get("headers") or []
    from_name, from_email = parse_from(header_value(headers, "From"))
    latest_ms = internal_date(latest)
    last_message_date = _from_epoch_ms(latest_ms) if latest_ms else datetime.utcnow()
    last_message_id = latest.get("id")
    label_ids = list(latest.get("labelIds") or [])

    return ThreadMetadata(
        thread_id=thread_id,
        subject=header_value(headers, "Subject") or None,
        participants=collect_participants(ordered),
        last_message_date=last_message_date,
        last_message_id=last_message_id,
        from_name=from_name,
        from_email=from_email,
        unread_count=sum(1 for m in ordered if "UNREAD" in (m.get("labelIds") or [])),
        snippet=thread.get("snippet"),
        gmail_label_ids=label_ids,
        in_primary_inbox=is_primary_inbox(label_ids),
        last_gmail_history_id_seen=thread.get("historyId"),
        content_version=build_content_version(last_message_date, last_message_id),
        unsubscribe=extract_unsubscribe_metadata(headers),
    )


def compute_reconcile_targets(current_ids: Iterable[str], fetched_ids: Iterable[str]) -> list[str]:
    """Locally-primary thread ids the remote listing no longer confirms (current minus fetched)."""
    fetched = set(fetched_ids)
    return [tid for tid in dict.fromkeys(current_ids) if tid not in fetched]


def extract_history_thread_ids(history: Optional[list[dict]]) -> set[str]:
    """Every thread id touched by a page of history records (added/deleted messages and label changes)."""
    ids: set[str] = set()
    for record in history or []:
        for msg in record.get("messages") or []:
            if msg.get("threadId"):
                ids.add(msg["threadId"])
        for key in ("messagesAdded", "messagesDeleted", "labelsAdded", "labelsRemoved"):
            for item in record.get(key) or []:
                thread_id = (item.get("message") or {}).get("threadId")
                if thread_id:
                    ids.add(thread_id)
    return ids
