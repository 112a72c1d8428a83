"""Gmail API integration: per-user credentials, threads/history/profile calls, rate limiting, body normalization."""
import base64
import html
import logging
import os
import pickle
import re
import threading
import time
from typing import Optional, Iterable

import httplib2
from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import settings

logger = logging.getLogger(__name__)

# Any of these grants read access to thread metadata and bodies.
GMAIL_SCOPES = {
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://mail.google.com/",
}

METADATA_HEADERS = [
    "Subject",
    "From",
    "To",
    "Cc",
    "Date",
    "List-Unsubscribe",
    "List-Unsubscribe-Post",
    "List-Id",
    "Precedence",
]

HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]

# What a single Gmail call can fail with once backoff gives up: API errors and transport failures.
GMAIL_CALL_ERRORS = (HttpError, OSError, httplib2.HttpLib2Error)


class GmailAuthRequiredError(Exception):
    """Raised when the stored Gmail credential can't be used without the user re-authorizing."""

    def __init__(self, message: str, reason: str = "missing_token"):
        super().__init__(message)
        self.reason = reason


class CursorExpiredError(Exception):
    """history.list rejected the start cursor (too old); caller must rebuild from scratch."""


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return os.path.join(backend_dir, path)


def _token_path_for_user(user_id: Optional[int]) -> str:
    """TOKEN_DIR/token_<user_id>.pickle when TOKEN_DIR is set, else the single TOKEN_PATH."""
    if settings.token_dir:
        if user_id is None:
            raise ValueError("user_id is required when TOKEN_DIR is set")
        return os.path.join(_resolve_path(settings.token_dir), f"token_{user_id}.pickle")
    return _resolve_path(settings.token_path)


def load_user_credentials(user_id: Optional[int]):
    """Return the pickled Credentials for this user, or None if there is no readable token."""
    token_path = _token_path_for_user(user_id)
    if not os.path.exists(token_path):
        return None
    try:
        with open(token_path, "rb") as token:
            return pickle.load(token)
    except (OSError, pickle.UnpicklingError, EOFError) as e:
        logger.warning(f"Unreadable Gmail token for user {user_id}: {e}")
        return None


def save_user_credentials(user_id: Optional[int], creds) -> None:
    token_path = _token_path_for_user(user_id)
    os.makedirs(os.path.dirname(token_path) or ".", exist_ok=True)
    with open(token_path, "wb") as token:
        pickle.dump(creds, token)
    try:
        os.chmod(token_path, 0o600)
    except OSError:
        pass


def has_gmail_scope(scopes: Optional[Iterable[str]]) -> bool:
    if not scopes:
        return False
    if isinstance(scopes, str):
        scopes = scopes.split()
    return bool(GMAIL_SCOPES.intersection(s.strip() for s in scopes))


def credential_problem(creds) -> Optional[str]:
    """
    Why a stored credential can't be used for background Gmail access, or None if it can.
    Returns one of: missing_token, missing_refresh, missing_scopes.
    """
    if creds is None:
        return "missing_token"
    if not getattr(creds, "refresh_token", None):
        return "missing_refresh"
    if not has_gmail_scope(getattr(creds, "scopes", None)):
        return "missing_scopes"
    return None


def get_gmail_credentials(user_id: Optional[int]):
    """
    Return usable Credentials for background work, refreshing an expired access token.
    Raises GmailAuthRequiredError instead of ever starting an interactive OAuth flow.
    """
    creds = load_user_credentials(user_id)
    problem = credential_problem(creds)
    if problem:
        raise GmailAuthRequiredError(f"Gmail authorization required for user {user_id} ({problem})", reason=problem)
    if not creds.valid:
        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise GmailAuthRequiredError(
                f"Gmail token refresh failed for user {user_id}; re-authorization required", reason="missing_refresh"
            ) from e
        save_user_credentials(user_id, creds)
    return creds


def build_gmail_service(creds):
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


_local = threading.local()


def service_for_current_thread(creds):
    """
    One Gmail service per OS thread: the underlying httplib2 transport is not
    thread-safe, so pool workers must not share a service object.
    """
    cached = getattr(_local, "service", None)
    if cached is None or getattr(_local, "creds", None) is not creds:
        _local.service = build_gmail_service(creds)
        _local.creds = creds
    return _local.service


# Rate limiting: exponential backoff
def _with_backoff(fn, max_retries: int = 5):
    for attempt in range(max_retries):
        try:
            return fn()
        except HttpError as e:
            if e.resp.status in (429, 500, 503) and attempt < max_retries - 1:
                time.sleep(2 ** attempt)
                continue
            raise


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, HttpError) and getattr(err.resp, "status", None) == 404


def is_permanent_client_error(err: BaseException) -> bool:
    """4xx other than 429: retrying the same request will not help."""
    if not isinstance(err, HttpError):
        return False
    status = int(getattr(err.resp, "status", 0) or 0)
    return 400 <= status < 500 and status != 429


def list_threads(
    service,
    query: str,
    page_token: Optional[str] = None,
    max_results: int = 100,
) -> dict:
    """List thread IDs matching a Gmail search query. Paginated."""
    return _with_backoff(
        lambda: service.users()
        .threads()
        .list(
            userId="me",
            q=query,
            maxResults=max_results,
            pageToken=page_token or None,
        )
        .execute()
    )


def get_thread(
    service,
    thread_id: str,
    format: str = "metadata",
    metadata_headers: Optional[list[str]] = None,
) -> dict:
    """Get a thread. format=metadata returns headers/labels only; format=full includes bodies."""
    kwargs = {"userId": "me", "id": thread_id, "format": format}
    if format == "metadata":
        kwargs["metadataHeaders"] = metadata_headers or METADATA_HEADERS
    return _with_backoff(lambda: service.users().threads().get(**kwargs).execute())


def list_history(
    service,
    start_history_id: str,
    page_token: Optional[str] = None,
    max_results: int = 500,
    history_types: Optional[list[str]] = None,
) -> dict:
    """Fetch one page of history (deltas). Raises CursorExpiredError if the cursor is too old."""
    try:
        return _with_backoff(
            lambda: service.users()
            .history()
            .list(
                userId="me",
                startHistoryId=start_history_id,
                maxResults=max_results,
                pageToken=page_token or None,
                historyTypes=history_types or HISTORY_TYPES,
            )
            .execute()
        )
    except HttpError as e:
        if is_not_found(e):
            raise CursorExpiredError(f"History cursor {start_history_id} is no longer available") from e
        raise


def get_profile(service) -> dict:
    """Return {emailAddress, historyId, ...} for the authorized mailbox."""
    return _with_backoff(lambda: service.users().getProfile(userId="me").execute())


def header_value(headers: Optional[list[dict]], name: str) -> Optional[str]:
    """Case-insensitive header lookup on a Gmail payload headers list."""
    if not headers:
        return None
    target = name.lower()
    for h in headers:
        if (h.get("name") or "").lower() == target:
            return h.get("value")
    return None


QUOTE_MARKERS = [
    re.compile(r"^On .* wrote:$", re.I),
    re.compile(r"^From:\s", re.I),
    re.compile(r"^Sent:\s", re.I),
    re.compile(r"^Subject:\s", re.I),
    re.compile(r"^-----Original Message-----$", re.I),
]


def strip_quoted(text: str) -> str:
    """Drop the quoted reply chain: everything from the first quote marker on, plus '>' lines."""
    lines = text.split("\n")
    cut = next(
        (i for i, line in enumerate(lines) if any(rx.search(line.strip()) for rx in QUOTE_MARKERS)),
        None,
    )
    head = lines[:cut] if cut is not None else lines
    kept = "\n".join(line for line in head if not re.match(r"^>+", line))
    return re.sub(r"\n{3,}", "\n\n", kept).strip()


def _decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _html_to_text(raw: str) -> str:
    raw = re.sub(r"(?is)<(script|style|head)[^>]*>.*?</\1>", " ", raw)
    raw = re.sub(r"(?i)<br\s*/?>|</p>|</div>|</tr>", "\n", raw)
    text = html.unescape(re.sub(r"<[^>]+>", " ", raw))
    text = re.sub(r"[ \t]+", " ", text)
    return re.sub(r"\n\s*\n", "\n\n", text).strip()


def _walk_text_parts(payload: Optional[dict]):
    if not payload:
        return
    if (payload.get("mimeType") or "").startswith("text/"):
        yield payload
    for part in payload.get("parts") or []:
        yield from _walk_text_parts(part)


def normalize_body(payload: Optional[dict]) -> str:
    """Best text of a message: first text/plain part, else the first text/html part converted to text."""
    best = None
    for part in _walk_text_parts(payload):
        if part.get("mimeType") == "text/plain":
            best = part
            break
        if best is None and part.get("mimeType") == "text/html":
            best = part
    if best is None:
        return ""
    data = (best.get("body") or {}).get("data") or ""
    text = _decode(data) if data else ""
    if best.get("mimeType") == "text/html":
        text = _html_to_text(text)
    return strip_quoted(text)
