"""List-Unsubscribe header parsing (RFC 2369 / RFC 8058 one-click) for bulk-mail detection."""
import re
from typing import Optional

from .gmail_service import header_value


def _parse_list_unsubscribe(raw: str) -> tuple[Optional[str], Optional[str]]:
    """Return (mailto, url) from a List-Unsubscribe value like '<mailto:x@y>, <https://...>'."""
    cleaned = (raw or "").strip()
    if not cleaned:
        return None, None
    bracketed = re.findall(r"<([^>]+)>", cleaned)
    tokens = [t.strip() for t in (bracketed or cleaned.split(",")) if t.strip()]
    mailto = next((t for t in tokens if t.lower().startswith("mailto:")), None)
    url = next((t for t in tokens if re.match(r"^https?:", t, re.I)), None)
    return mailto, url


def extract_unsubscribe_metadata(headers: Optional[list[dict]]) -> Optional[dict]:
    """Unsubscribe metadata of one message, or None if it carries no list headers."""
    if not headers:
        return None
    list_unsubscribe = header_value(headers, "List-Unsubscribe")
    list_unsubscribe_post = header_value(headers, "List-Unsubscribe-Post")
    list_id = header_value(headers, "List-Id")
    precedence = header_value(headers, "Precedence")
    if not list_unsubscribe and not list_id and not precedence:
        return None

    mailto, url = _parse_list_unsubscribe(list_unsubscribe or "")
    one_click = bool(list_unsubscribe_post and re.search(r"one-?click", list_unsubscribe_post, re.I))
    bulk = bool(list_id) or bool(list_unsubscribe) or bool(re.search(r"bulk|list|junk", precedence or "", re.I))
    return {
        "list_unsubscribe": list_unsubscribe or None,
        "list_unsubscribe_post": list_unsubscribe_post or None,
        "list_id": list_id or None,
        "precedence": precedence or None,
        "unsubscribe_url": url,
        "unsubscribe_mailto": mailto,
        "one_click": one_click,
        "supported": bool(mailto or (url and one_click)),
        "bulk": bulk,
    }
