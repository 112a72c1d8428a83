"""List-Unsubscribe header parsing."""
from priority_inbox.unsubscribe import _parse_list_unsubscribe, extract_unsubscribe_metadata


def _h(**headers):
    return [{"name": k.replace("_", "-"), "value": v} for k, v in headers.items()]


def test_parse_bracketed_mailto_and_url():
    assert _parse_list_unsubscribe("<mailto:leave@list.example>, <https://list.example/u?id=1>") == (
        "mailto:leave@list.example",
        "https://list.example/u?id=1",
    )


def test_parse_unbracketed_and_empty():
    assert _parse_list_unsubscribe("https://x.example/u") == (None, "https://x.example/u")
    assert _parse_list_unsubscribe("") == (None, None)


def test_no_list_headers():
    assert extract_unsubscribe_metadata(_h(Subject="Hi")) is None
    assert extract_unsubscribe_metadata([]) is None


def test_one_click_url_is_supported():
    meta = extract_unsubscribe_metadata(_h(
        List_Unsubscribe="<https://news.example/unsub>",
        List_Unsubscribe_Post="List-Unsubscribe=One-Click",
    ))
    assert meta["one_click"] is True
    assert meta["supported"] is True
    assert meta["bulk"] is True
    assert meta["unsubscribe_mailto"] is None


def test_url_without_one_click_is_not_supported():
    meta = extract_unsubscribe_metadata(_h(List_Unsubscribe="<https://news.example/unsub>"))
    assert meta["one_click"] is False
    assert meta["supported"] is False


def test_precedence_bulk_without_unsubscribe():
    meta = extract_unsubscribe_metadata(_h(Precedence="bulk"))
    assert meta["bulk"] is True
    assert meta["supported"] is False
    assert meta["list_unsubscribe"] is None
