"""Worker tests: ordering, guardrails, freshness, content cache, deferred bookkeeping."""
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from priority_inbox.config import settings
from priority_inbox.gmail_service import GmailAuthRequiredError
from priority_inbox.models import (
    DeferredPrioritization,
    PrioritizationBatch,
    ThreadContentCache,
    ThreadIndex,
)
from priority_inbox.services.priority_scoring import ThreadScoreResult
from priority_inbox.services.prioritization_worker import (
    BatchBudget,
    apply_guardrails,
    fetch_thread_content,
    run_prioritization_batch,
    sort_candidates_for_scoring,
)

from factories import http_error, make_message, make_thread

WORKER = "priority_inbox.services.prioritization_worker"


class FixedScorer:
    def __init__(self, score=70):
        self.score_value = score
        self.seen = []

    def score(self, item):
        self.seen.append(item)
        return ThreadScoreResult(self.score_value, "Needs a reply.", "reply", {"deadlines": [], "asks": ["ok?"], "people": []})


@pytest.fixture
def gmail():
    """Serves gmail.threads (format=full) to the worker; gmail.get_thread is the mock."""
    gmail = SimpleNamespace(threads={}, get_thread=None)

    def _get_thread(service, thread_id, format="metadata", metadata_headers=None):
        if thread_id not in gmail.threads:
            raise http_error(404)
        return gmail.threads[thread_id]

    with patch(f"{WORKER}.get_gmail_credentials", return_value=object()), \
            patch(f"{WORKER}.build_gmail_service", return_value=MagicMock()), \
            patch(f"{WORKER}.get_thread", side_effect=_get_thread) as get_thread:
        gmail.get_thread = get_thread
        yield gmail


def _index(db, user_id, thread_id, when, score=None, unread=0, primary=True, body="Please review.", gmail=None):
    version = f"{when:%Y-%m-%dT%H:%M:%S}.000Z:{thread_id}-m1"
    row = ThreadIndex(
        user_id=user_id,
        thread_id=thread_id,
        subject=f"Subject {thread_id}",
        participants=["alice@example.com"],
        snippet="snippet",
        last_message_id=f"{thread_id}-m1",
        last_message_date=when,
        unread_count=unread,
        in_primary_inbox=primary,
        content_version=version,
        priority_score=score,
    )
    db.add(row)
    db.commit()
    if gmail is not None:
        gmail.threads[thread_id] = make_thread(thread_id, [make_message(f"{thread_id}-m1", when, body=body)])
    return row


def _deferred_ids(db, user_id):
    return {r.thread_id for r in db.query(DeferredPrioritization).filter(DeferredPrioritization.user_id == user_id)}


def test_sort_candidates_for_scoring():
    d = datetime(2026, 1, 1)
    c = lambda tid, score, date, unread: SimpleNamespace(
        thread_id=tid, priority_score=score, last_message_date=date, unread_count=unread
    )
    ordered = sort_candidates_for_scoring([
        c("scored-new", 50, d + timedelta(days=5), 1),
        c("unscored-old", None, d, 0),
        c("unscored-new-read", None, d + timedelta(days=2), 0),
        c("unscored-new-unread", None, d + timedelta(days=2), 3),
        c("unscored-nodate", None, None, 1),
        c("scored-old", 90, d, 0),
    ])
    assert [x.thread_id for x in ordered] == [
        "unscored-new-unread",
        "unscored-new-read",
        "unscored-old",
        "unscored-nodate",
        "scored-new",
        "scored-old",
    ]


def test_apply_guardrails_count_limit():
    plan = apply_guardrails([(f"t{i}", 10) for i in range(5)], BatchBudget(max_threads=3, max_total_chars=1000))
    assert plan.selected == ["t0", "t1", "t2"]
    assert plan.deferred == ["t3", "t4"]
    assert plan.total_chars == 30


def test_apply_guardrails_size_limit_keeps_scanning():
    plan = apply_guardrails([("a", 600), ("b", 500), ("c", 300)], BatchBudget(max_threads=10, max_total_chars=1000))
    assert plan.selected == ["a", "c"]
    assert plan.deferred == ["b"]
    assert plan.total_chars == 900


def test_apply_guardrails_defaults_from_settings():
    order = [(f"t{i}", 1) for i in range(settings.max_threads_per_batch + 2)]
    plan = apply_guardrails(order)
    assert len(plan.selected) == settings.max_threads_per_batch
    assert len(plan.deferred) == 2


def test_fetch_thread_content_joins_recent_messages(monkeypatch):
    monkeypatch.setattr(settings, "max_messages_per_thread", 2)
    monkeypatch.setattr(settings, "max_chars_per_thread", 1000)
    base = datetime(2026, 1, 1)
    thread = make_thread("t", [
        make_message("m3", base + timedelta(hours=3), body="third"),
        make_message("m1", base, body="first"),
        make_message("m2", base + timedelta(hours=2), body="second\n\nOn Mon, Bob wrote:\n> quoted"),
    ])
    with patch(f"{WORKER}.get_thread", return_value=thread):
        assert fetch_thread_content(MagicMock(), "t") == "second\n\n---\n\nthird"


def test_fetch_thread_content_truncates_and_handles_missing(monkeypatch):
    monkeypatch.setattr(settings, "max_chars_per_thread", 5)
    thread = make_thread("t", [make_message("m1", datetime(2026, 1, 1), body="abcdefghij")])
    with patch(f"{WORKER}.get_thread", return_value=thread):
        assert fetch_thread_content(MagicMock(), "t") == "abcde"
    with patch(f"{WORKER}.get_thread", side_effect=http_error(404)):
        assert fetch_thread_content(MagicMock(), "t") is None
    with patch(f"{WORKER}.get_thread", return_value=make_thread("t", [])):
        assert fetch_thread_content(MagicMock(), "t") is None


def test_batch_scores_and_writes_back(db_session, user, gmail):
    when = datetime(2026, 1, 2, 10, 0)
    _index(db_session, user.id, "t1", when, unread=1, gmail=gmail)
    scorer = FixedScorer(70)

    result = run_prioritization_batch(db_session, user.id, ["t1"], "history_delta", scorer=scorer)

    assert result.status == "completed"
    assert result.planned == 1
    assert result.processed == 1
    assert result.deferred == 0
    row = db_session.query(ThreadIndex).filter(ThreadIndex.thread_id == "t1").one()
    assert row.priority_score == 70
    assert row.suggested_action_type == "reply"
    assert row.extracted["asks"] == ["ok?"]
    assert row.score_version == settings.priority_score_version
    assert row.scored_content_version == row.content_version
    assert row.last_scored_at is not None
    cache = db_session.query(ThreadContentCache).filter(ThreadContentCache.thread_id == "t1").one()
    assert cache.content_text == "Please review."
    assert cache.content_version == row.content_version
    assert scorer.seen[0].subject == "Subject t1"
    assert scorer.seen[0].participants == ["alice@example.com"]
    batch = db_session.query(PrioritizationBatch).one()
    assert (batch.status, batch.trigger, batch.processed_threads) == ("completed", "history_delta", 1)
    assert batch.finished_at is not None


def test_second_run_skips_fresh_threads(db_session, user, gmail):
    _index(db_session, user.id, "t1", datetime(2026, 1, 2), gmail=gmail)
    scorer = FixedScorer()
    run_prioritization_batch(db_session, user.id, ["t1"], "history_delta", scorer=scorer)
    gmail.get_thread.reset_mock()

    result = run_prioritization_batch(db_session, user.id, ["t1"], "history_delta", scorer=scorer)

    assert result.processed == 1
    assert len(scorer.seen) == 1
    gmail.get_thread.assert_not_called()


def test_new_content_version_is_rescored(db_session, user, gmail):
    row = _index(db_session, user.id, "t1", datetime(2026, 1, 2), gmail=gmail)
    scorer = FixedScorer()
    run_prioritization_batch(db_session, user.id, ["t1"], "history_delta", scorer=scorer)
    row.content_version = "2026-01-03T00:00:00.000Z:t1-m2"
    db_session.commit()

    run_prioritization_batch(db_session, user.id, ["t1"], "history_delta", scorer=scorer)

    assert len(scorer.seen) == 2


def test_cached_content_avoids_gmail_fetch(db_session, user, gmail):
    row = _index(db_session, user.id, "t1", datetime(2026, 1, 2))
    db_session.add(ThreadContentCache(
        user_id=user.id, thread_id="t1", content_text="from cache", content_version=row.content_version
    ))
    db_session.commit()
    scorer = FixedScorer()

    run_prioritization_batch(db_session, user.id, ["t1"], "history_delta", scorer=scorer)

    assert scorer.seen[0].content == "from cache"
    gmail.get_thread.assert_not_called()


def test_stale_cache_is_refetched(db_session, user, gmail):
    _index(db_session, user.id, "t1", datetime(2026, 1, 2), body="fresh body", gmail=gmail)
    db_session.add(ThreadContentCache(user_id=user.id, thread_id="t1", content_text="old", content_version="old-version"))
    db_session.commit()
    scorer = FixedScorer()

    run_prioritization_batch(db_session, user.id, ["t1"], "history_delta", scorer=scorer)

    assert scorer.seen[0].content == "fresh body"
    db_session.expire_all()
    assert db_session.query(ThreadContentCache).filter(ThreadContentCache.thread_id == "t1").one().content_text == "fresh body"


def test_count_guardrail_defers_overflow(db_session, user, gmail, monkeypatch):
    monkeypatch.setattr(settings, "max_threads_per_batch", 2)
    base = datetime(2026, 1, 1)
    for i in range(5):
        _index(db_session, user.id, f"t{i}", base + timedelta(days=i), gmail=gmail)

    result = run_prioritization_batch(
        db_session, user.id, [f"t{i}" for i in range(5)], "initial_sync", scorer=FixedScorer()
    )

    # Newest first.
    assert result.processed_thread_ids == ["t4", "t3"]
    assert sorted(result.deferred_thread_ids) == ["t0", "t1", "t2"]
    assert _deferred_ids(db_session, user.id) == {"t0", "t1", "t2"}
    batch = db_session.query(PrioritizationBatch).one()
    assert (batch.total_threads_planned, batch.processed_threads, batch.deferred_threads) == (5, 2, 3)


def test_deferred_threads_join_next_run(db_session, user, gmail, monkeypatch):
    monkeypatch.setattr(settings, "max_threads_per_batch", 2)
    base = datetime(2026, 1, 1)
    for i in range(3):
        _index(db_session, user.id, f"t{i}", base + timedelta(days=i), gmail=gmail)
    run_prioritization_batch(db_session, user.id, ["t0", "t1", "t2"], "initial_sync", scorer=FixedScorer())
    assert _deferred_ids(db_session, user.id) == {"t0"}

    result = run_prioritization_batch(db_session, user.id, [], "history_delta", scorer=FixedScorer())

    assert result.processed_thread_ids == ["t0"]
    assert _deferred_ids(db_session, user.id) == set()


def test_size_guardrail_defers_large_threads(db_session, user, gmail, monkeypatch):
    monkeypatch.setattr(settings, "max_total_chars_per_batch", 15)
    _index(db_session, user.id, "big", datetime(2026, 1, 3), body="x" * 12, gmail=gmail)
    _index(db_session, user.id, "big2", datetime(2026, 1, 2), body="y" * 12, gmail=gmail)
    _index(db_session, user.id, "small", datetime(2026, 1, 1), body="z" * 3, gmail=gmail)

    result = run_prioritization_batch(db_session, user.id, ["big", "big2", "small"], "history_delta", scorer=FixedScorer())

    assert result.processed_thread_ids == ["big", "small"]
    assert result.deferred_thread_ids == ["big2"]
    assert result.total_chars == 15


def test_time_budget_defers_remaining(db_session, user, gmail, monkeypatch):
    monkeypatch.setattr(settings, "batch_time_budget_seconds", 60)
    for i in range(3):
        _index(db_session, user.id, f"t{i}", datetime(2026, 1, 1 + i), gmail=gmail)
    ticks = iter([0, 0, 61, 61])

    result = run_prioritization_batch(
        db_session, user.id, ["t0", "t1", "t2"], "history_delta", scorer=FixedScorer(), clock=lambda: next(ticks)
    )

    assert result.processed_thread_ids == ["t2"]
    assert sorted(result.deferred_thread_ids) == ["t0", "t1"]


def test_not_primary_and_unknown_candidates_are_dropped(db_session, user, gmail):
    _index(db_session, user.id, "archived", datetime(2026, 1, 1), primary=False, gmail=gmail)
    db_session.add(DeferredPrioritization(user_id=user.id, thread_id="archived"))
    db_session.add(DeferredPrioritization(user_id=user.id, thread_id="unknown"))
    db_session.commit()

    result = run_prioritization_batch(db_session, user.id, [], "history_delta", scorer=FixedScorer())

    assert result.planned == 0
    assert _deferred_ids(db_session, user.id) == set()


def test_unfetchable_thread_is_dropped(db_session, user, gmail):
    _index(db_session, user.id, "gone", datetime(2026, 1, 1))
    db_session.add(DeferredPrioritization(user_id=user.id, thread_id="gone"))
    db_session.commit()

    result = run_prioritization_batch(db_session, user.id, [], "history_delta", scorer=FixedScorer())

    assert result.dropped_thread_ids == ["gone"]
    assert result.processed == 0
    assert _deferred_ids(db_session, user.id) == set()


def test_failure_finalizes_batch_and_keeps_progress(db_session, user, gmail, monkeypatch):
    monkeypatch.setattr(settings, "max_threads_per_batch", 2)
    for i in range(4):
        _index(db_session, user.id, f"t{i}", datetime(2026, 1, 1 + i), gmail=gmail)
    db_session.add(DeferredPrioritization(user_id=user.id, thread_id="t3"))
    db_session.commit()

    class FailingScorer(FixedScorer):
        def score(self, item):
            if item.thread_id == "t2":
                raise RuntimeError("scoring backend down")
            return super().score(item)

    with pytest.raises(RuntimeError):
        run_prioritization_batch(db_session, user.id, ["t0", "t1", "t2", "t3"], "history_delta", scorer=FailingScorer())

    batch = db_session.query(PrioritizationBatch).one()
    assert batch.status == "failed"
    assert batch.processed_threads == 1
    assert batch.finished_at is not None
    # t3 was scored before the failure; the failing thread and the unvisited ones stay pending.
    assert _deferred_ids(db_session, user.id) == {"t0", "t1", "t2"}
    assert batch.deferred_threads == 3
    assert db_session.query(ThreadIndex).filter(ThreadIndex.thread_id == "t3").one().priority_score == 70


def test_missing_credentials_skip_without_batch_row(db_session, user):
    _index(db_session, user.id, "t1", datetime(2026, 1, 1))
    err = GmailAuthRequiredError("no refresh token", reason="missing_refresh")
    with patch(f"{WORKER}.get_gmail_credentials", side_effect=err):
        assert run_prioritization_batch(db_session, user.id, ["t1"], "history_delta", scorer=FixedScorer()) is None
    assert db_session.query(PrioritizationBatch).count() == 0


def test_nothing_to_do_returns_none(db_session, user, gmail):
    assert run_prioritization_batch(db_session, user.id, [], "history_delta", scorer=FixedScorer()) is None
    assert db_session.query(PrioritizationBatch).count() == 0


def _failing_fetch(gmail, errors):
    """Make get_thread raise errors[thread_id] for those ids and serve gmail.threads otherwise."""

    def _get_thread(service, thread_id, format="metadata", metadata_headers=None):
        if thread_id in errors:
            raise errors[thread_id]
        if thread_id not in gmail.threads:
            raise http_error(404)
        return gmail.threads[thread_id]

    gmail.get_thread.side_effect = _get_thread


def test_rejected_fetch_does_not_block_older_threads(db_session, user, gmail):
    _index(db_session, user.id, "rejected", datetime(2026, 2, 1))
    _index(db_session, user.id, "older", datetime(2026, 1, 1), gmail=gmail)
    _failing_fetch(gmail, {"rejected": http_error(400)})

    for _ in range(3):
        result = run_prioritization_batch(db_session, user.id, ["rejected", "older"], "history_delta", scorer=FixedScorer())
        assert result.status == "completed"

    assert db_session.query(ThreadIndex).filter(ThreadIndex.thread_id == "older").one().priority_score == 70
    assert result.dropped_thread_ids == ["rejected"]
    assert _deferred_ids(db_session, user.id) == set()


def test_transient_fetch_failure_defers_thread(db_session, user, gmail):
    _index(db_session, user.id, "busy", datetime(2026, 2, 1))
    _index(db_session, user.id, "timeout", datetime(2026, 1, 15))
    _index(db_session, user.id, "older", datetime(2026, 1, 1), gmail=gmail)
    _failing_fetch(gmail, {"busy": http_error(503), "timeout": TimeoutError("timed out")})

    result = run_prioritization_batch(
        db_session, user.id, ["busy", "timeout", "older"], "history_delta", scorer=FixedScorer()
    )

    assert result.status == "completed"
    assert result.processed_thread_ids == ["older"]
    assert result.deferred_thread_ids == ["busy", "timeout"]
    assert _deferred_ids(db_session, user.id) == {"busy", "timeout"}
    batch = db_session.query(PrioritizationBatch).one()
    assert (batch.status, batch.processed_threads, batch.deferred_threads) == ("completed", 1, 2)
