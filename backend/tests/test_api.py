"""HTTP API: health, sync endpoints, threads listing, prioritization."""
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

from priority_inbox.models import GmailAccount, PrioritizationBatch, ThreadIndex, User
from priority_inbox.services.prioritization_queue import get_scheduler

SYNC = "priority_inbox.routers.sync"


def _thread(db, user_id, thread_id, when, score=None, primary=True):
    db.add(ThreadIndex(
        user_id=user_id,
        thread_id=thread_id,
        subject=f"Subject {thread_id}",
        last_message_date=when,
        in_primary_inbox=primary,
        priority_score=score,
        unread_count=0,
    ))
    db.commit()


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert r.json()["content_cache"] == {"status": "unavailable"}


def test_sync_unknown_user(client):
    assert client.post("/api/users/999/sync").status_code == 404


def test_sync_requires_usable_credentials(client, user):
    with patch(f"{SYNC}.load_user_credentials", return_value=None), patch(f"{SYNC}._run_sync_task") as task:
        r = client.post(f"/api/users/{user.id}/sync")
    assert r.status_code == 400
    assert "missing_token" in r.json()["detail"]
    task.assert_not_called()


def test_sync_starts_background_task(client, user, db_session):
    creds = MagicMock(refresh_token="rt", scopes=["https://www.googleapis.com/auth/gmail.readonly"])
    with patch(f"{SYNC}.load_user_credentials", return_value=creds), patch(f"{SYNC}._run_sync_task") as task:
        r = client.post(f"/api/users/{user.id}/sync")
    assert r.status_code == 200
    assert r.json() == {"message": "Inbox sync started.", "status": "syncing", "user_id": user.id}
    task.assert_called_once_with(user.id)
    db_session.expire_all()
    assert db_session.get(User, user.id).last_active_at is not None


def test_sync_status(client, user, db_session):
    db_session.add(GmailAccount(user_id=user.id, email_address="owner@example.com", history_cursor="42"))
    db_session.commit()
    _thread(db_session, user.id, "a", datetime(2026, 1, 1))
    _thread(db_session, user.id, "b", datetime(2026, 1, 2), primary=False)

    r = client.get(f"/api/users/{user.id}/sync-status")

    assert r.status_code == 200
    body = r.json()
    assert body["history_cursor"] == "42"
    assert body["indexed_threads"] == 2
    assert body["primary_threads"] == 1
    assert body["deferred_threads"] == 0


def test_sync_status_before_first_sync(client, user):
    body = client.get(f"/api/users/{user.id}/sync-status").json()
    assert body["history_cursor"] is None
    assert body["indexed_threads"] == 0


def test_threads_ordered_by_score_then_date(client, user, db_session):
    base = datetime(2026, 1, 1)
    _thread(db_session, user.id, "low", base + timedelta(days=3), score=20)
    _thread(db_session, user.id, "high-old", base, score=80)
    _thread(db_session, user.id, "high-new", base + timedelta(days=1), score=80)
    _thread(db_session, user.id, "unscored", base + timedelta(days=5))
    _thread(db_session, user.id, "archived", base + timedelta(days=6), score=99, primary=False)

    r = client.get(f"/api/users/{user.id}/threads")

    assert r.status_code == 200
    body = r.json()
    assert body["total"] == 4
    assert [t["thread_id"] for t in body["items"]] == ["high-new", "high-old", "low", "unscored"]


def test_threads_pagination(client, user, db_session):
    for i in range(5):
        _thread(db_session, user.id, f"t{i}", datetime(2026, 1, 1 + i), score=i)
    body = client.get(f"/api/users/{user.id}/threads", params={"limit": 2, "offset": 2}).json()
    assert [t["thread_id"] for t in body["items"]] == ["t2", "t1"]
    assert (body["limit"], body["offset"], body["total"]) == (2, 2, 5)


def test_prioritize_runs_a_cycle_now(client, user, fake_timers):
    r = client.post(f"/api/users/{user.id}/prioritize", json={"thread_ids": ["t2", "t1", "t2"]})

    assert r.status_code == 200
    assert r.json()["queued_thread_ids"] == 2
    immediate = [t for t in fake_timers.armed() if t.delay == 0]
    assert len(immediate) == 1
    immediate[0].fire()
    get_scheduler()._run_batch.assert_called_once_with(user.id, ["t1", "t2"], "manual")


def test_prioritize_without_body_drains_deferred(client, user, fake_timers):
    r = client.post(f"/api/users/{user.id}/prioritize")
    assert r.status_code == 200
    assert r.json()["queued_thread_ids"] == 0
    fake_timers.fire_all()
    get_scheduler()._run_batch.assert_called_once_with(user.id, [], "manual")


def test_list_batches_newest_first(client, user, db_session):
    db_session.add(PrioritizationBatch(user_id=user.id, status="completed", trigger="initial_sync",
                                       started_at=datetime(2026, 1, 1)))
    db_session.add(PrioritizationBatch(user_id=user.id, status="failed", trigger="history_delta",
                                       started_at=datetime(2026, 1, 2)))
    db_session.commit()

    body = client.get(f"/api/users/{user.id}/prioritization/batches").json()

    assert [b["status"] for b in body] == ["failed", "completed"]
    assert body[0]["trigger"] == "history_delta"
