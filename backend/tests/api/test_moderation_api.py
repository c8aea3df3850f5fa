from datetime import timedelta

import pytest

from app.settings import settings

MOD = {"X-User-Id": "mod-1", "X-User-Roles": "moderator"}
MOD2 = {"X-User-Id": "mod-2", "X-User-Roles": "moderator"}
ADMIN = {"X-User-Id": "admin-1", "X-User-Roles": "admin"}


def _user(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


@pytest.mark.asyncio
async def test_report_to_suspension_to_reversal(api_client, clock):
    resp = await api_client.post(
        "/api/mod/v1/reports",
        json={"report_type": "user", "target_id": "user-9", "reason": "harassment", "reported_user_id": "user-9"},
        headers=_user("reporter-1"),
    )
    assert resp.status_code == 201
    report = resp.json()
    assert report["priority"] == 2
    assert report["status"] == "pending"

    queue = await api_client.get("/api/mod/v1/reports", headers=MOD)
    assert [item["id"] for item in queue.json()] == [report["id"]]

    resp = await api_client.patch(f"/api/mod/v1/reports/{report['id']}", json={"status": "under_review"}, headers=MOD)
    assert resp.status_code == 200
    assert resp.json()["reviewed_by"] == "mod-1"

    resp = await api_client.post(
        "/api/mod/v1/actions",
        json={
            "action_type": "user_suspended",
            "target_user_id": "user-9",
            "reason": "Harassment confirmed",
            "duration_days": 7,
            "related_report_id": report["id"],
        },
        headers=MOD,
    )
    assert resp.status_code == 201
    action = resp.json()
    assert action["notification_sent"] is True
    assert action["metadata"]["state_changes"][0]["action"] == "applied"

    can_post = await api_client.get("/api/mod/v1/users/user-9/can/post", headers=_user("user-9"))
    assert can_post.json()["allowed"] is False
    assert can_post.json()["blocked_by"] == "suspended"
    assert can_post.json()["reason"] == "Harassment confirmed"
    assert "blocked by suspended" in can_post.json()["message"]
    suspension = await api_client.get("/api/mod/v1/users/user-9/suspension", headers=_user("user-9"))
    assert suspension.json()["is_suspended"] is True
    assert suspension.json()["days_remaining"] == 7

    clock.advance(days=1)
    resp = await api_client.post(
        f"/api/mod/v1/actions/{action['id']}/reverse", json={"reason": "Appeal accepted"}, headers=ADMIN
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["action"]["revoked_by"] == "admin-1"
    assert body["action"]["metadata"]["reversal_reason"] == "Appeal accepted"
    assert body["lifted_restriction_ids"] == [action["metadata"]["restriction_id"]]

    can_post = await api_client.get("/api/mod/v1/users/user-9/can/post", headers=_user("user-9"))
    assert can_post.json()["allowed"] is True

    resp = await api_client.patch(
        f"/api/mod/v1/reports/{report['id']}",
        json={"status": "resolved", "resolution_notes": "Suspended then overturned", "action_taken": "user_suspended"},
        headers=MOD,
    )
    assert resp.json()["status"] == "resolved"


@pytest.mark.asyncio
async def test_anonymous_and_duplicate_reports(api_client):
    payload = {"report_type": "post", "target_id": "post-1", "reason": "spam"}
    resp = await api_client.post("/api/mod/v1/reports", json=payload)
    assert resp.status_code == 401

    first = await api_client.post("/api/mod/v1/reports", json=payload, headers=_user("r1"))
    assert first.status_code == 201
    dup = await api_client.post("/api/mod/v1/reports", json=payload, headers=_user("r1"))
    assert dup.status_code == 409
    body = dup.json()
    assert body["detail"] == "duplicate_report"
    assert body["context"]["existing_report_id"] == first.json()["id"]
    assert body["request_id"]


@pytest.mark.asyncio
async def test_invalid_reason_and_validation_context(api_client):
    resp = await api_client.post(
        "/api/mod/v1/reports",
        json={"report_type": "post", "target_id": "p", "reason": "rude"},
        headers=_user("r1"),
    )
    assert resp.status_code == 422
    assert resp.json()["detail"] == "invalid_reason"
    assert resp.json()["context"]["field"] == "reason"

    resp = await api_client.post(
        "/api/mod/v1/actions",
        json={"action_type": "user_suspended", "reason": "x", "target_user_id": "u", "duration_days": 999},
        headers=MOD,
    )
    assert resp.status_code == 422
    assert resp.json()["context"]["field"] == "duration_days"


@pytest.mark.asyncio
async def test_report_rate_limit_sets_retry_after(api_client, monkeypatch):
    monkeypatch.setattr(settings, "moderation_report_rate_limit", 1)
    ok = await api_client.post(
        "/api/mod/v1/reports", json={"report_type": "post", "target_id": "p1", "reason": "spam"}, headers=_user("r1")
    )
    assert ok.status_code == 201
    limited = await api_client.post(
        "/api/mod/v1/reports", json={"report_type": "post", "target_id": "p2", "reason": "spam"}, headers=_user("r1")
    )
    assert limited.status_code == 429
    assert limited.json()["detail"] == "report_rate_limited"
    assert limited.headers["Retry-After"] == str(settings.moderation_report_rate_window_seconds)


@pytest.mark.asyncio
async def test_reversal_permissions(api_client):
    resp = await api_client.post(
        "/api/mod/v1/actions",
        json={"action_type": "user_warned", "target_user_id": "u", "reason": "Off-topic spam"},
        headers=MOD,
    )
    action_id = resp.json()["id"]

    forbidden = await api_client.post(f"/api/mod/v1/actions/{action_id}/reverse", json={"reason": "no"}, headers=MOD2)
    assert forbidden.status_code == 403
    assert forbidden.json()["detail"] == "admin_required"

    own = await api_client.post(f"/api/mod/v1/actions/{action_id}/reverse", json={"reason": "oops"}, headers=MOD)
    assert own.status_code == 200
    assert own.json()["action"]["metadata"]["is_self_reversal"] is True

    again = await api_client.post(f"/api/mod/v1/actions/{action_id}/reverse", json={"reason": "x"}, headers=ADMIN)
    assert again.status_code == 409
    assert again.json()["detail"] == "already_reversed"
    assert again.json()["context"]["revoked_by"] == "mod-1"

    user = await api_client.post("/api/mod/v1/actions", json={"action_type": "user_warned", "reason": "x"}, headers=_user("u"))
    assert user.status_code == 403


@pytest.mark.asyncio
async def test_reversed_action_is_immutable_over_http(api_client):
    created = await api_client.post(
        "/api/mod/v1/actions",
        json={"action_type": "user_warned", "target_user_id": "u", "reason": "x"},
        headers=MOD,
    )
    action_id = created.json()["id"]
    await api_client.post(f"/api/mod/v1/actions/{action_id}/reverse", json={"reason": "undo"}, headers=ADMIN)

    resp = await api_client.patch(f"/api/mod/v1/actions/{action_id}", json={"revoked_by": "mod-2"}, headers=ADMIN)
    assert resp.status_code == 409
    assert resp.json()["detail"] == "immutable_record"
    assert "context" not in resp.json()

    resp = await api_client.delete(f"/api/mod/v1/actions/{action_id}", headers=ADMIN)
    assert resp.status_code == 409

    resp = await api_client.patch(f"/api/mod/v1/actions/{action_id}", json={"internal_notes": "kept"}, headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["internal_notes"] == "kept"

    reapplied = await api_client.post(f"/api/mod/v1/actions/{action_id}/reapply", json={}, headers=ADMIN)
    assert reapplied.status_code == 201
    assert reapplied.json()["metadata"]["reapplied_from"] == action_id


@pytest.mark.asyncio
async def test_restriction_endpoints(api_client):
    resp = await api_client.post(
        "/api/mod/v1/restrictions",
        json={"user_id": "u5", "restriction_type": "upload_disabled", "reason": "Malware uploads", "duration_days": 2},
        headers=MOD,
    )
    assert resp.status_code == 201
    restriction = resp.json()
    assert restriction["is_permanent"] is False

    dup = await api_client.post(
        "/api/mod/v1/restrictions",
        json={"user_id": "u5", "restriction_type": "upload_disabled", "reason": "again"},
        headers=MOD,
    )
    assert dup.status_code == 409
    assert dup.json()["detail"] == "already_restricted"

    peek = await api_client.get("/api/mod/v1/users/u5/restrictions", headers=_user("someone-else"))
    assert peek.status_code == 403
    mine = await api_client.get("/api/mod/v1/users/u5/restrictions", headers=_user("u5"))
    assert [item["id"] for item in mine.json()] == [restriction["id"]]

    lifted = await api_client.post(
        f"/api/mod/v1/restrictions/{restriction['id']}/lift", json={"reason": "cleaned up"}, headers=ADMIN
    )
    assert lifted.status_code == 200
    assert lifted.json()["is_active"] is False

    active = await api_client.get("/api/mod/v1/users/u5/restrictions", headers=MOD)
    assert active.json() == []
    history = await api_client.get("/api/mod/v1/users/u5/restrictions?include_inactive=true", headers=MOD)
    assert len(history.json()) == 1


@pytest.mark.asyncio
async def test_admin_sweep_and_metrics(api_client, clock):
    await api_client.post(
        "/api/mod/v1/restrictions",
        json={"user_id": "u6", "restriction_type": "posting_disabled", "reason": "r", "duration_days": 1},
        headers=MOD,
    )
    clock.advance(days=2)

    denied = await api_client.post("/api/mod/v1/admin/sweep-expirations", headers=MOD)
    assert denied.status_code == 403
    assert denied.json()["detail"] == "admin_required"

    resp = await api_client.post("/api/mod/v1/admin/sweep-expirations", headers=ADMIN)
    assert resp.status_code == 200
    runs = {run["job_type"]: run for run in resp.json()}
    assert runs["restriction_expiration"]["expired_count"] == 1
    assert runs["suspension_expiration"]["status"] == "success"

    logged = await api_client.get("/api/mod/v1/admin/sweep-runs", headers=ADMIN)
    assert len(logged.json()) == 2

    start = (clock.now - timedelta(days=3)).isoformat()
    end = clock.now.isoformat()
    metrics = await api_client.get(
        "/api/mod/v1/admin/reversal-metrics", params={"start": start, "end": end}, headers=ADMIN
    )
    assert metrics.status_code == 200
    assert metrics.json()["total_actions"] == 1
    assert metrics.json()["overall_rate"] == 0.0

    backwards = await api_client.get(
        "/api/mod/v1/admin/reversal-metrics", params={"start": end, "end": start}, headers=ADMIN
    )
    assert backwards.status_code == 422


@pytest.mark.asyncio
async def test_action_log_endpoints(api_client, clock):
    warned = await api_client.post(
        "/api/mod/v1/actions",
        json={"action_type": "user_warned", "target_user_id": "u7", "reason": "Spam"},
        headers=MOD,
    )
    clock.advance(minutes=1)
    await api_client.post(
        "/api/mod/v1/actions",
        json={"action_type": "user_warned", "target_user_id": "u8", "reason": "Spam"},
        headers=MOD2,
    )
    clock.advance(minutes=1)
    suspended = await api_client.post(
        "/api/mod/v1/actions",
        json={"action_type": "user_suspended", "target_user_id": "u7", "reason": "Repeat spam", "duration_days": 3},
        headers=MOD,
    )
    await api_client.post(
        f"/api/mod/v1/actions/{suspended.json()['id']}/reverse", json={"reason": "Too harsh"}, headers=ADMIN
    )

    denied = await api_client.get("/api/mod/v1/actions", headers=MOD)
    assert denied.status_code == 403
    assert denied.json()["detail"] == "admin_required"

    log = await api_client.get(
        "/api/mod/v1/actions", params={"moderator_id": "mod-1", "is_reversed": "false"}, headers=ADMIN
    )
    assert log.status_code == 200
    assert [item["id"] for item in log.json()] == [warned.json()["id"]]

    history = await api_client.get("/api/mod/v1/users/u7/actions", headers=ADMIN)
    assert [item["id"] for item in history.json()] == [suspended.json()["id"], warned.json()["id"]]
    assert history.json()[0]["revoked_by"] == "admin-1"

    too_many = await api_client.get("/api/mod/v1/actions", params={"limit": 500}, headers=ADMIN)
    assert too_many.status_code == 422


@pytest.mark.asyncio
async def test_health_live(api_client):
    resp = await api_client.get("/health/live")
    assert resp.status_code == 200
