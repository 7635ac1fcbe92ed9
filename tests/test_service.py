import os
import threading
import time

import pytest

from approval_core.audit.logger import verify_audit_log
from approval_core.config import ApprovalConfig
from approval_core.history.commits import CommitFactory, ancestors
from approval_core.history.snapshot import load_snapshot
from approval_core.service import create_approval_app

HIGH_RISK = {
    "intent": "Update build configuration",
    "actions": [{"kind": "edit", "files": ["package.json", "auth/config.ts"]}],
}
DOCS = {
    "intent": "Fix typo in documentation",
    "actions": [{"kind": "edit", "description": "Fix typo in README", "files": ["docs/README.md"]}],
}


@pytest.fixture
def config(tmp_path):
    return ApprovalConfig(
        default_trust_rank="novice",
        max_pending=2,
        snapshot_path=str(tmp_path / "history.json"),
        audit_log_path=str(tmp_path / "audit.jsonl"),
    )


@pytest.fixture
def app(config):
    return create_approval_app(config)


@pytest.fixture
def client(app):
    return app.test_client()


def _pending(client, body=HIGH_RISK):
    resp = client.post("/requests", json=body)
    assert resp.status_code == 202
    return resp.get_json()["request"]["id"]


def test_assess(client):
    resp = client.post("/assess", json=HIGH_RISK)
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["overall_risk"] == "high"
    assert data["requires_approval"] is True
    assert data["explanation"].startswith("High risk")
    assert len(data["factors"]) == 6


def test_assess_rejects_bad_bodies(client):
    assert client.post("/assess", data="nope", content_type="text/plain").status_code == 400
    resp = client.post("/assess", json={"intent": 5})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "INVALID_REQUEST"
    assert client.post("/assess", json={"intent": "x", "actions": "y"}).status_code == 400


def test_request_lifecycle(client, app, config):
    request_id = _pending(client)

    listed = client.get("/requests").get_json()["requests"]
    assert [r["id"] for r in listed] == [request_id]
    assert client.get(f"/requests/{request_id}").get_json()["risk_level"] == "high"

    resp = client.post(f"/requests/{request_id}/respond", json={"action": "approve", "comment": "ok"})
    assert resp.status_code == 200
    assert resp.get_json()["response"]["approved"] is True

    assert client.get(f"/requests/{request_id}").status_code == 404
    again = client.post(f"/requests/{request_id}/respond", json={"action": "approve"})
    assert again.status_code == 404
    assert again.get_json()["code"] == "NOT_FOUND"

    log = client.get("/history/log").get_json()["commits"]
    assert len(log) == 1
    assert log[0]["response"]["request_id"] == request_id

    assert os.path.exists(config.snapshot_path)
    assert len(load_snapshot(config.snapshot_path).repo.commits) == 1
    assert verify_audit_log(config.audit_log_path)[0]


def test_respond_requires_action(client):
    request_id = _pending(client)
    resp = client.post(f"/requests/{request_id}/respond", json={"comment": "hm"})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "MISSING_FIELD"
    bad = client.post(f"/requests/{request_id}/respond", json={"action": "perhaps"})
    assert bad.status_code == 400


def test_capacity_limit(client):
    _pending(client)
    _pending(client)
    resp = client.post("/requests", json=HIGH_RISK)
    assert resp.status_code == 429
    assert resp.get_json()["code"] == "TOO_MANY_PENDING"


def test_resolved_submission(client):
    client.put("/trust", json={"rank": "learning"})
    resp = client.post("/requests", json=DOCS)
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "resolved"
    assert resp.get_json()["response"]["approved"] is True


def test_cancel(client):
    request_id = _pending(client)
    resp = client.delete(f"/requests/{request_id}?reason=stale")
    assert resp.get_json() == {"status": "cancelled", "request_id": request_id}
    assert client.delete(f"/requests/{request_id}").status_code == 404


def test_overdue_requests_are_swept(tmp_path):
    config = ApprovalConfig(default_trust_rank="novice", auto_approval_timeout=0.0001)
    client = create_approval_app(config).test_client()
    request_id = _pending(client, DOCS)

    assert client.get("/requests").get_json()["requests"] == []
    assert client.get(f"/requests/{request_id}").status_code == 404
    assert client.get("/stats").get_json()["auto_approvals"] == 1


def test_trust_endpoints(client):
    assert client.get("/trust").get_json()["current_rank"] == "novice"
    resp = client.put("/trust", json={"rank": "collaborative", "reason": "manual"})
    assert resp.get_json()["current_rank"] == "collaborative"
    assert client.put("/trust", json={}).status_code == 400
    assert client.put("/trust", json={"rank": "guru"}).status_code == 400


def test_history_endpoints(client):
    request_id = _pending(client)
    client.post(f"/requests/{request_id}/respond", json={"action": "approve"})

    assert client.post("/history/branches", json={"name": "feature"}).status_code == 201
    assert client.post("/history/branches", json={"name": "feature"}).status_code == 409
    assert client.post("/history/checkout", json={"name": "feature"}).status_code == 200

    second = _pending(client)
    client.post(f"/requests/{second}/respond", json={"action": "reject"})

    branches = client.get("/history/branches").get_json()
    assert branches["current"] == "feature"

    mr = client.post("/history/merge-requests", json={"title": "Ship", "source": "feature"})
    assert mr.status_code == 201
    mr_id = mr.get_json()["id"]
    assert len(mr.get_json()["commits"]) == 1
    review = client.post(f"/history/merge-requests/{mr_id}/reviews", json={"reviewer": "ann", "status": "approved"})
    assert review.status_code == 201

    merge = client.post("/history/merge", json={"source": "feature", "target": "main"})
    assert merge.status_code == 201
    merge_id = merge.get_json()["id"]
    assert client.get(f"/history/merge-requests/{mr_id}").get_json()["status"] == "merged"

    tag = client.post("/history/tags", json={"name": "v1", "ref": merge_id[:8]})
    assert tag.status_code == 201
    assert client.get("/history/tags").get_json()["tags"] == {"v1": merge_id}
    assert client.get("/history/commits/v1").get_json()["id"] == merge_id

    revert = client.post("/history/revert", json={"ref": "v1", "no_commit": True})
    assert revert.status_code == 200

    assert client.delete("/history/branches/main").status_code == 409
    assert client.post("/history/checkout", json={"name": "main"}).status_code == 200
    assert client.delete("/history/branches/feature").status_code == 200
    assert client.delete("/history/tags/v1").status_code == 200
    assert client.delete("/history/tags/v1").status_code == 404

    stats = client.get("/history/stats").get_json()
    assert stats["repository"]["total_commits"] == 3
    export = client.get("/history/export").get_json()
    assert export["default_branch"] == "main"


def test_history_errors(client):
    assert client.get("/history/commits/deadbeef").status_code == 404
    assert client.post("/history/merge", json={"source": "nope"}).status_code == 400
    assert client.get("/history/log?grep=(").status_code == 400
    assert client.get("/history/log?branch=nope").status_code == 404
    assert client.post("/history/merge-requests/unknown/close").status_code == 404


def test_status(client):
    data = client.get("/status").get_json()
    assert data["service"] == "approvals"
    assert data["trust_rank"] == "novice"
    assert data["history"]["current_branch"] == "main"


def _run_threads(target, count):
    threads = [threading.Thread(target=target, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()


def test_concurrent_responses_keep_history_linear(tmp_path, monkeypatch):
    config = ApprovalConfig(default_trust_rank="novice", max_pending=10,
                            snapshot_path=str(tmp_path / "history.json"))
    app = create_approval_app(config)
    ids = [_pending(app.test_client()) for _ in range(4)]

    create = CommitFactory.create

    def slow_create(*args, **kwargs):
        time.sleep(0.05)
        return create(*args, **kwargs)

    monkeypatch.setattr(CommitFactory, "create", slow_create)

    statuses = []

    def respond(i):
        resp = app.test_client().post(f"/requests/{ids[i]}/respond", json={"action": "approve"})
        statuses.append(resp.status_code)

    _run_threads(respond, len(ids))

    assert statuses == [200] * 4
    store = app.history
    head = store.get_branch("main").head
    assert len(store.repo.commits) == 4
    assert set(ancestors(head, store.repo.commits)) == set(store.repo.commits)
    assert len(load_snapshot(config.snapshot_path).repo.commits) == 4


def test_concurrent_submissions_respect_capacity(app, monkeypatch):
    assess = app.coordinator.assessor.assess

    def slow_assess(*args, **kwargs):
        time.sleep(0.02)
        return assess(*args, **kwargs)

    monkeypatch.setattr(app.coordinator.assessor, "assess", slow_assess)
    statuses = []

    def submit(i):
        statuses.append(app.test_client().post("/requests", json=HIGH_RISK).status_code)

    _run_threads(submit, 6)

    assert sorted(statuses) == [202, 202, 429, 429, 429, 429]
    assert len(app.coordinator.list_pending()) == 2
