import json

import pytest
from fastapi.testclient import TestClient

from app.config import settings
from app.main import create_app, limiter
from app.models.schemas import ChangedFile
from app.utils.security import SIGNATURE_HEADER, compute_signature


class _FakeFetcher:
    def __init__(self, files):
        self.files = files

    def fetch_changed_files(self, installation_id, owner, repo, pr_number):
        return list(self.files)


FILES = [
    ChangedFile(filename="a.js", status="modified", additions=1, patch="@@ -0,0 +1 @@\n+console.log('x')"),
    ChangedFile(filename="b.png", status="added"),
]


@pytest.fixture(autouse=True)
def _reset_limits():
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def client(engine, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", "")
    with TestClient(create_app(engine=engine, fetcher=_FakeFetcher(FILES))) as test_client:
        yield test_client


def _post(client, event, payload, headers=None):
    return client.post(
        "/webhooks/github",
        content=json.dumps(payload).encode("utf-8"),
        headers={"X-GitHub-Event": event, "X-GitHub-Delivery": "d-1", "Content-Type": "application/json", **(headers or {})},
    )


def test_ping_returns_pong(client):
    res = _post(client, "ping", {"zen": "Keep it logically awesome."})
    assert res.status_code == 200
    assert res.json() == {"status": "pong"}


def test_signature_is_enforced_when_secret_is_set(client, pr_payload, monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", "s3cret")
    payload = pr_payload("opened")

    unsigned = _post(client, "pull_request", payload)
    assert unsigned.status_code == 401
    assert unsigned.json()["detail"]["code"] == "invalid_signature"

    forged = _post(client, "pull_request", payload, {SIGNATURE_HEADER: compute_signature(b"{}", "s3cret")})
    assert forged.status_code == 401

    body = json.dumps(payload).encode("utf-8")
    signed = _post(client, "pull_request", payload, {SIGNATURE_HEADER: compute_signature(body, "s3cret")})
    assert signed.status_code == 202


def test_invalid_json_is_rejected(client):
    res = client.post("/webhooks/github", content=b"{not json", headers={"X-GitHub-Event": "pull_request"})
    assert res.status_code == 400
    assert res.json()["detail"]["code"] == "invalid_json"


def test_malformed_payload_is_rejected(client, pr_payload):
    payload = pr_payload("opened")
    payload["pull_request"] = {"title": "missing number"}
    res = _post(client, "pull_request", payload)
    assert res.status_code == 400
    assert res.json()["detail"]["code"] == "invalid_payload"


def test_unhandled_event_is_ignored(client, pr_payload):
    assert _post(client, "pull_request", pr_payload("labeled")).json() == {"status": "ignored"}
    assert _post(client, "push", {"ref": "refs/heads/main"}).status_code == 200
    assert client.get("/api/reviews").json()["pagination"]["total"] == 0


def test_opened_pull_request_is_reviewed_in_background(client, pr_payload):
    res = _post(client, "pull_request", pr_payload("opened"))
    assert res.status_code == 202
    assert res.json() == {"status": "accepted", "event": "pull_request.opened"}

    listing = client.get("/api/reviews").json()
    assert listing["pagination"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}
    review = listing["reviews"][0]
    assert review["status"] == "completed"
    assert review["review_data"]["progress"] == 100

    detail = client.get(f"/api/reviews/{review['id']}").json()
    assert detail["repo_full_name"] == "acme/widgets"
    assert detail["account_login"] is None
    assert [c["rule"] for c in detail["comments"]] == ["no-console"]
    assert {f["filename"]: f["should_review"] for f in detail["file_changes"]} == {"a.js": True, "b.png": False}


def test_closed_pull_request_keeps_completed_review(client, pr_payload):
    _post(client, "pull_request", pr_payload("opened"))
    assert _post(client, "pull_request", pr_payload("closed")).status_code == 202
    assert client.get("/api/reviews", params={"status": "completed"}).json()["pagination"]["total"] == 1


def test_review_listing_filters_and_paginates(client, pr_payload):
    for number in (1, 2, 3):
        _post(client, "pull_request", pr_payload("opened", number=number))
    _post(client, "pull_request", pr_payload("opened", number=9, repo="acme/other"))

    page = client.get("/api/reviews", params={"page": 2, "limit": 3}).json()
    assert page["pagination"] == {"page": 2, "limit": 3, "total": 4, "pages": 2}
    assert len(page["reviews"]) == 1

    assert client.get("/api/reviews", params={"status": "failed"}).json()["reviews"] == []
    assert client.get("/api/reviews", params={"limit": 0}).status_code == 422

    repo_reviews = client.get("/api/repos/acme/widgets/reviews").json()
    assert sorted(review["pr_number"] for review in repo_reviews) == [1, 2, 3]


def test_unknown_review_returns_404(client):
    res = client.get("/api/reviews/999")
    assert res.status_code == 404
    assert res.json()["detail"]["code"] == "review_not_found"


def test_stats_and_installation_lifecycle(client, pr_payload, installation_payload):
    assert _post(client, "installation", installation_payload("created")).status_code == 202
    _post(client, "pull_request", pr_payload("opened"))

    stats = client.get("/api/stats").json()
    assert stats["installations"] == 1
    assert stats["repositories"] == 2
    assert stats["reviews"] == {"total": 1, "completed": 1}
    assert [activity["pr_number"] for activity in stats["recent_activity"]] == [12]

    review_id = stats["recent_activity"][0]["id"]
    assert client.get(f"/api/reviews/{review_id}").json()["account_type"] == "Organization"

    _post(client, "installation", installation_payload("deleted"))
    stats = client.get("/api/stats").json()
    assert (stats["installations"], stats["repositories"]) == (0, 0)


def test_health_and_root(client):
    health = client.get("/api/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"

    root = client.get("/").json()
    assert root["total_reviews"] == 0
    assert "timestamp" in root
