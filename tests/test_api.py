import inspect

import pytest
import redis
from fastapi.testclient import TestClient

from trust_governance.api import system as system_api
from trust_governance.config import settings
from trust_governance.db.models import ROLE_ADMIN, ROLE_MODERATOR
from trust_governance.dependencies import get_db
from trust_governance.main import app
from trust_governance.services.recalc_queue_service import recalc_queue_service
from trust_governance.services.signal_client import SignalClient, signal_client
from trust_governance.services.trust_score_service import TrustScoreService

JUSTIFICATION = "Consistently fair and helpful in discussions"
REASON = "The flagged claim is quoted from a source"
API_KEY = {"X-API-Key": "test-api-key"}


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def as_user(user):
    return {"X-User-Id": str(user.id)}


def test_missing_identity_is_unauthorized(client):
    response = client.get("/appeals")
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


def test_inactive_user_is_unauthorized(client, make_user):
    user = make_user(is_active=False)
    assert client.get("/appeals", headers=as_user(user)).status_code == 401


def test_role_comes_from_store_not_client(client, make_user):
    member = make_user()
    response = client.get("/governance", headers={**as_user(member), "X-User-Role": "admin"})
    assert response.status_code == 403


def test_appeal_flow(client, make_user, make_post):
    author = make_user()
    post = make_post(author)

    created = client.post("/appeals", json={"post_id": post.id, "dispute_reason": REASON},
                          headers=as_user(author))
    assert created.status_code == 201
    assert created.json()["appeal"]["status"] == "pending"

    duplicate = client.post("/appeals", json={"post_id": post.id, "dispute_reason": REASON},
                            headers=as_user(author))
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "You already have a pending appeal for this post"

    short = client.post("/appeals", json={"post_id": post.id, "dispute_reason": "short"},
                        headers=as_user(author))
    assert short.status_code == 400

    listing = client.get("/appeals", headers=as_user(author))
    assert listing.json()["count"] == 1


def test_insufficient_quorum_reports_counts(client, make_user):
    member = make_user()
    moderator = make_user(role=ROLE_MODERATOR)
    admin = make_user(role=ROLE_ADMIN)

    created = client.post("/promotions", json={"target_role": "moderator"}, headers=as_user(member))
    assert created.status_code == 201
    request_id = created.json()["id"]

    endorsed = client.post(f"/promotions/{request_id}/endorse", json={"justification": JUSTIFICATION},
                           headers=as_user(moderator))
    assert endorsed.status_code == 201
    assert endorsed.json()["cluster_check"]["risk_level"] == "none"

    resolved = client.post(f"/promotions/{request_id}/resolve", json={"decision": "approved"},
                           headers=as_user(admin))
    assert resolved.status_code == 400
    assert resolved.json() == {
        "error": "Insufficient endorsements",
        "required": {"moderators": 2, "admins": 1},
        "current": {"moderators": 1, "admins": 0},
    }


def test_self_endorsement_via_api(client, make_user):
    moderator = make_user(role=ROLE_MODERATOR)
    request_id = client.post("/promotions", json={"target_role": "admin"},
                             headers=as_user(moderator)).json()["id"]

    response = client.post(f"/promotions/{request_id}/endorse", json={"justification": JUSTIFICATION},
                           headers=as_user(moderator))
    assert response.status_code == 409
    assert response.json()["error"] == "Cannot endorse your own promotion"


def test_jury_vote_via_api(client, make_user, make_post):
    admin = make_user(role=ROLE_ADMIN)
    author = make_user()
    jurors = [make_user() for _ in range(3)]
    appeal_id = client.post("/appeals", json={"post_id": make_post(author).id, "dispute_reason": REASON},
                            headers=as_user(author)).json()["appeal"]["id"]

    case = client.post("/jury/cases", json={"appeal_id": appeal_id, "juror_ids": [j.id for j in jurors]},
                       headers=as_user(admin))
    assert case.status_code == 201
    case_id = case.json()["id"]

    mine = client.get("/jury/cases", headers=as_user(jurors[0])).json()
    assert [c["id"] for c in mine["cases"]] == [case_id]

    body = {"decision": "overturn", "reasoning": "The quote is accurate and attributed"}
    first = client.post(f"/jury/cases/{case_id}/votes", json=body, headers=as_user(jurors[0]))
    assert first.status_code == 201
    again = client.post(f"/jury/cases/{case_id}/votes", json=body, headers=as_user(jurors[0]))
    assert again.status_code == 409

    outsider = client.post(f"/jury/cases/{case_id}/votes", json=body, headers=as_user(author))
    assert outsider.status_code == 403


def test_invites_require_api_key(client, make_user):
    user = make_user()
    payload = {"user_id": user.id}

    assert client.post("/invites", json=payload).status_code == 401

    response = client.post("/invites", json=payload, headers=API_KEY)
    assert response.status_code == 201
    assert response.json()["edge"]["generation"] == 0


def test_governance_summary_and_queue(client, db, make_user, signal_provider, monkeypatch):
    monkeypatch.setattr(recalc_queue_service, "engine", TrustScoreService(provider=signal_provider))
    admin = make_user(role=ROLE_ADMIN)

    enqueued = client.post("/trust/recalc", json={"content_id": "post-1", "reason": "citation added"},
                           headers=API_KEY)
    assert enqueued.status_code == 202
    assert enqueued.json()["created"] is True

    summary = client.get("/governance", headers=as_user(admin)).json()
    assert summary["trust_recalc_queue_size"] == 1
    assert summary["pending_promotions"] == 0
    assert summary["invite_blocked_users"] == 0

    drained = client.post("/governance/process-trust-queue", json={"limit": 10}, headers=as_user(admin))
    assert drained.json()["processed"] == 1

    profile = client.get("/trust/post-1", headers=as_user(admin))
    assert profile.status_code == 200
    assert profile.json()["trust_level"] in ("High Trust", "Medium Trust", "Low Trust", "Unverified")

    assert client.get("/governance", params={"metric": "queue-status"},
                      headers=as_user(admin)).json()["queue_size"] == 0
    assert client.get("/governance", params={"metric": "bogus"},
                      headers=as_user(admin)).status_code == 400


def test_missing_profile_is_not_found(client, make_user):
    user = make_user()
    response = client.get("/trust/unknown", headers=as_user(user))
    assert response.status_code == 404
    assert response.json() == {"error": "Trust profile not found"}


def test_moderators_read_governance_views(client, make_user):
    moderator = make_user(role=ROLE_MODERATOR)

    assert client.get("/governance", headers=as_user(moderator)).status_code == 200
    assert client.get("/governance", params={"metric": "diversity-warnings"},
                      headers=as_user(moderator)).status_code == 200
    assert client.get("/invites/tree", headers=as_user(moderator)).status_code == 200
    assert client.get("/invites/diversity/warnings", headers=as_user(moderator)).status_code == 200

    drain = client.post("/governance/process-trust-queue", json={}, headers=as_user(moderator))
    assert drain.status_code == 403


def test_process_queue_rejects_zero_limit(client, db, make_user):
    admin = make_user(role=ROLE_ADMIN)
    client.post("/trust/recalc", json={"content_id": "post-1", "reason": "edit"}, headers=API_KEY)

    response = client.post("/governance/process-trust-queue", json={"limit": 0}, headers=as_user(admin))

    assert response.status_code == 400
    assert response.json() == {"error": "Limit must be at least 1"}
    assert recalc_queue_service.queue_size(db) == 1


def test_health_awaits_signal_check(client, monkeypatch):
    checks = []

    async def fake_health_check():
        checks.append("signals")
        return False

    def unreachable(url):
        raise redis.ConnectionError("redis is down")

    monkeypatch.setattr(signal_client, "health_check", fake_health_check)
    monkeypatch.setattr(system_api.redis, "from_url", unreachable)

    response = client.get("/health")

    assert inspect.iscoroutinefunction(SignalClient.health_check)
    assert response.status_code == 200
    body = response.json()
    assert body["database"] == "healthy"
    assert body["redis"] == "unhealthy"
    assert body["signals"] == "unhealthy"
    assert body["trust_queue_size"] == 0
    assert checks == ["signals"]


def test_invite_code_flow(client, make_user):
    member, newcomer = make_user(), make_user()
    assert client.post("/invites", json={"user_id": member.id}, headers=API_KEY).status_code == 201

    issued = client.post("/invites/codes", json={"note": "met at the workshop"}, headers=as_user(member))
    assert issued.status_code == 201
    code = issued.json()["code"]

    checked = client.get("/invites/codes/validate", params={"code": code}, headers=API_KEY)
    assert checked.json()["valid"] is True
    assert client.get("/invites/codes/validate", headers=API_KEY).status_code == 400

    joined = client.post("/invites", json={"user_id": newcomer.id, "invite_code": code}, headers=API_KEY)
    assert joined.status_code == 201
    assert joined.json()["edge"]["inviter_id"] == member.id
    assert joined.json()["inviter_diversity"]["invitee_count"] == 1

    mine = client.get("/invites/codes", headers=as_user(member)).json()
    assert mine["codes"][0]["current_uses"] == 1
    assert mine["stats"]["member"]["remaining"] == settings.INVITE_CODE_LIFETIME_LIMIT - 1


def test_juror_declines_via_api(client, make_user, make_post):
    admin, author = make_user(role=ROLE_ADMIN), make_user()
    jurors = [make_user() for _ in range(3)]
    appeal_id = client.post("/appeals", json={"post_id": make_post(author).id, "dispute_reason": REASON},
                            headers=as_user(author)).json()["appeal"]["id"]
    case_id = client.post("/jury/cases", json={"appeal_id": appeal_id, "juror_ids": [j.id for j in jurors]},
                          headers=as_user(admin)).json()["id"]

    declined = client.post(f"/jury/cases/{case_id}/decline", json={"reason": "Conflict of interest"},
                           headers=as_user(jurors[0]))
    assert declined.status_code == 200
    assert declined.json()["assignment"]["declined"] is True

    body = {"decision": "uphold", "reasoning": "The flag matches the posting rules"}
    voted = client.post(f"/jury/cases/{case_id}/votes", json=body, headers=as_user(jurors[0]))
    assert voted.status_code == 403
    assert voted.json() == {"error": "You have declined this assignment"}
