from datetime import timedelta

import pytest

from tests.conftest import NOW
from trust_governance.config import settings
from trust_governance.db.models import Endorsement, PromotionRequest, User, ROLE_ADMIN, ROLE_MODERATOR
from trust_governance.errors import (
    AuthorizationDenied, Conflict, InsufficientQuorum, ValidationFailed
)
from trust_governance.services.invite_graph_service import invite_graph_service
from trust_governance.services.promotion_service import promotion_service

JUSTIFICATION = "Consistently fair and helpful in discussions"


@pytest.fixture
def staff(make_user):
    return {
        "mod1": make_user(role=ROLE_MODERATOR),
        "mod2": make_user(role=ROLE_MODERATOR),
        "admin": make_user(role=ROLE_ADMIN),
    }


def test_request_uses_role_pair_policy(db, make_user):
    member = make_user()
    request = promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)

    assert request.status == "pending"
    assert request.current_role == "member"
    assert request.required_moderator_endorsements == 2
    assert request.required_admin_endorsements == 1


def test_quorum_must_be_met_before_approval(db, make_user, staff):
    member = make_user()
    request = promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)
    promotion_service.endorse(db, request.id, staff["mod1"].id, JUSTIFICATION, now=NOW)

    with pytest.raises(InsufficientQuorum) as excinfo:
        promotion_service.resolve(db, request.id, "approved", staff["admin"].id, now=NOW)
    assert excinfo.value.current == {"moderators": 1, "admins": 0}
    assert excinfo.value.required == {"moderators": 2, "admins": 1}
    assert excinfo.value.to_dict()["error"] == "Insufficient endorsements"

    promotion_service.endorse(db, request.id, staff["mod2"].id, JUSTIFICATION, now=NOW)
    promotion_service.endorse(db, request.id, staff["admin"].id, JUSTIFICATION, now=NOW)
    resolved = promotion_service.resolve(db, request.id, "approved", staff["admin"].id, now=NOW)

    assert resolved.status == "approved"
    assert resolved.resolved_by == staff["admin"].id
    assert db.get(User, member.id).role == ROLE_MODERATOR


def test_resolution_is_terminal(db, make_user, staff):
    member = make_user()
    request = promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)
    promotion_service.resolve(db, request.id, "rejected", staff["admin"].id, now=NOW)

    with pytest.raises(Conflict, match="already resolved"):
        promotion_service.resolve(db, request.id, "approved", staff["admin"].id, now=NOW)
    with pytest.raises(Conflict, match="already resolved"):
        promotion_service.endorse(db, request.id, staff["mod1"].id, JUSTIFICATION, now=NOW)
    assert db.get(User, member.id).role == "member"


def test_self_endorsement_is_rejected(db, make_user):
    moderator = make_user(role=ROLE_MODERATOR)
    request = promotion_service.create_request(db, moderator.id, ROLE_ADMIN, now=NOW)

    with pytest.raises(Conflict, match="Cannot endorse your own promotion"):
        promotion_service.endorse(db, request.id, moderator.id, JUSTIFICATION, now=NOW)
    assert db.query(Endorsement).count() == 0


def test_endorsement_rules(db, make_user, staff):
    member, other_member = make_user(), make_user()
    request = promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)

    with pytest.raises(ValidationFailed, match="Justification must be at least 20 characters"):
        promotion_service.endorse(db, request.id, staff["mod1"].id, "too short", now=NOW)
    with pytest.raises(AuthorizationDenied):
        promotion_service.endorse(db, request.id, other_member.id, JUSTIFICATION, now=NOW)

    promotion_service.endorse(db, request.id, staff["mod1"].id, JUSTIFICATION, now=NOW)
    with pytest.raises(Conflict, match="already endorsed"):
        promotion_service.endorse(db, request.id, staff["mod1"].id, JUSTIFICATION, now=NOW)

    endorsement = db.query(Endorsement).one()
    assert endorsement.endorser_role == ROLE_MODERATOR


def test_only_admins_resolve(db, make_user, staff):
    member = make_user()
    request = promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)

    with pytest.raises(AuthorizationDenied):
        promotion_service.resolve(db, request.id, "rejected", staff["mod1"].id, now=NOW)


def test_duplicate_pending_and_cooldown(db, make_user, staff, monkeypatch):
    member = make_user()
    request = promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)

    with pytest.raises(Conflict, match="pending promotion request already exists"):
        promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)

    promotion_service.resolve(db, request.id, "rejected", staff["admin"].id, now=NOW)
    with pytest.raises(Conflict, match="recently rejected") as excinfo:
        promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW + timedelta(days=1))
    assert "retry_after" in excinfo.value.extra

    later = NOW + timedelta(days=settings.PROMOTION_RESUBMIT_COOLDOWN_DAYS + 1)
    again = promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=later)
    assert again.status == "pending"


def test_no_promotion_path(db, make_user):
    member = make_user()
    with pytest.raises(ValidationFailed, match="No promotion path"):
        promotion_service.create_request(db, member.id, ROLE_ADMIN, now=NOW)


def test_approval_fails_if_role_changed_meanwhile(db, make_user, staff):
    member = make_user()
    request = promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)
    for endorser in staff.values():
        promotion_service.endorse(db, request.id, endorser.id, JUSTIFICATION, now=NOW)
    member.role = ROLE_ADMIN
    db.commit()

    with pytest.raises(Conflict, match="User role changed"):
        promotion_service.resolve(db, request.id, "approved", staff["admin"].id, now=NOW)
    assert promotion_service.get_request(db, request.id).status == "pending"


def test_cluster_check_flags_shared_inviter(db, make_user, staff):
    root, member = make_user(), make_user()
    invite_graph_service.record_invite(db, None, root.id, now=NOW)
    invite_graph_service.record_invite(db, root.id, staff["mod1"].id, now=NOW)
    invite_graph_service.record_invite(db, root.id, staff["mod2"].id, now=NOW)
    request = promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)

    promotion_service.endorse(db, request.id, staff["mod1"].id, JUSTIFICATION, now=NOW)
    _, cluster_check = promotion_service.endorse(
        db, request.id, staff["mod2"].id, JUSTIFICATION, now=NOW + timedelta(minutes=5)
    )

    types = [signal["type"] for signal in cluster_check["signals"]]
    assert types == ["shared_inviter", "burst"]
    assert cluster_check["risk_score"] == 3
    assert cluster_check["risk_level"] == "medium"
    assert cluster_check["signals"][0]["endorser_ids"] == sorted([staff["mod1"].id, staff["mod2"].id])


def test_cluster_check_flags_reciprocal_endorsement(db, make_user, staff):
    candidate = make_user(role=ROLE_MODERATOR)
    # the candidate endorsed mod1's own request a few days earlier
    earlier = promotion_service.create_request(db, staff["mod1"].id, ROLE_ADMIN, now=NOW - timedelta(days=3))
    promotion_service.endorse(db, earlier.id, candidate.id, JUSTIFICATION, now=NOW - timedelta(days=3))

    request = promotion_service.create_request(db, candidate.id, ROLE_ADMIN, now=NOW)
    _, cluster_check = promotion_service.endorse(db, request.id, staff["mod1"].id, JUSTIFICATION, now=NOW)

    assert [s["type"] for s in cluster_check["signals"]] == ["reciprocal_endorsement"]
    assert cluster_check["risk_level"] == "medium"


def test_cluster_check_none_for_independent_endorsers(db, make_user, staff):
    member = make_user()
    request = promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)
    _, cluster_check = promotion_service.endorse(db, request.id, staff["mod1"].id, JUSTIFICATION, now=NOW)

    assert cluster_check["risk_level"] == "none"
    assert cluster_check["endorser_count"] == 1


def test_duplicate_pending_request_is_rejected_by_the_store(db, make_user, monkeypatch):
    member = make_user()
    promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)
    # the lookup misses a request committed by a concurrent call
    monkeypatch.setattr(
        promotion_service, "_has_pending_request", lambda db, user_id, target_role: False
    )

    with pytest.raises(Conflict, match="pending promotion request already exists"):
        promotion_service.create_request(db, member.id, ROLE_MODERATOR, now=NOW)
    assert db.query(PromotionRequest).count() == 1
